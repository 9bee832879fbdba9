from typing import Optional

from fastapi import APIRouter, Depends, status

from convoflow.deps import get_engine
from convoflow.engine import FlowEngine
from convoflow.models import FlowStatus
from convoflow.schemas import CreateFlowDTO, FlowOut, FlowVersionOut, Page, UpdateFlowDTO
from convoflow.util.pagination import clamp_limit

router = APIRouter()


@router.post("/flows", status_code=status.HTTP_201_CREATED, response_model=FlowOut)
def create_flow(body: CreateFlowDTO, engine: FlowEngine = Depends(get_engine)):
    return engine.flows.create_flow(
        name=body.name, graph=body.graph, company_id=body.company_id, description=body.description
    )


@router.get("/flows", response_model=Page[FlowOut])
def list_flows(
    company_id: Optional[int] = None,
    status: Optional[FlowStatus] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    engine: FlowEngine = Depends(get_engine),
):
    limit = clamp_limit(limit)
    items = engine.flows.list_flows(company_id=company_id, status=status, limit=limit, offset=offset)
    total = engine.flows.count_flows(company_id=company_id, status=status)
    return {"items": items, "limit": limit, "offset": offset, "total": total}


@router.get("/flows/{flow_id}", response_model=FlowOut)
def get_flow(flow_id: int, engine: FlowEngine = Depends(get_engine)):
    return engine.flows.get_flow(flow_id)


@router.put("/flows/{flow_id}", response_model=FlowOut)
def update_flow(flow_id: int, body: UpdateFlowDTO, engine: FlowEngine = Depends(get_engine)):
    return engine.flows.update_flow(flow_id, name=body.name, description=body.description, graph=body.graph)


@router.post("/flows/{flow_id}:publish", response_model=FlowVersionOut)
def publish_flow(flow_id: int, engine: FlowEngine = Depends(get_engine)):
    return engine.flows.publish(flow_id)


@router.post("/flows/{flow_id}:archive", response_model=FlowOut)
def archive_flow(flow_id: int, engine: FlowEngine = Depends(get_engine)):
    return engine.flows.archive(flow_id)

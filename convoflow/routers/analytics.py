from typing import Optional

from fastapi import APIRouter, Depends

from convoflow.deps import get_engine
from convoflow.engine import FlowEngine
from convoflow.schemas import DropoffReportOut, NodeDropoffOut

router = APIRouter()


@router.get("/flows/{flow_id}/dropoff", response_model=DropoffReportOut)
def dropoff_report(flow_id: int, company_id: Optional[int] = None, engine: FlowEngine = Depends(get_engine)):
    engine.flows.get_flow(flow_id)
    return {"flow_id": flow_id, "nodes": engine.tracker.dropoff_report(flow_id, company_id=company_id)}


@router.get("/flows/{flow_id}/dropoff/{node_id}", response_model=NodeDropoffOut)
def node_dropoff(flow_id: int, node_id: str, company_id: Optional[int] = None,
                 engine: FlowEngine = Depends(get_engine)):
    engine.flows.get_flow(flow_id)
    for row in engine.tracker.dropoff_report(flow_id, company_id=company_id):
        if row["node_id"] == node_id:
            return row
    return {"node_id": node_id, "total": 0, "completed": 0, "failed": 0, "skipped": 0, "waiting": 0, "dropoff_rate": 0.0}

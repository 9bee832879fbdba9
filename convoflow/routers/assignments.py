from typing import List, Optional

from fastapi import APIRouter, Depends, status

from convoflow.deps import get_engine
from convoflow.engine import FlowEngine
from convoflow.schemas import AssignmentOut, CreateAssignmentDTO

router = APIRouter()


@router.post("/assignments", status_code=status.HTTP_201_CREATED, response_model=AssignmentOut)
def create_assignment(body: CreateAssignmentDTO, engine: FlowEngine = Depends(get_engine)):
    return engine.assignments.create_assignment(body.flow_id, body.channel_id, active=body.active)


@router.get("/assignments", response_model=List[AssignmentOut])
def list_assignments(
    flow_id: Optional[int] = None,
    channel_id: Optional[int] = None,
    engine: FlowEngine = Depends(get_engine),
):
    return engine.assignments.list_assignments(flow_id=flow_id, channel_id=channel_id)


@router.post("/assignments/{assignment_id}:activate", response_model=AssignmentOut)
def activate_assignment(assignment_id: int, engine: FlowEngine = Depends(get_engine)):
    return engine.assignments.set_active(assignment_id, True)


@router.post("/assignments/{assignment_id}:deactivate", response_model=AssignmentOut)
def deactivate_assignment(assignment_id: int, engine: FlowEngine = Depends(get_engine)):
    return engine.assignments.set_active(assignment_id, False)

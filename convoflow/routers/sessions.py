from typing import List, Optional

from fastapi import APIRouter, Depends, status

from convoflow.channels import InboundEvent
from convoflow.deps import get_engine
from convoflow.engine import FlowEngine
from convoflow.errors import NotFoundError
from convoflow.models import SessionStatus, VariableScope
from convoflow.schemas import (
    ExecutionOut,
    InboundResult,
    Page,
    ResumeDTO,
    SessionOut,
    StepOut,
    VariableOut,
)
from convoflow.util.pagination import clamp_limit

router = APIRouter()


def _out(session) -> Optional[SessionOut]:
    # needs_attention is a property, so read the row by attribute
    return SessionOut.model_validate(session) if session is not None else None


@router.post("/events/inbound", response_model=InboundResult, status_code=status.HTTP_202_ACCEPTED)
def inbound_event(event: InboundEvent, engine: FlowEngine = Depends(get_engine)):
    session = engine.sessions.handle_inbound(event)
    return {"handled": session is not None, "session": _out(session)}


@router.get("/flows/{flow_id}/sessions", response_model=Page[SessionOut])
def list_flow_sessions(
    flow_id: int,
    status: Optional[SessionStatus] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    engine: FlowEngine = Depends(get_engine),
):
    limit = clamp_limit(limit)
    engine.flows.get_flow(flow_id)
    items = [_out(s) for s in engine.sessions.list_sessions(flow_id=flow_id, status=status, limit=limit, offset=offset)]
    total = engine.sessions.count_sessions(flow_id=flow_id, status=status)
    return {"items": items, "limit": limit, "offset": offset, "total": total}


@router.get("/sessions/{session_id}", response_model=SessionOut)
def get_session(session_id: str, engine: FlowEngine = Depends(get_engine)):
    return _out(engine.sessions.get_session(session_id))


@router.post("/sessions/{session_id}:resume", response_model=SessionOut)
def resume_session(session_id: str, body: Optional[ResumeDTO] = None, engine: FlowEngine = Depends(get_engine)):
    return _out(engine.sessions.resume_session(session_id, body.input if body else None))


@router.post("/sessions/{session_id}:resume-paused", response_model=SessionOut)
def resume_paused_session(session_id: str, engine: FlowEngine = Depends(get_engine)):
    return _out(engine.sessions.resume_paused(session_id))


@router.post("/sessions/{session_id}:cancel", response_model=SessionOut)
def cancel_session(session_id: str, engine: FlowEngine = Depends(get_engine)):
    return _out(engine.sessions.cancel_session(session_id))


@router.get("/sessions/{session_id}/steps", response_model=List[StepOut])
def list_steps(session_id: str, engine: FlowEngine = Depends(get_engine)):
    engine.sessions.get_session(session_id)
    return engine.tracker.list_steps(session_id)


@router.get("/sessions/{session_id}/execution", response_model=ExecutionOut)
def get_execution(session_id: str, engine: FlowEngine = Depends(get_engine)):
    execution = engine.tracker.get_execution(session_id)
    if execution is None:
        raise NotFoundError(f"no execution recorded for session {session_id}")
    return execution


@router.get("/sessions/{session_id}/variables", response_model=List[VariableOut])
def list_variables(
    session_id: str,
    scope: Optional[VariableScope] = None,
    engine: FlowEngine = Depends(get_engine),
):
    session = engine.sessions.get_session(session_id)
    rows = engine.variables.list(session, scope=scope)
    return [
        VariableOut.model_validate(row).model_copy(update={"value": None}) if row.encrypted else row
        for row in rows
    ]


@router.delete("/sessions/{session_id}/variables")
def clear_variables(
    session_id: str,
    scope: Optional[VariableScope] = None,
    engine: FlowEngine = Depends(get_engine),
):
    session = engine.sessions.get_session(session_id)
    return {"removed": engine.variables.clear(session, scope=scope)}

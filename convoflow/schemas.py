"""
Request/response DTOs for the HTTP API.
"""

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from convoflow.models import (
    ExecutionStatus,
    FlowStatus,
    SessionStatus,
    StepStatus,
    VariableScope,
    VariableType,
)

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    limit: int
    offset: int
    total: int


class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Flows
# ============================================================================

class CreateFlowDTO(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    company_id: Optional[int] = None
    graph: Dict[str, Any] = Field(default_factory=lambda: {"nodes": [], "edges": []})


class UpdateFlowDTO(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    graph: Optional[Dict[str, Any]] = None


class FlowOut(_Out):
    id: int
    company_id: Optional[int]
    name: str
    description: Optional[str]
    status: FlowStatus
    version: int
    published_version_id: Optional[int]
    graph: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


class FlowVersionOut(_Out):
    id: int
    flow_id: int
    version: int
    checksum: Optional[str]
    created_at: datetime


# ============================================================================
# Assignments
# ============================================================================

class CreateAssignmentDTO(BaseModel):
    flow_id: int
    channel_id: int
    active: bool = True


class AssignmentOut(_Out):
    id: int
    flow_id: int
    channel_id: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Sessions
# ============================================================================

class ResumeDTO(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict)


class SessionOut(_Out):
    session_id: str
    flow_id: int
    flow_version_id: int
    conversation_id: int
    contact_id: int
    company_id: Optional[int]
    channel_id: Optional[int]
    channel_type: Optional[str]
    status: SessionStatus
    current_node_id: Optional[str]
    trigger_node_id: str
    execution_path: List[str]
    branching_history: List[Dict[str, Any]]
    waiting_context: Optional[Dict[str, Any]]
    resume_at: Optional[datetime]
    expires_at: Optional[datetime]
    started_at: datetime
    last_activity_at: datetime
    paused_at: Optional[datetime]
    resumed_at: Optional[datetime]
    completed_at: Optional[datetime]
    node_execution_count: int
    user_interaction_count: int
    error_count: int
    last_error_message: Optional[str]
    last_error_node_id: Optional[str]
    needs_attention: bool


class InboundResult(BaseModel):
    handled: bool
    session: Optional[SessionOut] = None


class StepOut(_Out):
    node_id: str
    node_kind: str
    step_order: int
    status: StepStatus
    attempts: int
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    output: Optional[Dict[str, Any]]
    error_message: Optional[str]


class ExecutionOut(_Out):
    execution_id: str
    session_id: str
    status: ExecutionStatus
    execution_path: List[str]
    started_at: datetime
    completed_at: Optional[datetime]
    total_duration_ms: Optional[int]
    completion_rate: Optional[float]
    error_message: Optional[str]


class VariableOut(_Out):
    key: str
    value: Any
    value_type: VariableType
    scope: VariableScope
    owning_node_id: Optional[str]
    expires_at: Optional[datetime]
    encrypted: bool
    updated_at: datetime


# ============================================================================
# Analytics
# ============================================================================

class NodeDropoffOut(BaseModel):
    node_id: str
    total: int
    completed: int
    failed: int
    skipped: int
    waiting: int
    dropoff_rate: float


class DropoffReportOut(BaseModel):
    flow_id: int
    nodes: List[NodeDropoffOut]

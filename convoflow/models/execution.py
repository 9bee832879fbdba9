from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field

from convoflow.util.clock import utcnow

from .base import Timestamped


class ExecutionStatus(str, Enum):
    running = "running"
    waiting = "waiting"
    paused = "paused"
    completed = "completed"
    timeout = "timeout"
    cancelled = "cancelled"


class FlowExecution(Timestamped, table=True):
    __tablename__ = "flow_executions"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(unique=True, index=True)
    session_id: str = Field(foreign_key="flow_sessions.session_id", unique=True, index=True)
    flow_id: int = Field(foreign_key="flows.id", index=True)
    flow_version_id: int = Field(foreign_key="flow_versions.id")
    company_id: Optional[int] = Field(default=None, index=True)
    conversation_id: int
    contact_id: int

    status: ExecutionStatus = Field(default=ExecutionStatus.running, index=True)
    trigger_node_id: str
    execution_path: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    # set exactly once, on the session's terminal transition
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    total_duration_ms: Optional[int] = None
    completion_rate: Optional[float] = None
    error_message: Optional[str] = None


class StepStatus(str, Enum):
    running = "running"
    waiting = "waiting"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


DROPOFF_STATUSES = frozenset({StepStatus.failed, StepStatus.skipped})


class FlowStepExecution(Timestamped, table=True):
    __tablename__ = "flow_step_executions"

    id: Optional[int] = Field(default=None, primary_key=True)
    flow_execution_id: int = Field(foreign_key="flow_executions.id", index=True)
    session_id: str = Field(index=True)
    flow_id: int = Field(index=True)
    company_id: Optional[int] = Field(default=None, index=True)

    node_id: str = Field(index=True)
    node_kind: str
    step_order: int

    status: StepStatus = Field(default=StepStatus.running, index=True)
    attempts: int = Field(default=1)

    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    duration_ms: Optional[int] = None

    input: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    output: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    error_message: Optional[str] = None

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field

from convoflow.util.clock import utcnow

from .base import Timestamped


class SessionStatus(str, Enum):
    active = "active"
    waiting = "waiting"
    paused = "paused"
    completed = "completed"
    timeout = "timeout"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.completed, SessionStatus.timeout, SessionStatus.cancelled})
LIVE_STATUSES = frozenset(set(SessionStatus) - TERMINAL_STATUSES)


def active_key_for(conversation_id: int, flow_id: int) -> str:
    return f"{conversation_id}:{flow_id}"


class FlowSession(Timestamped, table=True):
    __tablename__ = "flow_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    flow_id: int = Field(foreign_key="flows.id", index=True)
    flow_version_id: int = Field(foreign_key="flow_versions.id")
    conversation_id: int = Field(index=True)
    contact_id: int = Field(index=True)
    company_id: Optional[int] = Field(default=None, index=True)
    channel_id: Optional[int] = None
    channel_type: Optional[str] = None

    status: SessionStatus = Field(default=SessionStatus.active, index=True)
    # "<conversation_id>:<flow_id>" while the session is not terminal, NULL
    # afterwards; unique so a conversation never runs the same flow twice at once.
    active_key: Optional[str] = Field(default=None, unique=True)

    # cursor
    current_node_id: Optional[str] = None
    trigger_node_id: str
    execution_path: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    branching_history: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    waiting_context: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    resume_at: Optional[datetime] = Field(default=None, sa_type=DateTime, index=True)
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_activity_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    paused_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    resumed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    node_execution_count: int = 0
    user_interaction_count: int = 0
    error_count: int = 0
    last_error_message: Optional[str] = None
    last_error_node_id: Optional[str] = None

    # execution lease
    lock_token: Optional[str] = None
    lock_expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def needs_attention(self) -> bool:
        return self.status == SessionStatus.paused

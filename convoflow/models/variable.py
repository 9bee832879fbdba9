from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field

from .base import Timestamped


class VariableScope(str, Enum):
    global_ = "global"
    flow = "flow"
    node = "node"
    user = "user"
    session = "session"


# nearest first
SCOPE_PRECEDENCE = (
    VariableScope.session,
    VariableScope.node,
    VariableScope.flow,
    VariableScope.user,
    VariableScope.global_,
)


class VariableType(str, Enum):
    string = "string"
    number = "number"
    boolean = "boolean"
    object = "object"
    array = "array"


class FlowSessionVariable(Timestamped, table=True):
    __tablename__ = "flow_session_variables"
    __table_args__ = (UniqueConstraint("session_id", "key", name="uq_flow_session_variables_session_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="flow_sessions.session_id", index=True)
    key: str = Field(index=True)
    value: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    value_type: VariableType = Field(default=VariableType.string)
    scope: VariableScope = Field(default=VariableScope.session, index=True)
    owning_node_id: Optional[str] = None

    # copied from the owning session so user/global rows can be found from
    # other sessions of the same contact/company
    contact_id: Optional[int] = Field(default=None, index=True)
    company_id: Optional[int] = Field(default=None, index=True)

    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime, index=True)
    encrypted: bool = False

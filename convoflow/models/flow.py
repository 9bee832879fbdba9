from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from .base import Timestamped


class FlowStatus(str, Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


class Flow(Timestamped, table=True):
    __tablename__ = "flows"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: Optional[int] = Field(default=None, index=True)  # owner scope
    name: str
    description: Optional[str] = None
    status: FlowStatus = Field(default=FlowStatus.draft, index=True)
    # editable graph: {"nodes": [...], "edges": [...]}
    graph: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    # bumped on every save
    version: int = Field(default=1)
    published_version_id: Optional[int] = Field(default=None)


class FlowVersion(Timestamped, table=True):
    __tablename__ = "flow_versions"
    __table_args__ = (UniqueConstraint("flow_id", "version", name="uq_flow_versions_flow_version"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    flow_id: int = Field(foreign_key="flows.id", index=True)
    version: int = Field(index=True)
    # immutable snapshot executed by sessions
    graph: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    checksum: Optional[str] = Field(default=None, index=True)  # sha256 of the canonical graph JSON

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from convoflow.util.clock import utcnow


class Timestamped(SQLModel):
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False, sa_column_kwargs={"onupdate": utcnow})

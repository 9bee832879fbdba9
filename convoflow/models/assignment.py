from typing import Optional

from sqlmodel import Field

from .base import Timestamped


class FlowAssignment(Timestamped, table=True):
    __tablename__ = "flow_assignments"

    id: Optional[int] = Field(default=None, primary_key=True)
    flow_id: int = Field(foreign_key="flows.id", index=True)
    channel_id: int = Field(index=True)
    is_active: bool = Field(default=False, index=True)

    # Mirror flow_id / channel_id while active and NULL otherwise. The unique
    # indexes make "one active assignment per channel and per flow" hold even
    # when two workers activate concurrently.
    active_channel_id: Optional[int] = Field(default=None, unique=True)
    active_flow_id: Optional[int] = Field(default=None, unique=True)

    def mark_active(self, active: bool) -> None:
        self.is_active = active
        self.active_channel_id = self.channel_id if active else None
        self.active_flow_id = self.flow_id if active else None

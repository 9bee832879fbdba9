"""
Flow Assignment Manager
Binds flows to channels. At most one active assignment per channel and at
most one per flow; both rules are checked inside the writing transaction and
backed by unique indexes for the concurrent case.
"""

from typing import List, Optional

import structlog
from sqlalchemy import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from convoflow.db import unit_of_work
from convoflow.errors import AssignmentNotFoundError, ConflictError, FlowNotFoundError
from convoflow.models import Flow, FlowAssignment
from convoflow.util.clock import utcnow

logger = structlog.get_logger(__name__)


class FlowAssignmentManager:
    def __init__(self, engine: Engine):
        self.engine = engine

    @staticmethod
    def _active_elsewhere(db: Session, flow_id: int, channel_id: int) -> Optional[FlowAssignment]:
        """The active assignment of `flow_id` on a channel other than `channel_id`."""
        return db.exec(
            select(FlowAssignment).where(
                FlowAssignment.flow_id == flow_id,
                FlowAssignment.is_active == True,  # noqa: E712
                FlowAssignment.channel_id != channel_id,
            )
        ).first()

    @staticmethod
    def _active_on_channel(db: Session, channel_id: int) -> Optional[FlowAssignment]:
        return db.exec(
            select(FlowAssignment).where(
                FlowAssignment.channel_id == channel_id,
                FlowAssignment.is_active == True,  # noqa: E712
            )
        ).first()

    def _commit(self, db: Session, event: str, **fields) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.warning("assignment_conflict", event=event, **fields)
            raise ConflictError("another active assignment was written concurrently") from exc

    def create_assignment(self, flow_id: int, channel_id: int, active: bool = True) -> FlowAssignment:
        """
        Bind `flow_id` to `channel_id`.

        Raises ConflictError if the channel already runs a different active
        flow or the flow is already active on another channel. Re-creating an
        identical active binding returns the existing row.
        """
        with Session(self.engine, expire_on_commit=False) as db:
            if db.get(Flow, flow_id) is None:
                raise FlowNotFoundError(f"flow {flow_id} not found")
            if active:
                current = self._active_on_channel(db, channel_id)
                if current is not None:
                    if current.flow_id == flow_id:
                        return current
                    raise ConflictError(
                        f"channel {channel_id} already has active flow {current.flow_id}",
                        details=[{"path": "channel_id", "msg": f"assignment {current.id} is active"}],
                    )
                other = self._active_elsewhere(db, flow_id, channel_id)
                if other is not None:
                    raise ConflictError(
                        f"flow {flow_id} is already active on channel {other.channel_id}",
                        details=[{"path": "flow_id", "msg": f"assignment {other.id} is active"}],
                    )
            assignment = FlowAssignment(flow_id=flow_id, channel_id=channel_id)
            assignment.mark_active(active)
            db.add(assignment)
            self._commit(db, "create", flow_id=flow_id, channel_id=channel_id)
        logger.info("assignment_created", assignment_id=assignment.id, flow_id=flow_id,
                    channel_id=channel_id, active=active)
        return assignment

    def set_active(self, assignment_id: int, active: bool) -> FlowAssignment:
        """
        Activate or deactivate an assignment. Activation deactivates whatever
        else is active on the same channel, and is refused while the flow is
        active on another channel.
        """
        with Session(self.engine, expire_on_commit=False) as db:
            assignment = db.get(FlowAssignment, assignment_id)
            if assignment is None:
                raise AssignmentNotFoundError(f"assignment {assignment_id} not found")
            if assignment.is_active == active:
                return assignment

            if active:
                other = self._active_elsewhere(db, assignment.flow_id, assignment.channel_id)
                if other is not None:
                    raise ConflictError(
                        f"flow {assignment.flow_id} is already active on channel {other.channel_id}",
                        details=[{"path": "flow_id", "msg": f"assignment {other.id} is active"}],
                    )
                current = self._active_on_channel(db, assignment.channel_id)
                if current is not None and current.id != assignment.id:
                    current.mark_active(False)
                    current.updated_at = utcnow()
                    db.add(current)
                    # release the unique keys before this row claims them
                    db.flush()

            assignment.mark_active(active)
            assignment.updated_at = utcnow()
            db.add(assignment)
            self._commit(db, "set_active", assignment_id=assignment_id, active=active)
        logger.info("assignment_toggled", assignment_id=assignment_id, active=active)
        return assignment

    def get_assignment(self, assignment_id: int) -> FlowAssignment:
        with unit_of_work(self.engine) as db:
            assignment = db.get(FlowAssignment, assignment_id)
            if assignment is None:
                raise AssignmentNotFoundError(f"assignment {assignment_id} not found")
            return assignment

    def active_for_channel(self, channel_id: int, db: Optional[Session] = None) -> Optional[FlowAssignment]:
        with unit_of_work(self.engine, db) as s:
            return self._active_on_channel(s, channel_id)

    def list_assignments(self, flow_id: Optional[int] = None, channel_id: Optional[int] = None) -> List[FlowAssignment]:
        with unit_of_work(self.engine) as db:
            stmt = select(FlowAssignment)
            if flow_id is not None:
                stmt = stmt.where(FlowAssignment.flow_id == flow_id)
            if channel_id is not None:
                stmt = stmt.where(FlowAssignment.channel_id == channel_id)
            return list(db.exec(stmt.order_by(FlowAssignment.id)).all())

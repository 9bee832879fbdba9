"""
Execution Tracker
Append-only record of session runs and per-step outcomes, plus the dropoff
and completion-rate analytics computed from it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import Engine, func, update
from sqlmodel import Session, select

from convoflow.db import unit_of_work
from convoflow.graph import FlowGraph
from convoflow.models import (
    DROPOFF_STATUSES,
    ExecutionStatus,
    FlowExecution,
    FlowSession,
    FlowStepExecution,
    SessionStatus,
    StepStatus,
)
from convoflow.util.clock import elapsed_ms, utcnow
from convoflow.util.ids import new_id

logger = structlog.get_logger(__name__)

FINAL_EXECUTION_STATUSES = frozenset({ExecutionStatus.completed, ExecutionStatus.timeout, ExecutionStatus.cancelled})

_SESSION_TO_EXECUTION = {
    SessionStatus.active: ExecutionStatus.running,
    SessionStatus.waiting: ExecutionStatus.waiting,
    SessionStatus.paused: ExecutionStatus.paused,
    SessionStatus.completed: ExecutionStatus.completed,
    SessionStatus.timeout: ExecutionStatus.timeout,
    SessionStatus.cancelled: ExecutionStatus.cancelled,
}


def completion_rate(graph: FlowGraph, session: FlowSession, completed_nodes: set) -> float:
    """
    Completed nodes over required nodes. Required nodes are the visited ones
    plus, for a session that did not complete, everything still reachable
    from its cursor.
    """
    required = set(session.execution_path or [])
    if session.status != SessionStatus.completed and session.current_node_id:
        required |= graph.reachable_from([session.current_node_id])
    if not required:
        return 0.0
    return min(1.0, len(completed_nodes & required) / len(required))


class ExecutionTracker:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ------------------------------------------------------------------
    # executions
    # ------------------------------------------------------------------

    def open_execution(self, session: FlowSession, db: Optional[Session] = None) -> FlowExecution:
        with unit_of_work(self.engine, db) as s:
            execution = FlowExecution(
                execution_id=new_id("fx_"),
                session_id=session.session_id,
                flow_id=session.flow_id,
                flow_version_id=session.flow_version_id,
                company_id=session.company_id,
                conversation_id=session.conversation_id,
                contact_id=session.contact_id,
                trigger_node_id=session.trigger_node_id,
                execution_path=list(session.execution_path or []),
                started_at=session.started_at,
            )
            s.add(execution)
            s.flush()
            return execution

    def get_execution(self, session_id: str, db: Optional[Session] = None) -> Optional[FlowExecution]:
        with unit_of_work(self.engine, db) as s:
            return s.exec(select(FlowExecution).where(FlowExecution.session_id == session_id)).first()

    def sync_execution(self, session: FlowSession, db: Session, error_message: Optional[str] = None) -> None:
        """Mirror a non-terminal session status and path onto its execution row."""
        values: Dict[str, Any] = {
            "status": _SESSION_TO_EXECUTION[session.status],
            "execution_path": list(session.execution_path or []),
            "updated_at": utcnow(),
        }
        if error_message is not None:
            values["error_message"] = error_message
        db.connection().execute(
            update(FlowExecution)
            .where(
                FlowExecution.session_id == session.session_id,
                FlowExecution.status.not_in(list(FINAL_EXECUTION_STATUSES)),
            )
            .values(**values)
        )

    def finalize(self, session: FlowSession, graph: Optional[FlowGraph], db: Session,
                 now: Optional[datetime] = None) -> bool:
        """
        Close the execution for a session that reached a terminal status.
        Only the first call for a session has any effect; returns whether this
        call was it.
        """
        now = now or utcnow()
        completed_nodes = set(
            db.exec(
                select(FlowStepExecution.node_id).where(
                    FlowStepExecution.session_id == session.session_id,
                    FlowStepExecution.status == StepStatus.completed,
                )
            ).all()
        )
        rate = completion_rate(graph, session, completed_nodes) if graph is not None else None
        result = db.connection().execute(
            update(FlowExecution)
            .where(
                FlowExecution.session_id == session.session_id,
                FlowExecution.completed_at.is_(None),
            )
            .values(
                status=_SESSION_TO_EXECUTION[session.status],
                execution_path=list(session.execution_path or []),
                completed_at=now,
                total_duration_ms=elapsed_ms(session.started_at, now),
                completion_rate=rate,
                updated_at=now,
            )
        )
        finalized = result.rowcount == 1
        if finalized:
            logger.info(
                "execution_finalized",
                session_id=session.session_id,
                status=session.status.value,
                completion_rate=rate,
            )
        return finalized

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------

    def begin_step(self, session: FlowSession, node, input: Optional[Dict[str, Any]] = None,
                   db: Optional[Session] = None) -> FlowStepExecution:
        with unit_of_work(self.engine, db) as s:
            execution = s.exec(select(FlowExecution).where(FlowExecution.session_id == session.session_id)).one()
            order = s.exec(
                select(func.count()).select_from(FlowStepExecution).where(
                    FlowStepExecution.flow_execution_id == execution.id
                )
            ).one()
            step = FlowStepExecution(
                flow_execution_id=execution.id,
                session_id=session.session_id,
                flow_id=session.flow_id,
                company_id=session.company_id,
                node_id=node.id,
                node_kind=node.kind,
                step_order=order + 1,
                status=StepStatus.running,
                input=input,
            )
            s.add(step)
            s.flush()
            return step

    def open_step(self, session_id: str, node_id: str, db: Optional[Session] = None) -> Optional[FlowStepExecution]:
        """The step of `node_id` that is still running or waiting, if any."""
        with unit_of_work(self.engine, db) as s:
            return s.exec(
                select(FlowStepExecution)
                .where(
                    FlowStepExecution.session_id == session_id,
                    FlowStepExecution.node_id == node_id,
                    FlowStepExecution.status.in_([StepStatus.running, StepStatus.waiting]),
                )
                .order_by(FlowStepExecution.step_order.desc())
            ).first()

    def _close(self, step: FlowStepExecution, status: StepStatus, db: Session,
               output: Optional[Dict[str, Any]] = None, error: Optional[str] = None,
               attempts: Optional[int] = None) -> FlowStepExecution:
        step = db.merge(step)
        now = utcnow()
        step.status = status
        if output is not None:
            step.output = output
        if error is not None:
            step.error_message = error
        if attempts is not None:
            step.attempts = attempts
        if status != StepStatus.waiting:
            step.completed_at = now
            step.duration_ms = elapsed_ms(step.started_at, now)
        db.add(step)
        db.flush()
        return step

    def complete_step(self, step: FlowStepExecution, output: Optional[Dict[str, Any]] = None,
                      attempts: int = 1, db: Optional[Session] = None) -> FlowStepExecution:
        with unit_of_work(self.engine, db) as s:
            return self._close(step, StepStatus.completed, s, output=output, attempts=attempts)

    def wait_step(self, step: FlowStepExecution, output: Optional[Dict[str, Any]] = None,
                  db: Optional[Session] = None) -> FlowStepExecution:
        with unit_of_work(self.engine, db) as s:
            return self._close(step, StepStatus.waiting, s, output=output)

    def fail_step(self, step: FlowStepExecution, error: str, attempts: Optional[int] = None,
                  db: Optional[Session] = None) -> FlowStepExecution:
        with unit_of_work(self.engine, db) as s:
            return self._close(step, StepStatus.failed, s, error=error, attempts=attempts)

    def close_open_steps(self, session_id: str, reason: str, db: Session) -> int:
        """Fail whatever step a session was running or waiting on when it ended."""
        now = utcnow()
        rows = db.exec(
            select(FlowStepExecution).where(
                FlowStepExecution.session_id == session_id,
                FlowStepExecution.status.in_([StepStatus.running, StepStatus.waiting]),
            )
        ).all()
        for step in rows:
            step.status = StepStatus.failed
            step.error_message = reason
            step.completed_at = now
            step.duration_ms = elapsed_ms(step.started_at, now)
            db.add(step)
        db.flush()
        return len(rows)

    def record_skipped(self, session: FlowSession, node_ids: List[str], graph: FlowGraph,
                       db: Optional[Session] = None) -> List[FlowStepExecution]:
        """One `skipped` row per target of an outgoing edge that was not taken."""
        rows = []
        with unit_of_work(self.engine, db) as s:
            for node_id in dict.fromkeys(node_ids):
                node = graph.get(node_id)
                if node is None:
                    continue
                step = self.begin_step(session, node, db=s)
                now = utcnow()
                step.status = StepStatus.skipped
                step.completed_at = now
                step.duration_ms = 0
                step.attempts = 0
                s.add(step)
                rows.append(step)
            s.flush()
        return rows

    def list_steps(self, session_id: str, db: Optional[Session] = None) -> List[FlowStepExecution]:
        with unit_of_work(self.engine, db) as s:
            return list(
                s.exec(
                    select(FlowStepExecution)
                    .where(FlowStepExecution.session_id == session_id)
                    .order_by(FlowStepExecution.step_order)
                ).all()
            )

    # ------------------------------------------------------------------
    # analytics
    # ------------------------------------------------------------------

    def _status_counts(self, flow_id: int, company_id: Optional[int], node_id: Optional[str] = None) -> Dict[str, Dict[StepStatus, int]]:
        with unit_of_work(self.engine) as s:
            stmt = (
                select(FlowStepExecution.node_id, FlowStepExecution.status, func.count())
                .where(FlowStepExecution.flow_id == flow_id)
                .group_by(FlowStepExecution.node_id, FlowStepExecution.status)
            )
            if company_id is not None:
                stmt = stmt.where(FlowStepExecution.company_id == company_id)
            if node_id is not None:
                stmt = stmt.where(FlowStepExecution.node_id == node_id)
            counts: Dict[str, Dict[StepStatus, int]] = {}
            for nid, status, count in s.exec(stmt).all():
                counts.setdefault(nid, {})[StepStatus(status)] = count
            return counts

    @staticmethod
    def _summarize(node_id: str, counts: Dict[StepStatus, int]) -> Dict[str, Any]:
        total = sum(counts.values())
        dropped = sum(counts.get(st, 0) for st in DROPOFF_STATUSES)
        return {
            "node_id": node_id,
            "total": total,
            "completed": counts.get(StepStatus.completed, 0),
            "failed": counts.get(StepStatus.failed, 0),
            "skipped": counts.get(StepStatus.skipped, 0),
            "waiting": counts.get(StepStatus.waiting, 0) + counts.get(StepStatus.running, 0),
            "dropoff_rate": (dropped / total) if total else 0.0,
        }

    def dropoff(self, flow_id: int, node_id: str, company_id: Optional[int] = None) -> float:
        """Share of step rows at `node_id` that failed or were skipped."""
        counts = self._status_counts(flow_id, company_id, node_id).get(node_id, {})
        return self._summarize(node_id, counts)["dropoff_rate"]

    def dropoff_report(self, flow_id: int, company_id: Optional[int] = None) -> List[Dict[str, Any]]:
        counts = self._status_counts(flow_id, company_id)
        return [self._summarize(node_id, counts[node_id]) for node_id in sorted(counts)]

"""
Session Manager
Session lifecycle and the drive loop.

A session is driven step by step while it holds the execution lease (a
token written on its row by a conditional UPDATE). Handlers run outside any
transaction; their side effects are applied afterwards in one transaction
that starts with a compare-and-set on the session row, so a cancellation or
sweep that lands while a handler is running wins and the step's effects are
discarded.

State machine::

    active  -> waiting | paused | completed | timeout | cancelled
    waiting -> active | timeout | cancelled
    paused  -> active (manual resume) | timeout | cancelled
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional

import structlog
import tenacity
from sqlalchemy import Engine, and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from convoflow.channels import ChannelAdapter, InboundEvent, OutboundMessage
from convoflow.config import settings
from convoflow.db import unit_of_work
from convoflow.errors import (
    ConflictError,
    ExpiredSessionError,
    FatalNodeError,
    FlowEngineError,
    FlowValidationError,
    SessionBusyError,
    SessionNotFoundError,
)
from convoflow.executor import ExecutionContext, NodeExecutor, SendMessage, SetVariable, Suspend
from convoflow.executor.conditions import matches_trigger
from convoflow.executor.retry import call_with_retry
from convoflow.graph import FlowGraph, NodeKind
from convoflow.models import (
    LIVE_STATUSES,
    FlowSession,
    FlowStepExecution,
    SessionStatus,
    VariableScope,
    active_key_for,
)
from convoflow.services.assignments import FlowAssignmentManager
from convoflow.services.flows import FlowRepository
from convoflow.services.tracker import ExecutionTracker
from convoflow.services.variables import VariableStore
from convoflow.util.clock import utcnow
from convoflow.util.ids import new_id

logger = structlog.get_logger(__name__)


def _crash(exc: Exception, node_id: str) -> FatalNodeError:
    return FatalNodeError(f"{type(exc).__name__}: {exc}", node_id=node_id)


class SessionManager:
    def __init__(
        self,
        engine: Engine,
        flows: FlowRepository,
        assignments: FlowAssignmentManager,
        variables: VariableStore,
        tracker: ExecutionTracker,
        executor: NodeExecutor,
        channel: ChannelAdapter,
    ):
        self.engine = engine
        self.flows = flows
        self.assignments = assignments
        self.variables = variables
        self.tracker = tracker
        self.executor = executor
        self.channel = channel

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @staticmethod
    def _load(db: Session, session_id: str) -> FlowSession:
        session = db.exec(select(FlowSession).where(FlowSession.session_id == session_id)).first()
        if session is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        return session

    def get_session(self, session_id: str) -> FlowSession:
        with unit_of_work(self.engine) as db:
            return self._load(db, session_id)

    def resolve_session(self, conversation_id: int, flow_id: int, db: Optional[Session] = None) -> Optional[FlowSession]:
        """The non-terminal session of this conversation on this flow, if any."""
        with unit_of_work(self.engine, db) as s:
            return s.exec(
                select(FlowSession).where(FlowSession.active_key == active_key_for(conversation_id, flow_id))
            ).first()

    def list_sessions(
        self,
        flow_id: Optional[int] = None,
        status: Optional[SessionStatus] = None,
        conversation_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FlowSession]:
        with unit_of_work(self.engine) as db:
            stmt = select(FlowSession)
            if flow_id is not None:
                stmt = stmt.where(FlowSession.flow_id == flow_id)
            if status is not None:
                stmt = stmt.where(FlowSession.status == status)
            if conversation_id is not None:
                stmt = stmt.where(FlowSession.conversation_id == conversation_id)
            stmt = stmt.order_by(FlowSession.started_at.desc(), FlowSession.id.desc())
            return list(db.exec(stmt.offset(offset).limit(limit)).all())

    def count_sessions(self, flow_id: Optional[int] = None, status: Optional[SessionStatus] = None) -> int:
        with unit_of_work(self.engine) as db:
            stmt = select(func.count()).select_from(FlowSession)
            if flow_id is not None:
                stmt = stmt.where(FlowSession.flow_id == flow_id)
            if status is not None:
                stmt = stmt.where(FlowSession.status == status)
            return db.exec(stmt).one()

    # ------------------------------------------------------------------
    # compare-and-set + lease
    # ------------------------------------------------------------------

    @staticmethod
    def _cas(db: Session, session_id: str, expect: Iterable[SessionStatus], values: Dict[str, Any],
             lock_token: Optional[str] = None) -> bool:
        """UPDATE the session row only if its status is in `expect` (and the lease is ours)."""
        stmt = update(FlowSession).where(
            FlowSession.session_id == session_id,
            FlowSession.status.in_(list(expect)),
        )
        if lock_token is not None:
            stmt = stmt.where(FlowSession.lock_token == lock_token)
        values.setdefault("updated_at", utcnow())
        return db.connection().execute(stmt.values(**values)).rowcount == 1

    def _try_acquire(self, session_id: str, token: str) -> None:
        now = utcnow()
        with unit_of_work(self.engine) as db:
            acquired = db.connection().execute(
                update(FlowSession)
                .where(
                    FlowSession.session_id == session_id,
                    or_(FlowSession.lock_token.is_(None), FlowSession.lock_expires_at < now),
                )
                .values(lock_token=token, lock_expires_at=now + timedelta(seconds=settings.lock_ttl_seconds))
            ).rowcount == 1
        if not acquired:
            raise SessionBusyError(f"session {session_id} is being executed by another worker")

    def _renew(self, session_id: str, token: str) -> None:
        with unit_of_work(self.engine) as db:
            db.connection().execute(
                update(FlowSession)
                .where(FlowSession.session_id == session_id, FlowSession.lock_token == token)
                .values(lock_expires_at=utcnow() + timedelta(seconds=settings.lock_ttl_seconds))
            )

    @contextmanager
    def _lease(self, session_id: str) -> Iterator[str]:
        """Hold the session's execution lease, waiting up to `lock_wait_seconds` for it."""
        token = new_id("lk_")
        tenacity.Retrying(
            retry=tenacity.retry_if_exception_type(SessionBusyError),
            stop=tenacity.stop_after_delay(settings.lock_wait_seconds),
            wait=tenacity.wait_fixed(0.05),
            reraise=True,
        )(self._try_acquire, session_id, token)
        try:
            yield token
        finally:
            with unit_of_work(self.engine) as db:
                db.connection().execute(
                    update(FlowSession)
                    .where(FlowSession.session_id == session_id, FlowSession.lock_token == token)
                    .values(lock_token=None, lock_expires_at=None)
                )

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def handle_inbound(self, event: InboundEvent) -> Optional[FlowSession]:
        """
        Route one inbound event: resume the conversation's waiting session,
        or start the flow assigned to the event's channel when one of its
        triggers matches. Returns the affected session, or None when the
        event starts nothing.
        """
        log = logger.bind(conversation_id=event.conversation_id, channel_id=event.channel_id)
        with unit_of_work(self.engine) as db:
            waiting = db.exec(
                select(FlowSession)
                .where(
                    FlowSession.conversation_id == event.conversation_id,
                    FlowSession.status == SessionStatus.waiting,
                )
                .order_by(FlowSession.last_activity_at.desc())
            ).first()
        if waiting is not None:
            log.info("inbound_resumes_session", session_id=waiting.session_id)
            return self.resume_session(waiting.session_id, event.payload)

        assignment = self.assignments.active_for_channel(event.channel_id)
        if assignment is None:
            log.info("inbound_ignored", reason="no active flow on channel")
            return None
        existing = self.resolve_session(event.conversation_id, assignment.flow_id)
        if existing is not None:
            log.info("inbound_session_busy", session_id=existing.session_id, status=existing.status.value)
            return existing

        version = self.flows.published_version(assignment.flow_id)
        if version is None:
            log.info("inbound_ignored", reason="flow not published", flow_id=assignment.flow_id)
            return None
        graph = self.flows.graph_for_version(version.id)
        entry = self._matching_entry(graph, event)
        if entry is None:
            log.info("inbound_ignored", reason="no trigger matched", flow_id=assignment.flow_id)
            return None
        return self.start_session(
            flow_id=assignment.flow_id,
            conversation_id=event.conversation_id,
            contact_id=event.contact_id,
            trigger_node_id=entry,
            company_id=event.company_id,
            channel_id=event.channel_id,
            channel_type=event.channel_type,
            payload=event.payload,
            flow_version_id=version.id,
        )

    @staticmethod
    def _matching_entry(graph: FlowGraph, event: InboundEvent) -> Optional[str]:
        triggers = graph.trigger_nodes()
        if not triggers:
            entries = graph.entry_nodes()
            return entries[0].id if entries else None
        for node in triggers:
            if matches_trigger(node.config, event.channel_type, event.text):
                return node.id
        return None

    def start_session(
        self,
        flow_id: int,
        conversation_id: int,
        contact_id: int,
        trigger_node_id: str,
        company_id: Optional[int] = None,
        channel_id: Optional[int] = None,
        channel_type: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        flow_version_id: Optional[int] = None,
    ) -> FlowSession:
        """
        Create a session at `trigger_node_id` on the flow's published version
        and drive it until it suspends, pauses or finishes. If the
        conversation already has a live session on this flow, that session is
        returned untouched.
        """
        existing = self.resolve_session(conversation_id, flow_id)
        if existing is not None:
            return existing

        if flow_version_id is None:
            version = self.flows.published_version(flow_id)
            if version is None:
                raise ConflictError(f"flow {flow_id} has no published version")
            flow_version_id = version.id
        graph = self.flows.graph_for_version(flow_version_id)
        trigger = graph.get(trigger_node_id)
        if trigger is None:
            raise FlowValidationError(
                f"node '{trigger_node_id}' is not part of flow {flow_id}",
                details=[{"path": "trigger_node_id", "msg": "unknown node"}],
            )

        now = utcnow()
        expires_at = None
        if trigger.kind == NodeKind.trigger and trigger.config.session_timeout_minutes:
            expires_at = now + timedelta(minutes=trigger.config.session_timeout_minutes)
        session = FlowSession(
            session_id=new_id("fs_"),
            flow_id=flow_id,
            flow_version_id=flow_version_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            company_id=company_id,
            channel_id=channel_id,
            channel_type=channel_type,
            status=SessionStatus.active,
            active_key=active_key_for(conversation_id, flow_id),
            current_node_id=trigger_node_id,
            trigger_node_id=trigger_node_id,
            execution_path=[trigger_node_id],
            branching_history=[],
            started_at=now,
            last_activity_at=now,
            expires_at=expires_at,
            user_interaction_count=1 if payload else 0,
        )

        with Session(self.engine, expire_on_commit=False) as db:
            db.add(session)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                existing = self.resolve_session(conversation_id, flow_id)
                if existing is None:
                    raise
                logger.info("session_start_raced", session_id=existing.session_id)
                return existing
            self.tracker.open_execution(session, db=db)
            self._seed_variables(session, payload or {}, db)
            db.commit()

        logger.info(
            "session_started",
            session_id=session.session_id,
            flow_id=flow_id,
            conversation_id=conversation_id,
            trigger_node_id=trigger_node_id,
        )
        with self._lease(session.session_id) as token:
            return self._drive(session.session_id, token, inbound=payload or None)

    def _seed_variables(self, session: FlowSession, payload: Dict[str, Any], db: Session) -> None:
        text = payload.get("text", payload.get("message"))
        seeded: Dict[str, Any] = {
            key: value for key, value in payload.items() if isinstance(key, str) and key.isidentifier()
        }
        seeded.update({
            "message": text or "",
            "user_message": text or "",
            "contact": {"id": session.contact_id},
            "conversation": {"id": session.conversation_id},
            "channel": {"id": session.channel_id, "type": session.channel_type},
            "flow": {"id": session.flow_id, "version_id": session.flow_version_id},
            "session": {"id": session.session_id, "started_at": session.started_at.isoformat()},
        })
        for key, value in seeded.items():
            self.variables.set(session, key, value, scope=VariableScope.flow, db=db)
        if session.company_id is not None:
            self.variables.set(session, "company", {"id": session.company_id}, scope=VariableScope.global_, db=db)

    def resume_session(self, session_id: str, resume_input: Optional[Dict[str, Any]] = None) -> FlowSession:
        """
        Continue a `waiting` session at its cursor with `resume_input`.

        A non-waiting live session is returned unchanged. Raises
        SessionNotFoundError for an unknown id and ExpiredSessionError for a
        terminal session.
        """
        return self._resume(session_id, resume_input)

    def _resume(self, session_id: str, resume_input: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> FlowSession:
        session = self.get_session(session_id)
        if session.is_terminal:
            raise ExpiredSessionError(f"session {session_id} is {session.status.value}")
        if session.status != SessionStatus.waiting:
            return session

        with self._lease(session_id) as token:
            values: Dict[str, Any] = {
                "status": SessionStatus.active,
                "resumed_at": utcnow(),
                "last_activity_at": utcnow(),
            }
            if resume_input:
                values["user_interaction_count"] = FlowSession.user_interaction_count + 1
            with unit_of_work(self.engine) as db:
                moved = self._cas(db, session_id, [SessionStatus.waiting], values, lock_token=token)
            if not moved:
                current = self.get_session(session_id)
                if current.is_terminal:
                    raise ExpiredSessionError(f"session {session_id} is {current.status.value}")
                return current
            logger.info("session_resumed", session_id=session_id)
            return self._drive(session_id, token, inbound=resume_input or None, resuming=True, now=now)

    def resume_paused(self, session_id: str) -> FlowSession:
        """Operator resume: re-run the step that paused the session."""
        session = self.get_session(session_id)
        if session.is_terminal:
            raise ExpiredSessionError(f"session {session_id} is {session.status.value}")
        if session.status != SessionStatus.paused:
            return session

        with self._lease(session_id) as token:
            now = utcnow()
            with unit_of_work(self.engine) as db:
                moved = self._cas(
                    db, session_id, [SessionStatus.paused],
                    {"status": SessionStatus.active, "resumed_at": now, "last_activity_at": now, "paused_at": None},
                    lock_token=token,
                )
            if not moved:
                return self.get_session(session_id)
            logger.info("session_unpaused", session_id=session_id)
            return self._drive(session_id, token)

    def _terminate(self, session: FlowSession, status: SessionStatus, now: datetime, *conditions) -> bool:
        """Move a live session to a terminal `status` once, closing its open steps and its execution."""
        graph = self._graph_or_none(session)
        with unit_of_work(self.engine) as db:
            moved = db.connection().execute(
                update(FlowSession)
                .where(
                    FlowSession.session_id == session.session_id,
                    FlowSession.status.in_(list(LIVE_STATUSES)),
                    *conditions,
                )
                .values(status=status, active_key=None, completed_at=now, resume_at=None, updated_at=now)
            ).rowcount == 1
            if moved:
                self.tracker.close_open_steps(session.session_id, f"session {status.value}", db)
                self.tracker.finalize(self._load(db, session.session_id), graph, db, now=now)
        return moved

    def cancel_session(self, session_id: str) -> FlowSession:
        """Cancel a live session. Cancelling a terminal session changes nothing."""
        session = self.get_session(session_id)
        if session.is_terminal:
            return session
        if self._terminate(session, SessionStatus.cancelled, utcnow()):
            logger.info("session_cancelled", session_id=session_id)
        return self.get_session(session_id)

    def expire_idle_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """
        Time out live sessions that passed their deadline or have been idle
        longer than `idle_timeout_hours`. Returns the ids that were moved by
        this call; a session is only ever moved once.
        """
        now = now or utcnow()
        idle_before = now - timedelta(hours=settings.idle_timeout_hours)
        stale = or_(
            FlowSession.last_activity_at < idle_before,
            and_(FlowSession.expires_at.is_not(None), FlowSession.expires_at <= now),
        )
        unleased = or_(FlowSession.lock_token.is_(None), FlowSession.lock_expires_at < now)
        with unit_of_work(self.engine) as db:
            candidates = db.exec(
                select(FlowSession).where(FlowSession.status.in_(list(LIVE_STATUSES)), stale, unleased)
            ).all()

        expired = [
            session.session_id
            for session in candidates
            if self._terminate(session, SessionStatus.timeout, now, stale, unleased)
        ]
        if expired:
            logger.info("sessions_timed_out", count=len(expired))
        return expired

    def fire_due_timers(self, now: Optional[datetime] = None) -> List[str]:
        """Resume `waiting` sessions whose `resume_at` has passed."""
        now = now or utcnow()
        with unit_of_work(self.engine) as db:
            due = db.exec(
                select(FlowSession.session_id).where(
                    FlowSession.status == SessionStatus.waiting,
                    FlowSession.resume_at.is_not(None),
                    FlowSession.resume_at <= now,
                )
            ).all()
        fired = []
        for session_id in due:
            try:
                self._resume(session_id, None, now=now)
            except SessionBusyError:
                logger.info("timer_deferred", session_id=session_id, reason="busy")
                continue
            except ExpiredSessionError:
                continue
            fired.append(session_id)
        return fired

    # ------------------------------------------------------------------
    # drive loop
    # ------------------------------------------------------------------

    def _graph_or_none(self, session: FlowSession) -> Optional[FlowGraph]:
        try:
            return self.flows.graph_for_version(session.flow_version_id)
        except FlowEngineError:
            logger.warning("graph_unavailable", session_id=session.session_id, version_id=session.flow_version_id)
            return None

    def _drive(self, session_id: str, token: str, inbound: Optional[Dict[str, Any]] = None,
               resuming: bool = False, now: Optional[datetime] = None) -> FlowSession:
        steps = 0
        while True:
            self._renew(session_id, token)
            session = self.get_session(session_id)
            if session.status != SessionStatus.active:
                return session

            graph = self.flows.graph_for_version(session.flow_version_id)
            node = graph.get(session.current_node_id)
            if node is None:
                return self._pause(session, token, None, FatalNodeError(
                    f"node '{session.current_node_id}' is not part of the flow version",
                    node_id=session.current_node_id,
                ))

            steps += 1
            step = self.tracker.open_step(session_id, node.id) if resuming else None
            if step is None:
                step = self.tracker.begin_step(session, node, input=inbound)
            if steps > settings.max_steps_per_run:
                return self._pause(session, token, step, FatalNodeError(
                    f"more than {settings.max_steps_per_run} steps in one run", node_id=node.id,
                ))

            ctx = ExecutionContext(
                session=session,
                graph=graph,
                variables=self.variables.snapshot(session),
                now=now or utcnow(),
                inbound=inbound,
                waiting_context=session.waiting_context if resuming else None,
            )
            log = logger.bind(session_id=session_id, node_id=node.id, kind=node.kind)
            try:
                result = self.executor.execute(node, ctx)
            except FlowEngineError as exc:
                log.warning("step_failed", error=str(exc))
                return self._pause(session, token, step, exc)
            except Exception as exc:
                log.exception("step_crashed")
                return self._pause(session, token, step, _crash(exc, node.id))

            try:
                session = self._apply(session, graph, node, step, result, token)
            except FlowEngineError as exc:
                log.warning("step_effects_failed", error=str(exc))
                return self._pause(session, token, step, exc)
            except Exception as exc:
                log.exception("step_effects_crashed")
                return self._pause(session, token, step, _crash(exc, node.id))
            log.info("step_done", status=session.status.value, next_node_id=session.current_node_id)

            if session.status != SessionStatus.active:
                return session
            # the event only feeds the step it woke
            resuming = False
            now = None
            inbound = None

    def _apply(self, session: FlowSession, graph: FlowGraph, node, step: FlowStepExecution, result, token: str) -> FlowSession:
        """Commit a handler result: cursor move, variable writes, outbound sends and the step record."""
        now = utcnow()
        values: Dict[str, Any] = {
            "last_activity_at": now,
            "node_execution_count": FlowSession.node_execution_count + 1,
            "updated_at": now,
        }
        finished = False
        if isinstance(result, Suspend):
            values.update(
                status=SessionStatus.waiting,
                waiting_context={
                    "node_id": node.id,
                    "reason": result.reason,
                    "resume_condition": result.resume_condition,
                    "resume_at": result.resume_at.isoformat() if result.resume_at else None,
                },
                resume_at=result.resume_at,
            )
        elif result.end or result.next_node_id is None:
            finished = True
            values.update(
                status=SessionStatus.completed,
                active_key=None,
                completed_at=now,
                waiting_context=None,
                resume_at=None,
            )
        else:
            values.update(
                current_node_id=result.next_node_id,
                execution_path=list(session.execution_path or []) + [result.next_node_id],
                waiting_context=None,
                resume_at=None,
            )
            if result.skipped:
                values["branching_history"] = list(session.branching_history or []) + [{
                    "node_id": node.id,
                    "taken": result.next_node_id,
                    "skipped": [edge.target for edge in result.skipped],
                    "at": now.isoformat(),
                }]

        with Session(self.engine, expire_on_commit=False) as db:
            if not self._cas(db, session.session_id, [SessionStatus.active], values, lock_token=token):
                db.rollback()
                self.tracker.fail_step(step, "session is no longer active")
                logger.info("step_discarded", session_id=session.session_id, node_id=node.id)
                return self.get_session(session.session_id)

            for effect in result.side_effects:
                if isinstance(effect, SetVariable):
                    self.variables.set(
                        session, effect.key, effect.value, scope=effect.scope,
                        ttl=effect.ttl_seconds, node_id=node.id, encrypted=effect.encrypted, db=db,
                    )
            for effect in result.side_effects:
                if isinstance(effect, SendMessage):
                    self._send(session, node.id, effect)

            if isinstance(result, Suspend):
                self.tracker.wait_step(step, output=result.output, db=db)
            else:
                self.tracker.complete_step(step, output=result.output, attempts=result.attempts, db=db)
                if result.skipped and not finished:
                    self.tracker.record_skipped(session, [e.target for e in result.skipped], graph, db=db)

            updated = self._load(db, session.session_id)
            if finished:
                self.tracker.finalize(updated, graph, db, now=now)
            else:
                self.tracker.sync_execution(updated, db)
            db.commit()

        if finished:
            logger.info("session_completed", session_id=session.session_id, node_id=node.id)
        elif isinstance(result, Suspend):
            logger.info("session_waiting", session_id=session.session_id, node_id=node.id, reason=result.reason)
        return updated

    def _send(self, session: FlowSession, node_id: str, effect: SendMessage) -> None:
        message = OutboundMessage(
            conversation_id=session.conversation_id,
            channel_id=session.channel_id,
            content=effect.content,
            type=effect.message_type,
            media_url=effect.media_url,
            metadata={**effect.metadata, "session_id": session.session_id, "node_id": node_id},
        )
        call_with_retry(
            lambda: self.channel.send(message),
            max_attempts=settings.webhook_max_attempts,
            backoff_seconds=settings.webhook_backoff_seconds,
            node_id=node_id,
        )

    def _pause(self, session: FlowSession, token: str, step: Optional[FlowStepExecution],
               exc: FlowEngineError) -> FlowSession:
        now = utcnow()
        node_id = getattr(exc, "node_id", None) or session.current_node_id
        message = exc.message
        with unit_of_work(self.engine) as db:
            if step is not None:
                self.tracker.fail_step(step, message, attempts=getattr(exc, "attempts", None), db=db)
            self._cas(
                db, session.session_id, [SessionStatus.active],
                {
                    "status": SessionStatus.paused,
                    "paused_at": now,
                    "last_activity_at": now,
                    "error_count": FlowSession.error_count + 1,
                    "last_error_message": message,
                    "last_error_node_id": node_id,
                },
                lock_token=token,
            )
            updated = self._load(db, session.session_id)
            self.tracker.sync_execution(updated, db, error_message=message)
        logger.warning("session_paused", session_id=session.session_id, node_id=node_id, error=message)
        return updated

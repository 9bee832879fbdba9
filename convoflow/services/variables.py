"""
Variable Store
Scoped key/value state attached to flow sessions.

Rows are unique per ``(session_id, key)``. Which rows a session can see
depends on their scope:

- ``session`` / ``flow``: the owning session only
- ``node``: the owning session, only while its cursor is on ``owning_node_id``
- ``user``: every session of the same contact
- ``global``: every session of the same company

``get`` resolves nearest-scope first (session → node → flow → user → global),
so a narrower row shadows a wider one with the same key.
"""

import base64
import json
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import Engine, and_, delete, or_
from sqlmodel import Session, select

from convoflow import templating
from convoflow.config import settings
from convoflow.db import unit_of_work
from convoflow.errors import FlowEngineError
from convoflow.models import (
    SCOPE_PRECEDENCE,
    FlowSession,
    FlowSessionVariable,
    VariableScope,
    VariableType,
)
from convoflow.util.clock import utcnow

logger = structlog.get_logger(__name__)

_RANK = {scope: idx for idx, scope in enumerate(SCOPE_PRECEDENCE)}


def infer_type(value: Any) -> VariableType:
    if isinstance(value, bool):
        return VariableType.boolean
    if isinstance(value, (int, float)):
        return VariableType.number
    if isinstance(value, dict):
        return VariableType.object
    if isinstance(value, (list, tuple)):
        return VariableType.array
    return VariableType.string


class ValueCipher:
    """AES-256-GCM for variables flagged ``encrypted``. Stored as base64(nonce + ciphertext)."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("variable encryption key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls) -> Optional["ValueCipher"]:
        if not settings.variable_encryption_key:
            return None
        return cls(bytes.fromhex(settings.variable_encryption_key))

    def encrypt(self, value: Any) -> str:
        nonce = os.urandom(12)
        blob = nonce + self._aead.encrypt(nonce, json.dumps(value).encode("utf-8"), None)
        return base64.b64encode(blob).decode("ascii")

    def decrypt(self, token: str) -> Any:
        blob = base64.b64decode(token.encode("ascii"))
        return json.loads(self._aead.decrypt(blob[:12], blob[12:], None).decode("utf-8"))


class VariableStore:
    def __init__(self, engine: Engine, cipher: Optional[ValueCipher] = None):
        self.engine = engine
        self.cipher = cipher

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def _visible_rows(self, db: Session, session: FlowSession, key: Optional[str] = None,
                      now: Optional[datetime] = None) -> List[FlowSessionVariable]:
        now = now or utcnow()
        V = FlowSessionVariable
        stmt = select(V).where(
            or_(V.expires_at.is_(None), V.expires_at > now),
            or_(
                V.session_id == session.session_id,
                and_(V.scope == VariableScope.user, V.contact_id == session.contact_id),
                and_(V.scope == VariableScope.global_, V.company_id == session.company_id),
            ),
        )
        if key is not None:
            stmt = stmt.where(V.key == key)
        rows = []
        for row in db.exec(stmt).all():
            if row.scope == VariableScope.node and row.owning_node_id != session.current_node_id:
                continue
            rows.append(row)
        return rows

    @staticmethod
    def _nearest(rows: Iterable[FlowSessionVariable]) -> Optional[FlowSessionVariable]:
        best = None
        for row in rows:
            if best is None:
                best = row
                continue
            rank, best_rank = _RANK[row.scope], _RANK[best.scope]
            if rank < best_rank or (rank == best_rank and row.updated_at > best.updated_at):
                best = row
        return best

    def _decode(self, row: FlowSessionVariable) -> Any:
        if not row.encrypted:
            return row.value
        if self.cipher is None:
            raise FlowEngineError(f"variable '{row.key}' is encrypted but no encryption key is configured")
        return self.cipher.decrypt(row.value)

    def get_variable(self, session: FlowSession, key: str, db: Optional[Session] = None) -> Optional[FlowSessionVariable]:
        with unit_of_work(self.engine, db) as s:
            return self._nearest(self._visible_rows(s, session, key))

    def get(self, session: FlowSession, key: str, default: Any = None, db: Optional[Session] = None) -> Any:
        with unit_of_work(self.engine, db) as s:
            row = self._nearest(self._visible_rows(s, session, key))
            return default if row is None else self._decode(row)

    def snapshot(self, session: FlowSession, db: Optional[Session] = None) -> Dict[str, Any]:
        """Every key visible to the session, each resolved to its nearest-scope value."""
        with unit_of_work(self.engine, db) as s:
            by_key: Dict[str, List[FlowSessionVariable]] = {}
            for row in self._visible_rows(s, session):
                by_key.setdefault(row.key, []).append(row)
            return {key: self._decode(self._nearest(rows)) for key, rows in by_key.items()}

    def list(self, session: FlowSession, scope: Optional[VariableScope] = None,
             db: Optional[Session] = None) -> List[FlowSessionVariable]:
        """Rows owned by this session (unexpired), optionally filtered by scope."""
        with unit_of_work(self.engine, db) as s:
            V = FlowSessionVariable
            stmt = select(V).where(
                V.session_id == session.session_id,
                or_(V.expires_at.is_(None), V.expires_at > utcnow()),
            )
            if scope is not None:
                stmt = stmt.where(V.scope == scope)
            return list(s.exec(stmt.order_by(V.key)).all())

    def render(self, session: FlowSession, template: str, db: Optional[Session] = None) -> str:
        return templating.render(template, self.snapshot(session, db=db))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def set(
        self,
        session: FlowSession,
        key: str,
        value: Any,
        scope: VariableScope = VariableScope.session,
        ttl: Optional[float] = None,
        node_id: Optional[str] = None,
        encrypted: bool = False,
        db: Optional[Session] = None,
    ) -> FlowSessionVariable:
        """Upsert by (session_id, key). `ttl` is in seconds."""
        scope = VariableScope(scope)
        if scope == VariableScope.node:
            node_id = node_id or session.current_node_id
        stored = value
        if encrypted:
            if self.cipher is None:
                raise FlowEngineError("variable encryption requested but no encryption key is configured")
            stored = self.cipher.encrypt(value)
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl) if ttl else None

        with unit_of_work(self.engine, db) as s:
            row = s.exec(
                select(FlowSessionVariable).where(
                    FlowSessionVariable.session_id == session.session_id,
                    FlowSessionVariable.key == key,
                )
            ).first()
            if row is None:
                row = FlowSessionVariable(session_id=session.session_id, key=key)
            row.value = stored
            row.value_type = infer_type(value)
            row.scope = scope
            row.owning_node_id = node_id if scope == VariableScope.node else None
            row.contact_id = session.contact_id
            row.company_id = session.company_id
            row.expires_at = expires_at
            row.encrypted = encrypted
            row.updated_at = now
            s.add(row)
            s.flush()
            return row

    def delete(self, session: FlowSession, key: str, db: Optional[Session] = None) -> bool:
        with unit_of_work(self.engine, db) as s:
            result = s.connection().execute(
                delete(FlowSessionVariable).where(
                    FlowSessionVariable.session_id == session.session_id,
                    FlowSessionVariable.key == key,
                )
            )
            return result.rowcount > 0

    def clear(self, session: FlowSession, scope: Optional[VariableScope] = None,
              db: Optional[Session] = None) -> int:
        with unit_of_work(self.engine, db) as s:
            stmt = delete(FlowSessionVariable).where(FlowSessionVariable.session_id == session.session_id)
            if scope is not None:
                stmt = stmt.where(FlowSessionVariable.scope == scope)
            removed = s.connection().execute(stmt).rowcount
        logger.info("variables_cleared", session_id=session.session_id, scope=scope, removed=removed)
        return removed

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with unit_of_work(self.engine) as s:
            removed = s.connection().execute(
                delete(FlowSessionVariable).where(
                    FlowSessionVariable.expires_at.is_not(None),
                    FlowSessionVariable.expires_at <= now,
                )
            ).rowcount
        if removed:
            logger.info("variables_expired", removed=removed)
        return removed

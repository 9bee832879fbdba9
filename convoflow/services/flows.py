"""
Flow Repository
Flow definitions, version bumps on save and immutable published snapshots.
"""

import hashlib
import json
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import Engine, func
from sqlmodel import Session, select

from convoflow.db import unit_of_work
from convoflow.errors import ConflictError, FlowNotFoundError
from convoflow.graph import FlowGraph, parse_graph
from convoflow.models import Flow, FlowStatus, FlowVersion
from convoflow.util.clock import utcnow

logger = structlog.get_logger(__name__)


def checksum(graph: Dict[str, Any]) -> str:
    canonical = json.dumps(graph, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class FlowRepository:
    """Repository for flow CRUD and publishing"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._graph_cache = lru_cache(maxsize=256)(self._load_version_graph)

    def create_flow(self, name: str, graph: Dict[str, Any], company_id: Optional[int] = None,
                    description: Optional[str] = None) -> Flow:
        """Validate and store a new draft flow."""
        parsed = parse_graph(graph)
        with unit_of_work(self.engine) as s:
            flow = Flow(
                name=name,
                description=description,
                company_id=company_id,
                graph=parsed.model_dump(mode="json"),
            )
            s.add(flow)
            s.flush()
        logger.info("flow_created", flow_id=flow.id, company_id=company_id)
        return flow

    def get_flow(self, flow_id: int, db: Optional[Session] = None) -> Flow:
        with unit_of_work(self.engine, db) as s:
            flow = s.get(Flow, flow_id)
            if flow is None:
                raise FlowNotFoundError(f"flow {flow_id} not found")
            return flow

    def list_flows(self, company_id: Optional[int] = None, status: Optional[FlowStatus] = None,
                   limit: int = 50, offset: int = 0) -> List[Flow]:
        with unit_of_work(self.engine) as s:
            stmt = select(Flow)
            if company_id is not None:
                stmt = stmt.where(Flow.company_id == company_id)
            if status is not None:
                stmt = stmt.where(Flow.status == status)
            return list(s.exec(stmt.order_by(Flow.id).offset(offset).limit(limit)).all())

    def count_flows(self, company_id: Optional[int] = None, status: Optional[FlowStatus] = None) -> int:
        with unit_of_work(self.engine) as s:
            stmt = select(func.count()).select_from(Flow)
            if company_id is not None:
                stmt = stmt.where(Flow.company_id == company_id)
            if status is not None:
                stmt = stmt.where(Flow.status == status)
            return s.exec(stmt).one()

    def update_flow(self, flow_id: int, name: Optional[str] = None, description: Optional[str] = None,
                    graph: Optional[Dict[str, Any]] = None) -> Flow:
        """
        Save edits and bump the version. A published flow keeps running its
        last published snapshot until it is published again.
        """
        parsed = parse_graph(graph) if graph is not None else None
        with unit_of_work(self.engine) as s:
            flow = self.get_flow(flow_id, db=s)
            if flow.status == FlowStatus.archived:
                raise ConflictError(f"flow {flow_id} is archived")
            if name is not None:
                flow.name = name
            if description is not None:
                flow.description = description
            if parsed is not None:
                flow.graph = parsed.model_dump(mode="json")
            flow.version += 1
            flow.updated_at = utcnow()
            s.add(flow)
            s.flush()
        logger.info("flow_updated", flow_id=flow_id, version=flow.version)
        return flow

    def publish(self, flow_id: int) -> FlowVersion:
        """Snapshot the current graph as an immutable FlowVersion and make it live."""
        with unit_of_work(self.engine) as s:
            flow = self.get_flow(flow_id, db=s)
            if flow.status == FlowStatus.archived:
                raise ConflictError(f"flow {flow_id} is archived")
            parse_graph(flow.graph)
            existing = s.exec(
                select(FlowVersion).where(FlowVersion.flow_id == flow.id, FlowVersion.version == flow.version)
            ).first()
            if existing is None:
                existing = FlowVersion(
                    flow_id=flow.id,
                    version=flow.version,
                    graph=flow.graph,
                    checksum=checksum(flow.graph),
                )
                s.add(existing)
                s.flush()
            flow.status = FlowStatus.published
            flow.published_version_id = existing.id
            flow.updated_at = utcnow()
            s.add(flow)
        logger.info("flow_published", flow_id=flow_id, version=existing.version, version_id=existing.id)
        return existing

    def archive(self, flow_id: int) -> Flow:
        with unit_of_work(self.engine) as s:
            flow = self.get_flow(flow_id, db=s)
            flow.status = FlowStatus.archived
            flow.updated_at = utcnow()
            s.add(flow)
        logger.info("flow_archived", flow_id=flow_id)
        return flow

    def get_version(self, version_id: int, db: Optional[Session] = None) -> FlowVersion:
        with unit_of_work(self.engine, db) as s:
            version = s.get(FlowVersion, version_id)
            if version is None:
                raise FlowNotFoundError(f"flow version {version_id} not found")
            return version

    def published_version(self, flow_id: int, db: Optional[Session] = None) -> Optional[FlowVersion]:
        with unit_of_work(self.engine, db) as s:
            flow = self.get_flow(flow_id, db=s)
            if flow.status != FlowStatus.published or flow.published_version_id is None:
                return None
            return s.get(FlowVersion, flow.published_version_id)

    def _load_version_graph(self, version_id: int) -> FlowGraph:
        return parse_graph(self.get_version(version_id).graph)

    def graph_for_version(self, version_id: int) -> FlowGraph:
        """Parsed graph of a published snapshot. Snapshots never change, so this is cached."""
        return self._graph_cache(version_id)

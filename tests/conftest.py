# tests/conftest.py
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from convoflow.channels import OutboundMessage
from convoflow.db import create_schema
from convoflow.engine import FlowEngine, build_engine
from convoflow.executor.webhook import WebhookClient
from convoflow.main import create_app


class RecordingChannel:
    """Channel adapter that keeps every outbound message in memory."""

    def __init__(self):
        self.sent: List[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> None:
        self.sent.append(message)

    def contents(self, conversation_id: Optional[int] = None) -> List[str]:
        return [m.content for m in self.sent if conversation_id is None or m.conversation_id == conversation_id]


@pytest.fixture()
def db_engine():
    # "sqlite://" + StaticPool keeps ONE in-memory connection alive for the
    # whole test, shared with the TestClient threads
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    create_schema(eng)
    return eng


@pytest.fixture()
def channel():
    return RecordingChannel()


@pytest.fixture()
def make_flow_engine(db_engine, channel) -> Callable[..., FlowEngine]:
    """Build the engine over the test database; kwargs go to build_engine."""

    def _make(**kwargs) -> FlowEngine:
        kwargs.setdefault("channel", channel)
        return build_engine(db=db_engine, create_tables=False, **kwargs)

    return _make


@pytest.fixture()
def flow_engine(make_flow_engine) -> FlowEngine:
    return make_flow_engine()


@pytest.fixture()
def publish(flow_engine) -> Callable[..., Any]:
    """Create + publish a flow from a raw graph, returning the Flow row."""

    def _publish(graph: Dict[str, Any], name: str = "test-flow", company_id: Optional[int] = 1, engine=None):
        engine = engine or flow_engine
        flow = engine.flows.create_flow(name=name, graph=graph, company_id=company_id)
        engine.flows.publish(flow.id)
        return engine.flows.get_flow(flow.id)

    return _publish


@pytest.fixture()
def mock_webhook() -> Callable[..., WebhookClient]:
    """WebhookClient whose requests are answered by `handler` instead of the network."""

    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> WebhookClient:
        return WebhookClient(client=httpx.Client(transport=httpx.MockTransport(handler)), **kwargs)

    return _make


@pytest.fixture()
def client(flow_engine):
    app = create_app(engine=flow_engine, run_scheduler=False)
    with TestClient(app) as c:
        yield c

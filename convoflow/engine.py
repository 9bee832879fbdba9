"""
Wiring: builds every service over one SQLAlchemy engine.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Engine

from convoflow.channels import ChannelAdapter, LoggingChannelAdapter
from convoflow.db import create_schema, make_engine
from convoflow.executor import NodeExecutor
from convoflow.executor.sandbox import Sandbox
from convoflow.executor.webhook import WebhookClient
from convoflow.services.assignments import FlowAssignmentManager
from convoflow.services.flows import FlowRepository
from convoflow.services.sessions import SessionManager
from convoflow.services.tracker import ExecutionTracker
from convoflow.services.variables import ValueCipher, VariableStore


@dataclass
class FlowEngine:
    db: Engine
    flows: FlowRepository
    assignments: FlowAssignmentManager
    variables: VariableStore
    tracker: ExecutionTracker
    executor: NodeExecutor
    sessions: SessionManager
    channel: ChannelAdapter


def build_engine(
    db: Optional[Engine] = None,
    channel: Optional[ChannelAdapter] = None,
    webhook_client: Optional[WebhookClient] = None,
    sandbox: Optional[Sandbox] = None,
    cipher: Optional[ValueCipher] = None,
    create_tables: bool = True,
) -> FlowEngine:
    db = db or make_engine()
    if create_tables:
        create_schema(db)
    channel = channel or LoggingChannelAdapter()
    flows = FlowRepository(db)
    assignments = FlowAssignmentManager(db)
    variables = VariableStore(db, cipher or ValueCipher.from_settings())
    tracker = ExecutionTracker(db)
    executor = NodeExecutor.default(webhook_client=webhook_client, sandbox=sandbox)
    sessions = SessionManager(db, flows, assignments, variables, tracker, executor, channel)
    return FlowEngine(
        db=db,
        flows=flows,
        assignments=assignments,
        variables=variables,
        tracker=tracker,
        executor=executor,
        sessions=sessions,
        channel=channel,
    )

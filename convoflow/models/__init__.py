from .base import Timestamped
from .flow import Flow, FlowVersion, FlowStatus
from .assignment import FlowAssignment
from .session import FlowSession, SessionStatus, TERMINAL_STATUSES, LIVE_STATUSES, active_key_for
from .variable import FlowSessionVariable, VariableScope, VariableType, SCOPE_PRECEDENCE
from .execution import FlowExecution, FlowStepExecution, ExecutionStatus, StepStatus, DROPOFF_STATUSES

__all__ = [
    "Timestamped",
    "Flow", "FlowVersion", "FlowStatus",
    "FlowAssignment",
    "FlowSession", "SessionStatus", "TERMINAL_STATUSES", "LIVE_STATUSES", "active_key_for",
    "FlowSessionVariable", "VariableScope", "VariableType", "SCOPE_PRECEDENCE",
    "FlowExecution", "FlowStepExecution", "ExecutionStatus", "StepStatus", "DROPOFF_STATUSES",
]

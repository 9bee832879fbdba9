from fastapi import Request

from convoflow.engine import FlowEngine


def get_engine(request: Request) -> FlowEngine:
    return request.app.state.engine

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from convoflow.engine import FlowEngine, build_engine
from convoflow.errors import (
    ConflictError,
    ExpiredSessionError,
    FlowEngineError,
    FlowValidationError,
    NotFoundError,
    SessionBusyError,
)
from convoflow.logging import setup_logging
from convoflow.routers import analytics, assignments, flows, sessions
from convoflow.scheduler import EngineScheduler
from convoflow.util.ids import new_id

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR = [
    (FlowValidationError, 422),
    (NotFoundError, 404),
    (ExpiredSessionError, 410),
    (ConflictError, 409),
    (SessionBusyError, 409),
]


def _envelope(code: str, message: str, details=None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or []}}


def create_app(engine: Optional[FlowEngine] = None, run_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        app.state.engine = engine or build_engine()
        scheduler = EngineScheduler(app.state.engine) if run_scheduler else None
        if scheduler is not None:
            scheduler.start()
        logger.info("app_started")
        yield
        if scheduler is not None:
            scheduler.shutdown()

    app = FastAPI(title="Conversational Flow Engine API", version="0.1.0", openapi_url="/openapi.json",
                  lifespan=lifespan)
    if engine is not None:
        app.state.engine = engine

    app.include_router(flows.router, prefix="/api/v0", tags=["flows"])
    app.include_router(assignments.router, prefix="/api/v0", tags=["assignments"])
    app.include_router(sessions.router, prefix="/api/v0", tags=["sessions"])
    app.include_router(analytics.router, prefix="/api/v0", tags=["analytics"])

    @app.get("/api/v0/healthz")
    def healthz():
        return {"status": "ok"}

    @app.middleware("http")
    async def add_request_id_header(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or new_id("req_")
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            resp: Response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        resp.headers.setdefault("X-Request-Id", request_id)
        return resp

    @app.exception_handler(FlowEngineError)
    async def flow_engine_exception_handler(request: Request, exc: FlowEngineError):
        status_code = next((code for kind, code in STATUS_BY_ERROR if isinstance(exc, kind)), 500)
        return JSONResponse(status_code=status_code, content=_envelope(exc.code, exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"path": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=422, content=_envelope("VALIDATION", "Invalid request", details))

    @app.exception_handler(Exception)
    async def default_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=_envelope("INTERNAL", "Unhandled error", [{"path": "", "msg": str(exc)}]),
        )

    return app


app = create_app()

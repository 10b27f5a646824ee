"""
testgen-backend - FastAPI Application

Gateway app factory: system routes, collaborator route groups, the
cross-origin policy as a pre-filter and error normalization as a
post-filter. Request context (request id, method, path) is bound to every
log line emitted while a request is in flight.

The app does not own the database connection. It receives the
ConnectionSupervisor created by the lifecycle controller and exposes it
as ``app.state.supervisor``.
"""
from typing import Optional
import time
import uuid

from fastapi import APIRouter, FastAPI, Request, Response
from opentelemetry import trace

from api.errors import ErrorNormalizerMiddleware
from api.routes import build_system_router, load_router, mount_route_groups
from api.security.cors import add_cors_middleware
from config import Config
from db.connection import ConnectionSupervisor
from observability.health import ReadinessReporter
from observability.logging import bind_context, clear_context, get_logger

logger = get_logger(__name__)


def get_current_trace_id() -> Optional[str]:
    """Get current trace ID as hex string."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        if ctx.is_valid:
            return format(ctx.trace_id, "032x")
    return None


async def observability_middleware(request: Request, call_next):
    """Add request tracking with trace context."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    start_time = time.perf_counter()

    # Bind request context to all logs
    bind_context(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response: Response = await call_next(request)
        duration = time.perf_counter() - start_time

        trace_id = get_current_trace_id()
        if trace_id:
            response.headers["X-Trace-ID"] = trace_id
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        return response
    finally:
        clear_context()


def _resolve_router(router: Optional[APIRouter], import_string: Optional[str]) -> Optional[APIRouter]:
    if router is not None:
        return router
    if import_string:
        return load_router(import_string)
    return None


def create_app(
    config: Optional[Config] = None,
    supervisor: Optional[ConnectionSupervisor] = None,
    auth_router: Optional[APIRouter] = None,
    sheets_router: Optional[APIRouter] = None,
) -> FastAPI:
    """
    Create and configure the gateway application.

    Args:
        config: Process configuration; read from the environment if omitted
        supervisor: Connection supervisor owning the database engine
        auth_router: Authentication route group, mounted at /auth
        sheets_router: Sheet resource route group, mounted at /api/sheets

    Collaborator routers not passed in are loaded from the AUTH_ROUTER /
    SHEETS_ROUTER import strings when configured.
    """
    config = config or Config()

    app = FastAPI(
        title="testgen-backend",
        description="Gateway for the test generation backend",
        version="1.0.0",
        docs_url="/docs" if not config.is_production else None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.supervisor = supervisor

    app.include_router(build_system_router(ReadinessReporter(supervisor)))
    mount_route_groups(
        app,
        auth_router=_resolve_router(auth_router, config.api.auth_router),
        sheets_router=_resolve_router(sheets_router, config.api.sheets_router),
    )

    # Last added runs first: request context -> origin policy -> error normalizer
    app.add_middleware(ErrorNormalizerMiddleware)
    app.state.origin_policy = add_cors_middleware(app, config.cors)
    app.middleware("http")(observability_middleware)

    return app

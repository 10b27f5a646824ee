"""
testgen-backend - Routes

System endpoints owned by the gateway (/health, /debug/cookies) and the
mounting of collaborator route groups (/auth, /api/sheets).
"""
from __future__ import annotations

import importlib
from typing import Dict, Optional

from fastapi import APIRouter, FastAPI, Request, Response
from pydantic import BaseModel

from core.errors import ConfigurationError
from observability.health import ReadinessReporter
from observability.logging import get_logger

logger = get_logger(__name__)

AUTH_PREFIX = "/auth"
SHEETS_PREFIX = "/api/sheets"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    timestamp: str


class DebugCookiesResponse(BaseModel):
    """Cookie round-trip diagnostics."""
    message: str
    cookies: Dict[str, str]
    origin: Optional[str] = None


def build_system_router(reporter: ReadinessReporter) -> APIRouter:
    router = APIRouter(tags=["system"])

    @router.get("/health", response_model=HealthResponse)
    async def health_check():
        """Report process liveness and database connection state."""
        return reporter.report()

    @router.get("/debug/cookies", response_model=DebugCookiesResponse)
    async def debug_cookies(request: Request, response: Response):
        """Echo received cookies and set a short-lived test cookie."""
        response.set_cookie(
            "test-cookie",
            "test-value",
            max_age=60,
            httponly=False,
            secure=False,
            samesite="lax",
        )
        return DebugCookiesResponse(
            message="Debug endpoint",
            cookies=dict(request.cookies),
            origin=request.headers.get("origin"),
        )

    return router


def load_router(import_string: str) -> APIRouter:
    """
    Load an APIRouter from a ``package.module:attribute`` string.

    Raises:
        ConfigurationError: malformed string, import failure, or the
            attribute is not an APIRouter
    """
    module_name, sep, attribute = import_string.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"Router import string must look like 'module:attribute', got {import_string!r}"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import router module {module_name!r}", cause=e) from e

    router = getattr(module, attribute, None)
    if not isinstance(router, APIRouter):
        raise ConfigurationError(f"{import_string!r} is not a fastapi.APIRouter")
    return router


def mount_route_groups(
    app: FastAPI,
    auth_router: Optional[APIRouter] = None,
    sheets_router: Optional[APIRouter] = None,
) -> None:
    """Mount collaborator routers under their fixed prefixes."""
    for prefix, router in ((AUTH_PREFIX, auth_router), (SHEETS_PREFIX, sheets_router)):
        if router is None:
            logger.warning("Route group not configured", prefix=prefix)
            continue
        app.include_router(router, prefix=prefix)
        logger.info("Route group mounted", prefix=prefix, routes=len(router.routes))

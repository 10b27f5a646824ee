"""
testgen-backend - Error Normalization

Turns any failure escaping a route handler into the public JSON contract
``{"message": ..., "code": ...}``:

    PersistenceUnavailable -> 503 DB_ERROR
    anything else          -> 500 SERVER_ERROR

The original failure is logged with full detail before it is normalized;
callers only ever see the public message.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.errors import classify_failure
from observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class NormalizedError:
    """HTTP status and public body for a failed request."""

    http_status: int
    body: Dict[str, str]

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.http_status, content=dict(self.body))


def normalize(error: BaseException) -> NormalizedError:
    """Classify ``error`` once, log it, and return its public contract."""
    classified = classify_failure(error)

    logger.error(
        "Unhandled request failure",
        error_code=classified.error_code,
        error_type=type(error).__name__,
        http_status=classified.http_status,
        exc_info=error,
    )

    return NormalizedError(
        http_status=classified.http_status,
        body=classified.public_body(),
    )


class ErrorNormalizerMiddleware(BaseHTTPMiddleware):
    """Innermost middleware: every unhandled failure leaves as normalized JSON."""

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            return normalize(e).to_response()

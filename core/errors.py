"""
testgen-backend - Unified Error Handling

Provides the exception hierarchy shared by the gateway layer:

- Configuration and state-machine errors raised at startup
- Connection errors owned by the database supervisor (retryable vs. fatal)
- Origin policy rejections
- Handler failures, classified once into a tagged type so the error
  normalizer never has to inspect loosely-typed error names

All errors record themselves on the current OpenTelemetry span.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import exc as sa_exc


class GatewayError(Exception):
    """
    Base exception for all gateway errors.

    Provides:
    - Stable error code and HTTP status
    - A public message that is safe to return to callers
    - Chained cause for server-side diagnostics
    - OpenTelemetry span recording
    """

    error_code: str = "GATEWAY_ERROR"
    http_status: int = 500
    public_message: str = "Internal server error"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.recoverable = recoverable
        self.metadata = metadata or {}
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_status(Status(StatusCode.ERROR, self.message))
            span.record_exception(self)
            span.set_attribute("error.code", self.error_code)
            span.set_attribute("error.recoverable", self.recoverable)

    def public_body(self) -> Dict[str, str]:
        """Body returned to HTTP callers. Never contains internal detail."""
        return {"message": self.public_message, "code": self.error_code}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for server-side logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "cause": repr(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.cause:
            parts.append(f" [caused by: {self.cause!r}]")
        return "".join(parts)


class ConfigurationError(GatewayError):
    """Invalid settings or an unloadable collaborator."""

    error_code = "CONFIG_ERROR"

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.config_key = config_key


class InvalidStateTransition(GatewayError):
    """A state machine was asked to move along an edge it does not have."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, machine: str, source: Any, target: Any):
        super().__init__(f"{machine}: illegal transition {source} -> {target}")
        self.machine = machine
        self.source = source
        self.target = target


class OriginDenied(GatewayError):
    """Request origin rejected by the cross-origin policy."""

    error_code = "CORS_DENIED"
    http_status = 403
    public_message = "Not allowed by CORS"

    def __init__(self, origin: Optional[str], **kwargs: Any):
        super().__init__(f"Origin not allowed: {origin!r}", **kwargs)
        self.origin = origin


class ConnectError(GatewayError):
    """A single database connection attempt failed. Retryable."""

    error_code = "CONNECT_ERROR"
    http_status = 503
    public_message = "Database temporarily unavailable"

    def __init__(self, message: str, attempt: Optional[int] = None, **kwargs: Any):
        super().__init__(message, recoverable=True, **kwargs)
        self.attempt = attempt


class RetryExhaustedError(GatewayError):
    """A retry policy ran out of attempts or wall-clock budget."""

    error_code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        message: str,
        attempts: int,
        elapsed_seconds: float,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds


class FatalConnectError(RetryExhaustedError):
    """The database connection retry budget is exhausted. Aborts startup."""

    error_code = "FATAL_CONNECT_ERROR"
    http_status = 503
    public_message = "Database temporarily unavailable"


class HandlerError(GatewayError):
    """Generic failure surfaced by a downstream request handler."""

    error_code = "SERVER_ERROR"
    http_status = 500
    public_message = "Internal server error"


class PersistenceUnavailable(HandlerError):
    """The persistence layer could not serve the request."""

    error_code = "DB_ERROR"
    http_status = 503
    public_message = "Database temporarily unavailable"


# Failures that mean "the database is not reachable right now"
PERSISTENCE_ERROR_TYPES: Tuple[Type[BaseException], ...] = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    ConnectionError,
    ConnectError,
    FatalConnectError,
)

# Error mapping for automatic classification
ERROR_TYPE_MAP: Dict[Type[BaseException], Type[HandlerError]] = {
    error_type: PersistenceUnavailable for error_type in PERSISTENCE_ERROR_TYPES
}


def classify_failure(error: BaseException) -> HandlerError:
    """
    Classify an arbitrary failure into the handler error hierarchy.

    Already-classified errors are returned unchanged; anything else is
    wrapped with the original kept as ``cause``.
    """
    if isinstance(error, HandlerError):
        return error
    for error_type, handler_type in ERROR_TYPE_MAP.items():
        if isinstance(error, error_type):
            return handler_type(message=str(error), cause=error)
    return HandlerError(message=str(error), cause=error)


__all__ = [
    "GatewayError",
    "ConfigurationError",
    "InvalidStateTransition",
    "OriginDenied",
    "ConnectError",
    "RetryExhaustedError",
    "FatalConnectError",
    "HandlerError",
    "PersistenceUnavailable",
    "PERSISTENCE_ERROR_TYPES",
    "ERROR_TYPE_MAP",
    "classify_failure",
]

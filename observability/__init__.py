"""
testgen-backend - Observability Package

- logging: structlog integration with trace context propagation
- health: readiness snapshot served by /health

Usage:
    from observability import setup_logging, get_logger

    setup_logging(LoggingConfig(level="INFO"))
    logger = get_logger(__name__)
"""
from observability.logging import (
    LoggingConfig,
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "shutdown_logging",
]

"""
testgen-backend - Core Module

Process-wide building blocks:
- Unified error handling (errors)
- Resilience patterns (resilience)
- Process lifecycle state machine (lifecycle)

Usage:
    from core import GatewayError, RetryPolicy, LifecycleController
"""
from core.errors import (
    ConfigurationError,
    ConnectError,
    FatalConnectError,
    GatewayError,
    HandlerError,
    InvalidStateTransition,
    OriginDenied,
    PersistenceUnavailable,
    RetryExhaustedError,
    classify_failure,
)
from core.resilience import RetryConfig, RetryPolicy

__all__ = [
    # Errors
    "GatewayError",
    "ConfigurationError",
    "InvalidStateTransition",
    "OriginDenied",
    "ConnectError",
    "RetryExhaustedError",
    "FatalConnectError",
    "HandlerError",
    "PersistenceUnavailable",
    "classify_failure",
    # Resilience
    "RetryConfig",
    "RetryPolicy",
]

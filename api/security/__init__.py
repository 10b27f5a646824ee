"""
testgen-backend - API Security Module

Cross-origin access policy for the gateway.
"""

from api.security.cors import (
    CORSConfig,
    OriginDecision,
    OriginPolicy,
    OriginPolicyMiddleware,
    add_cors_middleware,
    validate_origin,
)

__all__ = [
    "CORSConfig",
    "OriginDecision",
    "OriginPolicy",
    "OriginPolicyMiddleware",
    "add_cors_middleware",
    "validate_origin",
]

"""
testgen-backend - Cross-Origin Access Policy

Decides, per request, whether a browser origin may talk to the API:
- Exact matches against a configured allow-list
- Hosts under trusted suffixes (hosted frontend previews)
- Loopback hosts, outside production only
- Never combines wildcard with credentials

Denied origins are rejected with 403 and a stable JSON body, and the
decision is logged with the rule families that were evaluated.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Optional
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from opentelemetry import trace

from core.errors import ConfigurationError, OriginDenied
from observability.logging import get_logger

tracer = trace.get_tracer(__name__)
logger = get_logger(__name__)


def _split_env(name: str) -> List[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    unique = []
    for value in values:
        if value not in seen:
            seen.add(value)
            unique.append(value)
    return unique


@dataclass
class CORSConfig:
    """
    Cross-origin policy configuration.

    IMPORTANT: credentials are always allowed, so a wildcard origin is
    rejected outright.
    """

    # Allowed origins (exact match)
    # Extended from the CORS_ORIGINS environment variable (comma-separated)
    allow_origins: List[str] = field(default_factory=lambda: [
        "https://test-gen-frontend.onrender.com",
        "https://steady-kheer-8df91d.netlify.app",
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:5173",
        "http://localhost:5174",
    ])

    # Host suffixes whose every subdomain is trusted
    trusted_suffixes: List[str] = field(
        default_factory=lambda: _split_env("CORS_TRUSTED_SUFFIXES") or [".onrender.com"]
    )

    # Substrings marking a loopback host
    loopback_markers: List[str] = field(default_factory=lambda: ["localhost", "127.0.0.1"])

    # Switched off in production by the top-level Config
    trust_loopback: bool = True

    allow_methods: List[str] = field(default_factory=lambda: [
        "GET", "POST", "PUT", "DELETE", "OPTIONS"
    ])

    allow_headers: List[str] = field(default_factory=lambda: [
        "Content-Type",
        "Authorization",
        "X-Requested-With",
    ])

    # Headers exposed to the browser
    expose_headers: List[str] = field(default_factory=lambda: ["Set-Cookie"])

    preflight_status: int = 200

    def __post_init__(self):
        """Load origins from environment and validate configuration."""
        self.allow_origins.extend(_split_env("CORS_ORIGINS"))

        # Browsers never send a trailing slash in the Origin header
        self.allow_origins = _dedupe([origin.rstrip("/") for origin in self.allow_origins])
        self.trusted_suffixes = _dedupe([suffix.lower() for suffix in self.trusted_suffixes])

        if "*" in self.allow_origins:
            raise ConfigurationError(
                "Cannot use wildcard origin ('*') with credentialed requests; "
                "list exact origins instead",
                config_key="CORS_ORIGINS",
            )


@dataclass(frozen=True)
class OriginDecision:
    """Outcome of an origin check plus the headers to attach when allowed."""

    allowed: bool
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


def validate_origin(origin: str) -> bool:
    """
    Validate that an origin is well-formed.

    Returns True if origin is a valid URL with scheme and host.
    """
    try:
        parsed = urlparse(origin)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc and parsed.hostname)


class OriginPolicy:
    """
    Pure origin-authorization function over a CORSConfig.

    Decisions are recomputed on every call; nothing is cached.
    """

    def __init__(self, config: Optional[CORSConfig] = None):
        self.config = config or CORSConfig()

    def _base_headers(self) -> dict:
        return {
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": ", ".join(self.config.allow_methods),
            "Access-Control-Allow-Headers": ", ".join(self.config.allow_headers),
            "Access-Control-Expose-Headers": ", ".join(self.config.expose_headers),
        }

    def _allow(self, origin: Optional[str]) -> OriginDecision:
        headers = self._base_headers()
        if origin is not None:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return OriginDecision(allowed=True, headers=MappingProxyType(headers))

    def decide(self, origin: Optional[str]) -> OriginDecision:
        """Decide whether ``origin`` may make credentialed requests."""
        # Same-origin requests and non-browser clients send no Origin
        if origin is None:
            logger.debug("Request without origin allowed")
            return self._allow(None)

        host = ""
        if validate_origin(origin):
            host = (urlparse(origin).hostname or "").lower()

        exact_match = bool(host) and origin.rstrip("/") in self.config.allow_origins
        suffix_match = bool(host) and any(
            host.endswith(suffix) for suffix in self.config.trusted_suffixes
        )
        loopback_match = bool(host) and self.config.trust_loopback and any(
            marker in host for marker in self.config.loopback_markers
        )

        if exact_match or suffix_match or loopback_match:
            logger.info("Origin allowed", origin=origin)
            return self._allow(origin)

        logger.warning(
            "Origin denied",
            origin=origin,
            allowed_origins=list(self.config.allow_origins),
            trusted_suffix_match=suffix_match,
            loopback_match=loopback_match,
            loopback_trusted=self.config.trust_loopback,
        )
        return OriginDecision(allowed=False)


class OriginPolicyMiddleware(BaseHTTPMiddleware):
    """
    Applies OriginPolicy before routing.

    - Denied origins get 403 with the public CORS_DENIED body
    - Preflight requests from allowed origins are answered directly
    - Allowed responses carry the decision's CORS headers
    """

    def __init__(self, app, policy: OriginPolicy):
        super().__init__(app)
        self.policy = policy

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process request with CORS handling."""
        origin = request.headers.get("origin")
        decision = self.policy.decide(origin)

        if not decision.allowed:
            with tracer.start_as_current_span("cors.rejected") as span:
                span.set_attribute("cors.origin", origin or "")
                span.set_attribute("cors.path", request.url.path)
                span.set_attribute("cors.method", request.method)
                denied = OriginDenied(origin)
            return JSONResponse(status_code=denied.http_status, content=denied.public_body())

        # Handle preflight
        if request.method == "OPTIONS":
            return Response(
                status_code=self.policy.config.preflight_status,
                headers=dict(decision.headers),
            )

        response = await call_next(request)
        for key, value in decision.headers.items():
            response.headers[key] = value

        return response


def add_cors_middleware(app: FastAPI, config: Optional[CORSConfig] = None) -> OriginPolicy:
    """
    Add the origin policy middleware to a FastAPI application.

    Usage:
        app = FastAPI()
        add_cors_middleware(app, CORSConfig(trust_loopback=False))
    """
    policy = OriginPolicy(config)
    app.add_middleware(OriginPolicyMiddleware, policy=policy)
    return policy

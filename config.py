"""
testgen-backend - Configuration

Centralized configuration for the gateway process.
Uses environment variables (and a local .env file) with sensible defaults.
"""
import asyncio
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv

from api.security.cors import CORSConfig
from core.errors import ConfigurationError, ConnectError
from core.resilience import RetryConfig
from observability.logging import LoggingConfig

# Load environment variables from .env file
load_dotenv()


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


_ENVIRONMENT_ALIASES = {
    "dev": Environment.DEVELOPMENT,
    "test": Environment.TESTING,
    "stage": Environment.STAGING,
    "prod": Environment.PRODUCTION,
}


def parse_environment(raw: Optional[str]) -> Environment:
    """Parse an environment marker such as ``production`` or ``dev``."""
    value = (raw or "").strip().lower() or Environment.DEVELOPMENT.value
    if value in _ENVIRONMENT_ALIASES:
        return _ENVIRONMENT_ALIASES[value]
    try:
        return Environment(value)
    except ValueError:
        raise ConfigurationError(
            f"Unknown runtime environment: {raw!r}",
            config_key="ENVIRONMENT",
        ) from None


def _environment_from_env() -> Environment:
    # NODE_ENV is still honoured for deployments carried over from the old server
    return parse_environment(os.getenv("ENVIRONMENT") or os.getenv("NODE_ENV"))


def _optional_env(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


@dataclass
class DatabaseConfig:
    """Database connection and connect-retry configuration."""
    url: str = field(default_factory=lambda: os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://localhost:5432/testgen",
    ))
    echo: bool = field(default_factory=lambda: os.getenv("DB_ECHO", "false").lower() == "true")

    # Connection pool settings
    pool_size: int = field(default_factory=lambda: int(os.getenv("DB_POOL_SIZE", "5")))
    max_overflow: int = field(default_factory=lambda: int(os.getenv("DB_MAX_OVERFLOW", "10")))

    # Connect retry budget
    connect_max_attempts: int = field(default_factory=lambda: int(os.getenv("DB_CONNECT_MAX_ATTEMPTS", "5")))
    connect_base_delay: float = field(default_factory=lambda: float(os.getenv("DB_CONNECT_BASE_DELAY", "1.0")))
    connect_max_delay: float = field(default_factory=lambda: float(os.getenv("DB_CONNECT_MAX_DELAY", "10.0")))
    connect_max_elapsed: float = field(default_factory=lambda: float(os.getenv("DB_CONNECT_MAX_ELAPSED", "60.0")))
    connect_timeout: float = field(default_factory=lambda: float(os.getenv("DB_CONNECT_TIMEOUT", "10.0")))

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigurationError("DATABASE_URL must not be empty", config_key="DATABASE_URL")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def safe_url(self) -> str:
        """Connection URL with the password masked, for logs."""
        parts = urlsplit(self.url)
        if parts.password is None:
            return self.url
        netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
        return urlunsplit(parts._replace(netloc=netloc))

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``create_async_engine``."""
        options: Dict[str, Any] = {"echo": self.echo, "pool_pre_ping": True}
        if not self.is_sqlite:
            options["pool_size"] = self.pool_size
            options["max_overflow"] = self.max_overflow
        return options

    def retry_config(self) -> RetryConfig:
        """Retry budget for the startup connection handshake."""
        return RetryConfig(
            max_attempts=self.connect_max_attempts,
            base_delay=self.connect_base_delay,
            max_delay=self.connect_max_delay,
            max_elapsed=self.connect_max_elapsed,
            attempt_timeout=self.connect_timeout,
            retryable_exceptions={ConnectError, asyncio.TimeoutError},
        )


@dataclass
class APIConfig:
    """API server configuration."""
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "3000")))
    shutdown_timeout: float = field(default_factory=lambda: float(os.getenv("SHUTDOWN_TIMEOUT", "10.0")))

    # Collaborator route groups, as "package.module:attribute" import strings
    auth_router: Optional[str] = field(default_factory=lambda: _optional_env("AUTH_ROUTER"))
    sheets_router: Optional[str] = field(default_factory=lambda: _optional_env("SHEETS_ROUTER"))

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"PORT out of range: {self.port}", config_key="PORT")
        if self.shutdown_timeout <= 0:
            raise ConfigurationError("SHUTDOWN_TIMEOUT must be > 0", config_key="SHUTDOWN_TIMEOUT")


@dataclass
class Config:
    """Main configuration class combining all sub-configs."""
    env: Environment = field(default_factory=_environment_from_env)

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: APIConfig = field(default_factory=APIConfig)
    cors: CORSConfig = field(default_factory=CORSConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Align environment-dependent sub-configs."""
        # Loopback origins are only trusted outside production
        self.cors.trust_loopback = not self.is_production
        self.logging.environment = self.env.value

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.env == Environment.DEVELOPMENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (excluding sensitive values)."""
        return {
            "env": self.env.value,
            "database": {
                "url": self.database.safe_url,
                "connect_max_attempts": self.database.connect_max_attempts,
                "connect_max_elapsed": self.database.connect_max_elapsed,
            },
            "api": {
                "host": self.api.host,
                "port": self.api.port,
                "auth_router": self.api.auth_router,
                "sheets_router": self.api.sheets_router,
            },
            "cors": {
                "allow_origins": list(self.cors.allow_origins),
                "trusted_suffixes": list(self.cors.trusted_suffixes),
                "trust_loopback": self.cors.trust_loopback,
            },
        }

"""
testgen-backend - Database Connection Supervisor

Owns the process's single SQLAlchemy async engine:
- Retrying startup handshake with a bounded budget
- Explicit connection state machine
- Idempotent close shared by concurrent callers
- Session scope for collaborators (commit/rollback)
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import DatabaseConfig
from core.errors import (
    PERSISTENCE_ERROR_TYPES,
    ConfigurationError,
    ConnectError,
    FatalConnectError,
    InvalidStateTransition,
    PersistenceUnavailable,
    RetryExhaustedError,
)
from core.resilience import RetryPolicy
from observability.logging import get_logger


logger = get_logger(__name__)

EngineFactory = Callable[..., AsyncEngine]


class ConnectionState(str, Enum):
    """Lifecycle of the persistent database connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


_TRANSITIONS: Dict[ConnectionState, Tuple[ConnectionState, ...]] = {
    ConnectionState.DISCONNECTED: (ConnectionState.CONNECTING,),
    ConnectionState.CONNECTING: (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
    ConnectionState.CONNECTED: (ConnectionState.DISCONNECTING,),
    ConnectionState.DISCONNECTING: (ConnectionState.DISCONNECTED,),
}


class ConnectionSupervisor:
    """
    Supervises the persistent database connection.

    The supervisor is created once per process and handed explicitly to
    whatever needs the engine (app factory, readiness reporter, CLI).

    Usage:
        supervisor = ConnectionSupervisor(DatabaseConfig())
        await supervisor.connect_with_retry()
        async with supervisor.session() as session:
            await session.execute(text("SELECT 1"))
        await supervisor.close()
    """

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        engine_factory: EngineFactory = create_async_engine,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config or DatabaseConfig()
        self._engine_factory = engine_factory
        self._retry_policy = retry_policy or RetryPolicy(self.config.retry_config())

        self._state = ConnectionState.DISCONNECTED
        self._history: List[ConnectionState] = [self._state]
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._closing: Optional[asyncio.Task] = None
        self._attempts = 0

    # -- state ---------------------------------------------------------

    def current_state(self) -> ConnectionState:
        """Current connection state. Never blocks."""
        return self._state

    @property
    def state_history(self) -> List[ConnectionState]:
        return list(self._history)

    @property
    def attempts(self) -> int:
        """Connection attempts made by the last connect_with_retry()."""
        return self._attempts

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    def _transition(self, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidStateTransition("ConnectionSupervisor", self._state.value, target.value)
        logger.debug("Connection state changed", source=self._state.value, target=target.value)
        self._state = target
        self._history.append(target)

    # -- connect -------------------------------------------------------

    async def connect_with_retry(self) -> None:
        """
        Connect to the database, retrying within the configured budget.

        Raises:
            FatalConnectError: every attempt failed, the budget ran out, or
                the configured URL cannot build an engine
            InvalidStateTransition: called while not disconnected
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise InvalidStateTransition(
                "ConnectionSupervisor", self._state.value, ConnectionState.CONNECTING.value
            )

        self._attempts = 0
        self._closing = None
        logger.info("Connecting to database", url=self.config.safe_url)

        try:
            await self._retry_policy.execute(
                self._attempt_connect,
                operation_name="db.connect",
                on_retry=self._log_retry,
            )
        except RetryExhaustedError as e:
            logger.error(
                "Database connection failed",
                attempts=e.attempts,
                elapsed_seconds=round(e.elapsed_seconds, 3),
                error=repr(e.cause),
            )
            raise FatalConnectError(
                message=f"Could not connect to database after {e.attempts} attempt(s)",
                attempts=e.attempts,
                elapsed_seconds=e.elapsed_seconds,
                cause=e.cause,
            ) from e
        except ConfigurationError as e:
            logger.error(
                "Database URL rejected",
                url=self.config.safe_url,
                error=repr(e.cause),
            )
            raise FatalConnectError(
                message="Could not build a database engine from the configured URL",
                attempts=self._attempts,
                elapsed_seconds=0.0,
                cause=e.cause,
            ) from e

        logger.info("Database connected", attempts=self._attempts)

    async def _attempt_connect(self) -> None:
        self._attempts += 1
        self._transition(ConnectionState.CONNECTING)

        try:
            engine = self._engine_factory(self.config.url, **self.config.engine_options())
        except Exception as e:
            # Engine construction failures are not retried
            self._transition(ConnectionState.DISCONNECTED)
            raise ConfigurationError(
                f"Invalid database URL: {e}",
                config_key="DATABASE_URL",
                cause=e,
            ) from e

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except asyncio.CancelledError:
            # Per-attempt timeout or aborted startup
            await self._discard(engine)
            raise
        except Exception as e:
            await self._discard(engine)
            raise ConnectError(
                f"Connection attempt {self._attempts} failed: {e}",
                attempt=self._attempts,
                cause=e,
            ) from e

        self._engine = engine
        self._transition(ConnectionState.CONNECTED)

    async def _discard(self, engine: AsyncEngine) -> None:
        try:
            await engine.dispose()
        finally:
            self._transition(ConnectionState.DISCONNECTED)

    def _log_retry(self, attempt: int, delay: float, error: BaseException) -> None:
        logger.warning(
            "Database connection attempt failed, retrying",
            attempt=attempt,
            max_attempts=self._retry_policy.config.max_attempts,
            retry_in_seconds=round(delay, 3),
            error=str(error),
        )

    # -- close ---------------------------------------------------------

    async def close(self) -> None:
        """
        Close the connection. Idempotent.

        Returns immediately when nothing is open; concurrent callers await
        the same in-flight close.
        """
        if self._closing is None or self._closing.done():
            # Nothing open, including after a close whose dispose failed
            if self._engine is None:
                return
            self._closing = asyncio.get_running_loop().create_task(self._dispose())
        await asyncio.shield(self._closing)

    async def _dispose(self) -> None:
        engine = self._engine
        self._transition(ConnectionState.DISCONNECTING)
        try:
            await engine.dispose()
            logger.info("Database connection closed")
        finally:
            self._engine = None
            self._session_factory = None
            self._transition(ConnectionState.DISCONNECTED)

    # -- sessions ------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session.

        Raises:
            PersistenceUnavailable: not connected, or the database failed
                while the session was in use
        """
        if self._state is not ConnectionState.CONNECTED or self._engine is None:
            raise PersistenceUnavailable(
                f"Database not connected (state={self._state.value})"
            )

        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except PERSISTENCE_ERROR_TYPES as e:
                await session.rollback()
                raise PersistenceUnavailable(str(e), cause=e) from e
            except Exception:
                await session.rollback()
                raise

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot for diagnostics."""
        return {
            "state": self._state.value,
            "attempts": self._attempts,
            "url": self.config.safe_url,
        }

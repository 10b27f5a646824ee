"""
testgen-backend - Readiness Reporting

Liveness snapshot served by ``GET /health``. The process status is always
"OK" while it can answer; the database field mirrors the supervisor's live
connection state.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from db.connection import ConnectionState, ConnectionSupervisor
from observability.logging import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class ReadinessReporter:
    """Builds the /health payload on demand. Never raises, never caches."""

    def __init__(
        self,
        supervisor: Optional[ConnectionSupervisor] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.supervisor = supervisor
        self._clock = clock

    def database_state(self) -> str:
        if self.supervisor is None:
            return ConnectionState.DISCONNECTED.value
        try:
            return ConnectionState(self.supervisor.current_state()).value
        except Exception as e:
            logger.warning("Could not read database state", error=repr(e))
            return ConnectionState.DISCONNECTED.value

    def report(self) -> Dict[str, str]:
        return {
            "status": "OK",
            "database": self.database_state(),
            "timestamp": format_timestamp(self._clock()),
        }

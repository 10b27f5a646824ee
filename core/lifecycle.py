"""
testgen-backend - Process Lifecycle

Explicit state machine for the gateway process:

    STARTING -> CONNECTING -> READY -> SHUTTING_DOWN -> TERMINATED
                     |                      ^
                     +-> TERMINATED         | (signal while connecting)
                     +----------------------+

Everything that moves the machine (connect outcome, termination signals,
the listener stopping, close outcome) arrives as a LifecycleEvent on one
asyncio queue and is handled in order by ``run()``. Signal handlers only
enqueue; they never touch the database or the listener directly.

Usage:
    controller = LifecycleController(
        supervisor,
        listener_factory=lambda: UvicornListener(create_app(config, supervisor)),
        shutdown_timeout=config.api.shutdown_timeout,
    )
    exit_code = asyncio.run(controller.run())
"""
from __future__ import annotations

import asyncio
import signal
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from core.errors import FatalConnectError, InvalidStateTransition
from db.connection import ConnectionSupervisor
from observability.logging import get_logger

logger = get_logger(__name__)


class LifecyclePhase(Enum):
    """Process lifecycle phases."""
    STARTING = "starting"
    CONNECTING = "connecting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


_PHASE_TRANSITIONS: Dict[LifecyclePhase, Tuple[LifecyclePhase, ...]] = {
    LifecyclePhase.STARTING: (LifecyclePhase.CONNECTING,),
    LifecyclePhase.CONNECTING: (
        LifecyclePhase.READY,
        LifecyclePhase.SHUTTING_DOWN,
        LifecyclePhase.TERMINATED,
    ),
    LifecyclePhase.READY: (LifecyclePhase.SHUTTING_DOWN,),
    LifecyclePhase.SHUTTING_DOWN: (LifecyclePhase.TERMINATED,),
    LifecyclePhase.TERMINATED: (),
}


class EventKind(Enum):
    CONNECT_SUCCEEDED = "connect_succeeded"
    CONNECT_FAILED = "connect_failed"
    SIGNAL_RECEIVED = "signal_received"
    LISTENER_STOPPED = "listener_stopped"
    CLOSE_COMPLETED = "close_completed"
    CLOSE_FAILED = "close_failed"


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """Immutable record of something that happened to the process."""
    kind: EventKind
    detail: Optional[str] = None
    timestamp: float = 0.0


class Listener(Protocol):
    """Transport the controller starts once the database is connected."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def wait_closed(self) -> None: ...


class LifecycleController:
    """
    Drives startup, readiness and graceful shutdown.

    Exit codes:
        0 - clean shutdown
        1 - database unreachable at startup, listener failed to start,
            or the connection could not be closed within the timeout
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        listener_factory: Callable[[], Listener],
        shutdown_timeout: float = 10.0,
        install_signals: bool = True,
        signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ):
        self.supervisor = supervisor
        self.listener_factory = listener_factory
        self.shutdown_timeout = shutdown_timeout
        self.install_signals = install_signals
        self.signals = tuple(signals)

        self._phase = LifecyclePhase.STARTING
        self._history: List[LifecyclePhase] = [self._phase]
        self._events: List[LifecycleEvent] = []
        self._exit_code: Optional[int] = None
        self._startup_failed = False

        self._queue: Optional[asyncio.Queue] = None
        self._listener: Optional[Listener] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._installed_signals: List[signal.Signals] = []

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def history(self) -> List[LifecyclePhase]:
        return list(self._history)

    @property
    def events(self) -> List[LifecycleEvent]:
        return list(self._events)

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def _transition(self, target: LifecyclePhase) -> None:
        if target not in _PHASE_TRANSITIONS[self._phase]:
            raise InvalidStateTransition("LifecycleController", self._phase.value, target.value)
        logger.info("Lifecycle phase changed", source=self._phase.value, target=target.value)
        self._phase = target
        self._history.append(target)

    def _dispatch(self, kind: EventKind, detail: Optional[str] = None) -> None:
        self._queue.put_nowait(LifecycleEvent(kind=kind, detail=detail, timestamp=time.time()))

    # =========================================================================
    # Signals
    # =========================================================================

    def request_shutdown(self, sig: Optional[signal.Signals] = None) -> None:
        """Request graceful shutdown. Safe to call any number of times."""
        name = signal.Signals(sig).name if sig is not None else "manual"
        if self._queue is None:
            logger.warning("Shutdown requested before the controller is running", signal=name)
            return
        logger.info("Termination signal received", signal=name)
        self._dispatch(EventKind.SIGNAL_RECEIVED, detail=name)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self.install_signals or sys.platform == "win32":
            return
        for sig in self.signals:
            loop.add_signal_handler(sig, self.request_shutdown, sig)
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        while self._installed_signals:
            loop.remove_signal_handler(self._installed_signals.pop())

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(self) -> int:
        """Run the process until it terminates. Returns the exit code."""
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._install_signal_handlers(loop)

        try:
            self._transition(LifecyclePhase.CONNECTING)
            self._connect_task = loop.create_task(self._connect())

            while self._phase is not LifecyclePhase.TERMINATED:
                event = await self._queue.get()
                self._events.append(event)
                await self._handle(event)
        finally:
            self._remove_signal_handlers(loop)
            await self._cancel_pending()

        logger.info("Process terminated", exit_code=self._exit_code)
        return self._exit_code

    async def _cancel_pending(self) -> None:
        pending = [
            task for task in (self._connect_task, self._watch_task, self._shutdown_task)
            if task is not None and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    async def _handle(self, event: LifecycleEvent) -> None:
        kind = event.kind

        if kind is EventKind.CONNECT_SUCCEEDED:
            if self._phase is LifecyclePhase.CONNECTING:
                await self._start_listener()

        elif kind is EventKind.CONNECT_FAILED:
            if self._phase is LifecyclePhase.CONNECTING:
                logger.error("Startup aborted: database unavailable", detail=event.detail)
                self._terminate(1)

        elif kind in (EventKind.SIGNAL_RECEIVED, EventKind.LISTENER_STOPPED):
            if self._phase in (LifecyclePhase.CONNECTING, LifecyclePhase.READY):
                self._begin_shutdown(reason=kind.value, detail=event.detail)
            else:
                logger.info("Ignoring event during shutdown", kind=kind.value, detail=event.detail)

        elif kind is EventKind.CLOSE_COMPLETED:
            self._terminate(1 if self._startup_failed else 0)

        elif kind is EventKind.CLOSE_FAILED:
            self._terminate(1)

    def _terminate(self, exit_code: int) -> None:
        self._exit_code = exit_code
        self._transition(LifecyclePhase.TERMINATED)

    # =========================================================================
    # Startup
    # =========================================================================

    async def _connect(self) -> None:
        try:
            await self.supervisor.connect_with_retry()
        except FatalConnectError as e:
            self._dispatch(EventKind.CONNECT_FAILED, detail=str(e))
        except Exception as e:
            logger.error("Unexpected error while connecting", exc_info=e)
            self._dispatch(EventKind.CONNECT_FAILED, detail=repr(e))
        else:
            self._dispatch(EventKind.CONNECT_SUCCEEDED)

    async def _start_listener(self) -> None:
        try:
            listener = self.listener_factory()
            await listener.start()
        except Exception as e:
            logger.error("HTTP listener failed to start", exc_info=e)
            self._startup_failed = True
            self._begin_shutdown(reason="listener_failed", detail=repr(e))
            return

        self._listener = listener
        self._transition(LifecyclePhase.READY)
        self._watch_task = asyncio.get_running_loop().create_task(self._watch_listener(listener))

    async def _watch_listener(self, listener: Listener) -> None:
        detail = None
        try:
            await listener.wait_closed()
        except Exception as e:
            logger.error("HTTP listener crashed", exc_info=e)
            detail = repr(e)
        self._dispatch(EventKind.LISTENER_STOPPED, detail=detail)

    # =========================================================================
    # Shutdown
    # =========================================================================

    def _begin_shutdown(self, reason: str, detail: Optional[str] = None) -> None:
        self._transition(LifecyclePhase.SHUTTING_DOWN)
        logger.info("Shutting down", reason=reason, detail=detail)
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._shutdown_task = asyncio.get_running_loop().create_task(self._shutdown())

    async def _shutdown(self) -> None:
        if self._connect_task is not None:
            await asyncio.wait([self._connect_task])

        if self._listener is not None:
            try:
                await asyncio.wait_for(self._listener.stop(), timeout=self.shutdown_timeout)
            except Exception as e:
                logger.warning("HTTP listener did not stop cleanly", error=repr(e))

        try:
            await asyncio.wait_for(self.supervisor.close(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error("Timed out closing database connection", timeout_seconds=self.shutdown_timeout)
            self._dispatch(EventKind.CLOSE_FAILED, detail="timeout")
        except Exception as e:
            logger.error("Error closing database connection", exc_info=e)
            self._dispatch(EventKind.CLOSE_FAILED, detail=repr(e))
        else:
            logger.info("Database connection closed cleanly")
            self._dispatch(EventKind.CLOSE_COMPLETED)


__all__ = [
    "LifecyclePhase",
    "EventKind",
    "LifecycleEvent",
    "Listener",
    "LifecycleController",
]

"""
testgen-backend - HTTP Listener

Wraps a uvicorn server so the lifecycle controller decides when it starts
and stops. uvicorn's own signal handling is disabled; termination signals
are owned by the controller.
"""
from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Optional

import uvicorn
from fastapi import FastAPI

from observability.logging import get_logger

logger = get_logger(__name__)


class _ControlledServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to its owner."""

    def install_signal_handlers(self) -> None:
        return None

    def capture_signals(self):
        return contextlib.nullcontext()


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket. Raises OSError when the port is taken."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


class UvicornListener:
    """
    Start/stop handle around a uvicorn server.

    Usage:
        listener = UvicornListener(app, host="0.0.0.0", port=3000)
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 3000, poll_interval: float = 0.05):
        self.host = host
        self.port = port
        self._poll_interval = poll_interval
        self._server = _ControlledServer(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_config=None,
                lifespan="off",
                access_log=False,
            )
        )
        self._task: Optional[asyncio.Task] = None
        self._bound_port: Optional[int] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual port once started; differs from ``port`` when 0 was requested."""
        return self._bound_port

    @property
    def started(self) -> bool:
        return bool(self._server.started)

    async def start(self) -> None:
        """Bind the port and begin serving. Returns once listening."""
        sock = bind_socket(self.host, self.port)
        self._bound_port = sock.getsockname()[1]
        self._task = asyncio.get_running_loop().create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                error = self._task.exception()
                raise RuntimeError(f"HTTP listener failed to start on {self.host}:{self.port}") from error
            await asyncio.sleep(self._poll_interval)
        logger.info("Server listening", host=self.host, port=self.bound_port)

    async def wait_closed(self) -> None:
        """Wait until the server stops on its own or is stopped."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def stop(self) -> None:
        """Stop accepting connections and finish in-flight requests."""
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        logger.info("Server stopped")

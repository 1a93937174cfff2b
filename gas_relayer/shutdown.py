"""Graceful shutdown on SIGINT / SIGTERM.

Either signal starts the same drain sequence: the server stops accepting
connections, in-flight requests get a bounded grace period, then the server is
forced to exit. The sequence runs at most once.
"""

import asyncio
import contextlib
import signal
import socket
from typing import Any, Dict, List, Optional

import uvicorn

from gas_relayer.errors import StartupError, StartupErrorKind
from gas_relayer.obs.logger import log_event


TRIGGERS = ("SIGINT", "SIGTERM")

# Headroom over uvicorn's own graceful timeout so its lifespan shutdown still runs
FORCE_EXIT_MARGIN_SECONDS = 1.0


class CoordinatedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to ShutdownCoordinator."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise StartupError(StartupErrorKind.SERVER, f"Couldn't bind {host}:{port}: {e}") from e
    sock.set_inheritable(True)
    return sock


class ShutdownCoordinator:
    def __init__(self, grace_period: float = 10.0):
        if grace_period < 0:
            raise ValueError("grace_period must not be negative")
        self.grace_period = grace_period
        self._triggers: Dict[str, asyncio.Event] = {name: asyncio.Event() for name in TRIGGERS}
        self._installed: List[signal.Signals] = []
        self._started = False
        self.shutdown_count = 0
        self.reason: Optional[str] = None
        self.completed = asyncio.Event()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> List[str]:
        """Route termination signals to notify(). Returns the names installed."""
        loop = loop or asyncio.get_running_loop()
        for name in TRIGGERS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self.notify, name)
            except (NotImplementedError, RuntimeError, ValueError):
                # No loop signal support (Windows, or not the main thread)
                if name != "SIGINT":
                    continue
                try:
                    signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.notify, "SIGINT"))
                except ValueError:
                    continue
            self._installed.append(sig)
        return [s.name for s in self._installed]

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self._installed:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                signal.signal(sig, signal.default_int_handler if sig == signal.SIGINT else signal.SIG_DFL)
        self._installed.clear()

    def notify(self, trigger: str) -> None:
        event = self._triggers.get(trigger)
        if event is None:
            raise ValueError(f"Unknown shutdown trigger: {trigger}")
        log_event("shutdown_signal", signal=trigger)
        event.set()

    async def wait_for_trigger(self) -> str:
        """Wait until any trigger fires and return its name."""
        waiters = {asyncio.ensure_future(event.wait()): name for name, event in self._triggers.items()}
        try:
            done, _ = await asyncio.wait(list(waiters), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        return next(name for waiter, name in waiters.items() if waiter in done)

    async def shutdown(self, server: Any, serve_task: Optional[asyncio.Future] = None, reason: str = "manual") -> bool:
        """Drain and stop the server. Returns False if shutdown already ran."""
        if self._started:
            return False
        self._started = True
        self.shutdown_count += 1
        self.reason = reason
        log_event("shutdown_started", reason=reason, grace_period_seconds=self.grace_period)

        server.should_exit = True
        if serve_task is not None and not serve_task.done():
            _, pending = await asyncio.wait({serve_task}, timeout=self.grace_period)
            if pending:
                log_event("shutdown_grace_expired", level="WARNING", grace_period_seconds=self.grace_period)
                server.force_exit = True

        self.completed.set()
        log_event("shutdown_complete", reason=reason)
        return True

    async def serve(self, server: Any, sockets: Optional[List[socket.socket]] = None) -> None:
        """Run the server until it exits or a termination signal arrives."""
        loop = asyncio.get_running_loop()
        self.install_signal_handlers(loop)
        serve_task = asyncio.ensure_future(server.serve(sockets=sockets))
        trigger_task = asyncio.ensure_future(self.wait_for_trigger())
        try:
            done, _ = await asyncio.wait({serve_task, trigger_task}, return_when=asyncio.FIRST_COMPLETED)
            if trigger_task in done:
                await self.shutdown(server, serve_task, reason=trigger_task.result())
            await serve_task
        finally:
            trigger_task.cancel()
            self.remove_signal_handlers(loop)

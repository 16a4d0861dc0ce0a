"""
Graceful shutdown for the publisher process.

Sequence once SIGTERM/SIGINT arrives (or shutdown is requested):
1. STOPPING  - no new publish is admitted
2. DRAINING  - in-flight publishes get drain_timeout_seconds to finish,
               so an event mid-retry still reaches the bus or a fallback sink
3. CLEANUP   - registered handlers run in priority order (sweeper, sessions)
4. COMPLETE

Usage:
    shutdown = GracefulShutdown()
    shutdown.register_cleanup("transport", transport.close, priority=20)
    shutdown.install_signal_handlers()

    async with shutdown.track():
        await publisher.publish(event)
"""

from __future__ import annotations
import asyncio
import signal
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from matchrelay.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ShutdownPhase(Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    DRAINING = "draining"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


class ShutdownInProgress(RuntimeError):
    """Raised by track() once intake has stopped."""


@dataclass
class CleanupTask:
    name: str
    handler: Callable[[], Awaitable[None]]
    priority: int  # lower runs first
    timeout_seconds: float


class GracefulShutdown:
    """Coordinates draining in-flight publishes and closing collaborators."""

    def __init__(self, drain_timeout_seconds: float = 30.0):
        self.drain_timeout_seconds = drain_timeout_seconds

        self._phase = ShutdownPhase.RUNNING
        self._cleanup_tasks: List[CleanupTask] = []
        self._in_flight = 0
        self._idle: Optional[asyncio.Event] = None
        self._done: Optional[asyncio.Event] = None
        self._reason = ""
        self._abandoned = 0
        self._signal_handlers_installed = False

    def _events(self) -> tuple[asyncio.Event, asyncio.Event]:
        # created lazily so the manager can be built outside a running loop
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
            self._done = asyncio.Event()
        return self._idle, self._done

    @property
    def phase(self) -> ShutdownPhase:
        return self._phase

    @property
    def is_shutting_down(self) -> bool:
        return self._phase != ShutdownPhase.RUNNING

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def register_cleanup(
        self,
        name: str,
        handler: Callable[[], Awaitable[None]],
        priority: int = 50,
        timeout_seconds: float = 10.0,
    ):
        self._cleanup_tasks.append(CleanupTask(name, handler, priority, timeout_seconds))
        logger.debug("Registered cleanup", task=name, priority=priority)

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        """
        Count one unit of work as in flight.

        Raises:
            ShutdownInProgress: intake already stopped
        """
        if self.is_shutting_down:
            raise ShutdownInProgress(f"Shutting down ({self._reason}), not accepting new events")
        idle, _ = self._events()
        self._in_flight += 1
        idle.clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                idle.set()

    def install_signal_handlers(self):
        if self._signal_handlers_installed:
            return

        if sys.platform == "win32":
            # no loop signal handlers on Windows
            signal.signal(signal.SIGINT, self._sync_signal_handler)
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda s=sig: asyncio.create_task(self.initiate_shutdown(f"signal_{s.name}")),
                )

        self._signal_handlers_installed = True
        logger.info("Signal handlers installed")

    def _sync_signal_handler(self, signum, frame):
        asyncio.get_running_loop().create_task(self.initiate_shutdown(f"signal_{signum}"))

    async def initiate_shutdown(self, reason: str = "requested"):
        """Run the full shutdown sequence once; later calls are ignored."""
        if self.is_shutting_down:
            logger.debug("Shutdown already in progress", reason=reason)
            return

        idle, done = self._events()
        started = time.monotonic()
        self._reason = reason
        self._phase = ShutdownPhase.STOPPING
        logger.warning("Initiating graceful shutdown", reason=reason, in_flight=self._in_flight)

        self._phase = ShutdownPhase.DRAINING
        try:
            await asyncio.wait_for(idle.wait(), timeout=self.drain_timeout_seconds)
        except asyncio.TimeoutError:
            self._abandoned = self._in_flight
            logger.error(
                "Drain timeout, publishes still in flight",
                in_flight=self._in_flight,
                timeout_seconds=self.drain_timeout_seconds,
            )

        self._phase = ShutdownPhase.CLEANUP
        await self._run_cleanup()

        self._phase = ShutdownPhase.COMPLETE
        done.set()
        logger.info("Shutdown complete", elapsed_seconds=round(time.monotonic() - started, 2))

    async def _run_cleanup(self):
        for task in sorted(self._cleanup_tasks, key=lambda t: t.priority):
            try:
                await asyncio.wait_for(task.handler(), timeout=task.timeout_seconds)
            except asyncio.TimeoutError:
                logger.error("Cleanup timeout", task=task.name, timeout_seconds=task.timeout_seconds)
            except Exception as e:
                logger.error("Cleanup failed", task=task.name, error=str(e))
            else:
                logger.info("Cleanup complete", task=task.name)

    async def wait_for_shutdown(self):
        _, done = self._events()
        await done.wait()

    def get_status(self) -> Dict[str, Any]:
        return {
            "phase": self._phase.value,
            "reason": self._reason,
            "in_flight": self._in_flight,
            "abandoned": self._abandoned,
            "cleanup_tasks_registered": len(self._cleanup_tasks),
        }

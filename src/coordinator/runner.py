"""
Recurring runner for the coordinator tick.

Replaces an external cron trigger: ``start`` launches a loop that runs
one tick per period; ``stop`` refuses new ticks at once and lets an
in-flight tick reach its next checkpoint before returning.
"""
import asyncio
import socket
from datetime import datetime
from typing import Callable, Optional

import structlog

from .coordinator import Coordinator, TickResult

logger = structlog.get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-coordinator"


class CoordinatorRunner:
    """Runs ``Coordinator.run_tick`` every ``tick_period_seconds``."""

    def __init__(
        self,
        coordinator: Coordinator,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.coordinator = coordinator
        self.worker_id = worker_id or default_worker_id()
        self.clock = clock
        self.period = coordinator.settings.tick_period_seconds
        self.last_result: Optional[TickResult] = None
        self.ticks_run = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Start the tick loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._tick_loop())
        logger.info("coordinator_runner_started", worker_id=self.worker_id, period_seconds=self.period)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the tick loop.

        Args:
            timeout: Seconds to wait for an in-flight tick; None waits
                until it reaches its checkpoint.
        """
        self.coordinator.request_stop()
        self._stop_event.set()
        if self._loop_task is None:
            return
        try:
            await asyncio.wait_for(self._loop_task, timeout)
        except asyncio.TimeoutError:
            logger.warning("coordinator_runner_stop_timeout", timeout=timeout)
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        logger.info("coordinator_runner_stopped", ticks_run=self.ticks_run)

    async def run_once(self) -> TickResult:
        result = await self.coordinator.run_tick(self.worker_id, self.clock())
        self.last_result = result
        self.ticks_run += 1
        return result

    async def _tick_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("coordinator_tick_crashed", worker_id=self.worker_id)
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.period)
            except asyncio.TimeoutError:
                continue

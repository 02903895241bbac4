"""PeriodicLoop — fixed-interval background loop with graceful stop.

Runs as an asyncio.Task next to the request-handling surface. Each tick awaits
the job to completion, so a stop request lets the in-flight cycle finish. Any
exception raised by a cycle is logged and the loop carries on at the next tick.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


class PeriodicLoop:
    """Call ``job`` every ``interval`` seconds until stopped.

    Usage:
        loop = PeriodicLoop("confirmation_monitor", 30, monitor.run_cycle)
        loop.start()
        ...
        await loop.stop(timeout=30)
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval = interval
        self.job = job
        self.run_immediately = run_immediately
        self.cycles = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._log = logger.bind(loop=name)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        self._log.info("periodic_loop_started", interval=self.interval)

    async def _run(self) -> None:
        if not self.run_immediately and await self._wait_or_stop():
            return

        while not self._stop_event.is_set():
            try:
                await self.job()
            except Exception as exc:
                self._log.error(
                    "periodic_loop_cycle_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
            self.cycles += 1

            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        """Sleep for one interval. Returns True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            return True
        except TimeoutError:
            return False

    async def stop(self, timeout: float = 30.0) -> None:
        """Signal the loop to stop, wait for the current cycle, then force-cancel."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            self._log.warning("periodic_loop_forced_cancel", timeout=timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._log.info("periodic_loop_stopped", cycles=self.cycles)

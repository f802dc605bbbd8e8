"""Fixed-interval background runner for the sweep and stale cleanup."""

import asyncio
import time

from paylink.common.config import settings
from paylink.common.logging import logger


class ReconciliationScheduler:
    """Owns one asyncio task; the blocking sweep runs in a worker thread."""

    def __init__(
        self,
        service,
        interval_seconds: float | None = None,
        cleanup_interval_seconds: float | None = None,
    ) -> None:
        self.service = service
        self.interval_seconds = interval_seconds or settings.reconcile_interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds or settings.cleanup_interval_seconds
        self._task: asyncio.Task | None = None
        self._last_cleanup: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="reconciliation-scheduler")
        logger.info(
            "reconciliation scheduler started interval_seconds=%s cleanup_interval_seconds=%s",
            self.interval_seconds,
            self.cleanup_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("reconciliation scheduler stopped")

    async def tick(self) -> None:
        """Run one sweep, plus cleanup when its interval has elapsed."""

        await asyncio.to_thread(self.service.run_sweep)
        now = time.monotonic()
        if self._last_cleanup is None or now - self._last_cleanup >= self.cleanup_interval_seconds:
            self._last_cleanup = now
            await asyncio.to_thread(self.service.cleanup_stale)

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("reconciliation_loop_error error=%s", exc)
            await asyncio.sleep(self.interval_seconds)

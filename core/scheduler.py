"""
Scheduler Module

Recurring timers that keep health results fresh: a scan that enqueues
recomputation for stale locations and a sweep that purges expired cache
entries.

Author: Development Team
Date: 2025-09-16
"""

import asyncio
import inspect
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Union

from config.logging_config import get_logger
from config.settings import EngineConfig
from core.dispatcher import TaskDispatcher
from models.data_models import Priority, TaskKind
from storage.base_store import PersistenceLayer
from storage.cache_manager import CacheManager
from utils.exceptions import PersistenceError
from utils.helpers import as_utc, utc_now

logger = get_logger(__name__)

TimerCallback = Callable[[], Union[Awaitable[Any], Any]]


class RepeatingTimer:
    """
    Cancellable repeating timer.

    Waits ``interval_seconds`` between ticks. Every tick runs inside its
    own failure boundary, so an exception is logged and the timer keeps
    going. The sleep function is injectable for deterministic tests.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: TimerCallback,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

        self.ticks = 0
        self.failures = 0

    def start(self) -> asyncio.Task:
        """Start ticking and return the handle of the background loop."""
        if self.is_running:
            return self._task

        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"timer:{self.name}")
        logger.info(f"Timer '{self.name}' started (every {self.interval_seconds}s)")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Timer '{self.name}' stopped after {self.ticks} ticks")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        """Run the callback once inside the failure boundary."""
        self.ticks += 1
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(
                f"Timer '{self.name}' tick failed: {e}",
                exc_info=True,
                extra={'error_type': type(e).__name__},
            )

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            await self.tick()


class HealthCheckScheduler:
    """
    Owns the stale-location scan and the cache sweep timers.
    """

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        cache: CacheManager,
        persistence: PersistenceLayer,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or EngineConfig()
        self._dispatcher = dispatcher
        self._cache = cache
        self._persistence = persistence
        self._clock = clock or utc_now

        self.scan_timer = RepeatingTimer(
            "stale-location-scan",
            self.config.health_check_interval_seconds,
            self.scan_stale_locations,
            sleep=sleep,
        )
        self.sweep_timer = RepeatingTimer(
            "cache-sweep",
            self.config.cache_cleanup_interval_seconds,
            self.sweep_cache,
            sleep=sleep,
        )

    def is_stale(self, last_computed_at: Optional[datetime], now: datetime) -> bool:
        if last_computed_at is None:
            return True
        window = timedelta(hours=self.config.staleness_window_hours)
        return now - as_utc(last_computed_at) > window

    async def scan_stale_locations(self) -> List[str]:
        """
        Enqueue a medium-priority health calculation for every known
        location whose last result is missing or outside the staleness
        window. Locations with a calculation already pending or running
        are skipped.

        Returns:
            Ids of the tasks enqueued by this scan.
        """
        location_ids = await self._persistence.list_known_location_ids()
        now = self._clock()
        enqueued: List[str] = []

        for location_id in sorted(location_ids):
            try:
                last_computed_at = await self._persistence.get_last_computed_at(location_id)
            except PersistenceError as e:
                logger.warning(f"Skipping {location_id} in scan: {e}")
                continue

            if not self.is_stale(last_computed_at, now):
                continue

            task_id = self._dispatcher.enqueue_if_idle(
                TaskKind.HEALTH_CALCULATION, location_id, Priority.MEDIUM
            )
            if task_id:
                enqueued.append(task_id)

        logger.info(f"Stale scan checked {len(location_ids)} locations, enqueued {len(enqueued)}")
        return enqueued

    def sweep_cache(self) -> int:
        """Purge expired cache entries and give the dispatcher a chance to advance."""
        removed = self._cache.clear_expired()
        self._dispatcher.pump()
        return removed

    def start(self) -> None:
        self.scan_timer.start()
        self.sweep_timer.start()

    async def stop(self) -> None:
        await self.scan_timer.stop()
        await self.sweep_timer.stop()

    @property
    def is_running(self) -> bool:
        return self.scan_timer.is_running or self.sweep_timer.is_running

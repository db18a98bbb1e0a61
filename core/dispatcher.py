"""
Task Dispatcher Module

Bounded-concurrency executor that drains the task queue on the event loop.
Each task runs as an independent asyncio task with its own failure
boundary and timeout, and releases its slot exactly once.

Author: Development Team
Date: 2025-09-16
"""

import asyncio
import threading
import time
from collections import Counter, OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from config.logging_config import (
    active_tasks_gauge,
    get_logger,
    queue_length_gauge,
    set_logging_context,
    task_duration,
    tasks_total,
)
from core.task_queue import TaskQueue
from models.data_models import Priority, ProcessingTask, TaskKind, TaskStatus
from utils.exceptions import (
    DispatcherError,
    MetricsUnavailableError,
    TaskTimeoutError,
)
from utils.helpers import generate_task_id, utc_now

logger = get_logger(__name__)

TaskHandler = Callable[[ProcessingTask], Awaitable[None]]


class TaskDispatcher:
    """
    Pulls tasks from a TaskQueue and runs at most ``max_concurrent_tasks``
    of them at a time.

    The queue is advanced after every enqueue, after every task completion
    and whenever pump() is called (e.g. by the cache sweep). Enqueueing is
    synchronous and never waits for execution; the pump always runs on the
    event loop, so callers on other threads are safe.
    """

    def __init__(
        self,
        handlers: Dict[TaskKind, TaskHandler],
        max_concurrent_tasks: int = 5,
        task_timeout_seconds: float = 60.0,
        dispatch_delay_seconds: float = 0.1,
        queue: Optional[TaskQueue] = None,
        clock: Optional[Callable[[], datetime]] = None,
        history_size: int = 1000,
    ):
        if max_concurrent_tasks <= 0:
            raise DispatcherError("max_concurrent_tasks must be positive")

        self.max_concurrent_tasks = max_concurrent_tasks
        self.task_timeout_seconds = task_timeout_seconds
        self.dispatch_delay_seconds = dispatch_delay_seconds
        self.history_size = history_size

        self._handlers = dict(handlers)
        self._queue = queue or TaskQueue()
        self._clock = clock or utc_now
        self._lock = threading.Lock()

        self._active: Dict[str, ProcessingTask] = {}
        self._inflight: Counter = Counter()
        self._history: "OrderedDict[str, ProcessingTask]" = OrderedDict()
        self._runners: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

        self.peak_active = 0
        self.completed_count = 0
        self.failed_count = 0

    # Lifecycle

    def start(self) -> None:
        """Bind to the running event loop and dispatch anything already queued."""
        self._loop = asyncio.get_running_loop()
        self._closed = False
        logger.info(f"Dispatcher started (max_concurrent_tasks={self.max_concurrent_tasks})")
        self._schedule_pump()

    async def shutdown(self, cancel_running: bool = True) -> None:
        """
        Stop dispatching, drop queued tasks and settle running ones.

        Args:
            cancel_running: Cancel running tasks instead of letting them finish.
        """
        self._closed = True
        dropped = self._queue.clear()

        runners = list(self._runners)
        if cancel_running:
            for runner in runners:
                runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

        # Runners cancelled before their first step never reach _run's finally.
        for task in self.active_tasks():
            if not task.is_finished:
                task.mark_failed("Task cancelled", self._clock())
            self._release(task, 0.0)

        with self._lock:
            self._inflight.clear()
        queue_length_gauge.set(0)
        logger.info(f"Dispatcher stopped ({dropped} queued tasks dropped, {len(runners)} running settled)")

    @property
    def is_running(self) -> bool:
        return self._loop is not None and not self._closed

    # Submission

    def enqueue(
        self,
        kind: TaskKind,
        target_id: str,
        priority: Priority = Priority.MEDIUM,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Queue a task and return its id immediately.

        Raises:
            DispatcherError: If the dispatcher has been shut down.
        """
        return self._submit(self._build_task(kind, target_id, priority, payload), only_if_idle=False)

    def enqueue_if_idle(
        self,
        kind: TaskKind,
        target_id: str,
        priority: Priority = Priority.MEDIUM,
        payload: Optional[Dict[str, Any]] = None,
        dedupe_scope: Tuple[Any, ...] = (),
    ) -> Optional[str]:
        """
        Queue a task unless one of the same kind is already pending or
        running for the target. ``dedupe_scope`` narrows the match, e.g. to
        one forecast metric and period.

        Returns:
            The new task id, or None when skipped as a duplicate.
        """
        task = self._build_task(kind, target_id, priority, payload)
        task.dedupe_scope = tuple(dedupe_scope)
        return self._submit(task, only_if_idle=True)

    def _build_task(self, kind, target_id, priority, payload) -> ProcessingTask:
        return ProcessingTask(
            id=generate_task_id(),
            kind=TaskKind(kind),
            target_id=target_id,
            priority=Priority(priority),
            payload=payload,
            created_at=self._clock(),
        )

    def _submit(self, task: ProcessingTask, only_if_idle: bool) -> Optional[str]:
        with self._lock:
            if self._closed:
                raise DispatcherError("Dispatcher is shut down")
            if only_if_idle and self._inflight[task.dedupe_key] > 0:
                logger.debug(f"Skipping duplicate {task.kind.value} for {task.target_id}")
                return None
            self._inflight[task.dedupe_key] += 1
            self._queue.enqueue(task)
            queue_length_gauge.set(len(self._queue))

        self._schedule_pump()
        return task.id

    def is_in_flight(self, target_id: str, kind: TaskKind, dedupe_scope: Tuple[Any, ...] = ()) -> bool:
        with self._lock:
            return self._inflight[(target_id, TaskKind(kind)) + tuple(dedupe_scope)] > 0

    # Dispatch

    def pump(self) -> None:
        """Request a dispatch pass (thread-safe, non-blocking)."""
        self._schedule_pump()

    def _schedule_pump(self, delay: float = 0.0) -> None:
        loop = self._loop
        if loop is None or self._closed or loop.is_closed():
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            if delay > 0:
                loop.call_later(delay, self._pump)
            else:
                loop.call_soon(self._pump)
        else:
            loop.call_soon_threadsafe(self._pump)

    def _pump(self) -> None:
        if self._closed:
            return

        with self._lock:
            available = self.max_concurrent_tasks - len(self._active)
            if available <= 0:
                return
            tasks = self._queue.dequeue_many(available)
            now = self._clock()
            for task in tasks:
                task.mark_running(now)
                self._active[task.id] = task
            self.peak_active = max(self.peak_active, len(self._active))
            active_tasks_gauge.set(len(self._active))
            queue_length_gauge.set(len(self._queue))

        for task in tasks:
            runner = self._loop.create_task(self._run(task), name=f"{task.kind.value}:{task.id}")
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)

    async def _run(self, task: ProcessingTask) -> None:
        set_logging_context(task_id=task.id, location_id=task.target_id, task_kind=task.kind.value)
        handler = self._handlers.get(task.kind)
        started = time.perf_counter()

        try:
            if handler is None:
                raise DispatcherError(f"No handler registered for {task.kind.value}")
            logger.debug(f"Task {task.id} started")
            await asyncio.wait_for(handler(task), timeout=self.task_timeout_seconds)
        except asyncio.TimeoutError:
            error = TaskTimeoutError(f"Task exceeded {self.task_timeout_seconds}s timeout")
            task.mark_failed(str(error), self._clock())
            logger.error(f"Task {task.id} timed out", extra={'error_type': 'TaskTimeoutError'})
        except asyncio.CancelledError:
            task.mark_failed("Task cancelled", self._clock())
            logger.warning(f"Task {task.id} cancelled")
            raise
        except MetricsUnavailableError as e:
            task.mark_failed(str(e), self._clock())
            logger.warning(f"Task {task.id} skipped: {e}")
        except Exception as e:
            task.mark_failed(f"{type(e).__name__}: {e}", self._clock())
            logger.error(
                f"Task {task.id} failed: {e}",
                exc_info=True,
                extra={'error_type': type(e).__name__},
            )
        else:
            task.mark_completed(self._clock())
            logger.info(f"Task {task.id} completed")
        finally:
            self._release(task, time.perf_counter() - started)

    def _release(self, task: ProcessingTask, duration_seconds: float) -> None:
        with self._lock:
            self._active.pop(task.id, None)
            key = task.dedupe_key
            self._inflight[key] -= 1
            if self._inflight[key] <= 0:
                del self._inflight[key]

            self._history[task.id] = task
            while len(self._history) > self.history_size:
                self._history.popitem(last=False)

            if task.status == TaskStatus.COMPLETED:
                self.completed_count += 1
            else:
                self.failed_count += 1
            active_tasks_gauge.set(len(self._active))

        tasks_total.labels(kind=task.kind.value, status=task.status.value).inc()
        task_duration.labels(kind=task.kind.value).observe(duration_seconds)
        self._schedule_pump(self.dispatch_delay_seconds)

    # Introspection

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def get_task(self, task_id: str) -> Optional[ProcessingTask]:
        with self._lock:
            task = self._active.get(task_id) or self._history.get(task_id)
        return task or self._queue.get(task_id)

    def active_tasks(self) -> List[ProcessingTask]:
        with self._lock:
            return list(self._active.values())

    def status(self) -> Dict[str, int]:
        with self._lock:
            return {
                "queue_length": len(self._queue),
                "active_count": len(self._active),
                "max_concurrent": self.max_concurrent_tasks,
            }

    async def wait_idle(self, timeout: Optional[float] = None, poll_interval: float = 0.01) -> None:
        """
        Wait until the queue is empty and nothing is running.

        Raises:
            asyncio.TimeoutError: If the dispatcher is still busy after ``timeout``.
        """
        async def _poll():
            while True:
                with self._lock:
                    busy = bool(self._active) or len(self._queue) > 0
                if not busy:
                    return
                await asyncio.sleep(poll_interval)

        await asyncio.wait_for(_poll(), timeout)

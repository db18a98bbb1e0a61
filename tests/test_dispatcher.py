"""Dispatcher concurrency, ordering, isolation and timeout tests."""

import asyncio

import pytest

from core.dispatcher import TaskDispatcher
from models.data_models import Priority, TaskKind, TaskStatus
from utils.exceptions import DispatcherError, MetricsUnavailableError


def _dispatcher(handler, **kwargs) -> TaskDispatcher:
    kwargs.setdefault("dispatch_delay_seconds", 0)
    return TaskDispatcher({TaskKind.HEALTH_CALCULATION: handler}, **kwargs)


class TestDispatchOrdering:
    async def test_priority_scenario_with_single_slot(self):
        order = []

        async def handler(task):
            order.append(task.target_id)

        dispatcher = _dispatcher(handler, max_concurrent_tasks=1)
        dispatcher.start()
        for target, priority in [
            ("low", Priority.LOW),
            ("crit1", Priority.CRITICAL),
            ("med", Priority.MEDIUM),
            ("crit2", Priority.CRITICAL),
        ]:
            dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, target, priority)

        await dispatcher.wait_idle(timeout=2)
        assert order == ["crit1", "crit2", "med", "low"]
        await dispatcher.shutdown()

    async def test_enqueue_does_not_run_task_inline(self):
        started = asyncio.Event()

        async def handler(task):
            started.set()

        dispatcher = _dispatcher(handler)
        dispatcher.start()
        task_id = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-1")

        assert task_id.startswith("task_")
        assert not started.is_set()
        assert dispatcher.get_task(task_id).status == TaskStatus.PENDING

        await dispatcher.wait_idle(timeout=2)
        assert dispatcher.get_task(task_id).status == TaskStatus.COMPLETED
        await dispatcher.shutdown()

    async def test_tasks_queued_before_start_run_after_start(self):
        ran = []

        async def handler(task):
            ran.append(task.target_id)

        dispatcher = _dispatcher(handler)
        dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "early")
        await asyncio.sleep(0.01)
        assert ran == []

        dispatcher.start()
        await dispatcher.wait_idle(timeout=2)
        assert ran == ["early"]
        await dispatcher.shutdown()


class TestConcurrencyBound:
    async def test_active_count_never_exceeds_limit(self):
        running = 0
        observed = []

        async def handler(task):
            nonlocal running
            running += 1
            observed.append(running)
            await asyncio.sleep(0.01)
            running -= 1

        dispatcher = _dispatcher(handler, max_concurrent_tasks=3)
        dispatcher.start()
        for i in range(12):
            dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, f"loc-{i}")
            assert dispatcher.active_count <= 3

        await dispatcher.wait_idle(timeout=5)
        assert max(observed) == 3
        assert dispatcher.peak_active == 3
        assert dispatcher.completed_count == 12
        await dispatcher.shutdown()

    async def test_low_priority_running_task_is_not_preempted(self):
        release = asyncio.Event()
        order = []

        async def handler(task):
            order.append(task.target_id)
            if task.target_id == "slow-low":
                await release.wait()

        dispatcher = _dispatcher(handler, max_concurrent_tasks=1)
        dispatcher.start()
        dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "slow-low", Priority.LOW)
        await asyncio.sleep(0.01)

        dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "urgent", Priority.CRITICAL)
        await asyncio.sleep(0.01)
        assert order == ["slow-low"]
        assert dispatcher.status() == {"queue_length": 1, "active_count": 1, "max_concurrent": 1}

        release.set()
        await dispatcher.wait_idle(timeout=2)
        assert order == ["slow-low", "urgent"]
        await dispatcher.shutdown()


class TestFailureIsolation:
    async def test_failure_does_not_affect_other_tasks(self):
        async def handler(task):
            if task.target_id == "bad":
                raise ValueError("broken metrics")

        dispatcher = _dispatcher(handler, max_concurrent_tasks=1)
        dispatcher.start()
        bad = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "bad", Priority.HIGH)
        good = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "good")

        await dispatcher.wait_idle(timeout=2)
        failed = dispatcher.get_task(bad)
        assert failed.status == TaskStatus.FAILED
        assert "broken metrics" in failed.error_message
        assert failed.failed_at is not None
        assert dispatcher.get_task(good).status == TaskStatus.COMPLETED
        assert dispatcher.active_count == 0
        assert (dispatcher.completed_count, dispatcher.failed_count) == (1, 1)
        await dispatcher.shutdown()

    async def test_missing_metrics_marks_task_failed(self):
        async def handler(task):
            raise MetricsUnavailableError("No metrics available")

        dispatcher = _dispatcher(handler)
        dispatcher.start()
        task_id = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-1")

        await dispatcher.wait_idle(timeout=2)
        assert dispatcher.get_task(task_id).status == TaskStatus.FAILED
        await dispatcher.shutdown()

    async def test_unregistered_kind_fails(self):
        dispatcher = _dispatcher(lambda task: asyncio.sleep(0))
        dispatcher.start()
        task_id = dispatcher.enqueue(TaskKind.ALERT_CHECK, "loc-1")

        await dispatcher.wait_idle(timeout=2)
        task = dispatcher.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert "No handler registered" in task.error_message
        await dispatcher.shutdown()

    async def test_timeout_fails_task_and_frees_slot(self):
        async def handler(task):
            if task.target_id == "hangs":
                await asyncio.sleep(10)

        dispatcher = _dispatcher(handler, max_concurrent_tasks=1, task_timeout_seconds=0.05)
        dispatcher.start()
        hung = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "hangs", Priority.HIGH)
        after = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "after")

        await dispatcher.wait_idle(timeout=2)
        assert dispatcher.get_task(hung).status == TaskStatus.FAILED
        assert "timeout" in dispatcher.get_task(hung).error_message
        assert dispatcher.get_task(after).status == TaskStatus.COMPLETED
        await dispatcher.shutdown()


class TestDeduplication:
    async def test_enqueue_if_idle_skips_in_flight_pair(self):
        release = asyncio.Event()

        async def handler(task):
            await release.wait()

        dispatcher = _dispatcher(handler)
        dispatcher.start()
        first = dispatcher.enqueue_if_idle(TaskKind.HEALTH_CALCULATION, "loc-1")
        assert first is not None
        assert dispatcher.enqueue_if_idle(TaskKind.HEALTH_CALCULATION, "loc-1") is None
        assert dispatcher.enqueue_if_idle(TaskKind.HEALTH_CALCULATION, "loc-2") is not None

        await asyncio.sleep(0.01)
        assert dispatcher.is_in_flight("loc-1", TaskKind.HEALTH_CALCULATION)
        assert dispatcher.enqueue_if_idle(TaskKind.HEALTH_CALCULATION, "loc-1") is None

        release.set()
        await dispatcher.wait_idle(timeout=2)
        assert not dispatcher.is_in_flight("loc-1", TaskKind.HEALTH_CALCULATION)
        assert dispatcher.enqueue_if_idle(TaskKind.HEALTH_CALCULATION, "loc-1") is not None
        await dispatcher.wait_idle(timeout=2)
        await dispatcher.shutdown()

    async def test_scope_narrows_duplicate_match(self):
        dispatcher = _dispatcher(lambda task: asyncio.sleep(0))
        kind = TaskKind.HEALTH_CALCULATION

        assert dispatcher.enqueue_if_idle(kind, "loc-1", dedupe_scope=("revenue", 30)) is not None
        assert dispatcher.enqueue_if_idle(kind, "loc-1", dedupe_scope=("leads", 30)) is not None
        assert dispatcher.enqueue_if_idle(kind, "loc-1", dedupe_scope=("revenue", 30)) is None
        assert dispatcher.is_in_flight("loc-1", kind, ("leads", 30))
        assert not dispatcher.is_in_flight("loc-1", kind)
        assert dispatcher.queue_length == 2

    async def test_plain_enqueue_always_queues(self):
        dispatcher = _dispatcher(lambda task: asyncio.sleep(0))
        ids = {dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-1") for _ in range(3)}
        assert len(ids) == 3
        assert dispatcher.queue_length == 3


class TestLifecycle:
    async def test_history_is_bounded(self):
        dispatcher = _dispatcher(lambda task: asyncio.sleep(0), max_concurrent_tasks=1, history_size=2)
        dispatcher.start()
        ids = [dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, f"loc-{i}") for i in range(4)]

        await dispatcher.wait_idle(timeout=2)
        assert dispatcher.get_task(ids[0]) is None
        assert dispatcher.get_task(ids[-1]).status == TaskStatus.COMPLETED
        await dispatcher.shutdown()

    async def test_shutdown_cancels_running_and_drops_queued(self):
        async def handler(task):
            await asyncio.sleep(10)

        dispatcher = _dispatcher(handler, max_concurrent_tasks=1)
        dispatcher.start()
        running = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-1")
        dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-2")
        await asyncio.sleep(0.01)

        await dispatcher.shutdown()
        assert dispatcher.get_task(running).status == TaskStatus.FAILED
        assert dispatcher.queue_length == 0
        assert dispatcher.active_count == 0
        with pytest.raises(DispatcherError):
            dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-3")

    async def test_shutdown_before_runner_starts_releases_slot(self):
        ran = []

        async def handler(task):
            ran.append(task.target_id)

        dispatcher = _dispatcher(handler, max_concurrent_tasks=1)
        dispatcher.start()
        task_id = dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-1")
        await asyncio.sleep(0)
        assert dispatcher.get_task(task_id).status == TaskStatus.RUNNING

        await dispatcher.shutdown()
        task = dispatcher.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "Task cancelled"
        assert dispatcher.active_count == 0
        assert dispatcher.failed_count == 1
        assert not dispatcher.is_in_flight("loc-1", TaskKind.HEALTH_CALCULATION)

        dispatcher.start()
        dispatcher.enqueue(TaskKind.HEALTH_CALCULATION, "loc-2")
        await dispatcher.wait_idle(timeout=2)
        assert ran == ["loc-2"]
        await dispatcher.shutdown()

    def test_rejects_non_positive_concurrency(self):
        with pytest.raises(DispatcherError):
            _dispatcher(lambda task: asyncio.sleep(0), max_concurrent_tasks=0)

    async def test_enqueue_from_another_thread(self):
        ran = []

        async def handler(task):
            ran.append(task.target_id)

        dispatcher = _dispatcher(handler)
        dispatcher.start()
        await asyncio.to_thread(dispatcher.enqueue, TaskKind.HEALTH_CALCULATION, "threaded")

        await asyncio.sleep(0.01)
        await dispatcher.wait_idle(timeout=2)
        assert ran == ["threaded"]
        await dispatcher.shutdown()

"""Task queue ordering and task state machine tests."""

import random

import pytest

from core.task_queue import TaskQueue
from fakes import START
from models.data_models import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Priority,
    ProcessingTask,
    TaskKind,
    TaskStatus,
)
from utils.exceptions import DuplicateTaskError, TaskQueueError, TaskStateError


def _task(task_id: str, priority: Priority, kind: TaskKind = TaskKind.HEALTH_CALCULATION) -> ProcessingTask:
    return ProcessingTask(id=task_id, kind=kind, target_id=f"loc-{task_id}", priority=priority, created_at=START)


class TestTaskQueueOrdering:
    def test_empty_queue_returns_none(self):
        assert TaskQueue().dequeue_next() is None

    def test_higher_priority_first(self):
        queue = TaskQueue()
        for task_id, priority in [
            ("a", Priority.LOW),
            ("b", Priority.CRITICAL),
            ("c", Priority.MEDIUM),
            ("d", Priority.HIGH),
        ]:
            queue.enqueue(_task(task_id, priority))

        order = [queue.dequeue_next().id for _ in range(4)]
        assert order == ["b", "d", "c", "a"]
        assert queue.dequeue_next() is None

    def test_fifo_within_priority(self):
        queue = TaskQueue()
        for task_id, priority in [
            ("low", Priority.LOW),
            ("crit1", Priority.CRITICAL),
            ("med", Priority.MEDIUM),
            ("crit2", Priority.CRITICAL),
        ]:
            queue.enqueue(_task(task_id, priority))

        assert [queue.dequeue_next().id for _ in range(4)] == ["crit1", "crit2", "med", "low"]

    def test_random_sequences_match_stable_priority_sort(self):
        rng = random.Random(42)
        priorities = list(Priority)
        for _ in range(25):
            queue = TaskQueue()
            tasks = [_task(str(i), rng.choice(priorities)) for i in range(rng.randint(1, 40))]
            for task in tasks:
                queue.enqueue(task)

            expected = [t.id for t in sorted(tasks, key=lambda t: -t.priority.rank)]
            drained = []
            while (task := queue.dequeue_next()) is not None:
                drained.append(task.id)
            assert drained == expected

    def test_interleaved_enqueue_and_dequeue(self):
        queue = TaskQueue()
        queue.enqueue(_task("m1", Priority.MEDIUM))
        queue.enqueue(_task("l1", Priority.LOW))
        assert queue.dequeue_next().id == "m1"

        queue.enqueue(_task("h1", Priority.HIGH))
        queue.enqueue(_task("m2", Priority.MEDIUM))
        assert [queue.dequeue_next().id for _ in range(3)] == ["h1", "m2", "l1"]

    def test_dequeue_many_respects_limit_and_order(self):
        queue = TaskQueue()
        for i, priority in enumerate([Priority.LOW, Priority.HIGH, Priority.MEDIUM]):
            queue.enqueue(_task(str(i), priority))

        batch = queue.dequeue_many(2)
        assert [t.id for t in batch] == ["1", "2"]
        assert len(queue) == 1
        assert queue.dequeue_many(5)[0].id == "0"
        assert queue.dequeue_many(5) == []

    def test_snapshot_does_not_remove(self):
        queue = TaskQueue()
        queue.enqueue(_task("a", Priority.LOW))
        queue.enqueue(_task("b", Priority.HIGH))

        assert [t.id for t in queue.snapshot()] == ["b", "a"]
        assert len(queue) == 2
        assert queue.get("a").id == "a"


class TestTaskQueueValidation:
    def test_task_never_returned_twice(self):
        queue = TaskQueue()
        queue.enqueue(_task("a", Priority.MEDIUM))
        assert queue.dequeue_next().id == "a"
        assert queue.dequeue_next() is None
        assert queue.get("a") is None

    def test_duplicate_id_rejected(self):
        queue = TaskQueue()
        queue.enqueue(_task("a", Priority.MEDIUM))
        with pytest.raises(DuplicateTaskError):
            queue.enqueue(_task("a", Priority.HIGH))

    def test_non_pending_task_rejected(self):
        task = _task("a", Priority.MEDIUM)
        task.mark_running(START)
        with pytest.raises(TaskQueueError):
            TaskQueue().enqueue(task)

    def test_clear_reports_dropped(self):
        queue = TaskQueue()
        queue.enqueue(_task("a", Priority.MEDIUM))
        queue.enqueue(_task("b", Priority.MEDIUM))
        assert queue.clear() == 2
        assert len(queue) == 0


class TestTaskStateMachine:
    def test_forward_path_to_completed(self):
        task = _task("a", Priority.MEDIUM)
        task.mark_running(START)
        task.mark_completed(START)
        assert task.status == TaskStatus.COMPLETED
        assert task.started_at == START
        assert task.is_finished

    def test_failure_records_error(self):
        task = _task("a", Priority.MEDIUM)
        task.mark_running(START)
        task.mark_failed("boom", START)
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "boom"
        assert task.failed_at == START

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_immutable(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()

    def test_cannot_skip_running(self):
        task = _task("a", Priority.MEDIUM)
        with pytest.raises(TaskStateError):
            task.mark_completed(START)

    def test_cannot_return_to_pending_or_rerun(self):
        task = _task("a", Priority.MEDIUM)
        task.mark_running(START)
        task.mark_completed(START)
        with pytest.raises(TaskStateError):
            task.mark_running(START)
        with pytest.raises(TaskStateError):
            task.mark_failed("late", START)

    def test_dedupe_key_is_target_and_kind(self):
        task = _task("a", Priority.MEDIUM, TaskKind.TREND_ANALYSIS)
        assert task.dedupe_key == ("loc-a", TaskKind.TREND_ANALYSIS)
        task.dedupe_scope = ("revenue", 30)
        assert task.dedupe_key == ("loc-a", TaskKind.TREND_ANALYSIS, "revenue", 30)

    def test_priority_ranks_are_totally_ordered(self):
        ranks = [p.rank for p in (Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

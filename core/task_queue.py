"""
Task Queue Module

Priority queue of pending processing tasks. Tasks are ordered by
priority (critical first) and, within a priority, by insertion order.

Author: Development Team
Date: 2025-09-16
"""

import heapq
import itertools
import logging
import threading
from typing import Dict, List, Optional, Tuple

from models.data_models import ProcessingTask, TaskStatus
from utils.exceptions import DuplicateTaskError, TaskQueueError

logger = logging.getLogger(__name__)


class TaskQueue:
    """
    Thread-safe priority queue backed by a binary heap.

    Heap entries are ``(-rank, sequence, task_id)``; the monotonically
    increasing sequence breaks ties in FIFO order. Not persisted.
    """

    def __init__(self):
        self._heap: List[Tuple[int, int, str]] = []
        self._tasks: Dict[str, ProcessingTask] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def enqueue(self, task: ProcessingTask) -> str:
        """
        Add a pending task to the queue.

        Args:
            task: Task in pending status.

        Returns:
            The task id.

        Raises:
            TaskQueueError: If the task is not pending.
            DuplicateTaskError: If a task with the same id is already queued.
        """
        if task.status != TaskStatus.PENDING:
            raise TaskQueueError(f"Only pending tasks can be queued, got {task.status.value}")

        with self._lock:
            if task.id in self._tasks:
                raise DuplicateTaskError(f"Task {task.id} is already queued")
            self._tasks[task.id] = task
            heapq.heappush(self._heap, (-task.priority.rank, next(self._sequence), task.id))

        logger.debug(f"Queued task {task.id} ({task.kind.value}, {task.priority.value}) for {task.target_id}")
        return task.id

    def dequeue_next(self) -> Optional[ProcessingTask]:
        """
        Remove and return the highest-priority pending task.

        Returns:
            The next task, or None when the queue is empty.
        """
        with self._lock:
            if not self._heap:
                return None
            _, _, task_id = heapq.heappop(self._heap)
            return self._tasks.pop(task_id)

    def dequeue_many(self, limit: int) -> List[ProcessingTask]:
        """Dequeue up to ``limit`` tasks in priority order as one atomic step."""
        tasks: List[ProcessingTask] = []
        with self._lock:
            while self._heap and len(tasks) < limit:
                _, _, task_id = heapq.heappop(self._heap)
                tasks.append(self._tasks.pop(task_id))
        return tasks

    def get(self, task_id: str) -> Optional[ProcessingTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def snapshot(self) -> List[ProcessingTask]:
        """Pending tasks in dequeue order, without removing them."""
        with self._lock:
            ordered = sorted(self._heap)
            return [self._tasks[task_id] for _, _, task_id in ordered]

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._tasks)
            self._heap.clear()
            self._tasks.clear()
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)

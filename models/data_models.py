"""
Core Data Models

Includes processing tasks, task kinds, statuses, priority enumerations
and cache entries. These models represent engine-level entities.

Author: GG
Date: 2025-09-16
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import BaseModel, Field

from utils.exceptions import TaskStateError


class TaskKind(str, Enum):
    HEALTH_CALCULATION = "health_calculation"
    TREND_ANALYSIS = "trend_analysis"
    FORECAST_UPDATE = "forecast_update"
    ALERT_CHECK = "alert_check"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_STATES: Set[TaskStatus] = {TaskStatus.COMPLETED, TaskStatus.FAILED}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: Dict[Priority, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class ProcessingTask(BaseModel):
    id: str
    kind: TaskKind
    target_id: str
    priority: Priority = Priority.MEDIUM
    payload: Optional[Dict[str, Any]] = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    dedupe_scope: Tuple[Any, ...] = ()

    @property
    def dedupe_key(self) -> tuple:
        return (self.target_id, self.kind) + tuple(self.dedupe_scope)

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATES

    def _advance(self, new_status: TaskStatus) -> None:
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise TaskStateError(
                f"Task {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def mark_running(self, at: datetime) -> None:
        self._advance(TaskStatus.RUNNING)
        self.started_at = at

    def mark_completed(self, at: datetime) -> None:
        self._advance(TaskStatus.COMPLETED)
        self.completed_at = at

    def mark_failed(self, error: str, at: datetime) -> None:
        self._advance(TaskStatus.FAILED)
        self.error_message = error
        self.failed_at = at

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


class CacheEntry(BaseModel):
    key: str
    value: Any
    expires_at: datetime
    last_accessed_at: datetime
    access_count: int = Field(default=0, ge=0)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

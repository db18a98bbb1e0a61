"""
Base Store Module

Abstract interface of the persistence layer the engine reads "last
computed" timestamps from and writes results and alerts to.

Author: Development Team
Date: 2025-09-16
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from models.scoring_models import Alert, HealthScoreResult


class PersistenceLayer(ABC):
    """
    Abstract Base Class for result stores.

    Implementations raise PersistenceError on storage failures.
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    async def initialize(self) -> None:
        """Prepare the store (e.g., create tables)."""

    async def close(self) -> None:
        """Release connections."""

    async def health_check(self) -> dict:
        return {"status": "healthy"}

    @abstractmethod
    async def get_last_computed_at(self, location_id: str) -> Optional[datetime]:
        """Timestamp of the latest health result, or None if never computed."""

    @abstractmethod
    async def upsert_health_result(self, location_id: str, result: HealthScoreResult, timestamp: datetime) -> None:
        pass

    @abstractmethod
    async def get_history(self, location_id: str, limit: int) -> List[Tuple[float, datetime]]:
        """Up to ``limit`` most recent (score, timestamp) pairs, oldest first."""

    @abstractmethod
    async def get_metric_history(self, location_id: str, metric: str, limit: int) -> List[float]:
        """Up to ``limit`` most recent values of a key metric, oldest first."""

    @abstractmethod
    async def get_latest_result(self, location_id: str) -> Optional[HealthScoreResult]:
        pass

    @abstractmethod
    async def get_recent_scores(self, since: datetime) -> Dict[str, float]:
        """Latest overall score per location calculated at or after ``since``."""

    @abstractmethod
    async def insert_alert(self, alert: Alert) -> None:
        pass

    @abstractmethod
    async def list_known_location_ids(self) -> Set[str]:
        pass

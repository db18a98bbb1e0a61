"""
StateManager - Durable Result Store for the Location Health Engine

Features:
- Async persistence of health results and alerts (SQLite/PostgreSQL via SQLAlchemy)
- Score and key-metric history for trend analysis and forecasting
- Tracked location registry used by the periodic stale scan
- Every storage failure surfaces as PersistenceError

Author: Development Team
Date: 2025-09-16
"""

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from sqlalchemy import func, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.scoring_models import Alert, HealthScoreResult
from storage.base_store import PersistenceLayer
from storage.db_models import (
    KEY_METRIC_COLUMNS,
    Base,
    HealthAlertRecord,
    HealthScoreRecord,
    TrackedLocation,
)
from utils.exceptions import PersistenceError
from utils.helpers import as_utc, utc_now


class StateManager(PersistenceLayer):
    """
    StateManager - SQLAlchemy implementation of the persistence layer.

    No session outlives a single call, so no connection is held between
    awaits of different callers.
    """

    def __init__(self, database_url: str = "sqlite+aiosqlite:///data/health_engine.db", echo: bool = False):
        """
        Initialize StateManager with a DB connection.

        database_url: SQLAlchemy async connection string.
        echo: Echo SQL statements.
        """
        super().__init__()
        self.database_url = database_url
        self.engine = create_async_engine(database_url, future=True, echo=echo)
        self.SessionLocal = sessionmaker(
            self.engine, expire_on_commit=False, class_=AsyncSession
        )

    async def initialize(self) -> None:
        """Create the database directory (SQLite) and tables."""
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database initialization failed: {e}") from e
        self.logger.info("StateManager initialized")

    async def close(self) -> None:
        await self.engine.dispose()
        self.logger.info("StateManager closed all connections.")

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self.SessionLocal() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                self.logger.error(f"{operation} failed: {e}", extra={'error_type': 'PersistenceError'})
                raise PersistenceError(f"{operation} failed: {e}") from e

    # Location registry

    async def register_location(self, location_id: str, name: Optional[str] = None) -> None:
        """Add a location to the set scanned for staleness (idempotent)."""
        async with self._session("register_location") as session:
            existing = await session.get(TrackedLocation, location_id)
            if existing is None:
                session.add(TrackedLocation(location_id=location_id, name=name, created_at=utc_now()))
            elif name:
                existing.name = name
            await session.commit()

    async def list_known_location_ids(self) -> Set[str]:
        async with self._session("list_known_location_ids") as session:
            tracked = await session.scalars(select(TrackedLocation.location_id))
            scored = await session.scalars(select(HealthScoreRecord.location_id).distinct())
            return set(tracked.all()) | set(scored.all())

    # Health results

    async def get_last_computed_at(self, location_id: str) -> Optional[datetime]:
        async with self._session("get_last_computed_at") as session:
            value = await session.scalar(
                select(func.max(HealthScoreRecord.calculated_at))
                .where(HealthScoreRecord.location_id == location_id)
            )
        return as_utc(value) if value is not None else None

    async def upsert_health_result(self, location_id: str, result: HealthScoreResult, timestamp: datetime) -> None:
        """
        Store a computed result. A second write for the same location and
        timestamp replaces the first.
        """
        fields = self._record_fields(result)
        async with self._session("upsert_health_result") as session:
            record = await session.scalar(
                select(HealthScoreRecord).where(
                    HealthScoreRecord.location_id == location_id,
                    HealthScoreRecord.calculated_at == timestamp,
                )
            )
            if record is None:
                session.add(HealthScoreRecord(location_id=location_id, calculated_at=timestamp, **fields))
            else:
                for name, value in fields.items():
                    setattr(record, name, value)
            await session.commit()
        self.logger.debug(f"Health result stored for {location_id} ({result.overall_score})")

    @staticmethod
    def _record_fields(result: HealthScoreResult) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "overall_score": result.overall_score,
            "health_status": result.health_status.value,
            "component_scores": dict(result.component_scores),
            "confidence": result.confidence,
            "score_change": result.score_change,
            "score_change_velocity": result.score_change_velocity,
            "benchmark_percentile": result.benchmark_percentile,
            "primary_issue": result.primary_issue,
            "issues": {
                "secondary": list(result.secondary_issues),
                "critical_flags": list(result.critical_flags),
            },
            "risk_score": result.risk_score,
            "growth_opportunity": result.growth_opportunity,
            "data_freshness": result.data_freshness,
            "result": result.model_dump(mode="json"),
        }
        for column in KEY_METRIC_COLUMNS:
            fields[column] = result.key_metrics.get(column)
        return fields

    async def get_history(self, location_id: str, limit: int) -> List[Tuple[float, datetime]]:
        async with self._session("get_history") as session:
            rows = await session.execute(
                select(HealthScoreRecord.overall_score, HealthScoreRecord.calculated_at)
                .where(HealthScoreRecord.location_id == location_id)
                .order_by(HealthScoreRecord.calculated_at.desc())
                .limit(limit)
            )
            history = [(score, as_utc(at)) for score, at in rows.all()]
        history.reverse()
        return history

    async def get_metric_history(self, location_id: str, metric: str, limit: int) -> List[float]:
        if metric not in KEY_METRIC_COLUMNS:
            raise PersistenceError(f"No history is kept for metric '{metric}'")

        column = getattr(HealthScoreRecord, metric)
        async with self._session("get_metric_history") as session:
            values = await session.scalars(
                select(column)
                .where(HealthScoreRecord.location_id == location_id, column.is_not(None))
                .order_by(HealthScoreRecord.calculated_at.desc())
                .limit(limit)
            )
            history = [float(value) for value in values.all()]
        history.reverse()
        return history

    async def get_latest_result(self, location_id: str) -> Optional[HealthScoreResult]:
        async with self._session("get_latest_result") as session:
            payload = await session.scalar(
                select(HealthScoreRecord.result)
                .where(HealthScoreRecord.location_id == location_id)
                .order_by(HealthScoreRecord.calculated_at.desc())
                .limit(1)
            )
        if payload is None:
            return None
        return HealthScoreResult.model_validate(payload)

    async def get_recent_scores(self, since: datetime) -> Dict[str, float]:
        async with self._session("get_recent_scores") as session:
            rows = await session.execute(
                select(HealthScoreRecord.location_id, HealthScoreRecord.overall_score)
                .where(HealthScoreRecord.calculated_at >= since)
                .order_by(HealthScoreRecord.calculated_at.asc())
            )
            # Later rows overwrite earlier ones, leaving the latest score per location
            return {location_id: score for location_id, score in rows.all()}

    # Alerts

    async def insert_alert(self, alert: Alert) -> None:
        async with self._session("insert_alert") as session:
            session.add(
                HealthAlertRecord(
                    location_id=alert.target_id,
                    alert_type=alert.alert_type,
                    severity=alert.severity.value,
                    message=alert.message,
                    metric=alert.metric,
                    value=alert.value,
                    threshold=alert.threshold,
                    created_at=alert.created_at,
                )
            )
            await session.commit()
        self.logger.info(f"Alert stored for {alert.target_id}: {alert.alert_type} ({alert.severity.value})")

    async def list_alerts(self, location_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self._session("list_alerts") as session:
            records = await session.scalars(
                select(HealthAlertRecord)
                .where(HealthAlertRecord.location_id == location_id)
                .order_by(HealthAlertRecord.created_at.desc(), HealthAlertRecord.id.desc())
                .limit(limit)
            )
            return [
                {
                    "alert_type": record.alert_type,
                    "severity": record.severity,
                    "message": record.message,
                    "metric": record.metric,
                    "value": record.value,
                    "threshold": record.threshold,
                    "created_at": as_utc(record.created_at),
                }
                for record in records.all()
            ]

    # Utility

    async def get_metrics(self) -> Dict[str, Any]:
        """Return simple row counts for monitoring."""
        async with self._session("get_metrics") as session:
            scores = await session.scalar(select(func.count()).select_from(HealthScoreRecord))
            alerts = await session.scalar(select(func.count()).select_from(HealthAlertRecord))
        return {"stored_health_scores": scores or 0, "stored_alerts": alerts or 0}

    async def health_check(self) -> Dict[str, Any]:
        """
        Health check for the result store.
        """
        result = {"status": "healthy", "database": None}
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            result["database"] = "OK"
        except SQLAlchemyError as e:
            result["status"] = "degraded"
            result["database"] = str(e)
        return result


# Export usage
__all__ = ["StateManager"]

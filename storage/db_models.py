"""
Database Models

ORM tables for tracked locations, computed health scores and alerts.

Author: Development Team
Date: 2025-09-16
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Key metrics kept as dedicated columns for history queries and dashboards
KEY_METRIC_COLUMNS = (
    "current_revenue",
    "total_leads",
    "total_deals",
    "revenue_achievement_rate",
    "lead_change_percentage",
)


class Base(DeclarativeBase):
    pass


class TrackedLocation(Base):
    __tablename__ = "tracked_locations"

    location_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class HealthScoreRecord(Base):
    """One row per health computation; the newest row is the current score."""

    __tablename__ = "health_scores"
    __table_args__ = (
        UniqueConstraint("location_id", "calculated_at", name="uq_health_scores_location_time"),
        Index("ix_health_scores_location_time", "location_id", "calculated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    health_status: Mapped[str] = mapped_column(String(16), nullable=False)
    component_scores: Mapped[dict] = mapped_column(JSON, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    score_change: Mapped[float] = mapped_column(Float, default=0.0)
    score_change_velocity: Mapped[float] = mapped_column(Float, default=0.0)
    benchmark_percentile: Mapped[int] = mapped_column(Integer, default=50)

    primary_issue: Mapped[Optional[str]] = mapped_column(Text)
    issues: Mapped[dict] = mapped_column(JSON, nullable=False)
    risk_score: Mapped[float] = mapped_column(Float, nullable=False)
    growth_opportunity: Mapped[float] = mapped_column(Float, nullable=False)
    data_freshness: Mapped[float] = mapped_column(Float, default=100.0)

    current_revenue: Mapped[Optional[float]] = mapped_column(Float)
    total_leads: Mapped[Optional[float]] = mapped_column(Float)
    total_deals: Mapped[Optional[float]] = mapped_column(Float)
    revenue_achievement_rate: Mapped[Optional[float]] = mapped_column(Float)
    lead_change_percentage: Mapped[Optional[float]] = mapped_column(Float)

    # Full serialized HealthScoreResult
    result: Mapped[dict] = mapped_column(JSON, nullable=False)


class HealthAlertRecord(Base):
    __tablename__ = "health_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metric: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

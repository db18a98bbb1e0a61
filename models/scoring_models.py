"""
Scoring Models

Defines the raw metric record consumed by the scoring pipeline and the
result models it produces: health scores, trends, forecasts and alerts.

Author: Development Team
Date: 2025-09-16
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class TrendClassification(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


class ForecastMethod(str, Enum):
    LINEAR_REGRESSION = "linear_regression"
    BASELINE_ESTIMATION = "baseline_estimation"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RawMetrics(BaseModel):
    """Flat record of named numeric metrics for one location."""

    location_id: str
    values: Dict[str, float] = Field(default_factory=dict)
    data_age_hours: float = 0.0

    def get(self, name: str, default: Optional[float] = None) -> Optional[float]:
        return self.values.get(name, default)


class HealthScoreResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    location_id: str
    overall_score: float = Field(ge=0, le=100)
    health_status: HealthStatus
    component_scores: Dict[str, float]
    confidence: float
    primary_issue: Optional[str] = None
    secondary_issues: List[str] = Field(default_factory=list)
    critical_flags: List[str] = Field(default_factory=list)
    risk_score: float
    growth_opportunity: float
    previous_score: Optional[float] = None
    score_change: float = 0.0
    score_change_velocity: float = 0.0
    benchmark_percentile: int = 50
    data_freshness: float = 100.0
    key_metrics: Dict[str, float] = Field(default_factory=dict)
    calculated_at: datetime
    calculation_ms: float = 0.0

    def alert_snapshot(self) -> Dict[str, float]:
        """Metric values alert rules are evaluated against."""
        snapshot = dict(self.key_metrics)
        snapshot["overall_score"] = self.overall_score
        snapshot["score_change"] = self.score_change
        snapshot["risk_score"] = self.risk_score
        return snapshot


class TrendResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    trend: TrendClassification
    change: float = 0.0
    recent_average: Optional[float] = None
    previous_average: Optional[float] = None
    data_points: int = 0


class ForecastResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    forecast: List[int]
    predicted_growth: float
    confidence: int
    risk_score: int
    method: ForecastMethod
    data_points: int
    period: int
    metric_type: str
    best_case: List[int]
    worst_case: List[int]
    insights: List[str] = Field(default_factory=list)

    @property
    def is_estimate(self) -> bool:
        return self.method == ForecastMethod.BASELINE_ESTIMATION


class Alert(BaseModel):
    target_id: str
    alert_type: str
    severity: AlertSeverity
    message: str
    metric: str
    value: float
    threshold: float
    created_at: datetime

"""
Health Scoring Engine

Turns a location's raw metrics into a HealthScoreResult: per-metric
scores on piecewise-linear curves, six weighted component scores, an
overall score with status bucket, issues, risk, growth opportunity and
the change against the previous result.

Pure computation, no I/O.

Author: Development Team
Date: 2025-09-16
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from config.settings import ScoringConfig
from models.scoring_models import HealthScoreResult, HealthStatus, RawMetrics
from utils.exceptions import ScoringError
from utils.helpers import clamp, round_half_up, round_to, utc_now

MetricScorer = Callable[[float], float]

NEUTRAL_METRIC_SCORE = 50.0
DEFAULT_MARKET_POTENTIAL = 50.0

# Metrics copied onto the result for alerting, history and display
KEY_METRICS = (
    "current_revenue",
    "total_leads",
    "total_deals",
    "revenue_achievement_rate",
    "lead_change_percentage",
    "conversion_rate",
)


def score_revenue_achievement(v: float) -> float:
    if v >= 100:
        return 100
    if v >= 80:
        return 80 + (v - 80) * 0.5
    if v >= 60:
        return 60 + (v - 60) * 0.33
    return max(0, v * 0.5)


def score_profit_margin(v: float) -> float:
    if v >= 20:
        return 100
    if v >= 15:
        return 75 + (v - 15) * 10
    if v >= 10:
        return 50 + (v - 10) * 5
    return max(0, v * 2.5)


def score_lead_conversion(v: float) -> float:
    if v >= 5:
        return 100
    if v >= 3:
        return 60 + (v - 3) * 10
    if v >= 1:
        return 20 + (v - 1) * 16.67
    return max(0, v * 20)


def score_response_time(minutes: float) -> float:
    if minutes <= 60:
        return 100
    if minutes <= 120:
        return 75 - (minutes - 60) * 0.25
    if minutes <= 240:
        return 50 - (minutes - 120) * 0.125
    return max(0, 25 - (minutes - 240) * 0.05)


def score_show_rate(v: float) -> float:
    if v >= 80:
        return 100
    if v >= 70:
        return 75 + (v - 70) * 2.5
    if v >= 50:
        return 50 + (v - 50) * 0.5
    return max(0, v * 0.5)


def score_agent_utilization(v: float) -> float:
    if v >= 80:
        return 100
    if v >= 70:
        return 80 + (v - 70) * 2
    if v >= 50:
        return 50 + (v - 50) * 0.6
    return max(0, v * 0.5)


def score_training_completion(v: float) -> float:
    if v >= 95:
        return 100
    if v >= 90:
        return 80 + (v - 90) * 4
    if v >= 75:
        return 50 + (v - 75) * 0.8
    return max(0, v * 0.5)


def score_client_satisfaction(rating: float) -> float:
    """Rating on a 1-5 scale."""
    if rating >= 4.5:
        return 100
    if rating >= 4.0:
        return 70 + (rating - 4.0) * 60
    if rating >= 3.5:
        return 40 + (rating - 3.5) * 60
    return max(0, (rating - 1) * 22.22)


def score_net_promoter(nps: float) -> float:
    if nps >= 50:
        return 100
    if nps >= 30:
        return 70 + (nps - 30) * 1.5
    if nps >= 0:
        return 40 + nps
    return max(0, 40 + nps * 0.5)


def score_market_absorption(months: float) -> float:
    """Months of inventory; lower is better."""
    if months <= 2:
        return 100
    if months <= 4:
        return 80 - (months - 2) * 10
    if months <= 8:
        return 50 - (months - 4) * 3.75
    return max(0, 25 - (months - 8) * 2.5)


def score_days_on_market(days: float) -> float:
    if days <= 30:
        return 100
    if days <= 60:
        return 80 - (days - 30) * 0.67
    if days <= 120:
        return 40 - (days - 60) * 0.25
    return max(0, 15 - (days - 120) * 0.083)


def score_system_adoption(v: float) -> float:
    if v >= 90:
        return 100
    if v >= 80:
        return 75 + (v - 80) * 2.5
    if v >= 60:
        return 50 + (v - 60) * 0.625
    return max(0, v * 0.5)


def score_data_quality(v: float) -> float:
    if v >= 98:
        return 100
    if v >= 95:
        return 80 + (v - 95) * 4
    if v >= 90:
        return 60 + (v - 90) * 2
    return max(0, v * 0.5)


METRIC_SCORERS: Dict[str, MetricScorer] = {
    "revenue_achievement_rate": score_revenue_achievement,
    "profit_margin_health": score_profit_margin,
    "lead_to_deal_conversion": score_lead_conversion,
    "response_time_performance": score_response_time,
    "appointment_show_rate": score_show_rate,
    "agent_utilization_rate": score_agent_utilization,
    "training_completion_rate": score_training_completion,
    "client_satisfaction_score": score_client_satisfaction,
    "net_promoter_score": score_net_promoter,
    "market_absorption_rate": score_market_absorption,
    "days_on_market_avg": score_days_on_market,
    "system_adoption_rate": score_system_adoption,
    "data_quality_score": score_data_quality,
}

COMPONENT_METRICS: Dict[str, Dict[str, float]] = {
    "financial": {
        "revenue_achievement_rate": 0.4,
        "profit_margin_health": 0.3,
        "commission_velocity_days": 0.15,
        "cash_flow_predictability": 0.15,
    },
    "operational": {
        "lead_to_deal_conversion": 0.3,
        "response_time_performance": 0.25,
        "appointment_show_rate": 0.2,
        "pipeline_health_score": 0.15,
        "follow_up_completion_rate": 0.1,
    },
    "team": {
        "agent_utilization_rate": 0.35,
        "agent_productivity_index": 0.25,
        "training_completion_rate": 0.2,
        "team_collaboration_score": 0.15,
        "performance_consistency": 0.05,
    },
    "customer": {
        "client_satisfaction_score": 0.4,
        "net_promoter_score": 0.3,
        "client_retention_rate": 0.2,
        "communication_quality": 0.1,
    },
    "market": {
        "market_absorption_rate": 0.4,
        "days_on_market_avg": 0.3,
        "inventory_health_score": 0.2,
        "competitive_position": 0.1,
    },
    "technology": {
        "system_adoption_rate": 0.4,
        "data_quality_score": 0.3,
        "integration_health_score": 0.2,
        "automation_effectiveness": 0.1,
    },
}


@dataclass
class MetricIssue:
    metric: str
    score: float

    @property
    def description(self) -> str:
        return f"{self.metric.replace('_', ' ')}: {round_half_up(self.score)}%"


@dataclass
class ComponentScore:
    score: float
    confidence: float
    metric_scores: Dict[str, float] = field(default_factory=dict)


def classify_health_status(score: float, config: ScoringConfig) -> HealthStatus:
    if score >= config.healthy_threshold:
        return HealthStatus.HEALTHY
    if score >= config.warning_threshold:
        return HealthStatus.WARNING
    return HealthStatus.CRITICAL


def calculate_score_change(current: float, previous: Optional[float]) -> float:
    """Percentage change against the previous score; 0 without a usable previous score."""
    if not previous:
        return 0.0
    return (current - previous) / previous * 100


def calculate_change_velocity(change: float, previous_at: Optional[datetime], now: datetime) -> float:
    """Score change per day since the previous result, counting at least one day."""
    if previous_at is None:
        return 0.0
    days = (now - previous_at).total_seconds() / 86400
    return change / max(1.0, days)


def calculate_data_freshness(data_age_hours: float) -> float:
    hours = max(0.0, data_age_hours)
    if hours <= 1:
        return 100.0
    if hours <= 4:
        return 90 - (hours - 1) * 5
    if hours <= 24:
        return 80 - (hours - 4) * 2
    if hours <= 72:
        return 50 - (hours - 24) * 0.5
    return max(0.0, 25 - (hours - 72) * 0.1)


def calculate_benchmark_percentile(score: float, peer_scores: Iterable[float]) -> int:
    """
    Share of peer scores at or below ``score``, as a whole percentage.

    Returns 50 when there are no peers to compare against.
    """
    scores = sorted(peer_scores)
    if not scores:
        return 50

    rank = 0
    for peer in scores:
        if score >= peer:
            rank += 1
        else:
            break
    return round_half_up(rank / len(scores) * 100)


class HealthScorer:
    """
    Computes health scores from raw metrics using the configured weights.

    Metric curves and the component layout can be replaced for tests or
    for other verticals; component weights come from ScoringConfig.
    """

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        metric_scorers: Optional[Dict[str, MetricScorer]] = None,
        component_metrics: Optional[Dict[str, Dict[str, float]]] = None,
    ):
        self.config = config or ScoringConfig()
        self.metric_scorers = metric_scorers if metric_scorers is not None else METRIC_SCORERS
        self.component_metrics = component_metrics if component_metrics is not None else COMPONENT_METRICS

        unknown = set(self.config.component_weights) - set(self.component_metrics)
        if unknown:
            raise ScoringError(f"Weighted components without metric definitions: {sorted(unknown)}")

    def score_metric(self, name: str, value: float) -> float:
        scorer = self.metric_scorers.get(name)
        if scorer is None:
            return NEUTRAL_METRIC_SCORE
        return scorer(value)

    def score_component(self, component: str, raw: RawMetrics) -> ComponentScore:
        """
        Weighted average of the component's metrics present in ``raw``.

        Missing or non-finite metrics are skipped and lower the confidence;
        a component with no data scores 0.
        """
        metrics = self.component_metrics[component]
        total = 0.0
        total_weight = 0.0
        metric_scores: Dict[str, float] = {}

        for name, weight in metrics.items():
            value = raw.get(name)
            if value is None or not math.isfinite(value):
                continue
            score = self.score_metric(name, value)
            metric_scores[name] = score
            total += score * weight
            total_weight += weight

        score = total / total_weight if total_weight > 0 else 0.0
        confidence = len(metric_scores) / len(metrics) if metrics else 0.0
        return ComponentScore(score=score, confidence=confidence, metric_scores=metric_scores)

    def calculate(
        self,
        location_id: str,
        raw: RawMetrics,
        previous: Optional[HealthScoreResult] = None,
        now: Optional[datetime] = None,
        peer_scores: Optional[Iterable[float]] = None,
    ) -> HealthScoreResult:
        """
        Compute a fresh health result for a location.

        Args:
            location_id: Location being scored.
            raw: Raw metrics for the location.
            previous: Most recent persisted result, if any.
            now: Calculation timestamp.
            peer_scores: Recent overall scores of all locations.

        Returns:
            New immutable HealthScoreResult.

        Raises:
            ScoringError: If the weight table is unusable.
        """
        started = time.perf_counter()
        now = now or utc_now()
        weights = self.config.component_weights
        total_weight = sum(weights.values())
        if total_weight <= 0:
            raise ScoringError("Component weights must sum to a positive value")

        component_scores: Dict[str, float] = {}
        issues: List[MetricIssue] = []
        weighted_score = 0.0
        weighted_confidence = 0.0

        for component, weight in weights.items():
            result = self.score_component(component, raw)
            component_scores[component] = round_to(result.score)
            weighted_score += result.score * weight
            weighted_confidence += result.confidence * weight
            issues.extend(
                MetricIssue(name, score)
                for name, score in result.metric_scores.items()
                if score < self.config.issue_threshold
            )

        overall = clamp(weighted_score / total_weight, 0, 100)
        issues.sort(key=lambda issue: issue.score)
        descriptions = [issue.description for issue in issues]

        risk = clamp(100 - overall + (raw.get("revenue_volatility") or 0) * 0.2, 0, 100)
        market_potential = raw.get("market_potential")
        if market_potential is None:
            market_potential = DEFAULT_MARKET_POTENTIAL
        growth = clamp((100 - overall) * 0.7 + market_potential * 0.3, 0, 100)

        previous_score = previous.overall_score if previous else None
        change = calculate_score_change(overall, previous_score)
        velocity = calculate_change_velocity(change, previous.calculated_at if previous else None, now)

        return HealthScoreResult(
            location_id=location_id,
            overall_score=round_to(overall),
            health_status=classify_health_status(overall, self.config),
            component_scores=component_scores,
            confidence=round_to(weighted_confidence / total_weight),
            primary_issue=descriptions[0] if descriptions else None,
            secondary_issues=descriptions[1:],
            critical_flags=[
                issue.description for issue in issues if issue.score < self.config.critical_flag_threshold
            ],
            risk_score=round_to(risk),
            growth_opportunity=round_to(growth),
            previous_score=previous_score,
            score_change=round_to(change),
            score_change_velocity=round_to(velocity),
            benchmark_percentile=calculate_benchmark_percentile(overall, peer_scores or []),
            data_freshness=round_to(calculate_data_freshness(raw.data_age_hours)),
            key_metrics={name: raw.values[name] for name in KEY_METRICS if name in raw.values},
            calculated_at=now,
            calculation_ms=round_to((time.perf_counter() - started) * 1000),
        )

"""
Alert Emitter Module

Evaluates an ordered list of alert rules against a health result and
writes every raised alert to the persistence layer.

Author: Development Team
Date: 2025-09-16
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Mapping, Optional, Union

from config.logging_config import get_logger
from models.scoring_models import Alert, AlertSeverity, HealthScoreResult
from storage.base_store import PersistenceLayer
from utils.helpers import utc_now

logger = get_logger(__name__)

Severity = Union[AlertSeverity, Callable[[float], AlertSeverity]]


@dataclass(frozen=True)
class AlertRule:
    """
    Raises an alert when ``predicate`` holds for the value of ``metric``.

    ``severity`` may be fixed or computed from the value; ``message``
    formats the value into the alert text.
    """

    name: str
    alert_type: str
    metric: str
    threshold: float
    predicate: Callable[[float, float], bool]
    severity: Severity
    message: Callable[[float], str]

    def evaluate(self, target_id: str, metrics: Mapping[str, float], now: datetime) -> Optional[Alert]:
        value = metrics.get(self.metric)
        if value is None or not self.predicate(value, self.threshold):
            return None

        severity = self.severity(value) if callable(self.severity) else self.severity
        return Alert(
            target_id=target_id,
            alert_type=self.alert_type,
            severity=severity,
            message=self.message(value),
            metric=self.metric,
            value=value,
            threshold=self.threshold,
            created_at=now,
        )


def below(value: float, threshold: float) -> bool:
    return value < threshold


DEFAULT_ALERT_RULES: List[AlertRule] = [
    AlertRule(
        name="revenue_below_target",
        alert_type="financial",
        metric="revenue_achievement_rate",
        threshold=80,
        predicate=below,
        severity=lambda v: AlertSeverity.HIGH if v < 60 else AlertSeverity.MEDIUM,
        message=lambda v: f"Revenue {v:.1f}% below target",
    ),
    AlertRule(
        name="health_score_critical",
        alert_type="overall",
        metric="overall_score",
        threshold=40,
        predicate=below,
        severity=AlertSeverity.CRITICAL,
        message=lambda v: f"Health score critically low: {v:.1f}%",
    ),
    AlertRule(
        name="lead_generation_decline",
        alert_type="operational",
        metric="lead_change_percentage",
        threshold=-15,
        predicate=below,
        severity=AlertSeverity.HIGH,
        message=lambda v: f"Lead generation down {abs(v):.1f}%",
    ),
]


def evaluate_alerts(
    result: HealthScoreResult,
    rules: Iterable[AlertRule] = DEFAULT_ALERT_RULES,
    now: Optional[datetime] = None,
) -> List[Alert]:
    """Apply rules in order and collect every alert raised."""
    now = now or utc_now()
    metrics = result.alert_snapshot()
    alerts = []
    for rule in rules:
        alert = rule.evaluate(result.location_id, metrics, now)
        if alert is not None:
            alerts.append(alert)
    return alerts


class AlertEmitter:
    """
    Persists alerts raised by the configured rules.

    Alerts are written once per check; de-duplication across runs is
    left to the store.
    """

    def __init__(self, persistence: PersistenceLayer, rules: Optional[Iterable[AlertRule]] = None):
        self._persistence = persistence
        self.rules: List[AlertRule] = list(DEFAULT_ALERT_RULES if rules is None else rules)

    def add_rule(self, rule: AlertRule) -> None:
        self.rules.append(rule)

    def evaluate(self, result: HealthScoreResult, now: Optional[datetime] = None) -> List[Alert]:
        return evaluate_alerts(result, self.rules, now)

    async def emit(self, result: HealthScoreResult, now: Optional[datetime] = None) -> List[Alert]:
        """
        Evaluate and persist alerts for a result.

        Returns:
            The alerts written.

        Raises:
            PersistenceError: If an alert cannot be stored.
        """
        alerts = self.evaluate(result, now)
        for alert in alerts:
            await self._persistence.insert_alert(alert)
            logger.warning(f"Alert raised for {alert.target_id}: {alert.message}")
        return alerts

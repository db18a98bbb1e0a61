"""
Trend and Forecast Module

Trend classification over score history and dampened linear-regression
forecasts over key-metric history, with a baseline estimate when the
history is too short to fit.

Author: Development Team
Date: 2025-09-16
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from models.scoring_models import ForecastMethod, ForecastResult, TrendClassification, TrendResult
from utils.helpers import clamp, round_half_up, round_to

logger = logging.getLogger(__name__)

TREND_WINDOW = 7
TREND_THRESHOLD = 2.0

MIN_FORECAST_HISTORY = 14
MIN_FORECAST_POINTS = 7
RECENT_WINDOW = 7

MAX_GROWTH_PER_PERIOD = 0.5
MAX_DECLINE_PER_PERIOD = 0.3
REGRESSION_BAND = 0.2
BASELINE_BAND = 0.15

BASELINE_GROWTH = 5.0
BASELINE_CONFIDENCE = 60
BASELINE_RISK = 40

# Forecast type -> key metric the history is read from
FORECAST_METRICS: Dict[str, str] = {
    "revenue": "current_revenue",
    "leads": "total_leads",
    "deals": "total_deals",
}

DECLINE_ADVICE: Dict[str, str] = {
    "revenue": "Consider lead generation campaigns to reverse revenue decline",
    "leads": "Review marketing channels and lead sources for optimization",
    "deals": "Focus on conversion rate improvement and pipeline management",
}


def analyze_trend(scores: Sequence[float]) -> TrendResult:
    """
    Compare the mean of the latest 7 scores with the mean of the 7 before.

    Both windows must be full; otherwise the trend is insufficient_data.
    A change within [-2, 2] is stable.
    """
    if len(scores) < 2 * TREND_WINDOW:
        return TrendResult(trend=TrendClassification.INSUFFICIENT_DATA, data_points=len(scores))

    recent = np.asarray(scores[-TREND_WINDOW:], dtype=float)
    previous = np.asarray(scores[-2 * TREND_WINDOW:-TREND_WINDOW], dtype=float)
    recent_avg = float(recent.mean())
    previous_avg = float(previous.mean())
    change = recent_avg - previous_avg

    if change > TREND_THRESHOLD:
        trend = TrendClassification.IMPROVING
    elif change < -TREND_THRESHOLD:
        trend = TrendClassification.DECLINING
    else:
        trend = TrendClassification.STABLE

    return TrendResult(
        trend=trend,
        change=round_to(change),
        recent_average=round_to(recent_avg),
        previous_average=round_to(previous_avg),
        data_points=len(scores),
    )


def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> Tuple[float, float]:
    """Ordinary least squares fit; returns (slope, intercept)."""
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if len(x) < 2 or np.ptp(x) == 0:
        return 0.0, float(y.mean()) if len(y) else 0.0
    slope, intercept = np.polyfit(x, y, 1)
    return float(slope), float(intercept)


def calculate_volatility(values: Sequence[float]) -> float:
    """Coefficient of variation (population standard deviation over mean)."""
    if len(values) < 2:
        return 0.0
    data = np.asarray(values, dtype=float)
    mean = float(data.mean())
    return float(data.std()) / mean if mean > 0 else 0.0


def forecast_insights(growth: float, confidence: float, risk: float, metric_type: str) -> List[str]:
    insights = []

    if growth > 15:
        insights.append(f"Strong growth trajectory with {growth:.1f}% predicted increase")
    elif growth > 5:
        insights.append(f"Moderate growth expected at {growth:.1f}%")
    elif growth > -5:
        insights.append("Stable performance with minimal change expected")
    else:
        insights.append(f"Declining trend detected with {abs(growth):.1f}% predicted decrease")

    if confidence > 80:
        insights.append("High confidence forecast based on strong historical data")
    elif confidence > 60:
        insights.append("Moderate confidence - monitor actual performance closely")
    else:
        insights.append("Low confidence forecast - limited historical data available")

    if risk > 70:
        insights.append("High risk factors detected - implement risk mitigation strategies")
    elif risk > 40:
        insights.append("Moderate risk - regular monitoring recommended")
    else:
        insights.append("Low risk profile - stable performance expected")

    if growth < 0 and metric_type in DECLINE_ADVICE:
        insights.append(DECLINE_ADVICE[metric_type])

    return insights


def generate_baseline_forecast(
    metric_type: str,
    period: int,
    baselines: Optional[Mapping[str, float]] = None,
    default_baseline: float = 100.0,
    rng: Optional[np.random.Generator] = None,
) -> ForecastResult:
    """
    Industry-average estimate used when there is not enough history.

    The result is flagged ``baseline_estimation``; it is a placeholder,
    not a prediction.
    """
    rng = rng or np.random.default_rng()
    baseline = (baselines or {}).get(metric_type, default_baseline)

    forecast = []
    for i in range(period):
        variation = (rng.random() - 0.5) * 0.2 * baseline
        trend = (i / period) * 0.1 * baseline
        forecast.append(max(0, round_half_up(baseline + variation + trend)))

    return ForecastResult(
        forecast=forecast,
        predicted_growth=BASELINE_GROWTH,
        confidence=BASELINE_CONFIDENCE,
        risk_score=BASELINE_RISK,
        method=ForecastMethod.BASELINE_ESTIMATION,
        data_points=0,
        period=period,
        metric_type=metric_type,
        best_case=[round_half_up(v * (1 + BASELINE_BAND)) for v in forecast],
        worst_case=[round_half_up(v * (1 - BASELINE_BAND)) for v in forecast],
        insights=[f"Basic {metric_type} forecast based on industry averages"],
    )


def generate_forecast(
    history: Sequence[Optional[float]],
    metric_type: str,
    period: int = 30,
    baselines: Optional[Mapping[str, float]] = None,
    default_baseline: float = 100.0,
    rng: Optional[np.random.Generator] = None,
) -> ForecastResult:
    """
    Forecast ``period`` future values of a metric from its history.

    Only positive points are fitted, keeping their original index as x.
    Each projection is dampened to between 70% and 150% of the last
    observed value, floored at 0 and rounded.

    Args:
        history: Metric values, oldest first.
        metric_type: revenue, leads or deals.
        period: Number of future periods.
        baselines: Per-type baselines for the fallback estimate.
        default_baseline: Baseline for types missing from ``baselines``.
        rng: Random generator for the fallback estimate.

    Returns:
        ForecastResult; ``baseline_estimation`` when the history has fewer
        than 14 points or fewer than 7 positive ones.
    """
    if period <= 0:
        raise ValueError("Forecast period must be positive")

    if len(history) < MIN_FORECAST_HISTORY:
        logger.debug(f"{metric_type} forecast falls back to baseline ({len(history)} points)")
        return generate_baseline_forecast(metric_type, period, baselines, default_baseline, rng)

    points = [(i, float(y)) for i, y in enumerate(history) if y is not None and y > 0]
    if len(points) < MIN_FORECAST_POINTS:
        logger.debug(f"{metric_type} forecast falls back to baseline ({len(points)} usable points)")
        return generate_baseline_forecast(metric_type, period, baselines, default_baseline, rng)

    xs = [x for x, _ in points]
    ys = [y for _, y in points]
    n = len(points)
    slope, intercept = linear_regression(xs, ys)

    current = ys[-1]
    lower = current * (1 - MAX_DECLINE_PER_PERIOD)
    upper = current * (1 + MAX_GROWTH_PER_PERIOD)
    forecast = []
    for i in range(1, period + 1):
        predicted = clamp(slope * (n + i - 1) + intercept, lower, upper)
        forecast.append(max(0, round_half_up(predicted)))

    recent_avg = float(np.mean(ys[-RECENT_WINDOW:]))
    forecast_avg = float(np.mean(forecast))
    growth = (forecast_avg - recent_avg) / recent_avg * 100 if recent_avg > 0 else 0.0

    residuals = np.asarray(ys) - (slope * np.asarray(xs, dtype=float) + intercept)
    rse = float(np.sqrt(np.mean(residuals ** 2)))
    confidence = clamp(100 - (rse / recent_avg) * 100, 0, 100) if recent_avg > 0 else 0.0

    risk = min(100.0, calculate_volatility(ys) * 50 + abs(growth) * 0.5)

    return ForecastResult(
        forecast=forecast,
        predicted_growth=round_to(growth),
        confidence=round_half_up(confidence),
        risk_score=round_half_up(risk),
        method=ForecastMethod.LINEAR_REGRESSION,
        data_points=n,
        period=period,
        metric_type=metric_type,
        best_case=[round_half_up(v * (1 + REGRESSION_BAND)) for v in forecast],
        worst_case=[round_half_up(v * (1 - REGRESSION_BAND)) for v in forecast],
        insights=forecast_insights(growth, confidence, risk, metric_type),
    )

"""End-to-end tests of the processing engine with in-memory collaborators."""

from datetime import timedelta

import pytest

from fakes import START, make_raw, make_result
from models.data_models import Priority, TaskKind, TaskStatus
from models.scoring_models import AlertSeverity, ForecastMethod, HealthStatus, RawMetrics, TrendClassification
from storage.cache_manager import forecast_key, health_score_key
from utils.exceptions import MetricsGatewayError, ScoringError


async def _run(engine, kind, location_id="loc-1", priority=Priority.HIGH, payload=None):
    task_id = engine.enqueue(kind, location_id, priority, payload)
    await engine.dispatcher.wait_idle(timeout=2)
    return engine.get_task(task_id)


class TestHealthCalculation:
    async def test_healthy_location_is_scored_cached_and_persisted(self, engine, gateway, persistence):
        gateway.metrics["loc-1"] = make_raw()

        task = await _run(engine, TaskKind.HEALTH_CALCULATION)

        assert task.status == TaskStatus.COMPLETED
        cached = engine.get_health_score("loc-1")
        assert cached.overall_score == 100
        assert cached.health_status == HealthStatus.HEALTHY
        assert persistence.results["loc-1"] == [cached]
        assert persistence.alerts == []

    async def test_previous_result_drives_score_change(self, engine, gateway, persistence):
        persistence.add_result(make_result(overall_score=80, calculated_at=START - timedelta(days=2)))
        gateway.metrics["loc-1"] = make_raw()

        await _run(engine, TaskKind.HEALTH_CALCULATION)

        result = engine.get_health_score("loc-1")
        assert result.previous_score == 80
        assert result.score_change == 25.0
        assert result.score_change_velocity == 12.5

    async def test_recent_peer_scores_give_percentile(self, engine, gateway, persistence):
        for i, score in enumerate([10, 20, 30, 40]):
            persistence.add_result(make_result(f"peer-{i}", overall_score=score, calculated_at=START - timedelta(hours=1)))
        persistence.add_result(make_result("old-peer", overall_score=100, calculated_at=START - timedelta(days=3)))
        gateway.metrics["loc-1"] = make_raw()

        await _run(engine, TaskKind.HEALTH_CALCULATION)
        assert engine.get_health_score("loc-1").benchmark_percentile == 100

    async def test_missing_metrics_fails_task_without_writes(self, engine, persistence):
        task = await _run(engine, TaskKind.HEALTH_CALCULATION, "unknown")

        assert task.status == TaskStatus.FAILED
        assert "No metrics available" in task.error_message
        assert engine.get_health_score("unknown") is None
        assert persistence.results == {}

    async def test_gateway_error_fails_task(self, engine, gateway):
        gateway.errors["loc-1"] = MetricsGatewayError("connection refused")

        task = await _run(engine, TaskKind.HEALTH_CALCULATION)
        assert task.status == TaskStatus.FAILED
        assert "connection refused" in task.error_message

    async def test_persistence_failure_keeps_cache_and_skips_alerts(self, engine, gateway, persistence):
        gateway.metrics["loc-1"] = RawMetrics(location_id="loc-1", values={"revenue_achievement_rate": 20})
        persistence.fail_writes = True

        task = await _run(engine, TaskKind.HEALTH_CALCULATION)

        assert task.status == TaskStatus.FAILED
        assert "PersistenceError" in task.error_message
        assert engine.get_health_score("loc-1") is not None
        assert persistence.alerts == []

    async def test_critical_location_raises_alerts(self, engine, gateway, persistence):
        gateway.metrics["loc-1"] = RawMetrics(
            location_id="loc-1",
            values={"revenue_achievement_rate": 20, "profit_margin_health": 5, "lead_change_percentage": -30},
        )

        await _run(engine, TaskKind.HEALTH_CALCULATION)

        result = engine.get_health_score("loc-1")
        assert result.health_status == HealthStatus.CRITICAL
        assert [a.alert_type for a in persistence.alerts] == ["financial", "overall", "operational"]
        assert persistence.alerts[0].severity == AlertSeverity.HIGH
        assert persistence.alerts[1].severity == AlertSeverity.CRITICAL

    async def test_concurrency_is_bounded(self, engine, gateway):
        gateway.delay = 0.02
        for i in range(6):
            gateway.metrics[f"loc-{i}"] = make_raw(f"loc-{i}")
            engine.enqueue(TaskKind.HEALTH_CALCULATION, f"loc-{i}")

        assert engine.get_status()["queue_length"] == 6
        await engine.dispatcher.wait_idle(timeout=5)

        assert engine.dispatcher.peak_active == 2
        assert engine.dispatcher.completed_count == 6
        assert engine.get_status() == {"queue_length": 0, "active_count": 0, "max_concurrent": 2, "cache_size": 6}


class TestTrendAnalysis:
    async def test_trend_is_cached(self, engine, persistence):
        scores = [50.0] * 7 + [60.0] * 7
        for i, score in enumerate(scores):
            persistence.add_result(make_result(overall_score=score, calculated_at=START - timedelta(days=14 - i)))

        task = await _run(engine, TaskKind.TREND_ANALYSIS)

        assert task.status == TaskStatus.COMPLETED
        trend = engine.get_trend("loc-1")
        assert trend.trend == TrendClassification.IMPROVING
        assert trend.change == 10.0

    async def test_short_history_caches_insufficient_data(self, engine, persistence):
        persistence.add_result(make_result())

        await _run(engine, TaskKind.TREND_ANALYSIS)
        assert engine.get_trend("loc-1").trend == TrendClassification.INSUFFICIENT_DATA


class TestForecasts:
    async def test_miss_returns_baseline_and_enqueues_once(self, engine, persistence):
        persistence.metric_history[("loc-1", "current_revenue")] = [1000.0 + 100 * i for i in range(20)]

        first = engine.get_forecast("loc-1", "revenue", 5)
        second = engine.get_forecast("loc-1", "revenue", 5)

        assert first.is_estimate and second.is_estimate
        assert engine.dispatcher.queue_length == 1

        await engine.dispatcher.wait_idle(timeout=2)
        forecast = engine.get_forecast("loc-1", "revenue", 5)
        assert forecast.method == ForecastMethod.LINEAR_REGRESSION
        assert forecast.forecast == [3000, 3100, 3200, 3300, 3400]

    async def test_each_metric_and_period_gets_its_own_task(self, engine, persistence):
        persistence.metric_history[("loc-1", "current_revenue")] = [1000.0 + 100 * i for i in range(20)]

        engine.get_forecast("loc-1", "revenue", 5)
        engine.get_forecast("loc-1", "leads", 5)
        engine.get_forecast("loc-1", "revenue", 10)
        engine.get_forecast("loc-1", "leads", 5)
        assert engine.dispatcher.queue_length == 3

        await engine.dispatcher.wait_idle(timeout=2)
        assert engine.get_cached(forecast_key("loc-1", "revenue", 5)).method == ForecastMethod.LINEAR_REGRESSION
        assert engine.get_cached(forecast_key("loc-1", "revenue", 10)) is not None
        assert engine.get_cached(forecast_key("loc-1", "leads", 5)).metric_type == "leads"

    async def test_default_period_from_config(self, engine):
        baseline = engine.get_forecast("loc-1", "deals")
        assert baseline.period == 30

        await engine.dispatcher.wait_idle(timeout=2)
        cached = engine.get_cached(forecast_key("loc-1", "deals", 30))
        assert cached.is_estimate
        assert cached.metric_type == "deals"

    async def test_unknown_forecast_type(self, engine):
        with pytest.raises(ScoringError):
            engine.get_forecast("loc-1", "visits")

    async def test_forecast_task_with_unknown_type_fails(self, engine):
        task = await _run(engine, TaskKind.FORECAST_UPDATE, payload={"metric_type": "visits"})
        assert task.status == TaskStatus.FAILED


class TestAlertCheck:
    async def test_without_result_completes_quietly(self, engine, persistence):
        task = await _run(engine, TaskKind.ALERT_CHECK)
        assert task.status == TaskStatus.COMPLETED
        assert persistence.alerts == []

    async def test_uses_persisted_result(self, engine, persistence):
        persistence.add_result(make_result(overall_score=30))

        await _run(engine, TaskKind.ALERT_CHECK)
        assert [a.alert_type for a in persistence.alerts] == ["overall"]

    async def test_prefers_cached_result(self, engine, persistence):
        persistence.add_result(make_result(overall_score=30))
        engine.cache.set(health_score_key("loc-1"), make_result(overall_score=90))

        await _run(engine, TaskKind.ALERT_CHECK)
        assert persistence.alerts == []


class TestEngineApi:
    async def test_enqueue_returns_immediately(self, engine, gateway):
        gateway.metrics["loc-1"] = make_raw()
        task_id = engine.enqueue(TaskKind.HEALTH_CALCULATION, "loc-1")

        assert engine.get_task(task_id).status == TaskStatus.PENDING
        await engine.dispatcher.wait_idle(timeout=2)
        assert engine.get_task(task_id).status == TaskStatus.COMPLETED

    async def test_invalidate(self, engine):
        engine.cache.set("health_score_loc-1", make_result())
        assert engine.invalidate("health_score_loc-1") is True
        assert engine.get_cached("health_score_loc-1") is None
        assert engine.invalidate("health_score_loc-1") is False

    async def test_health_check(self, engine):
        health = await engine.health_check()

        assert health["status"] == "healthy"
        assert health["dispatcher"]["running"] is True
        assert health["scheduler_running"] is False
        assert set(health["components"]) == {"cache", "persistence", "metrics_gateway"}

    async def test_scan_feeds_dispatcher(self, engine, gateway, persistence):
        persistence.locations.update({"loc-1", "loc-2"})
        gateway.metrics["loc-1"] = make_raw("loc-1")
        gateway.metrics["loc-2"] = make_raw("loc-2")

        enqueued = await engine.scheduler.scan_stale_locations()
        await engine.dispatcher.wait_idle(timeout=2)

        assert len(enqueued) == 2
        assert engine.get_health_score("loc-1") is not None
        assert engine.get_health_score("loc-2") is not None
        assert await engine.scheduler.scan_stale_locations() == []

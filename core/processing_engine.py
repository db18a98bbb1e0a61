"""
Processing Engine Module

Facade over the background health engine: owns the cache, the task
dispatcher and the scheduler, and implements the four task kinds.
Request handlers call enqueue(), get_status(), get_cached() and
get_forecast() on it; nothing here blocks on task execution.

Author: Development Team
Date: 2025-09-16
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import numpy as np

from config.logging_config import get_logger, get_performance_logger
from config.settings import EngineConfig, ScoringConfig
from core.alert_emitter import AlertEmitter, AlertRule
from core.dispatcher import TaskDispatcher
from core.forecasting import FORECAST_METRICS, analyze_trend, generate_baseline_forecast, generate_forecast
from core.scheduler import HealthCheckScheduler
from core.scoring_engine import HealthScorer
from integrations.metrics_gateway import MetricsGateway
from models.data_models import Priority, ProcessingTask, TaskKind
from models.scoring_models import ForecastResult, HealthScoreResult, TrendResult
from storage.base_store import PersistenceLayer
from storage.cache_manager import CacheManager, forecast_key, health_score_key, trends_key
from utils.exceptions import MetricsUnavailableError, PersistenceError, ScoringError
from utils.helpers import utc_now

logger = get_logger(__name__)
perf_logger = get_performance_logger(__name__)

BENCHMARK_WINDOW = timedelta(hours=24)


class ProcessingEngine:
    """
    Background processing engine for location health.

    Multiple instances are fully independent; all shared state lives on
    the instance.
    """

    def __init__(
        self,
        persistence: PersistenceLayer,
        metrics_gateway: MetricsGateway,
        engine_config: Optional[EngineConfig] = None,
        scoring_config: Optional[ScoringConfig] = None,
        cache: Optional[CacheManager] = None,
        alert_rules: Optional[Iterable[AlertRule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[np.random.Generator] = None,
    ):
        self.engine_config = engine_config or EngineConfig()
        self.scoring_config = scoring_config or ScoringConfig()
        self.persistence = persistence
        self.metrics_gateway = metrics_gateway
        self._clock = clock or utc_now
        self._rng = rng or np.random.default_rng()

        self.cache = cache or CacheManager(ttl_seconds=self.engine_config.max_cache_age_seconds, clock=self._clock)
        self.scorer = HealthScorer(self.scoring_config)
        self.alert_emitter = AlertEmitter(persistence, alert_rules)

        self.dispatcher = TaskDispatcher(
            handlers={
                TaskKind.HEALTH_CALCULATION: self._handle_health_calculation,
                TaskKind.TREND_ANALYSIS: self._handle_trend_analysis,
                TaskKind.FORECAST_UPDATE: self._handle_forecast_update,
                TaskKind.ALERT_CHECK: self._handle_alert_check,
            },
            max_concurrent_tasks=self.engine_config.max_concurrent_tasks,
            task_timeout_seconds=self.engine_config.task_timeout_seconds,
            dispatch_delay_seconds=self.engine_config.dispatch_delay_seconds,
            clock=self._clock,
            history_size=self.engine_config.task_history_size,
        )
        self.scheduler = HealthCheckScheduler(
            self.dispatcher,
            self.cache,
            persistence,
            config=self.engine_config,
            clock=self._clock,
            sleep=sleep,
        )

    # Lifecycle

    def start(self, run_scheduler: bool = True) -> None:
        """
        Start dispatching on the running event loop.

        Args:
            run_scheduler: Also start the periodic stale scan and cache sweep.
        """
        self.dispatcher.start()
        if run_scheduler:
            self.scheduler.start()
        logger.info("Processing engine started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.dispatcher.shutdown()
        logger.info("Processing engine stopped")

    # Application-facing API

    def enqueue(
        self,
        kind: TaskKind,
        location_id: str,
        priority: Priority = Priority.MEDIUM,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Queue a task for immediate (re)computation and return its id."""
        return self.dispatcher.enqueue(kind, location_id, priority, payload)

    def get_status(self) -> Dict[str, int]:
        status = self.dispatcher.status()
        status["cache_size"] = self.cache.size
        return status

    def get_cached(self, key: str) -> Optional[Any]:
        return self.cache.get(key)

    def invalidate(self, key: str) -> bool:
        return self.cache.delete(key)

    def get_task(self, task_id: str) -> Optional[ProcessingTask]:
        return self.dispatcher.get_task(task_id)

    def get_health_score(self, location_id: str) -> Optional[HealthScoreResult]:
        return self.cache.get(health_score_key(location_id))

    def get_trend(self, location_id: str) -> Optional[TrendResult]:
        return self.cache.get(trends_key(location_id))

    def get_forecast(self, location_id: str, metric_type: str = "revenue", period: Optional[int] = None) -> ForecastResult:
        """
        Cached forecast, or a baseline estimate while a real one is computed.

        On a miss a forecast_update is enqueued (unless one is already in
        flight for the same location, metric and period) and the returned
        result is flagged ``baseline_estimation``.
        """
        if metric_type not in FORECAST_METRICS:
            raise ScoringError(f"Unknown forecast type '{metric_type}'")
        period = period or self.scoring_config.default_forecast_period

        cached = self.cache.get(forecast_key(location_id, metric_type, period))
        if cached is not None:
            return cached

        self.dispatcher.enqueue_if_idle(
            TaskKind.FORECAST_UPDATE,
            location_id,
            Priority.MEDIUM,
            {"metric_type": metric_type, "period": period},
            dedupe_scope=(metric_type, period),
        )
        return generate_baseline_forecast(
            metric_type,
            period,
            self.scoring_config.forecast_baselines,
            self.scoring_config.default_baseline,
            self._rng,
        )

    async def health_check(self) -> Dict[str, Any]:
        """
        Health of the engine and its collaborators.
        """
        components = {
            "cache": self.cache.health_check(),
            "persistence": await self.persistence.health_check(),
            "metrics_gateway": await self.metrics_gateway.health_check(),
        }
        healthy = all(component.get("status") == "healthy" for component in components.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "dispatcher": {**self.dispatcher.status(), "running": self.dispatcher.is_running},
            "scheduler_running": self.scheduler.is_running,
            "components": components,
        }

    # Task handlers

    @perf_logger.log_function_performance("health_calculation")
    async def _handle_health_calculation(self, task: ProcessingTask) -> None:
        location_id = task.target_id
        raw = await self.metrics_gateway.fetch_metrics(location_id)
        if raw is None:
            raise MetricsUnavailableError(f"No metrics available for location {location_id}")

        now = self._clock()
        previous = await self.persistence.get_latest_result(location_id)
        peer_scores = await self._peer_scores(now)

        with perf_logger.log_block_performance("score_location"):
            result = self.scorer.calculate(location_id, raw, previous, now, peer_scores)

        # Cached first so in-process readers see the result even if the write fails
        self.cache.set(health_score_key(location_id), result, self.engine_config.max_cache_age_seconds)
        await self.persistence.upsert_health_result(location_id, result, now)
        logger.info(f"Health score for {location_id}: {result.overall_score} ({result.health_status.value})")

        await self.alert_emitter.emit(result, now)

    async def _peer_scores(self, now: datetime) -> Iterable[float]:
        try:
            scores = await self.persistence.get_recent_scores(now - BENCHMARK_WINDOW)
        except PersistenceError as e:
            logger.warning(f"Benchmark scores unavailable, using median percentile: {e}")
            return []
        return scores.values()

    @perf_logger.log_function_performance("trend_analysis")
    async def _handle_trend_analysis(self, task: ProcessingTask) -> None:
        history = await self.persistence.get_history(task.target_id, self.engine_config.history_limit)
        trend = analyze_trend([score for score, _ in history])
        self.cache.set(trends_key(task.target_id), trend, self.engine_config.max_cache_age_seconds)
        logger.info(f"Trend for {task.target_id}: {trend.trend.value} ({trend.change})")

    @perf_logger.log_function_performance("forecast_update")
    async def _handle_forecast_update(self, task: ProcessingTask) -> None:
        payload = task.payload or {}
        metric_type = payload.get("metric_type", "revenue")
        period = int(payload.get("period") or self.scoring_config.default_forecast_period)
        metric = FORECAST_METRICS.get(metric_type)
        if metric is None:
            raise ScoringError(f"Unknown forecast type '{metric_type}'")

        history = await self.persistence.get_metric_history(
            task.target_id, metric, self.engine_config.forecast_history_limit
        )
        forecast = generate_forecast(
            history,
            metric_type,
            period,
            self.scoring_config.forecast_baselines,
            self.scoring_config.default_baseline,
            self._rng,
        )
        self.cache.set(
            forecast_key(task.target_id, metric_type, period),
            forecast,
            self.engine_config.predictive_cache_age_seconds,
        )
        logger.info(
            f"{metric_type} forecast for {task.target_id}: {forecast.method.value}, "
            f"growth {forecast.predicted_growth}%"
        )

    @perf_logger.log_function_performance("alert_check")
    async def _handle_alert_check(self, task: ProcessingTask) -> None:
        result = self.cache.get(health_score_key(task.target_id))
        if result is None:
            result = await self.persistence.get_latest_result(task.target_id)
        if result is None:
            logger.info(f"No health result to check alerts for {task.target_id}")
            return

        await self.alert_emitter.emit(result, self._clock())

"""Engine test fixtures."""

import numpy as np
import pytest
import pytest_asyncio

from config.settings import EngineConfig, ScoringConfig
from core.processing_engine import ProcessingEngine
from fakes import FakeMetricsGateway, FakePersistence, ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def gateway() -> FakeMetricsGateway:
    return FakeMetricsGateway()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(max_concurrent_tasks=2, dispatch_delay_seconds=0, task_timeout_seconds=2)


@pytest.fixture
def scoring_config() -> ScoringConfig:
    return ScoringConfig()


@pytest_asyncio.fixture
async def engine(persistence, gateway, engine_config, scoring_config, clock):
    """Started engine without periodic timers."""
    instance = ProcessingEngine(
        persistence=persistence,
        metrics_gateway=gateway,
        engine_config=engine_config,
        scoring_config=scoring_config,
        clock=clock,
        rng=np.random.default_rng(7),
    )
    instance.start(run_scheduler=False)
    yield instance
    await instance.stop()

"""Metrics ingestion mapping and HTTP gateway tests."""

from datetime import timedelta

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from config.settings import MetricsGatewayConfig
from fakes import START
from integrations.metrics_gateway import HttpMetricsGateway, transform_location_metrics
from utils.exceptions import MetricsGatewayError

ROW = {
    "location_id": "loc-1",
    "total_revenue": 10000,
    "contacts_count": 200,
    "opportunities_count": 10,
    "conversations_count": 55,
    "profit_margin_health": 18.5,
    "label": "downtown",
}


class TestTransform:
    def test_derived_metrics(self):
        raw = transform_location_metrics(ROW, now=START)

        assert raw.location_id == "loc-1"
        assert raw.get("current_revenue") == 10000
        assert raw.get("revenue_target") == pytest.approx(11000)
        assert raw.get("revenue_achievement_rate") == pytest.approx(90.909, abs=0.001)
        assert raw.get("total_leads") == 200
        assert raw.get("total_deals") == 10
        assert raw.get("conversion_rate") == 5.0
        assert raw.get("lead_to_deal_conversion") == 5.0
        assert raw.get("pipeline_value") == 150000
        assert raw.get("total_conversations") == 55

    def test_numeric_fields_pass_through(self):
        raw = transform_location_metrics(ROW, now=START)
        assert raw.get("profit_margin_health") == 18.5
        assert raw.get("label") is None

    def test_explicit_target_and_pipeline_win(self):
        row = dict(ROW, revenue_target=20000, pipeline_value=5000)
        raw = transform_location_metrics(row, now=START)
        assert raw.get("revenue_achievement_rate") == 50
        assert raw.get("pipeline_value") == 5000

    def test_zero_revenue_and_contacts(self):
        raw = transform_location_metrics({"location_id": "empty"}, now=START)
        assert raw.get("revenue_achievement_rate") is None
        assert raw.get("conversion_rate") == 0
        assert raw.data_age_hours == 0

    def test_data_age_from_last_updated(self):
        row = dict(ROW, last_updated=(START - timedelta(hours=6)).isoformat().replace("+00:00", "Z"))
        raw = transform_location_metrics(row, now=START)
        assert raw.data_age_hours == pytest.approx(6)


@pytest_asyncio.fixture
async def metrics_api():
    state = {"status": 200, "calls": 0, "payload": {"success": True, "data": [ROW]}}

    async def cached_metrics(request):
        state["calls"] += 1
        state["last_query"] = dict(request.query)
        if state["status"] != 200:
            return web.Response(status=state["status"], text="upstream unavailable")
        return web.json_response(state["payload"])

    async def root(request):
        return web.Response(text="ok")

    app = web.Application()
    app.router.add_get("/api/ghl/metrics/cached", cached_metrics)
    app.router.add_get("/", root)

    server = test_utils.TestServer(app)
    await server.start_server()
    state["base_url"] = f"http://{server.host}:{server.port}"
    yield state
    await server.close()


@pytest_asyncio.fixture
async def http_gateway(metrics_api):
    config = MetricsGatewayConfig(base_url=metrics_api["base_url"], max_retries=2, retry_delay_seconds=0.01)
    gateway = HttpMetricsGateway(config)
    yield gateway
    await gateway.close()


class TestHttpMetricsGateway:
    async def test_fetches_and_transforms_location_row(self, http_gateway, metrics_api):
        raw = await http_gateway.fetch_metrics("loc-1")

        assert raw.location_id == "loc-1"
        assert raw.get("current_revenue") == 10000
        assert metrics_api["last_query"] == {"locationId": "loc-1"}

    async def test_unknown_location_returns_none(self, http_gateway):
        assert await http_gateway.fetch_metrics("loc-2") is None

    async def test_unsuccessful_payload_returns_none(self, http_gateway, metrics_api):
        metrics_api["payload"] = {"success": False, "error": "not cached"}
        assert await http_gateway.fetch_metrics("loc-1") is None

    async def test_not_found_returns_none(self, http_gateway, metrics_api):
        metrics_api["status"] = 404
        assert await http_gateway.fetch_metrics("loc-1") is None
        assert metrics_api["calls"] == 1

    async def test_server_error_retried_then_raised(self, http_gateway, metrics_api):
        metrics_api["status"] = 503
        with pytest.raises(MetricsGatewayError):
            await http_gateway.fetch_metrics("loc-1")
        assert metrics_api["calls"] == 2

    async def test_unreachable_api_raises_gateway_error(self):
        gateway = HttpMetricsGateway(
            MetricsGatewayConfig(base_url="http://127.0.0.1:1", max_retries=1, timeout_seconds=2)
        )
        try:
            with pytest.raises(MetricsGatewayError):
                await gateway.fetch_metrics("loc-1")
            assert (await gateway.health_check())["status"] == "degraded"
        finally:
            await gateway.close()

    async def test_health_check(self, http_gateway):
        assert await http_gateway.health_check() == {"status": "healthy"}

"""
Metrics Gateway Module

Fetches the latest raw metrics of a location from the ingestion API and
maps them to the flat record the scoring pipeline consumes.

Author: GG
Date: 2025-09-16
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import aiohttp

from config.settings import MetricsGatewayConfig
from models.scoring_models import RawMetrics
from utils.exceptions import MetricsGatewayError
from utils.helpers import as_utc, retry_with_backoff, utc_now

logger = logging.getLogger(__name__)

REVENUE_TARGET_GROWTH = 1.1
DEFAULT_AVERAGE_DEAL_VALUE = 15000.0

# Ingestion fields that are renamed or derived rather than passed through
_MAPPED_FIELDS = {
    "location_id",
    "total_revenue",
    "contacts_count",
    "opportunities_count",
    "conversations_count",
    "last_updated",
}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            logger.debug(f"Unparseable last_updated value: {value}")
    return None


def transform_location_metrics(
    row: Mapping[str, Any],
    now: Optional[datetime] = None,
    average_deal_value: float = DEFAULT_AVERAGE_DEAL_VALUE,
) -> RawMetrics:
    """
    Map an ingestion row to the scoring record.

    Args:
        row: Latest metrics row of a location as returned by the API.
        now: Reference time for the data age.
        average_deal_value: Used to estimate pipeline value when the row
            carries none.

    Returns:
        RawMetrics with derived financial and operational ratios plus every
        other numeric field of the row.
    """
    now = now or utc_now()
    values: Dict[str, float] = {}

    for name, raw_value in row.items():
        if name in _MAPPED_FIELDS:
            continue
        number = _number(raw_value)
        if number is not None:
            values[name] = number

    revenue = _number(row.get("total_revenue")) or 0.0
    target = _number(row.get("revenue_target")) or revenue * REVENUE_TARGET_GROWTH
    values["current_revenue"] = revenue
    values["revenue_target"] = target
    if target > 0:
        values["revenue_achievement_rate"] = revenue / target * 100

    contacts = _number(row.get("contacts_count")) or 0.0
    opportunities = _number(row.get("opportunities_count")) or 0.0
    conversion = opportunities / contacts * 100 if contacts > 0 else 0.0
    values["total_leads"] = contacts
    values["total_deals"] = opportunities
    values["conversion_rate"] = conversion
    values["lead_to_deal_conversion"] = conversion
    values.setdefault("pipeline_value", opportunities * average_deal_value)

    conversations = _number(row.get("conversations_count"))
    if conversations is not None:
        values["total_conversations"] = conversations

    data_age_hours = _number(row.get("data_age_hours"))
    if data_age_hours is None:
        last_updated = _parse_timestamp(row.get("last_updated"))
        data_age_hours = (now - last_updated).total_seconds() / 3600 if last_updated else 0.0
    values["data_age_hours"] = max(0.0, data_age_hours)

    return RawMetrics(
        location_id=str(row.get("location_id", "")),
        values=values,
        data_age_hours=values["data_age_hours"],
    )


class MetricsGateway(ABC):
    """
    Source of raw per-location metrics.
    """

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}

    @abstractmethod
    async def fetch_metrics(self, location_id: str) -> Optional[RawMetrics]:
        """
        Latest metrics for a location.

        Returns:
            RawMetrics, or None when the location has no data.

        Raises:
            MetricsGatewayError: If the source cannot be reached.
        """


class HttpMetricsGateway(MetricsGateway):
    """
    Reads the cached metrics endpoint of the ingestion API over HTTP.
    """

    def __init__(self, config: Optional[MetricsGatewayConfig] = None):
        self.config = config or MetricsGatewayConfig()
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def metrics_url(self) -> str:
        return f"{self.config.base_url}{self.config.metrics_path}"

    async def initialize(self) -> None:
        """
        Initialize aiohttp session.
        """
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)
            logger.info("HttpMetricsGateway session initialized.")

    async def close(self) -> None:
        """
        Close aiohttp session.
        """
        if self.session and not self.session.closed:
            await self.session.close()
            logger.info("HttpMetricsGateway session closed.")
        self.session = None

    async def fetch_metrics(self, location_id: str) -> Optional[RawMetrics]:
        await self.initialize()
        try:
            payload = await retry_with_backoff(
                self._request_metrics,
                location_id,
                max_retries=self.config.max_retries,
                delay=self.config.retry_delay_seconds,
                retry_on=(aiohttp.ClientError, asyncio.TimeoutError, MetricsGatewayError),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Metrics fetch for {location_id} failed: {e}", extra={'error_type': 'MetricsGatewayError'})
            raise MetricsGatewayError(f"Metrics API unreachable: {e}") from e

        if payload is None or not payload.get("success"):
            return None

        for row in payload.get("data") or []:
            if row.get("location_id") == location_id:
                return transform_location_metrics(row)

        logger.info(f"No metrics found for location {location_id}")
        return None

    async def _request_metrics(self, location_id: str) -> Optional[Dict[str, Any]]:
        async with self.session.get(self.metrics_url, params={"locationId": location_id}) as resp:
            if resp.status == 404:
                return None
            if resp.status >= 400:
                body = await resp.text()
                raise MetricsGatewayError(f"Metrics API error {resp.status}: {body[:200]}")
            return await resp.json()

    async def health_check(self) -> Dict[str, Any]:
        """
        Check metrics API connectivity.

        Returns:
            Health status dictionary.
        """
        try:
            await self.initialize()
            async with self.session.get(self.config.base_url) as resp:
                if resp.status < 500:
                    return {"status": "healthy"}
                return {"status": "degraded", "http_status": resp.status}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"HttpMetricsGateway health check failed: {e}")
            return {"status": "degraded", "error": str(e)}

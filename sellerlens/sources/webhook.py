"""
sellerlens/sources/webhook.py

Pull-mode adapter for seller data exposed by an external HTTP endpoint.

When ``settings.webhook_source_url`` is empty the adapter is registered but
inert: ``fetch`` returns no records and ``health_check`` reports healthy.
The remote endpoint is expected to answer

    GET {base}/records?seller_id=..&start=..&end=..[&metric_type=..]

with either a JSON array of records or ``{"records": [...]}``.
"""
from __future__ import annotations

from typing import Any

import httpx
import structlog

from sellerlens.config import settings
from sellerlens.query.plan import Capability, SourceConfig, SourceType
from sellerlens.sources.base import DataSourceAdapter, Record

logger = structlog.get_logger(__name__)


class ExternalWebhookAdapter(DataSourceAdapter):
    id = "external-webhook"
    source_type = SourceType.EXTERNAL_WEBHOOK
    name = "External Webhook"
    capabilities = frozenset({Capability.FILTERING})

    avg_latency_ms = 2_000.0
    throughput_per_sec = 100.0
    reliability = 0.95

    def __init__(
        self,
        base_url: str = settings.webhook_source_url,
        timeout: float = settings.webhook_request_timeout,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=min(timeout, 5.0))
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def fetch(self, config: SourceConfig) -> list[Record]:
        if not self.configured:
            return []
        params: dict[str, Any] = {
            "seller_id": config.seller_id,
            "start": config.time_window.start,
            "end": config.time_window.end,
        }
        if config.metric_type:
            params["metric_type"] = config.metric_type

        async with self._client() as client:
            response = await client.get("/records", params=params)
            response.raise_for_status()
            data = response.json()

        records = data.get("records", []) if isinstance(data, dict) else data
        logger.debug("webhook_fetch", seller_id=config.seller_id, records=len(records))
        return [r for r in records if isinstance(r, dict)]

    async def health_check(self) -> bool:
        if not self.configured:
            return True
        try:
            async with self._client() as client:
                response = await client.get("/health")
            return response.status_code < 500
        except httpx.HTTPError as exc:
            logger.warning("webhook_health_failed", error=str(exc))
            return False

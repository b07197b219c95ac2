from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from opentelemetry import trace

from dealflow.domain.models import ProviderResponse

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}


class ProviderError(Exception):
    """Base provider call error."""


class ProviderTransientError(ProviderError):
    """Raised for throttling, server errors and network failures worth retrying."""


class ProviderRequestError(ProviderError):
    """Raised when the provider rejects the request itself."""


class ProviderClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        domain: int,
        history_days: int,
        max_offers: int,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.domain = domain
        self.history_days = history_days
        self.max_offers = max_offers
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_category(self, category_id: str, *, now: datetime | None = None) -> ProviderResponse:
        if not self.api_key:
            raise ProviderRequestError("provider api key is not configured")

        params = {
            "key": self.api_key,
            "domain": self.domain,
            "category": category_id,
            "stats": self.history_days,
            "history": 1,
            "offers": self.max_offers,
        }
        with tracer.start_as_current_span("provider.fetch_category") as span:
            span.set_attribute("provider.category", category_id)
            try:
                response = await self._client.get(f"{self.base_url}/query", params=params)
            except httpx.HTTPError as exc:
                raise ProviderTransientError(f"provider request failed: {exc.__class__.__name__}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code in TRANSIENT_STATUS_CODES or response.status_code >= 500:
                raise ProviderTransientError(f"provider returned {response.status_code}")
            if response.status_code >= 400:
                raise ProviderRequestError(f"provider rejected request with {response.status_code}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise ProviderTransientError("provider returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise ProviderTransientError("provider returned an unexpected payload")

        raw_products = payload.get("products")
        products = [item for item in raw_products if isinstance(item, dict)] if isinstance(raw_products, list) else []
        result = ProviderResponse(
            category_id=category_id,
            products=products,
            tokens_consumed=_as_int(payload.get("tokensConsumed")),
            tokens_left=_as_int(payload.get("tokensLeft")),
            refill_in_ms=_as_int(payload.get("refillIn")),
            fetched_at=now or datetime.now(timezone.utc),
        )
        logger.info(
            "provider call category=%s products=%s tokens_consumed=%s tokens_left=%s",
            category_id,
            len(products),
            result.tokens_consumed,
            result.tokens_left,
        )
        return result


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None

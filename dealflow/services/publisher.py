from __future__ import annotations

import logging
from typing import Any

import httpx

from dealflow.domain.models import AutomationRule, ScoredDeal

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Raised when the channel service does not accept a deal."""


def deal_payload(rule: AutomationRule, scored: ScoredDeal) -> dict[str, Any]:
    deal = scored.deal
    return {
        "rule_id": rule.id,
        "user_id": rule.user_id,
        "asin": deal.asin,
        "title": deal.title,
        "category": deal.category,
        "brand": deal.brand,
        "current_price": deal.current_price,
        "list_price": deal.list_price,
        "discount": round(scored.discount, 2),
        "score": scored.score,
        "rating": deal.rating,
        "review_count": deal.review_count,
        "deal_type": deal.deal_type,
        "deal_end": deal.deal_end.isoformat() if deal.deal_end else None,
        "coupon": {"value": deal.coupon.value, "kind": deal.coupon.kind} if deal.coupon else None,
        "is_lowest_ever": deal.is_lowest_ever,
    }


class ChannelPublisher:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def publish(self, rule: AutomationRule, deal: ScoredDeal) -> None:
        if not rule.channel_id:
            raise PublishError(f"rule {rule.id} has no channel")
        try:
            response = await self._client.post(
                f"{self.base_url}/channels/{rule.channel_id}/deals",
                json=deal_payload(rule, deal),
                headers=self.headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PublishError(f"publish failed for rule={rule.id} asin={deal.asin}") from exc
        logger.debug("published deal rule=%s channel=%s asin=%s", rule.id, rule.channel_id, deal.asin)

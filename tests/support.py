from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from dealflow.context import IngestionContext
from dealflow.core.config import Settings
from dealflow.domain.models import AutomationRule, ExtractedDealData, ProviderResponse, ScoredDeal
from dealflow.jobs.normalizer import PROVIDER_EPOCH
from dealflow.services.publisher import PublishError
from dealflow.services.repository import StateRepository
from dealflow.services.store import InMemoryStateRepository

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def provider_minutes(moment: datetime) -> int:
    return int((moment - PROVIDER_EPOCH).total_seconds() // 60)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "state_backend": "memory",
        "worker_id": "worker-a",
        "provider_api_key": "provider-key",
        "admin_api_key": "admin-key",
        "otel_enabled": False,
        "token_capacity": 300,
        "token_refill_per_minute": 20.0,
        "job_token_cost": 15,
        "claim_lease_seconds": 120,
        "job_max_attempts": 3,
        "job_retry_base_seconds": 30,
        "job_retry_max_seconds": 600,
        "max_jobs_per_tick": 10,
        "cache_fresh_seconds": 0,
        "rule_run_jitter_ratio": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_rule(rule_id: str, categories: list[str] | None = None, **overrides: Any) -> AutomationRule:
    values: dict[str, Any] = {
        "id": rule_id,
        "user_id": "user-1",
        "categories": ["Electronics"] if categories is None else categories,
        "channel_id": "channel-1",
        "next_run_at": NOW - timedelta(minutes=1),
    }
    values.update(overrides)
    return AutomationRule(**values)


def make_product(
    asin: str,
    *,
    category: str = "Electronics",
    current_cents: int | None = None,
    list_cents: int | None = None,
    price_points: list[tuple[datetime, int]] | None = None,
    rating_tenths: int | None = None,
    review_count: int | None = None,
    sales_rank: int | None = None,
    title: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    csv: list[Any] = [None] * 18
    csv[0] = [value for moment, cents in (price_points or []) for value in (provider_minutes(moment), cents)]
    stamp = provider_minutes(NOW - timedelta(days=1))
    if sales_rank is not None:
        csv[3] = [stamp, sales_rank]
    if rating_tenths is not None:
        csv[16] = [stamp, rating_tenths]
    if review_count is not None:
        csv[17] = [stamp, review_count]

    current = [-1] * 6
    if current_cents is not None:
        current[0] = current_cents
    if list_cents is not None:
        current[5] = list_cents

    product: dict[str, Any] = {
        "asin": asin,
        "title": title or f"Product {asin}",
        "categoryTree": [{"name": category}],
        "csv": csv,
        "stats": {"current": current},
        "condition": "new",
    }
    product.update(extra)
    return product


def make_deal(**overrides: Any) -> ExtractedDealData:
    values: dict[str, Any] = {
        "asin": "B000TEST01",
        "title": "Test product",
        "category": "Electronics",
        "subcategory": None,
        "brand": None,
        "current_price": 50.0,
        "list_price": 100.0,
        "avg_price_30": None,
        "min_price_30": None,
        "max_price_30": None,
        "avg_price_90": None,
        "min_price_90": None,
        "max_price_90": None,
        "min_price_ever": None,
        "price_drop_percent": None,
        "is_lowest_ever": False,
        "is_lowest_30": False,
        "sales_rank": None,
        "sales_rank_category": None,
        "rating": None,
        "review_count": None,
        "deal_type": None,
        "deal_start": None,
        "deal_end": None,
        "coupon": None,
        "raw_snapshot": {},
        "provider_last_update": None,
    }
    values.update(overrides)
    return ExtractedDealData(**values)


def make_scored(*, score: int = 70, discount: float = 30.0, **deal_overrides: Any) -> ScoredDeal:
    return ScoredDeal(deal=make_deal(**deal_overrides), score=score, discount=discount, components={})


@dataclass
class FakeProvider:
    products: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    tokens_consumed: int | None = 15
    tokens_left: int | None = None
    error: Exception | None = None
    calls: list[str] = field(default_factory=list)

    async def fetch_category(self, category_id: str, *, now: datetime | None = None) -> ProviderResponse:
        self.calls.append(category_id)
        if self.error is not None:
            raise self.error
        return ProviderResponse(
            category_id=category_id,
            products=list(self.products.get(category_id, [])),
            tokens_consumed=self.tokens_consumed,
            tokens_left=self.tokens_left,
            refill_in_ms=None,
            fetched_at=now or NOW,
        )

    async def close(self) -> None:
        return None


@dataclass
class FakePublisher:
    published: list[tuple[str, str]] = field(default_factory=list)
    failing_rules: set[str] = field(default_factory=set)

    async def publish(self, rule: AutomationRule, deal: ScoredDeal) -> None:
        if rule.id in self.failing_rules:
            raise PublishError(f"channel rejected deal for {rule.id}")
        self.published.append((rule.id, deal.asin))

    async def close(self) -> None:
        return None


def build_context(
    settings: Settings | None = None,
    *,
    repository: StateRepository | None = None,
    provider: FakeProvider | None = None,
    publisher: FakePublisher | None = None,
) -> IngestionContext:
    return IngestionContext.from_settings(
        settings or make_settings(),
        repository=repository or InMemoryStateRepository(),
        provider=provider or FakeProvider(),  # type: ignore[arg-type]
        publisher=publisher or FakePublisher(),  # type: ignore[arg-type]
        rng=random.Random(7),
    )

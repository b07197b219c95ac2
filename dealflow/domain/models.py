from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["pending", "dispatched", "completed", "failed"]
OutcomeStatus = Literal["completed", "failed"]
RuleStatus = Literal["idle", "running", "error"]
CouponKind = Literal["percent", "fixed"]
DealType = Literal["lightning", "deal_of_day", "price_drop", "warehouse"]
PublishMode = Literal["DISCOUNTED_ONLY", "LOWEST_PRICE", "BOTH"]

OPEN_JOB_STATUSES = frozenset({"pending", "dispatched"})


@dataclass(slots=True)
class AutomationRule:
    id: str
    user_id: str
    categories: list[str]
    channel_id: str | None
    min_score: float = 0
    min_discount: float = 0
    min_price: float | None = None
    max_price: float | None = None
    min_rating: float | None = None
    min_reviews: int | None = None
    exclude_keywords: list[str] = field(default_factory=list)
    is_active: bool = True
    interval_minutes: int = 60
    deals_per_run: int = 3
    publish_mode: PublishMode | None = None
    dedupe_window_hours: int = 168
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    total_runs: int = 0
    deals_published: int = 0
    clicks_generated: int = 0

    @property
    def primary_category(self) -> str | None:
        for category in self.categories:
            if category:
                return category
        return None


@dataclass(slots=True)
class CategoryJob:
    id: str
    category_id: str
    rule_ids: list[str]
    created_at: datetime
    status: JobStatus = "pending"
    attempt: int = 0
    next_attempt_at: datetime | None = None
    lease_expires_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None

    @property
    def is_prefetch(self) -> bool:
        return not self.rule_ids


@dataclass(slots=True)
class CategoryOutcome:
    category_id: str
    status: OutcomeStatus
    finished_at: datetime
    error: str | None = None


@dataclass(slots=True)
class TokenBucketState:
    tokens_available: float
    capacity: int
    refill_rate_per_minute: float
    last_refill_at: datetime


@dataclass(slots=True)
class Coupon:
    value: float | None
    kind: CouponKind


@dataclass(slots=True)
class ExtractedDealData:
    asin: str
    title: str
    category: str
    subcategory: str | None
    brand: str | None
    current_price: float
    list_price: float | None
    avg_price_30: float | None
    min_price_30: float | None
    max_price_30: float | None
    avg_price_90: float | None
    min_price_90: float | None
    max_price_90: float | None
    min_price_ever: float | None
    price_drop_percent: float | None
    is_lowest_ever: bool
    is_lowest_30: bool
    sales_rank: int | None
    sales_rank_category: str | None
    rating: float | None
    review_count: int | None
    deal_type: DealType | None
    deal_start: datetime | None
    deal_end: datetime | None
    coupon: Coupon | None
    raw_snapshot: dict[str, Any]
    provider_last_update: datetime | None


@dataclass(slots=True)
class ScoredDeal:
    deal: ExtractedDealData
    score: int
    discount: float
    components: dict[str, float]

    @property
    def asin(self) -> str:
        return self.deal.asin

    @property
    def category(self) -> str:
        return self.deal.category

    @property
    def current_price(self) -> float:
        return self.deal.current_price

    @property
    def rating(self) -> float | None:
        return self.deal.rating


@dataclass(slots=True)
class ProviderResponse:
    category_id: str
    products: list[dict[str, Any]]
    tokens_consumed: int | None
    tokens_left: int | None
    refill_in_ms: int | None
    fetched_at: datetime


@dataclass(slots=True)
class CachedCategory:
    category_id: str
    products: list[dict[str, Any]]
    fetched_at: datetime


@dataclass(slots=True)
class RuleRunResult:
    rule_id: str
    deals_matched: int
    deals_published: int
    duplicate: bool
    skipped: bool = False


@dataclass(slots=True)
class JobRunResult:
    job_id: str
    category_id: str
    deals_processed: int
    rules: list[RuleRunResult]
    tokens_consumed: int
    cache_hit: bool

    @property
    def deals_published(self) -> int:
        return sum(row.deals_published for row in self.rules)

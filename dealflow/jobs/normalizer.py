from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from dealflow.domain.models import Coupon, DealType, ExtractedDealData

logger = logging.getLogger(__name__)

PROVIDER_EPOCH = datetime(2011, 1, 1, tzinfo=timezone.utc)

PRICE_SERIES = 0
SALES_RANK_SERIES = 3
RATING_SERIES = 16
REVIEW_COUNT_SERIES = 17

CURRENT_PRICE_SLOT = 0
LIST_PRICE_SLOT = 5

PRICE_DROP_RATIO = 0.8
MAX_SNAPSHOT_OFFERS = 5
COUPON_PERCENT_CODE = 1


@dataclass(slots=True)
class PriceStats:
    avg_30: float | None = None
    min_30: float | None = None
    max_30: float | None = None
    avg_90: float | None = None
    min_90: float | None = None
    max_90: float | None = None
    min_ever: float | None = None


def provider_time(minutes: int | float) -> datetime:
    return PROVIDER_EPOCH + timedelta(minutes=minutes)


def iter_points(series: Any) -> Iterable[tuple[int | float, int | float]]:
    """Yields (minutes, value) pairs from a flat [t0, v0, t1, v1, ...] series, skipping no-data entries."""
    if not isinstance(series, Sequence) or isinstance(series, (str, bytes)):
        return
    for index in range(0, len(series) - 1, 2):
        minutes = _as_number(series[index])
        value = _as_number(series[index + 1])
        if minutes is None or value is None or value < 0:
            continue
        yield minutes, value


def latest_positive(series: Any) -> int | float | None:
    latest = None
    for _, value in iter_points(series):
        if value > 0:
            latest = value
    return latest


def price_stats(series: Any, *, now: datetime) -> PriceStats:
    cutoff_30 = now - timedelta(days=30)
    cutoff_90 = now - timedelta(days=90)
    all_prices: list[float] = []
    prices_30: list[float] = []
    prices_90: list[float] = []
    for minutes, value in iter_points(series):
        price = value / 100
        observed_at = provider_time(minutes)
        all_prices.append(price)
        if observed_at >= cutoff_90:
            prices_90.append(price)
        if observed_at >= cutoff_30:
            prices_30.append(price)

    return PriceStats(
        avg_30=_mean(prices_30),
        min_30=min(prices_30) if prices_30 else None,
        max_30=max(prices_30) if prices_30 else None,
        avg_90=_mean(prices_90),
        min_90=min(prices_90) if prices_90 else None,
        max_90=max(prices_90) if prices_90 else None,
        min_ever=min(all_prices) if all_prices else None,
    )


def extract(product: Mapping[str, Any], now: datetime | None = None) -> ExtractedDealData:
    now = now or datetime.now(timezone.utc)
    csv = product.get("csv")
    stats = price_stats(_series(csv, PRICE_SERIES), now=now)
    current_price = _current_price(product)
    list_price = _list_price(product)

    price_drop_percent = None
    if stats.avg_30 and current_price > 0:
        price_drop_percent = (stats.avg_30 - current_price) / stats.avg_30 * 100

    deal_type, deal_start, deal_end = _deal_info(product, current_price=current_price, list_price=list_price)
    rating = latest_positive(_series(csv, RATING_SERIES))
    review_count = latest_positive(_series(csv, REVIEW_COUNT_SERIES))
    sales_rank = latest_positive(_series(csv, SALES_RANK_SERIES))
    root_category = _as_text(product.get("rootCategory"))
    last_update = _as_number(product.get("lastUpdate"))

    return ExtractedDealData(
        asin=_as_text(product.get("asin")) or "",
        title=_as_text(product.get("title")) or "",
        category=_tree_name(product, 0) or root_category or "Unknown",
        subcategory=_tree_name(product, 1),
        brand=_as_text(product.get("brand")),
        current_price=current_price,
        list_price=list_price,
        avg_price_30=stats.avg_30,
        min_price_30=stats.min_30,
        max_price_30=stats.max_30,
        avg_price_90=stats.avg_90,
        min_price_90=stats.min_90,
        max_price_90=stats.max_90,
        min_price_ever=stats.min_ever,
        price_drop_percent=price_drop_percent,
        is_lowest_ever=stats.min_ever is not None and current_price > 0 and current_price <= stats.min_ever,
        is_lowest_30=stats.min_30 is not None and current_price > 0 and current_price <= stats.min_30,
        sales_rank=int(sales_rank) if sales_rank is not None else None,
        sales_rank_category=root_category,
        rating=rating / 10 if rating is not None else None,
        review_count=int(review_count) if review_count is not None else None,
        deal_type=deal_type,
        deal_start=deal_start,
        deal_end=deal_end,
        coupon=_coupon(product.get("coupon")),
        raw_snapshot=_snapshot(product),
        provider_last_update=provider_time(last_update) if last_update and last_update > 0 else None,
    )


def extract_many(products: Iterable[Any], now: datetime | None = None) -> list[ExtractedDealData]:
    now = now or datetime.now(timezone.utc)
    extracted: list[ExtractedDealData] = []
    for product in products:
        if not isinstance(product, Mapping):
            logger.warning("skipping malformed provider product type=%s", type(product).__name__)
            continue
        extracted.append(extract(product, now=now))
    return extracted


def _current_price(product: Mapping[str, Any]) -> float:
    current = _stats_slot(product, CURRENT_PRICE_SLOT)
    if current is not None and current > 0:
        return current / 100
    latest = latest_positive(_series(product.get("csv"), PRICE_SERIES))
    if latest is not None:
        return latest / 100
    return 0.0


def _list_price(product: Mapping[str, Any]) -> float | None:
    value = _stats_slot(product, LIST_PRICE_SLOT)
    if value is not None and value > 0:
        return value / 100
    return None


def _deal_info(
    product: Mapping[str, Any],
    *,
    current_price: float,
    list_price: float | None,
) -> tuple[DealType | None, datetime | None, datetime | None]:
    lightning = product.get("lightning")
    if lightning:
        if isinstance(lightning, Mapping):
            return "lightning", _as_datetime(lightning.get("startTime")), _as_datetime(lightning.get("endTime"))
        return "lightning", None, None

    if product.get("dealOfTheDay"):
        return "deal_of_day", None, None

    if list_price and current_price > 0 and current_price < list_price * PRICE_DROP_RATIO:
        return "price_drop", None, None

    condition = _as_text(product.get("condition"))
    if product.get("isWarehouse") or (condition is not None and condition.lower() != "new"):
        return "warehouse", None, None

    return None, None, None


def _coupon(raw: Any) -> Coupon | None:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)) or not raw:
        return None
    value = _as_number(raw[0])
    type_code = _as_number(raw[1]) if len(raw) > 1 else None
    return Coupon(
        value=value / 100 if value else None,
        kind="percent" if type_code == COUPON_PERCENT_CODE else "fixed",
    )


def _snapshot(product: Mapping[str, Any]) -> dict[str, Any]:
    offers = product.get("offers")
    return {
        "csv": product.get("csv"),
        "stats": product.get("stats"),
        "offers": list(offers[:MAX_SNAPSHOT_OFFERS]) if isinstance(offers, Sequence) and not isinstance(offers, str) else None,
        "buyBoxSellerIdHistory": product.get("buyBoxSellerIdHistory"),
        "coupon": product.get("coupon"),
        "lightning": product.get("lightning"),
    }


def _series(csv: Any, index: int) -> Any:
    if not isinstance(csv, Sequence) or isinstance(csv, (str, bytes)) or len(csv) <= index:
        return None
    return csv[index]


def _stats_slot(product: Mapping[str, Any], index: int) -> int | float | None:
    stats = product.get("stats")
    if not isinstance(stats, Mapping):
        return None
    current = stats.get("current")
    if not isinstance(current, Sequence) or isinstance(current, (str, bytes)) or len(current) <= index:
        return None
    return _as_number(current[index])


def _tree_name(product: Mapping[str, Any], index: int) -> str | None:
    tree = product.get("categoryTree")
    if not isinstance(tree, Sequence) or isinstance(tree, (str, bytes)) or len(tree) <= index:
        return None
    node = tree[index]
    if not isinstance(node, Mapping):
        return None
    return _as_text(node.get("name"))


def _as_datetime(value: Any) -> datetime | None:
    number = _as_number(value)
    if number is not None:
        return provider_time(number) if number > 0 else None
    text = _as_text(value)
    if text is None:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def _as_text(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)

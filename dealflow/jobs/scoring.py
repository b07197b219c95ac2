from __future__ import annotations

import math

from dealflow.domain.models import ExtractedDealData, ScoredDeal

DISCOUNT_WEIGHT = 40
SALES_RANK_WEIGHT = 25
RATING_WEIGHT = 20
PRICE_DROP_WEIGHT = 15

DEFAULT_MAX_SALES_RANK = 75_000
# rank at which the sales rank component reaches zero
CATEGORY_MAX_SALES_RANK = {
    "Electronics": 50_000,
    "Home & Kitchen": 100_000,
    "Sports & Outdoors": 75_000,
    "Garden": 100_000,
    "Tools & Home Improvement": 75_000,
    "Books": 25_000,
}

REVIEW_BONUS_STEPS = ((10_000, 5), (5_000, 4), (1_000, 3), (500, 2), (100, 1))


def discount_percent(deal: ExtractedDealData) -> float:
    if deal.list_price and deal.current_price > 0:
        return max(0.0, (deal.list_price - deal.current_price) / deal.list_price * 100)
    if deal.price_drop_percent and deal.price_drop_percent > 0:
        return deal.price_drop_percent
    return 0.0


def score_deal(deal: ExtractedDealData) -> ScoredDeal:
    discount = discount_percent(deal)
    has_rating = deal.rating is not None
    has_sales_rank = deal.sales_rank is not None

    raw_discount = min(DISCOUNT_WEIGHT, discount / 100 * DISCOUNT_WEIGHT)
    raw_sales_rank = _sales_rank_score(deal.sales_rank, deal.category) if has_sales_rank else 0.0
    raw_rating = _rating_score(deal.rating, deal.review_count) if has_rating else 0.0
    raw_price_drop = _price_drop_score(deal)

    if not has_rating and not has_sales_rank:
        components = {
            "discount": raw_discount / DISCOUNT_WEIGHT * 70,
            "sales_rank": 0.0,
            "rating": 0.0,
            "price_drop": raw_price_drop / PRICE_DROP_WEIGHT * 30,
        }
    elif not has_rating:
        components = {
            "discount": raw_discount / DISCOUNT_WEIGHT * 50,
            "sales_rank": raw_sales_rank / SALES_RANK_WEIGHT * 30,
            "rating": 0.0,
            "price_drop": raw_price_drop / PRICE_DROP_WEIGHT * 20,
        }
    else:
        components = {
            "discount": raw_discount,
            "sales_rank": raw_sales_rank,
            "rating": raw_rating,
            "price_drop": raw_price_drop,
        }

    total = _round_half_up(sum(components.values()))
    return ScoredDeal(deal=deal, score=min(100, max(0, total)), discount=discount, components=components)


def score_label(score: int) -> str:
    if score >= 85:
        return "hot"
    if score >= 70:
        return "great"
    if score >= 50:
        return "good"
    return "normal"


def _sales_rank_score(sales_rank: int | None, category: str) -> float:
    if not sales_rank or sales_rank <= 0:
        return 0.0
    max_rank = CATEGORY_MAX_SALES_RANK.get(category, DEFAULT_MAX_SALES_RANK)
    if sales_rank <= 1:
        return float(SALES_RANK_WEIGHT)
    if sales_rank >= max_rank:
        return 0.0
    return max(0.0, SALES_RANK_WEIGHT * (1 - math.log10(sales_rank) / math.log10(max_rank)))


def _rating_score(rating: float | None, review_count: int | None) -> float:
    if not rating:
        return 0.0
    base = rating / 5 * 15
    bonus = 0
    for threshold, points in REVIEW_BONUS_STEPS:
        if review_count and review_count >= threshold:
            bonus = points
            break
    return min(float(RATING_WEIGHT), base + bonus)


def _price_drop_score(deal: ExtractedDealData) -> float:
    reference = deal.list_price or deal.avg_price_30
    if not reference or deal.current_price <= 0 or deal.current_price >= reference:
        return 0.0
    drop = (reference - deal.current_price) / reference * 100
    return min(float(PRICE_DROP_WEIGHT), drop / 100 * PRICE_DROP_WEIGHT)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))

from __future__ import annotations

from collections.abc import Iterable

from dealflow.domain.models import AutomationRule, ScoredDeal


def matches(rule: AutomationRule, deal: ScoredDeal) -> bool:
    """All thresholds are inclusive; `min_rating` is expressed in tenths of a star.

    Rating and review floors only apply when the provider reported a value.
    """
    if deal.score < rule.min_score:
        return False
    if deal.discount < rule.min_discount:
        return False
    if rule.min_price is not None and deal.current_price < rule.min_price:
        return False
    if rule.max_price is not None and deal.current_price > rule.max_price:
        return False
    if rule.min_rating is not None and (deal.rating is None or round(deal.rating * 10, 6) < rule.min_rating):
        return False
    if deal.category not in rule.categories:
        return False
    review_count = deal.deal.review_count
    if rule.min_reviews is not None and review_count is not None and review_count < rule.min_reviews:
        return False
    if rule.exclude_keywords and _mentions_any(deal.deal.title, rule.exclude_keywords):
        return False
    return _fits_publish_mode(rule, deal)


def rank_deals(rule: AutomationRule, deals: Iterable[ScoredDeal]) -> list[ScoredDeal]:
    matched = [deal for deal in deals if matches(rule, deal)]
    matched.sort(key=lambda deal: (-deal.score, -deal.discount, deal.asin))
    return matched


def select_deals(rule: AutomationRule, deals: Iterable[ScoredDeal]) -> list[ScoredDeal]:
    return rank_deals(rule, deals)[: max(0, rule.deals_per_run)]


def has_visible_discount(deal: ScoredDeal) -> bool:
    list_price = deal.deal.list_price
    return list_price is not None and deal.current_price > 0 and list_price > deal.current_price


def _fits_publish_mode(rule: AutomationRule, deal: ScoredDeal) -> bool:
    if rule.publish_mode == "DISCOUNTED_ONLY":
        return has_visible_discount(deal)
    if rule.publish_mode == "LOWEST_PRICE":
        return deal.deal.is_lowest_ever
    if rule.publish_mode == "BOTH":
        return has_visible_discount(deal) or deal.deal.is_lowest_ever
    return True


def _mentions_any(title: str, keywords: list[str]) -> bool:
    lowered = title.lower()
    return any(keyword.strip().lower() in lowered for keyword in keywords if keyword.strip())

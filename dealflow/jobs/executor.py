from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace

from dealflow.domain.models import (
    AutomationRule,
    CachedCategory,
    CategoryJob,
    JobRunResult,
    ProviderResponse,
    RuleRunResult,
    ScoredDeal,
)
from dealflow.jobs.matching import rank_deals
from dealflow.jobs.normalizer import extract_many
from dealflow.jobs.scoring import score_deal
from dealflow.services.keys import Metric
from dealflow.services.provider_client import ProviderClient
from dealflow.services.publisher import ChannelPublisher, PublishError
from dealflow.services.repository import StateRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def next_run_at(rule: AutomationRule, *, now: datetime, jitter_ratio: float, rng: random.Random) -> datetime:
    interval_seconds = max(1, rule.interval_minutes) * 60
    jitter = rng.uniform(-jitter_ratio, jitter_ratio) if jitter_ratio > 0 else 0.0
    return now + timedelta(seconds=interval_seconds * (1 + jitter))


def score_products(products: list[dict[str, Any]], *, now: datetime) -> list[ScoredDeal]:
    return [score_deal(deal) for deal in extract_many(products, now=now) if deal.asin]


class CategoryJobExecutor:
    """Runs the provider call and per-rule publishing for one claimed category job."""

    def __init__(
        self,
        repository: StateRepository,
        provider: ProviderClient,
        publisher: ChannelPublisher,
        *,
        dedup_ttl_seconds: int,
        cache_fresh_seconds: int,
        jitter_ratio: float,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.publisher = publisher
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.cache_fresh_seconds = cache_fresh_seconds
        self.jitter_ratio = max(0.0, jitter_ratio)
        self.rng = rng or random.Random()

    async def fresh_cache(self, category_id: str, *, now: datetime) -> CachedCategory | None:
        if self.cache_fresh_seconds <= 0:
            return None
        cached = await self.repository.get_cached_category(category_id)
        if cached is None:
            return None
        if now - cached.fetched_at > timedelta(seconds=self.cache_fresh_seconds):
            return None
        return cached

    async def fetch(self, category_id: str, *, now: datetime) -> ProviderResponse:
        response = await self.provider.fetch_category(category_id, now=now)
        await self.repository.save_cached_category(
            category_id=category_id,
            products=response.products,
            fetched_at=response.fetched_at,
        )
        return response

    async def process(
        self,
        job: CategoryJob,
        products: list[dict[str, Any]],
        *,
        tokens_consumed: int,
        cache_hit: bool,
        now: datetime | None = None,
    ) -> JobRunResult:
        now = now or datetime.now(timezone.utc)
        with tracer.start_as_current_span("ingestion.process_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.category", job.category_id)
            span.set_attribute("job.rules", len(job.rule_ids))
            scored = score_products(products, now=now)
            results: list[RuleRunResult] = []
            for rule_id in job.rule_ids:
                results.append(await self.process_rule(job.id, rule_id, scored, now=now))

        logger.info(
            "processed category job id=%s category=%s deals=%s rules=%s published=%s cache_hit=%s",
            job.id,
            job.category_id,
            len(scored),
            len(results),
            sum(row.deals_published for row in results),
            cache_hit,
        )
        return JobRunResult(
            job_id=job.id,
            category_id=job.category_id,
            deals_processed=len(scored),
            rules=results,
            tokens_consumed=tokens_consumed,
            cache_hit=cache_hit,
        )

    async def process_rule(
        self,
        job_id: str,
        rule_id: str,
        scored: list[ScoredDeal],
        *,
        now: datetime,
        rule: AutomationRule | None = None,
    ) -> RuleRunResult:
        rule = rule or await self.repository.get_rule(rule_id)
        if rule is None or not rule.is_active:
            logger.info("skipping rule no longer active id=%s job=%s", rule_id, job_id)
            return RuleRunResult(rule_id=rule_id, deals_matched=0, deals_published=0, duplicate=False, skipped=True)

        ranked = rank_deals(rule, scored)
        published = 0
        duplicate = False
        if ranked:
            claimed = await self.repository.put_dedup_marker(
                job_id=job_id,
                rule_id=rule.id,
                now=now,
                ttl_seconds=self.dedup_ttl_seconds,
            )
            if not claimed:
                duplicate = True
                await self.repository.increment_metric(Metric.DUPLICATES_SKIPPED)
                logger.info("duplicate publish skipped job=%s rule=%s", job_id, rule.id)
            else:
                published = await self._publish_all(rule, ranked, now=now)
                if published:
                    await self.repository.increment_metric(Metric.DEALS_PUBLISHED, published)
                else:
                    # nothing went out, so a retry of this job may try again
                    await self.repository.delete_dedup_marker(job_id=job_id, rule_id=rule.id)

        await self.repository.record_rule_run(
            rule_id=rule.id,
            ran_at=now,
            next_run_at=next_run_at(rule, now=now, jitter_ratio=self.jitter_ratio, rng=self.rng),
            deals_published=published,
        )
        await self.repository.increment_metric(Metric.RULES_PROCESSED)
        return RuleRunResult(
            rule_id=rule.id,
            deals_matched=min(len(ranked), max(0, rule.deals_per_run)),
            deals_published=published,
            duplicate=duplicate,
        )

    async def _publish_all(self, rule: AutomationRule, ranked: list[ScoredDeal], *, now: datetime) -> int:
        """Publish ranked deals until `deals_per_run` went out.

        A deal already posted to the rule's channel inside the rule's dedupe window
        is skipped and the next ranked deal takes its slot.
        """
        published = 0
        for deal in ranked:
            if published >= rule.deals_per_run:
                break
            if rule.channel_id:
                claimed = await self.repository.claim_channel_deal(
                    channel_id=rule.channel_id,
                    asin=deal.asin,
                    rule_id=rule.id,
                    now=now,
                    window_hours=rule.dedupe_window_hours,
                )
                if not claimed:
                    await self.repository.increment_metric(Metric.DUPLICATES_SKIPPED)
                    logger.info("deal already posted to channel=%s asin=%s rule=%s", rule.channel_id, deal.asin, rule.id)
                    continue
            try:
                await self.publisher.publish(rule, deal)
            except PublishError:
                logger.exception("publish failed rule=%s asin=%s", rule.id, deal.asin)
                if rule.channel_id:
                    await self.repository.release_channel_deal(channel_id=rule.channel_id, asin=deal.asin)
                await self.repository.increment_metric(Metric.ERRORS)
                continue
            published += 1
        return published

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from dealflow.context import IngestionContext
from dealflow.domain.models import CategoryJob, RuleStatus
from dealflow.services.keys import manual_job_id
from dealflow.services.provider_client import ProviderError

logger = logging.getLogger(__name__)


class ManualRunError(Exception):
    """Base error for run-now requests."""


class RuleNotFoundError(ManualRunError):
    """Raised when the rule does not exist."""


class RuleInactiveError(ManualRunError):
    """Raised when the rule is paused."""


class QuotaExhaustedError(ManualRunError):
    """Raised when the provider quota cannot cover an immediate call."""


@dataclass(slots=True)
class ManualRunResult:
    rule_id: str
    deals_processed: int
    deals_published: int
    execution_time_ms: int


async def run_rule_now(context: IngestionContext, rule_id: str, *, now: datetime | None = None) -> ManualRunResult:
    started = time.perf_counter()
    now = now or datetime.now(timezone.utc)
    rule = await context.repository.get_rule(rule_id)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    if not rule.is_active:
        raise RuleInactiveError(rule_id)
    category_id = rule.primary_category
    if category_id is None:
        raise RuleInactiveError(f"rule {rule_id} has no category")

    cost = context.settings.job_token_cost
    if not await context.limiter.try_consume(cost, now=now):
        raise QuotaExhaustedError(rule_id)

    try:
        response = await context.executor.fetch(category_id, now=now)
    except ProviderError:
        await context.limiter.record_usage(0, reserved=cost, now=now)
        raise

    actual = response.tokens_consumed if response.tokens_consumed is not None else cost
    await context.limiter.record_usage(actual, reserved=cost, now=now)
    await context.limiter.sync_from_provider(response.tokens_left, now=now)

    result = await context.executor.process(
        _manual_job(rule_id=rule.id, category_id=category_id, now=now),
        response.products,
        tokens_consumed=actual,
        cache_hit=False,
        now=now,
    )
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info("manual run rule=%s published=%s elapsed_ms=%s", rule.id, result.deals_published, elapsed_ms)
    return ManualRunResult(
        rule_id=rule.id,
        deals_processed=result.deals_processed,
        deals_published=result.deals_published,
        execution_time_ms=elapsed_ms,
    )


async def rule_status(context: IngestionContext, rule_id: str) -> RuleStatus:
    rule = await context.repository.get_rule(rule_id)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    category_id = rule.primary_category
    if category_id is None:
        return "idle"
    for job in await context.repository.list_open_jobs(category_id=category_id):
        if rule.id in job.rule_ids:
            return "running"
    outcome = await context.repository.get_category_outcome(category_id)
    if outcome is not None and outcome.status == "failed":
        return "error"
    return "idle"


def _manual_job(*, rule_id: str, category_id: str, now: datetime) -> CategoryJob:
    return CategoryJob(
        id=manual_job_id(rule_id, now),
        category_id=category_id,
        rule_ids=[rule_id],
        created_at=now,
        status="dispatched",
        attempt=1,
    )

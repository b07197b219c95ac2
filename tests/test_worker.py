from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from dealflow.domain.models import AutomationRule, CachedCategory, ScoredDeal
from dealflow.jobs.executor import score_products
from dealflow.services.provider_client import ProviderRequestError, ProviderTransientError
from dealflow.services.store import InMemoryStateRepository
from dealflow.worker import IngestionWorker
from support import NOW, FakeProvider, FakePublisher, build_context, make_product, make_rule, make_settings


def _electronics_products() -> list[dict]:
    return [
        make_product("A-DISCOUNT-18", current_cents=8200, list_cents=10000),
        make_product("B-DISCOUNT-25", current_cents=9000, list_cents=12000),
        make_product("C-TOO-PRICEY", current_cents=15000, list_cents=20000),
    ]


def _rule(rule_id: str = "r1", **overrides):
    values = {"min_discount": 20, "max_price": 100}
    values.update(overrides)
    return make_rule(rule_id, ["Electronics"], **values)


def test_end_to_end_tick_publishes_only_matching_deal() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()}, tokens_consumed=15)
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    rule = _rule()
    repository.add_rule(rule)
    context = build_context(repository=repository, provider=provider, publisher=publisher)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        scheduled = await worker.scheduler_tick(now=NOW)
        tick = await worker.worker_tick(now=NOW)
        return (
            scheduled,
            tick,
            await repository.get_metrics(),
            await context.limiter.available(now=NOW),
            await context.limiter.usage_today(now=NOW),
            await context.queue.depth(),
        )

    scheduled, tick, metrics, available, used, depth = asyncio.run(run())
    assert len(scheduled.jobs) == 1
    assert provider.calls == ["Electronics"]
    assert publisher.published == [("r1", "B-DISCOUNT-25")]
    assert len(tick.processed) == 1
    assert tick.processed[0].deals_processed == 3
    assert tick.processed[0].deals_published == 1
    assert rule.deals_published == 1
    assert rule.total_runs == 1
    assert rule.last_run_at == NOW
    assert rule.next_run_at == NOW + timedelta(minutes=60)
    assert metrics["deals_published"] == 1
    assert metrics["rules_processed"] == 1
    assert metrics["jobs_completed"] == 1
    assert available == pytest.approx(285.0)
    assert used == 15
    assert depth == 0


def test_one_provider_call_serves_every_rule_in_category() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()})
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    for index in range(5):
        repository.add_rule(_rule(f"r{index}", channel_id=f"channel-{index}"))
    repository.add_rule(_rule("no-match", min_score=101))
    context = build_context(repository=repository, provider=provider, publisher=publisher)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        await worker.worker_tick(now=NOW)

    asyncio.run(run())
    assert provider.calls == ["Electronics"]
    assert len(publisher.published) == 5
    assert repository.rules["no-match"].total_runs == 1
    assert repository.rules["no-match"].deals_published == 0


def test_replayed_publish_is_skipped_as_duplicate() -> None:
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    rule = _rule()
    repository.add_rule(rule)
    context = build_context(repository=repository, publisher=publisher)

    async def run():
        await context.open(now=NOW)
        scored = score_products(_electronics_products(), now=NOW)
        first = await context.executor.process_rule("job-1", "r1", scored, now=NOW)
        second = await context.executor.process_rule("job-1", "r1", scored, now=NOW)
        return first, second, await repository.get_metrics()

    first, second, metrics = asyncio.run(run())
    assert first.deals_published == 1 and first.duplicate is False
    assert second.deals_published == 0 and second.duplicate is True
    assert publisher.published == [("r1", "B-DISCOUNT-25")]
    assert rule.deals_published == 1
    assert rule.total_runs == 2
    assert metrics["duplicates_skipped"] == 1


def test_crash_recovery_publishes_once_per_rule() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()})
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    rule = _rule()
    repository.add_rule(rule)
    context_a = build_context(repository=repository, provider=provider, publisher=publisher)
    context_b = build_context(
        make_settings(worker_id="worker-b"),
        repository=repository,
        provider=provider,
        publisher=publisher,
    )
    worker_b = IngestionWorker(context_b)

    async def run():
        await context_a.open(now=NOW)
        await context_a.aggregator.run(now=NOW)
        [job] = await context_a.queue.dequeue_ready(15, worker_id="worker-a", now=NOW)
        response = await context_a.executor.fetch(job.category_id, now=NOW)
        await context_a.executor.process(job, response.products, tokens_consumed=15, cache_hit=False, now=NOW)
        # worker-a dies before marking the job completed
        later = NOW + timedelta(minutes=3)
        tick = await worker_b.worker_tick(now=later)
        return tick, await repository.get_metrics(), await context_b.queue.depth()

    tick, metrics, depth = asyncio.run(run())
    assert tick.requeued == 1
    assert len(tick.processed) == 1
    assert publisher.published == [("r1", "B-DISCOUNT-25")]
    assert rule.deals_published == 1
    assert metrics["duplicates_skipped"] == 1
    assert metrics["jobs_completed"] == 1
    assert depth == 0


def test_token_exhaustion_leaves_job_queued() -> None:
    provider = FakeProvider(products={"Electronics": [], "Books": []}, tokens_consumed=15)
    repository = InMemoryStateRepository()
    repository.add_rule(_rule("r1"))
    repository.add_rule(make_rule("r2", ["Books"]))
    context = build_context(make_settings(token_capacity=20), repository=repository, provider=provider)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        tick = await worker.worker_tick(now=NOW)
        return tick, await repository.get_metrics(), await repository.list_open_jobs()

    tick, metrics, jobs = asyncio.run(run())
    assert len(tick.processed) == 1
    assert tick.token_waits == 1
    assert metrics["token_waits"] == 1
    assert len(provider.calls) == 1
    assert [job.status for job in jobs] == ["pending"]


def test_transient_failures_retry_then_leave_rules_due() -> None:
    provider = FakeProvider(error=ProviderTransientError("provider returned 503"))
    repository = InMemoryStateRepository()
    rule = _rule()
    repository.add_rule(rule)
    context = build_context(repository=repository, provider=provider)
    worker = IngestionWorker(context)
    original_next_run = rule.next_run_at

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        first = await worker.worker_tick(now=NOW)
        retry_job = (await repository.list_open_jobs())[0]
        available = await context.limiter.available(now=NOW)
        current = NOW
        for _ in range(2):
            current += timedelta(minutes=30)
            await worker.worker_tick(now=current)
        outcome = await repository.get_category_outcome("Electronics")
        rebatched = await worker.scheduler_tick(now=current)
        return first, retry_job, available, outcome, rebatched, await repository.get_metrics()

    first, retry_job, available, outcome, rebatched, metrics = asyncio.run(run())
    assert first.failed == 1
    assert retry_job.status == "pending"
    assert retry_job.attempt == 1
    assert retry_job.next_attempt_at == NOW + timedelta(seconds=30)
    assert available == pytest.approx(300.0)
    assert len(provider.calls) == 3
    assert outcome is not None and outcome.status == "failed"
    assert metrics["errors"] == 1
    assert rule.total_runs == 0
    assert rule.next_run_at == original_next_run
    assert len(rebatched.jobs) == 1


def test_permanent_provider_error_fails_job_immediately() -> None:
    provider = FakeProvider(error=ProviderRequestError("provider rejected request with 400"))
    repository = InMemoryStateRepository()
    repository.add_rule(_rule())
    context = build_context(repository=repository, provider=provider)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        await worker.worker_tick(now=NOW)
        return await context.queue.depth(), await repository.get_category_outcome("Electronics")

    depth, outcome = asyncio.run(run())
    assert depth == 0
    assert outcome is not None and outcome.status == "failed"
    assert len(provider.calls) == 1


def test_fresh_cache_serves_category_without_tokens() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()}, tokens_consumed=15)
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    repository.add_rule(_rule())
    context = build_context(
        make_settings(cache_fresh_seconds=1800, token_refill_per_minute=0.0),
        repository=repository,
        provider=provider,
        publisher=publisher,
    )
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        await worker.worker_tick(now=NOW)
        later = NOW + timedelta(minutes=10)
        await context.queue.enqueue("Electronics", ["r1"], now=later)
        tick = await worker.worker_tick(now=later)
        return tick, await repository.get_metrics(), await context.limiter.available(now=later)

    tick, metrics, available = asyncio.run(run())
    assert provider.calls == ["Electronics"]
    assert tick.processed[0].cache_hit is True
    assert metrics["cache_hits"] == 1
    assert available == pytest.approx(285.0)
    # the cached deal already went to channel-1 ten minutes earlier
    assert publisher.published == [("r1", "B-DISCOUNT-25")]
    assert metrics["duplicates_skipped"] == 1


def test_publish_failure_is_counted_without_failing_job() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()})
    publisher = FakePublisher(failing_rules={"r1"})
    repository = InMemoryStateRepository()
    rule = _rule()
    repository.add_rule(rule)
    context = build_context(repository=repository, provider=provider, publisher=publisher)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        await worker.worker_tick(now=NOW)
        return await repository.get_metrics(), await context.queue.depth()

    metrics, depth = asyncio.run(run())
    assert metrics["errors"] == 1
    assert metrics["jobs_completed"] == 1
    assert depth == 0
    assert rule.total_runs == 1
    assert rule.deals_published == 0


def test_paused_and_deleted_rules_are_skipped() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()})
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    paused = _rule("paused")
    repository.add_rule(paused)
    repository.add_rule(_rule("deleted"))
    context = build_context(repository=repository, provider=provider, publisher=publisher)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        paused.is_active = False
        del repository.rules["deleted"]
        return await worker.worker_tick(now=NOW)

    tick = asyncio.run(run())
    assert [row.skipped for row in tick.processed[0].rules] == [True, True]
    assert publisher.published == []
    assert paused.total_runs == 0


def test_provider_token_balance_overrides_local_counter() -> None:
    provider = FakeProvider(products={"Electronics": []}, tokens_consumed=5, tokens_left=120)
    repository = InMemoryStateRepository()
    repository.add_rule(_rule())
    context = build_context(repository=repository, provider=provider)
    worker = IngestionWorker(context)

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        await worker.worker_tick(now=NOW)
        return await context.limiter.available(now=NOW), await context.limiter.usage_today(now=NOW)

    available, used = asyncio.run(run())
    assert available == pytest.approx(120.0)
    assert used == 5


class SlowPublisher(FakePublisher):
    async def publish(self, rule: AutomationRule, deal: ScoredDeal) -> None:
        await asyncio.sleep(0.05)
        await super().publish(rule, deal)


def test_concurrent_runs_of_same_job_publish_once() -> None:
    publisher = SlowPublisher()
    repository = InMemoryStateRepository()
    rule = _rule()
    repository.add_rule(rule)
    context = build_context(repository=repository, publisher=publisher)

    async def run():
        await context.open(now=NOW)
        scored = score_products(_electronics_products(), now=NOW)
        results = await asyncio.gather(
            context.executor.process_rule("job-1", "r1", scored, now=NOW),
            context.executor.process_rule("job-1", "r1", scored, now=NOW),
        )
        return results, await repository.get_metrics()

    results, metrics = asyncio.run(run())
    assert publisher.published == [("r1", "B-DISCOUNT-25")]
    assert sorted(row.duplicate for row in results) == [False, True]
    assert rule.deals_published == 1
    assert metrics["deals_published"] == 1
    assert metrics["duplicates_skipped"] == 1


def test_channel_history_blocks_repost_from_later_jobs() -> None:
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    rule = _rule(dedupe_window_hours=24)
    sibling = _rule("r2")
    repository.add_rule(rule)
    repository.add_rule(sibling)
    context = build_context(repository=repository, publisher=publisher)

    async def run():
        await context.open(now=NOW)
        scored = score_products(_electronics_products(), now=NOW)
        first = await context.executor.process_rule("job-1", "r1", scored, now=NOW)
        second = await context.executor.process_rule("job-2", "r1", scored, now=NOW + timedelta(hours=1))
        other_rule = await context.executor.process_rule("job-2", "r2", scored, now=NOW + timedelta(hours=1))
        after_window = await context.executor.process_rule("job-3", "r1", scored, now=NOW + timedelta(hours=25))
        return first, second, other_rule, after_window, await repository.get_metrics()

    first, second, other_rule, after_window, metrics = asyncio.run(run())
    assert first.deals_published == 1
    assert second.deals_published == 0 and second.duplicate is False
    assert other_rule.deals_published == 0
    assert after_window.deals_published == 1
    assert publisher.published == [("r1", "B-DISCOUNT-25"), ("r1", "B-DISCOUNT-25")]
    assert metrics["duplicates_skipped"] == 2
    assert ("job-2", "r1") not in repository.dedup_markers


def test_channel_duplicate_frees_slot_for_next_ranked_deal() -> None:
    publisher = FakePublisher()
    repository = InMemoryStateRepository()
    rule = _rule(min_discount=15, deals_per_run=1)
    repository.add_rule(rule)
    context = build_context(repository=repository, publisher=publisher)

    async def run():
        await context.open(now=NOW)
        scored = score_products(_electronics_products(), now=NOW)
        await context.executor.process_rule("job-1", "r1", scored, now=NOW)
        await context.executor.process_rule("job-2", "r1", scored, now=NOW + timedelta(hours=1))

    asyncio.run(run())
    assert publisher.published == [("r1", "B-DISCOUNT-25"), ("r1", "A-DISCOUNT-18")]
    assert rule.deals_published == 2


def test_failed_publish_releases_channel_history() -> None:
    publisher = FakePublisher(failing_rules={"r1"})
    repository = InMemoryStateRepository()
    repository.add_rule(_rule())
    context = build_context(repository=repository, publisher=publisher)

    async def run():
        await context.open(now=NOW)
        scored = score_products(_electronics_products(), now=NOW)
        await context.executor.process_rule("job-1", "r1", scored, now=NOW)
        publisher.failing_rules.clear()
        return await context.executor.process_rule("job-1", "r1", scored, now=NOW + timedelta(minutes=1))

    retried = asyncio.run(run())
    assert retried.deals_published == 1
    assert retried.duplicate is False
    assert publisher.published == [("r1", "B-DISCOUNT-25")]


def test_job_claimed_without_tokens_is_released_without_spending_attempt() -> None:
    provider = FakeProvider(products={"Electronics": _electronics_products()})
    repository = InMemoryStateRepository()
    repository.add_rule(_rule())
    context = build_context(make_settings(token_capacity=10), repository=repository, provider=provider)
    worker = IngestionWorker(context)
    lookups: list[str] = []

    # the cache looks fresh when the job is peeked and has expired by the time it runs
    async def fresh_cache_once(category_id: str, *, now):
        lookups.append(category_id)
        if len(lookups) == 1:
            return CachedCategory(category_id=category_id, products=[], fetched_at=now)
        return None

    async def run():
        await context.open(now=NOW)
        await worker.scheduler_tick(now=NOW)
        context.executor.fresh_cache = fresh_cache_once  # type: ignore[method-assign]
        tick = await worker.worker_tick(now=NOW)
        return tick, await repository.list_open_jobs(), await repository.get_category_outcome("Electronics")

    tick, jobs, outcome = asyncio.run(run())
    assert provider.calls == []
    assert tick.processed == []
    assert tick.token_waits == 2
    assert [(job.status, job.attempt, job.last_error) for job in jobs] == [("pending", 0, "awaiting_tokens")]
    assert outcome is None

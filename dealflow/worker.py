from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from opentelemetry import trace

from dealflow.context import IngestionContext
from dealflow.core.config import get_settings
from dealflow.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from dealflow.domain.models import CategoryJob, JobRunResult
from dealflow.jobs.aggregator import AggregationResult
from dealflow.services.keys import Metric
from dealflow.services.provider_client import ProviderError, ProviderTransientError
from dealflow.services.repository import RepositoryConflictError, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class WorkerTickResult:
    requeued: int = 0
    processed: list[JobRunResult] = field(default_factory=list)
    failed: int = 0
    token_waits: int = 0


class IngestionWorker:
    def __init__(self, context: IngestionContext) -> None:
        self.context = context
        self.settings = context.settings

    async def scheduler_tick(self, *, now: datetime | None = None) -> AggregationResult:
        now = now or datetime.now(timezone.utc)
        with tracer.start_as_current_span("ingestion.scheduler_tick"):
            categories = await self.context.repository.pop_prefetch_request()
            if categories:
                jobs = await self.context.aggregator.prefetch(categories, now=now)
                logger.info("prefetch requested categories=%s jobs=%s", len(categories), len(jobs))
            result = await self.context.aggregator.run(now=now)
        if result.jobs:
            logger.info("batched due rules rules=%s jobs=%s", result.rules_seen, len(result.jobs))
        return result

    async def worker_tick(self, *, now: datetime | None = None) -> WorkerTickResult:
        result = WorkerTickResult()
        with tracer.start_as_current_span("ingestion.worker_tick"):
            result.requeued = await self.context.queue.requeue_expired(
                limit=self.settings.lease_reaper_batch_size,
                now=now or datetime.now(timezone.utc),
            )
            if result.requeued:
                logger.info("requeued expired leases: %s", result.requeued)

            for _ in range(max(0, self.settings.max_jobs_per_tick)):
                current = now or datetime.now(timezone.utc)
                peeked = await self.context.queue.peek_ready(now=current)
                if peeked is None:
                    break

                reserved = 0
                if await self.context.executor.fresh_cache(peeked.category_id, now=current) is None:
                    if not await self._reserve_tokens(result, now=current):
                        break
                    reserved = self.settings.job_token_cost

                claimed = await self.context.queue.dequeue_ready(
                    self.settings.job_token_cost,
                    worker_id=self.settings.worker_id,
                    now=current,
                )
                if not claimed:
                    if reserved:
                        await self.context.limiter.record_usage(0, reserved=reserved, now=current)
                    continue

                job = claimed[0]
                await self._run_job(job, reserved=reserved, result=result, now=current)
        return result

    async def _reserve_tokens(self, result: WorkerTickResult, *, now: datetime) -> bool:
        if await self.context.limiter.try_consume(self.settings.job_token_cost, now=now):
            return True
        result.token_waits += 1
        await self.context.repository.increment_metric(Metric.TOKEN_WAITS)
        logger.info("token budget exhausted; waiting for refill")
        return False

    async def _run_job(self, job: CategoryJob, *, reserved: int, result: WorkerTickResult, now: datetime) -> None:
        context = self.context
        worker_id = self.settings.worker_id
        with tracer.start_as_current_span("ingestion.run_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.category", job.category_id)
            span.set_attribute("job.attempt", job.attempt)

            cached = await context.executor.fresh_cache(job.category_id, now=now)
            if cached is not None and reserved:
                await context.limiter.record_usage(0, reserved=reserved, now=now)
                reserved = 0
            elif cached is None and not reserved:
                # claimed a different job than the one peeked and it needs a provider call
                if not await self._reserve_tokens(result, now=now):
                    await context.queue.release(job, worker_id=worker_id, reason="awaiting_tokens", now=now)
                    return
                reserved = self.settings.job_token_cost

            if cached is not None:
                await context.repository.increment_metric(Metric.CACHE_HITS)
                products = cached.products
                actual = 0
            else:
                try:
                    response = await context.executor.fetch(job.category_id, now=now)
                except ProviderError as exc:
                    await context.limiter.record_usage(0, reserved=reserved, now=now)
                    await context.queue.mark_failed(
                        job,
                        worker_id=worker_id,
                        error=str(exc),
                        retryable=isinstance(exc, ProviderTransientError),
                        now=now,
                    )
                    result.failed += 1
                    return
                products = response.products
                actual = response.tokens_consumed if response.tokens_consumed is not None else reserved
                await context.limiter.record_usage(actual, reserved=reserved, now=now)
                await context.limiter.sync_from_provider(response.tokens_left, now=now)

            run = await context.executor.process(
                job,
                products,
                tokens_consumed=actual,
                cache_hit=cached is not None,
                now=now,
            )
            try:
                await context.queue.mark_completed(job, worker_id=worker_id, now=now)
            except (RepositoryConflictError, RepositoryNotFoundError) as exc:
                logger.warning("lost lease before completion job=%s: %s", job.id, exc)
            result.processed.append(run)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, role="worker")
    context = IngestionContext.from_settings(settings)
    worker = IngestionWorker(context)

    backoff = settings.worker_tick_seconds
    last_schedule_at = 0.0

    try:
        await context.open()
        logger.info("worker started id=%s backend=%s", settings.worker_id, settings.state_backend)
        while True:
            try:
                now = time.monotonic()
                if now - last_schedule_at >= settings.scheduler_interval_seconds:
                    await worker.scheduler_tick()
                    last_schedule_at = now

                await worker.worker_tick()
                backoff = settings.worker_tick_seconds
                await asyncio.sleep(settings.worker_tick_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await context.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any
from uuid import uuid4

from dealflow.core.config import Settings
from dealflow.domain.models import (
    AutomationRule,
    CachedCategory,
    CategoryJob,
    CategoryOutcome,
    TokenBucketState,
)
from dealflow.jobs.limiter import refill_state
from dealflow.services.keys import Metric
from dealflow.services.repository import (
    PostgresStateRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    StateRepository,
)


class InMemoryStateRepository(StateRepository):
    """Process-local state for local runs and tests; every method holds one lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.rules: dict[str, AutomationRule] = {}
        self.jobs: dict[str, CategoryJob] = {}
        self.outcomes: dict[str, CategoryOutcome] = {}
        self.bucket: TokenBucketState | None = None
        self.token_usage: dict[date, int] = {}
        self.dedup_markers: dict[tuple[str, str], datetime] = {}
        self.channel_history: dict[tuple[str, str], datetime] = {}
        self.metrics: dict[str, int] = {metric.value: 0 for metric in Metric}
        self.cache: dict[str, CachedCategory] = {}
        self.last_processed_at: datetime | None = None
        self.prefetch_request: list[str] | None = None

    def add_rule(self, rule: AutomationRule) -> None:
        self.rules[rule.id] = rule

    async def list_due_rules(self, *, now: datetime, limit: int) -> list[AutomationRule]:
        async with self._lock:
            in_flight = {
                rule_id for job in self.jobs.values() if job.status == "dispatched" for rule_id in job.rule_ids
            }
            due = [
                rule
                for rule in self.rules.values()
                if rule.is_active
                and (rule.next_run_at is None or rule.next_run_at <= now)
                and rule.id not in in_flight
            ]
            due.sort(key=lambda rule: (rule.next_run_at is not None, rule.next_run_at or now, rule.id))
            return [_copy_rule(rule) for rule in due[: max(1, limit)]]

    async def list_upcoming_categories(self, *, now: datetime, until: datetime, limit: int) -> list[str]:
        async with self._lock:
            first_run: dict[str, datetime] = {}
            for rule in self.rules.values():
                category = rule.primary_category
                if not rule.is_active or category is None or rule.next_run_at is None:
                    continue
                if now < rule.next_run_at <= until:
                    current = first_run.get(category)
                    if current is None or rule.next_run_at < current:
                        first_run[category] = rule.next_run_at
            ordered = sorted(first_run, key=lambda category: first_run[category])
            return ordered[: max(1, limit)]

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        async with self._lock:
            rule = self.rules.get(rule_id)
            return _copy_rule(rule) if rule else None

    async def record_rule_run(
        self,
        *,
        rule_id: str,
        ran_at: datetime,
        next_run_at: datetime,
        deals_published: int,
    ) -> bool:
        async with self._lock:
            rule = self.rules.get(rule_id)
            if rule is None:
                return False
            rule.last_run_at = ran_at
            if rule.next_run_at is None or next_run_at > rule.next_run_at:
                rule.next_run_at = next_run_at
            rule.total_runs += 1
            rule.deals_published += max(0, deals_published)
            return True

    async def enqueue_category_job(self, *, category_id: str, rule_ids: list[str], now: datetime) -> CategoryJob:
        async with self._lock:
            job = self._pending_job_for(category_id)
            if job is None:
                job = CategoryJob(
                    id=str(uuid4()),
                    category_id=category_id,
                    rule_ids=_dedupe(rule_ids),
                    created_at=now,
                    next_attempt_at=now,
                )
                self.jobs[job.id] = job
            else:
                job.rule_ids = _dedupe(job.rule_ids + rule_ids)
            return _copy_job(job)

    async def peek_ready_job(self, *, now: datetime) -> CategoryJob | None:
        async with self._lock:
            ready = self._ready_jobs(now)
            return _copy_job(ready[0]) if ready else None

    async def claim_ready_jobs(
        self,
        *,
        limit: int,
        worker_id: str,
        lease_seconds: int,
        now: datetime,
    ) -> list[CategoryJob]:
        if limit <= 0:
            return []
        async with self._lock:
            claimed: list[CategoryJob] = []
            for job in self._ready_jobs(now)[:limit]:
                job.status = "dispatched"
                job.locked_by = worker_id
                job.lease_expires_at = now + timedelta(seconds=lease_seconds)
                job.attempt += 1
                claimed.append(_copy_job(job))
            return claimed

    async def get_job(self, job_id: str) -> CategoryJob | None:
        async with self._lock:
            job = self.jobs.get(job_id)
            return _copy_job(job) if job else None

    async def complete_job(self, *, job_id: str, worker_id: str, now: datetime) -> None:
        async with self._lock:
            job = self._dispatched_job(job_id, worker_id)
            del self.jobs[job_id]
            self.outcomes[job.category_id] = CategoryOutcome(
                category_id=job.category_id,
                status="completed",
                finished_at=now,
            )
            self.last_processed_at = now
            self.metrics[Metric.JOBS_COMPLETED.value] += 1

    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        retry_at: datetime | None,
        now: datetime,
    ) -> CategoryJob | None:
        async with self._lock:
            job = self._dispatched_job(job_id, worker_id)
            if retry_at is None:
                del self.jobs[job_id]
                self.outcomes[job.category_id] = CategoryOutcome(
                    category_id=job.category_id,
                    status="failed",
                    finished_at=now,
                    error=error,
                )
                self.metrics[Metric.ERRORS.value] += 1
                return None
            self._return_to_pending(job, next_attempt_at=retry_at, error=error)
            return _copy_job(job)

    async def release_job(self, *, job_id: str, worker_id: str, now: datetime, reason: str) -> CategoryJob:
        async with self._lock:
            job = self._dispatched_job(job_id, worker_id)
            self._return_to_pending(job, next_attempt_at=now, error=reason)
            job.attempt = max(0, job.attempt - 1)
            return _copy_job(job)

    async def requeue_expired_jobs(self, *, now: datetime, limit: int) -> int:
        async with self._lock:
            expired = [
                job
                for job in self.jobs.values()
                if job.status == "dispatched" and job.lease_expires_at is not None and job.lease_expires_at <= now
            ]
            expired.sort(key=lambda job: job.lease_expires_at or now)
            for job in expired[: max(1, limit)]:
                self._return_to_pending(job, next_attempt_at=now, error="lease_expired")
            return len(expired[: max(1, limit)])

    async def count_open_jobs(self) -> int:
        async with self._lock:
            return len(self.jobs)

    async def list_open_jobs(self, *, category_id: str | None = None) -> list[CategoryJob]:
        async with self._lock:
            jobs = [job for job in self.jobs.values() if category_id is None or job.category_id == category_id]
            jobs.sort(key=lambda job: (job.created_at, job.id))
            return [_copy_job(job) for job in jobs]

    async def get_category_outcome(self, category_id: str) -> CategoryOutcome | None:
        async with self._lock:
            outcome = self.outcomes.get(category_id)
            return replace(outcome) if outcome else None

    async def get_last_processed_at(self) -> datetime | None:
        async with self._lock:
            return self.last_processed_at

    async def init_token_bucket(self, *, capacity: int, refill_rate_per_minute: float, now: datetime) -> None:
        async with self._lock:
            if self.bucket is None:
                self.bucket = TokenBucketState(
                    tokens_available=float(capacity),
                    capacity=capacity,
                    refill_rate_per_minute=refill_rate_per_minute,
                    last_refill_at=now,
                )

    async def refill_tokens(
        self,
        *,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> TokenBucketState:
        async with self._lock:
            self.bucket = refill_state(
                self._require_bucket(),
                capacity=capacity,
                refill_rate_per_minute=refill_rate_per_minute,
                now=now,
            )
            return replace(self.bucket)

    async def try_consume_tokens(
        self,
        *,
        amount: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> bool:
        async with self._lock:
            state = refill_state(
                self._require_bucket(),
                capacity=capacity,
                refill_rate_per_minute=refill_rate_per_minute,
                now=now,
            )
            consumed = state.tokens_available >= amount
            if consumed:
                state.tokens_available -= amount
            self.bucket = state
            return consumed

    async def adjust_tokens(
        self,
        *,
        delta: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> TokenBucketState:
        async with self._lock:
            state = refill_state(
                self._require_bucket(),
                capacity=capacity,
                refill_rate_per_minute=refill_rate_per_minute,
                now=now,
            )
            state.tokens_available = min(float(capacity), max(0.0, state.tokens_available + delta))
            self.bucket = state
            return replace(state)

    async def set_tokens(self, *, tokens: float, capacity: int, now: datetime) -> TokenBucketState:
        async with self._lock:
            state = self._require_bucket()
            self.bucket = replace(
                state,
                tokens_available=min(float(capacity), max(0.0, tokens)),
                capacity=capacity,
                last_refill_at=max(state.last_refill_at, now),
            )
            return replace(self.bucket)

    async def add_token_usage(self, *, day: date, amount: int) -> int:
        async with self._lock:
            self.token_usage[day] = self.token_usage.get(day, 0) + amount
            return self.token_usage[day]

    async def get_token_usage(self, *, day: date) -> int:
        async with self._lock:
            return self.token_usage.get(day, 0)

    async def put_dedup_marker(self, *, job_id: str, rule_id: str, now: datetime, ttl_seconds: int) -> bool:
        async with self._lock:
            expires_at = self.dedup_markers.get((job_id, rule_id))
            if expires_at is not None and expires_at > now:
                return False
            self.dedup_markers[(job_id, rule_id)] = now + timedelta(seconds=ttl_seconds)
            return True

    async def delete_dedup_marker(self, *, job_id: str, rule_id: str) -> None:
        async with self._lock:
            self.dedup_markers.pop((job_id, rule_id), None)

    async def claim_channel_deal(
        self,
        *,
        channel_id: str,
        asin: str,
        rule_id: str,
        now: datetime,
        window_hours: int,
    ) -> bool:
        async with self._lock:
            expires_at = self.channel_history.get((channel_id, asin))
            if expires_at is not None and expires_at > now:
                return False
            self.channel_history[(channel_id, asin)] = now + timedelta(hours=max(0, window_hours))
            return True

    async def release_channel_deal(self, *, channel_id: str, asin: str) -> None:
        async with self._lock:
            self.channel_history.pop((channel_id, asin), None)

    async def increment_metric(self, metric: Metric, amount: int = 1) -> None:
        async with self._lock:
            self.metrics[metric.value] = self.metrics.get(metric.value, 0) + amount

    async def get_metrics(self) -> dict[str, int]:
        async with self._lock:
            return dict(self.metrics)

    async def save_cached_category(
        self,
        *,
        category_id: str,
        products: list[dict[str, Any]],
        fetched_at: datetime,
    ) -> None:
        async with self._lock:
            self.cache[category_id] = CachedCategory(
                category_id=category_id,
                products=list(products),
                fetched_at=fetched_at,
            )

    async def get_cached_category(self, category_id: str) -> CachedCategory | None:
        async with self._lock:
            cached = self.cache.get(category_id)
            return replace(cached, products=list(cached.products)) if cached else None

    async def clear_cached_categories(self) -> int:
        async with self._lock:
            cleared = len(self.cache)
            self.cache.clear()
            return cleared

    async def request_prefetch(self, *, categories: list[str], now: datetime) -> None:
        async with self._lock:
            self.prefetch_request = _dedupe((self.prefetch_request or []) + categories)

    async def pop_prefetch_request(self) -> list[str] | None:
        async with self._lock:
            request, self.prefetch_request = self.prefetch_request, None
            return request

    def _pending_job_for(self, category_id: str) -> CategoryJob | None:
        for job in self.jobs.values():
            if job.category_id == category_id and job.status == "pending":
                return job
        return None

    def _ready_jobs(self, now: datetime) -> list[CategoryJob]:
        ready = [
            job
            for job in self.jobs.values()
            if job.status == "pending" and (job.next_attempt_at is None or job.next_attempt_at <= now)
        ]
        ready.sort(key=lambda job: (job.created_at, job.id))
        return ready

    def _dispatched_job(self, job_id: str, worker_id: str) -> CategoryJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job.status != "dispatched":
            raise RepositoryConflictError("job is not dispatched")
        if job.locked_by != worker_id:
            raise RepositoryConflictError("job lease is held by another worker")
        return job

    def _return_to_pending(self, job: CategoryJob, *, next_attempt_at: datetime, error: str) -> None:
        newer = self._pending_job_for(job.category_id)
        if newer is not None and newer.id != job.id:
            job.rule_ids = _dedupe(job.rule_ids + newer.rule_ids)
            job.created_at = min(job.created_at, newer.created_at)
            del self.jobs[newer.id]
        job.status = "pending"
        job.next_attempt_at = next_attempt_at
        job.lease_expires_at = None
        job.locked_by = None
        job.last_error = error

    def _require_bucket(self) -> TokenBucketState:
        if self.bucket is None:
            raise RepositoryNotFoundError("token bucket not initialized")
        return self.bucket


def build_repository(settings: Settings) -> StateRepository:
    if settings.state_backend == "memory":
        return InMemoryStateRepository()
    return PostgresStateRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


def _copy_job(job: CategoryJob) -> CategoryJob:
    return replace(job, rule_ids=list(job.rule_ids))


def _copy_rule(rule: AutomationRule) -> AutomationRule:
    return replace(rule, categories=list(rule.categories), exclude_keywords=list(rule.exclude_keywords))


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    items: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            items.append(value)
    return items

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

from dealflow.domain.models import (
    AutomationRule,
    CachedCategory,
    CategoryJob,
    CategoryOutcome,
    TokenBucketState,
)
from dealflow.services.keys import LAST_PROCESSED_KEY, PREFETCH_REQUEST_KEY, TOKEN_BUCKET_KEY, Metric


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the state store is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class StateRepository(ABC):
    """Shared durable state used by every worker process and the API.

    Each mutating method is a single atomic operation against the backing store:
    callers never read a value, change it in Python and write it back.
    """

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # rules

    @abstractmethod
    async def list_due_rules(self, *, now: datetime, limit: int) -> list[AutomationRule]:
        """Active rules with next_run_at <= now that are not bound to a dispatched job."""

    @abstractmethod
    async def list_upcoming_categories(self, *, now: datetime, until: datetime, limit: int) -> list[str]: ...

    @abstractmethod
    async def get_rule(self, rule_id: str) -> AutomationRule | None: ...

    @abstractmethod
    async def record_rule_run(
        self,
        *,
        rule_id: str,
        ran_at: datetime,
        next_run_at: datetime,
        deals_published: int,
    ) -> bool:
        """Returns False when the rule no longer exists."""

    # category jobs

    @abstractmethod
    async def enqueue_category_job(self, *, category_id: str, rule_ids: list[str], now: datetime) -> CategoryJob: ...

    @abstractmethod
    async def peek_ready_job(self, *, now: datetime) -> CategoryJob | None: ...

    @abstractmethod
    async def claim_ready_jobs(
        self,
        *,
        limit: int,
        worker_id: str,
        lease_seconds: int,
        now: datetime,
    ) -> list[CategoryJob]: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> CategoryJob | None: ...

    @abstractmethod
    async def complete_job(self, *, job_id: str, worker_id: str, now: datetime) -> None: ...

    @abstractmethod
    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        retry_at: datetime | None,
        now: datetime,
    ) -> CategoryJob | None:
        """Returns the re-queued job, or None when the failure was terminal."""

    @abstractmethod
    async def release_job(self, *, job_id: str, worker_id: str, now: datetime, reason: str) -> CategoryJob:
        """Hands a dispatched job back to pending without spending one of its attempts."""

    @abstractmethod
    async def requeue_expired_jobs(self, *, now: datetime, limit: int) -> int: ...

    @abstractmethod
    async def count_open_jobs(self) -> int: ...

    @abstractmethod
    async def list_open_jobs(self, *, category_id: str | None = None) -> list[CategoryJob]: ...

    @abstractmethod
    async def get_category_outcome(self, category_id: str) -> CategoryOutcome | None: ...

    @abstractmethod
    async def get_last_processed_at(self) -> datetime | None: ...

    # token bucket

    @abstractmethod
    async def init_token_bucket(self, *, capacity: int, refill_rate_per_minute: float, now: datetime) -> None: ...

    @abstractmethod
    async def refill_tokens(
        self,
        *,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> TokenBucketState: ...

    @abstractmethod
    async def try_consume_tokens(
        self,
        *,
        amount: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    async def adjust_tokens(
        self,
        *,
        delta: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> TokenBucketState: ...

    @abstractmethod
    async def set_tokens(self, *, tokens: float, capacity: int, now: datetime) -> TokenBucketState: ...

    @abstractmethod
    async def add_token_usage(self, *, day: date, amount: int) -> int: ...

    @abstractmethod
    async def get_token_usage(self, *, day: date) -> int: ...

    # dedup markers

    @abstractmethod
    async def put_dedup_marker(self, *, job_id: str, rule_id: str, now: datetime, ttl_seconds: int) -> bool:
        """Returns False when a live marker already existed."""

    @abstractmethod
    async def delete_dedup_marker(self, *, job_id: str, rule_id: str) -> None: ...

    # channel publish history

    @abstractmethod
    async def claim_channel_deal(
        self,
        *,
        channel_id: str,
        asin: str,
        rule_id: str,
        now: datetime,
        window_hours: int,
    ) -> bool:
        """Records a publish of `asin` to `channel_id`; False while an earlier one is still inside its window."""

    @abstractmethod
    async def release_channel_deal(self, *, channel_id: str, asin: str) -> None: ...

    # metrics

    @abstractmethod
    async def increment_metric(self, metric: Metric, amount: int = 1) -> None: ...

    @abstractmethod
    async def get_metrics(self) -> dict[str, int]: ...

    # provider cache and maintenance flags

    @abstractmethod
    async def save_cached_category(
        self,
        *,
        category_id: str,
        products: list[dict[str, Any]],
        fetched_at: datetime,
    ) -> None: ...

    @abstractmethod
    async def get_cached_category(self, category_id: str) -> CachedCategory | None: ...

    @abstractmethod
    async def clear_cached_categories(self) -> int: ...

    @abstractmethod
    async def request_prefetch(self, *, categories: list[str], now: datetime) -> None: ...

    @abstractmethod
    async def pop_prefetch_request(self) -> list[str] | None: ...


_JOB_COLUMNS = """
  id,
  category_id,
  rule_ids,
  status,
  attempt,
  created_at,
  next_attempt_at,
  lease_expires_at,
  locked_by,
  last_error
"""

_RULE_COLUMNS = """
  id,
  user_id,
  categories,
  channel_id,
  min_score,
  min_discount,
  min_price,
  max_price,
  min_rating,
  min_reviews,
  exclude_keywords,
  is_active,
  interval_minutes,
  deals_per_run,
  publish_mode,
  dedupe_window_hours,
  next_run_at,
  last_run_at,
  total_runs,
  deals_published,
  clicks_generated
"""

_CLAIMED_JOB_COLUMNS = """
  j.id,
  j.category_id,
  j.rule_ids,
  j.status,
  j.attempt,
  j.created_at,
  j.next_attempt_at,
  j.lease_expires_at,
  j.locked_by,
  j.last_error
"""

_BUCKET_COLUMNS = "tokens_available, capacity, refill_rate_per_minute, last_refill_at"


class PostgresStateRepository(StateRepository):
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def open(self) -> None:
        await self._get_pool()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def list_due_rules(self, *, now: datetime, limit: int) -> list[AutomationRule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_RULE_COLUMNS}
            from automation_rules r
            where r.is_active
              and (r.next_run_at is null or r.next_run_at <= $1)
              and not exists (
                select 1
                from category_jobs j
                where j.status = 'dispatched'
                  and r.id = any(j.rule_ids)
              )
            order by r.next_run_at asc nulls first, r.id asc
            limit $2
            """,
            now,
            max(1, limit),
        )
        return [self._rule_row_to_model(row) for row in rows]

    async def list_upcoming_categories(self, *, now: datetime, until: datetime, limit: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select categories[1] as category_id, min(next_run_at) as first_run_at
            from automation_rules
            where is_active
              and cardinality(categories) > 0
              and next_run_at > $1
              and next_run_at <= $2
            group by categories[1]
            order by first_run_at asc
            limit $3
            """,
            now,
            until,
            max(1, limit),
        )
        return [row["category_id"] for row in rows if row["category_id"]]

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_RULE_COLUMNS} from automation_rules where id = $1", rule_id)
        return self._rule_row_to_model(row) if row else None

    async def record_rule_run(
        self,
        *,
        rule_id: str,
        ran_at: datetime,
        next_run_at: datetime,
        deals_published: int,
    ) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update automation_rules
            set
              last_run_at = $2,
              next_run_at = greatest(coalesce(next_run_at, $3), $3),
              total_runs = total_runs + 1,
              deals_published = deals_published + $4
            where id = $1
            returning id
            """,
            rule_id,
            ran_at,
            next_run_at,
            max(0, deals_published),
        )
        return row is not None

    async def enqueue_category_job(self, *, category_id: str, rule_ids: list[str], now: datetime) -> CategoryJob:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into category_jobs (id, category_id, rule_ids, status, attempt, created_at, next_attempt_at)
            values ($1, $2, $3::text[], 'pending', 0, $4, $4)
            on conflict (category_id) where status = 'pending'
            do update set rule_ids = array(
              select t.rule_id
              from unnest(category_jobs.rule_ids || excluded.rule_ids) with ordinality as t(rule_id, position)
              group by t.rule_id
              order by min(t.position)
            )
            returning {_JOB_COLUMNS}
            """,
            _new_job_id(),
            category_id,
            _dedupe(rule_ids),
            now,
        )
        return self._job_row_to_model(row)

    async def peek_ready_job(self, *, now: datetime) -> CategoryJob | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from category_jobs
            where status = 'pending' and next_attempt_at <= $1
            order by created_at asc, id asc
            limit 1
            """,
            now,
        )
        return self._job_row_to_model(row) if row else None

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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            with ready as (
              select id
              from category_jobs
              where status = 'pending' and next_attempt_at <= $1
              order by created_at asc, id asc
              limit $2
              for update skip locked
            )
            update category_jobs j
            set
              status = 'dispatched',
              locked_by = $3,
              lease_expires_at = $1 + ($4::int * interval '1 second'),
              attempt = j.attempt + 1
            from ready r
            where j.id = r.id
            returning {_CLAIMED_JOB_COLUMNS}
            """,
            now,
            limit,
            worker_id,
            lease_seconds,
        )
        jobs = [self._job_row_to_model(row) for row in rows]
        return sorted(jobs, key=lambda job: (job.created_at, job.id))

    async def get_job(self, job_id: str) -> CategoryJob | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_JOB_COLUMNS} from category_jobs where id = $1", job_id)
        return self._job_row_to_model(row) if row else None

    async def complete_job(self, *, job_id: str, worker_id: str, now: datetime) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._lock_dispatched_job(conn, job_id=job_id, worker_id=worker_id)
                await conn.execute("delete from category_jobs where id = $1", job_id)
                await self._record_outcome(conn, category_id=row["category_id"], status="completed", now=now, error=None)
                await conn.execute(
                    """
                    insert into ingestion_state (key, value, updated_at)
                    values ($1, $2::jsonb, $3)
                    on conflict (key) do update set value = excluded.value, updated_at = excluded.updated_at
                    """,
                    LAST_PROCESSED_KEY,
                    json.dumps(now.isoformat()),
                    now,
                )
                await self._increment_metric(conn, Metric.JOBS_COMPLETED, 1)

    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        retry_at: datetime | None,
        now: datetime,
    ) -> CategoryJob | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._lock_dispatched_job(conn, job_id=job_id, worker_id=worker_id)
                if retry_at is None:
                    await conn.execute("delete from category_jobs where id = $1", job_id)
                    await self._record_outcome(conn, category_id=row["category_id"], status="failed", now=now, error=error)
                    await self._increment_metric(conn, Metric.ERRORS, 1)
                    return None
                requeued = await self._return_to_pending(conn, row=row, next_attempt_at=retry_at, error=error)
                return self._job_row_to_model(requeued)

    async def release_job(self, *, job_id: str, worker_id: str, now: datetime, reason: str) -> CategoryJob:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._lock_dispatched_job(conn, job_id=job_id, worker_id=worker_id)
                await self._return_to_pending(conn, row=row, next_attempt_at=now, error=reason)
                released = await conn.fetchrow(
                    f"""
                    update category_jobs
                    set attempt = greatest(attempt - 1, 0)
                    where id = $1
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                )
                return self._job_row_to_model(released)

    async def requeue_expired_jobs(self, *, now: datetime, limit: int) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    select {_JOB_COLUMNS}
                    from category_jobs
                    where status = 'dispatched'
                      and lease_expires_at is not null
                      and lease_expires_at <= $1
                    order by lease_expires_at asc
                    limit $2
                    for update skip locked
                    """,
                    now,
                    max(1, min(limit, 1000)),
                )
                for row in rows:
                    await self._return_to_pending(conn, row=row, next_attempt_at=now, error="lease_expired")
                return len(rows)

    async def count_open_jobs(self) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval("select count(*) from category_jobs")
        return int(value or 0)

    async def list_open_jobs(self, *, category_id: str | None = None) -> list[CategoryJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from category_jobs
            where $1::text is null or category_id = $1
            order by created_at asc, id asc
            """,
            category_id,
        )
        return [self._job_row_to_model(row) for row in rows]

    async def get_category_outcome(self, category_id: str) -> CategoryOutcome | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select category_id, status, finished_at, error from category_outcomes where category_id = $1",
            category_id,
        )
        if not row:
            return None
        return CategoryOutcome(
            category_id=row["category_id"],
            status=row["status"],
            finished_at=row["finished_at"],
            error=row["error"],
        )

    async def get_last_processed_at(self) -> datetime | None:
        pool = await self._get_pool()
        value = await pool.fetchval("select value from ingestion_state where key = $1", LAST_PROCESSED_KEY)
        decoded = _decode_json(value)
        if not isinstance(decoded, str):
            return None
        try:
            return datetime.fromisoformat(decoded)
        except ValueError:
            return None

    async def init_token_bucket(self, *, capacity: int, refill_rate_per_minute: float, now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            f"""
            insert into token_buckets (name, {_BUCKET_COLUMNS})
            values ($1, $2, $2, $3, $4)
            on conflict (name) do nothing
            """,
            TOKEN_BUCKET_KEY,
            capacity,
            refill_rate_per_minute,
            now,
        )

    async def refill_tokens(
        self,
        *,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> TokenBucketState:
        row = await self._update_bucket(amount=0.0, capacity=capacity, refill_rate_per_minute=refill_rate_per_minute, now=now)
        return self._bucket_row_to_model(row)

    async def try_consume_tokens(
        self,
        *,
        amount: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> bool:
        row = await self._update_bucket(
            amount=amount,
            capacity=capacity,
            refill_rate_per_minute=refill_rate_per_minute,
            now=now,
        )
        return bool(row["consumed"])

    async def adjust_tokens(
        self,
        *,
        delta: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> TokenBucketState:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update token_buckets
            set
              tokens_available = least(
                $2::float8,
                greatest(
                  0,
                  least(
                    $2::float8,
                    tokens_available
                      + greatest(0, extract(epoch from ($4::timestamptz - last_refill_at))) / 60.0 * $3::float8
                  ) + $5::float8
                )
              ),
              capacity = $2,
              refill_rate_per_minute = $3,
              last_refill_at = greatest(last_refill_at, $4::timestamptz)
            where name = $1
            returning {_BUCKET_COLUMNS}
            """,
            TOKEN_BUCKET_KEY,
            capacity,
            refill_rate_per_minute,
            now,
            delta,
        )
        if row is None:
            raise RepositoryNotFoundError("token bucket not initialized")
        return self._bucket_row_to_model(row)

    async def set_tokens(self, *, tokens: float, capacity: int, now: datetime) -> TokenBucketState:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update token_buckets
            set
              tokens_available = least($2::float8, greatest(0, $3::float8)),
              capacity = $2,
              last_refill_at = greatest(last_refill_at, $4::timestamptz)
            where name = $1
            returning {_BUCKET_COLUMNS}
            """,
            TOKEN_BUCKET_KEY,
            capacity,
            tokens,
            now,
        )
        if row is None:
            raise RepositoryNotFoundError("token bucket not initialized")
        return self._bucket_row_to_model(row)

    async def add_token_usage(self, *, day: date, amount: int) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            insert into token_usage_daily (day, tokens_used)
            values ($1, $2)
            on conflict (day) do update set tokens_used = token_usage_daily.tokens_used + excluded.tokens_used
            returning tokens_used
            """,
            day,
            amount,
        )
        return int(value or 0)

    async def get_token_usage(self, *, day: date) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval("select tokens_used from token_usage_daily where day = $1", day)
        return int(value or 0)

    async def put_dedup_marker(self, *, job_id: str, rule_id: str, now: datetime, ttl_seconds: int) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into dedup_markers (job_id, rule_id, expires_at)
            values ($1, $2, $3)
            on conflict (job_id, rule_id) do update
              set expires_at = excluded.expires_at
              where dedup_markers.expires_at <= $4
            returning job_id
            """,
            job_id,
            rule_id,
            now + timedelta(seconds=ttl_seconds),
            now,
        )
        return row is not None

    async def delete_dedup_marker(self, *, job_id: str, rule_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute("delete from dedup_markers where job_id = $1 and rule_id = $2", job_id, rule_id)

    async def claim_channel_deal(
        self,
        *,
        channel_id: str,
        asin: str,
        rule_id: str,
        now: datetime,
        window_hours: int,
    ) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into channel_deal_history (channel_id, asin, rule_id, published_at, expires_at)
            values ($1, $2, $3, $4, $5)
            on conflict (channel_id, asin) do update
              set rule_id = excluded.rule_id,
                  published_at = excluded.published_at,
                  expires_at = excluded.expires_at
              where channel_deal_history.expires_at <= $4
            returning asin
            """,
            channel_id,
            asin,
            rule_id,
            now,
            now + timedelta(hours=max(0, window_hours)),
        )
        return row is not None

    async def release_channel_deal(self, *, channel_id: str, asin: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "delete from channel_deal_history where channel_id = $1 and asin = $2",
            channel_id,
            asin,
        )

    async def increment_metric(self, metric: Metric, amount: int = 1) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._increment_metric(conn, metric, amount)

    async def get_metrics(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch("select name, value from run_metrics")
        metrics = {metric.value: 0 for metric in Metric}
        for row in rows:
            metrics[row["name"]] = int(row["value"])
        return metrics

    async def save_cached_category(
        self,
        *,
        category_id: str,
        products: list[dict[str, Any]],
        fetched_at: datetime,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into provider_cache (category_id, products, fetched_at)
            values ($1, $2::jsonb, $3)
            on conflict (category_id) do update
              set products = excluded.products, fetched_at = excluded.fetched_at
            """,
            category_id,
            json.dumps(products),
            fetched_at,
        )

    async def get_cached_category(self, category_id: str) -> CachedCategory | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select category_id, products, fetched_at from provider_cache where category_id = $1",
            category_id,
        )
        if not row:
            return None
        products = _decode_json(row["products"])
        return CachedCategory(
            category_id=row["category_id"],
            products=[item for item in products if isinstance(item, dict)] if isinstance(products, list) else [],
            fetched_at=row["fetched_at"],
        )

    async def clear_cached_categories(self) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch("delete from provider_cache returning category_id")
        return len(rows)

    async def request_prefetch(self, *, categories: list[str], now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into ingestion_state (key, value, updated_at)
            values ($1, $2::jsonb, $3)
            on conflict (key) do update set
              value = (
                select to_jsonb(array(
                  select distinct jsonb_array_elements_text(ingestion_state.value || excluded.value)
                ))
              ),
              updated_at = excluded.updated_at
            """,
            PREFETCH_REQUEST_KEY,
            json.dumps(_dedupe(categories)),
            now,
        )

    async def pop_prefetch_request(self) -> list[str] | None:
        pool = await self._get_pool()
        value = await pool.fetchval("delete from ingestion_state where key = $1 returning value", PREFETCH_REQUEST_KEY)
        if value is None:
            return None
        decoded = _decode_json(value)
        if not isinstance(decoded, list):
            return []
        return [item for item in decoded if isinstance(item, str) and item]

    async def _update_bucket(
        self,
        *,
        amount: float,
        capacity: int,
        refill_rate_per_minute: float,
        now: datetime,
    ) -> asyncpg.Record:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            with refilled as (
              select
                name,
                least(
                  $2::float8,
                  tokens_available
                    + greatest(0, extract(epoch from ($4::timestamptz - last_refill_at))) / 60.0 * $3::float8
                ) as tokens,
                greatest(last_refill_at, $4::timestamptz) as refilled_at
              from token_buckets
              where name = $1
              for update
            )
            update token_buckets b
            set
              tokens_available = case when r.tokens >= $5::float8 then r.tokens - $5::float8 else r.tokens end,
              capacity = $2,
              refill_rate_per_minute = $3,
              last_refill_at = r.refilled_at
            from refilled r
            where b.name = r.name
            returning
              b.tokens_available,
              b.capacity,
              b.refill_rate_per_minute,
              b.last_refill_at,
              (r.tokens >= $5::float8) as consumed
            """,
            TOKEN_BUCKET_KEY,
            capacity,
            refill_rate_per_minute,
            now,
            amount,
        )
        if row is None:
            raise RepositoryNotFoundError("token bucket not initialized")
        return row

    async def _lock_dispatched_job(self, conn: asyncpg.Connection, *, job_id: str, worker_id: str) -> asyncpg.Record:
        row = await conn.fetchrow(
            f"select {_JOB_COLUMNS} from category_jobs where id = $1 for update",
            job_id,
        )
        if not row:
            raise RepositoryNotFoundError("job not found")
        if row["status"] != "dispatched":
            raise RepositoryConflictError("job is not dispatched")
        if row["locked_by"] != worker_id:
            raise RepositoryConflictError("job lease is held by another worker")
        return row

    async def _return_to_pending(
        self,
        conn: asyncpg.Connection,
        *,
        row: asyncpg.Record,
        next_attempt_at: datetime,
        error: str,
    ) -> asyncpg.Record:
        # The recovered job keeps its id so dedup markers written under it stay valid;
        # a newer open job for the same category is folded into it.
        open_row = await conn.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from category_jobs
            where category_id = $1 and status = 'pending' and id <> $2
            for update
            """,
            row["category_id"],
            row["id"],
        )
        rule_ids = list(row["rule_ids"] or [])
        created_at = row["created_at"]
        if open_row is not None:
            rule_ids = _dedupe(rule_ids + list(open_row["rule_ids"] or []))
            created_at = min(created_at, open_row["created_at"])
            await conn.execute("delete from category_jobs where id = $1", open_row["id"])

        return await conn.fetchrow(
            f"""
            update category_jobs
            set
              status = 'pending',
              rule_ids = $2::text[],
              created_at = $3,
              next_attempt_at = $4,
              lease_expires_at = null,
              locked_by = null,
              last_error = $5
            where id = $1
            returning {_JOB_COLUMNS}
            """,
            row["id"],
            rule_ids,
            created_at,
            next_attempt_at,
            error,
        )

    @staticmethod
    async def _record_outcome(
        conn: asyncpg.Connection,
        *,
        category_id: str,
        status: str,
        now: datetime,
        error: str | None,
    ) -> None:
        await conn.execute(
            """
            insert into category_outcomes (category_id, status, finished_at, error)
            values ($1, $2, $3, $4)
            on conflict (category_id) do update
              set status = excluded.status, finished_at = excluded.finished_at, error = excluded.error
            """,
            category_id,
            status,
            now,
            error,
        )

    @staticmethod
    async def _increment_metric(conn: asyncpg.Connection, metric: Metric, amount: int) -> None:
        await conn.execute(
            """
            insert into run_metrics (name, value)
            values ($1, $2)
            on conflict (name) do update set value = run_metrics.value + excluded.value
            """,
            metric.value,
            amount,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("DF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_model(row: asyncpg.Record) -> CategoryJob:
        return CategoryJob(
            id=row["id"],
            category_id=row["category_id"],
            rule_ids=list(row["rule_ids"] or []),
            created_at=row["created_at"],
            status=row["status"],
            attempt=int(row["attempt"]),
            next_attempt_at=row["next_attempt_at"],
            lease_expires_at=row["lease_expires_at"],
            locked_by=row["locked_by"],
            last_error=row["last_error"],
        )

    @staticmethod
    def _rule_row_to_model(row: asyncpg.Record) -> AutomationRule:
        return AutomationRule(
            id=row["id"],
            user_id=row["user_id"],
            categories=list(row["categories"] or []),
            channel_id=row["channel_id"],
            min_score=float(row["min_score"]),
            min_discount=float(row["min_discount"]),
            min_price=row["min_price"],
            max_price=row["max_price"],
            min_rating=row["min_rating"],
            min_reviews=row["min_reviews"],
            exclude_keywords=list(row["exclude_keywords"] or []),
            is_active=bool(row["is_active"]),
            interval_minutes=int(row["interval_minutes"]),
            deals_per_run=int(row["deals_per_run"]),
            publish_mode=row["publish_mode"],
            dedupe_window_hours=int(row["dedupe_window_hours"]),
            next_run_at=row["next_run_at"],
            last_run_at=row["last_run_at"],
            total_runs=int(row["total_runs"]),
            deals_published=int(row["deals_published"]),
            clicks_generated=int(row["clicks_generated"]),
        )

    @staticmethod
    def _bucket_row_to_model(row: asyncpg.Record) -> TokenBucketState:
        return TokenBucketState(
            tokens_available=float(row["tokens_available"]),
            capacity=int(row["capacity"]),
            refill_rate_per_minute=float(row["refill_rate_per_minute"]),
            last_refill_at=row["last_refill_at"],
        )


def _new_job_id() -> str:
    return str(uuid4())


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    items: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            items.append(value)
    return items


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value

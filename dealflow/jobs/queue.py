from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from dealflow.domain.models import CategoryJob
from dealflow.services.repository import StateRepository

logger = logging.getLogger(__name__)


class CategoryJobQueue:
    """Category jobs ordered by creation time, claimed under a lease."""

    def __init__(
        self,
        repository: StateRepository,
        *,
        job_token_cost: int,
        lease_seconds: int,
        max_attempts: int,
        retry_base_seconds: int,
        retry_max_seconds: int,
    ) -> None:
        self.repository = repository
        self.job_token_cost = max(1, job_token_cost)
        self.lease_seconds = max(1, lease_seconds)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0, retry_base_seconds)
        self.retry_max_seconds = max(0, retry_max_seconds)

    async def enqueue(self, category_id: str, rule_ids: list[str], *, now: datetime | None = None) -> CategoryJob:
        return await self.repository.enqueue_category_job(
            category_id=category_id,
            rule_ids=rule_ids,
            now=now or datetime.now(timezone.utc),
        )

    async def peek_ready(self, *, now: datetime | None = None) -> CategoryJob | None:
        return await self.repository.peek_ready_job(now=now or datetime.now(timezone.utc))

    async def dequeue_ready(
        self,
        max_tokens: float,
        *,
        worker_id: str,
        now: datetime | None = None,
    ) -> list[CategoryJob]:
        limit = int(max_tokens // self.job_token_cost)
        if limit <= 0:
            return []
        return await self.repository.claim_ready_jobs(
            limit=limit,
            worker_id=worker_id,
            lease_seconds=self.lease_seconds,
            now=now or datetime.now(timezone.utc),
        )

    async def mark_completed(self, job: CategoryJob, *, worker_id: str, now: datetime | None = None) -> None:
        await self.repository.complete_job(job_id=job.id, worker_id=worker_id, now=now or datetime.now(timezone.utc))

    async def mark_failed(
        self,
        job: CategoryJob,
        *,
        worker_id: str,
        error: str,
        retryable: bool,
        now: datetime | None = None,
    ) -> CategoryJob | None:
        now = now or datetime.now(timezone.utc)
        retry_at = None
        if retryable and job.attempt < self.max_attempts:
            retry_at = now + timedelta(seconds=self.compute_retry_delay_seconds(attempt=job.attempt))
        requeued = await self.repository.fail_job(
            job_id=job.id,
            worker_id=worker_id,
            error=error,
            retry_at=retry_at,
            now=now,
        )
        if requeued is None:
            logger.warning(
                "category job failed permanently id=%s category=%s attempt=%s error=%s",
                job.id,
                job.category_id,
                job.attempt,
                error,
            )
        else:
            logger.info(
                "category job scheduled for retry id=%s category=%s attempt=%s retry_at=%s",
                job.id,
                job.category_id,
                job.attempt,
                retry_at.isoformat() if retry_at else None,
            )
        return requeued

    async def release(
        self,
        job: CategoryJob,
        *,
        worker_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> CategoryJob:
        """Return a claimed job that was never run; the claim does not count as an attempt."""
        released = await self.repository.release_job(
            job_id=job.id,
            worker_id=worker_id,
            now=now or datetime.now(timezone.utc),
            reason=reason,
        )
        logger.info("category job released id=%s category=%s reason=%s", job.id, job.category_id, reason)
        return released

    async def requeue_expired(self, *, limit: int, now: datetime | None = None) -> int:
        return await self.repository.requeue_expired_jobs(now=now or datetime.now(timezone.utc), limit=limit)

    async def depth(self) -> int:
        return await self.repository.count_open_jobs()

    def compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.retry_base_seconds * (2**multiplier)
        return min(delay, self.retry_max_seconds)

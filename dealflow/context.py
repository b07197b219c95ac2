from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime

from dealflow.core.config import Settings
from dealflow.jobs.aggregator import RuleAggregator
from dealflow.jobs.executor import CategoryJobExecutor
from dealflow.jobs.limiter import TokenBucketLimiter
from dealflow.jobs.queue import CategoryJobQueue
from dealflow.services.provider_client import ProviderClient
from dealflow.services.publisher import ChannelPublisher
from dealflow.services.repository import StateRepository
from dealflow.services.store import build_repository


@dataclass(slots=True)
class IngestionContext:
    settings: Settings
    repository: StateRepository
    limiter: TokenBucketLimiter
    queue: CategoryJobQueue
    aggregator: RuleAggregator
    executor: CategoryJobExecutor
    provider: ProviderClient
    publisher: ChannelPublisher

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: StateRepository | None = None,
        provider: ProviderClient | None = None,
        publisher: ChannelPublisher | None = None,
        rng: random.Random | None = None,
    ) -> IngestionContext:
        repository = repository or build_repository(settings)
        provider = provider or ProviderClient(
            settings.provider_base_url,
            settings.provider_api_key,
            domain=settings.provider_domain,
            history_days=settings.provider_history_days,
            max_offers=settings.provider_max_offers,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        publisher = publisher or ChannelPublisher(
            settings.publisher_base_url,
            settings.publisher_api_key,
            timeout_seconds=settings.publisher_timeout_seconds,
        )
        limiter = TokenBucketLimiter(
            repository,
            capacity=settings.token_capacity,
            refill_rate_per_minute=settings.token_refill_per_minute,
            provider_sync=settings.provider_token_sync,
        )
        queue = CategoryJobQueue(
            repository,
            job_token_cost=settings.job_token_cost,
            lease_seconds=settings.claim_lease_seconds,
            max_attempts=settings.job_max_attempts,
            retry_base_seconds=settings.job_retry_base_seconds,
            retry_max_seconds=settings.job_retry_max_seconds,
        )
        return cls(
            settings=settings,
            repository=repository,
            limiter=limiter,
            queue=queue,
            aggregator=RuleAggregator(repository, queue, batch_size=settings.due_rules_batch_size),
            executor=CategoryJobExecutor(
                repository,
                provider,
                publisher,
                dedup_ttl_seconds=settings.dedup_ttl_seconds,
                cache_fresh_seconds=settings.cache_fresh_seconds,
                jitter_ratio=settings.rule_run_jitter_ratio,
                rng=rng,
            ),
            provider=provider,
            publisher=publisher,
        )

    async def open(self, *, now: datetime | None = None) -> None:
        await self.repository.open()
        await self.limiter.initialize(now=now)

    async def close(self) -> None:
        try:
            await self.provider.close()
            await self.publisher.close()
        finally:
            await self.repository.close()

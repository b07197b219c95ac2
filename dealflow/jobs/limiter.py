from __future__ import annotations

import logging
from datetime import datetime, timezone

from dealflow.domain.models import TokenBucketState
from dealflow.services.keys import usage_day
from dealflow.services.repository import StateRepository

logger = logging.getLogger(__name__)


def refill_state(
    state: TokenBucketState,
    *,
    capacity: int,
    refill_rate_per_minute: float,
    now: datetime,
) -> TokenBucketState:
    elapsed_seconds = max(0.0, (now - state.last_refill_at).total_seconds())
    tokens = min(float(capacity), state.tokens_available + elapsed_seconds / 60.0 * refill_rate_per_minute)
    return TokenBucketState(
        tokens_available=max(0.0, tokens),
        capacity=capacity,
        refill_rate_per_minute=refill_rate_per_minute,
        last_refill_at=max(state.last_refill_at, now),
    )


class TokenBucketLimiter:
    """Provider quota shared by every worker process through the state repository."""

    def __init__(
        self,
        repository: StateRepository,
        *,
        capacity: int,
        refill_rate_per_minute: float,
        provider_sync: bool = True,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate_per_minute < 0:
            raise ValueError("refill_rate_per_minute must not be negative")
        self.repository = repository
        self.capacity = capacity
        self.refill_rate_per_minute = refill_rate_per_minute
        self.provider_sync = provider_sync

    async def initialize(self, *, now: datetime | None = None) -> None:
        await self.repository.init_token_bucket(
            capacity=self.capacity,
            refill_rate_per_minute=self.refill_rate_per_minute,
            now=now or datetime.now(timezone.utc),
        )

    async def try_consume(self, amount: float, *, now: datetime | None = None) -> bool:
        if amount <= 0:
            return True
        if amount > self.capacity:
            return False
        return await self.repository.try_consume_tokens(
            amount=amount,
            capacity=self.capacity,
            refill_rate_per_minute=self.refill_rate_per_minute,
            now=now or datetime.now(timezone.utc),
        )

    async def available(self, *, now: datetime | None = None) -> float:
        state = await self.snapshot(now=now)
        return state.tokens_available

    async def snapshot(self, *, now: datetime | None = None) -> TokenBucketState:
        return await self.repository.refill_tokens(
            capacity=self.capacity,
            refill_rate_per_minute=self.refill_rate_per_minute,
            now=now or datetime.now(timezone.utc),
        )

    async def record_usage(self, actual: int, *, reserved: float = 0, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        actual = max(0, int(actual))
        delta = reserved - actual
        if delta:
            await self.repository.adjust_tokens(
                delta=delta,
                capacity=self.capacity,
                refill_rate_per_minute=self.refill_rate_per_minute,
                now=now,
            )
        if actual:
            await self.repository.add_token_usage(day=usage_day(now), amount=actual)

    async def sync_from_provider(self, tokens_left: int | None, *, now: datetime | None = None) -> None:
        if not self.provider_sync or tokens_left is None:
            return
        state = await self.repository.set_tokens(
            tokens=min(float(self.capacity), float(tokens_left)),
            capacity=self.capacity,
            now=now or datetime.now(timezone.utc),
        )
        logger.debug("token bucket synced from provider tokens_left=%s available=%.2f", tokens_left, state.tokens_available)

    async def usage_today(self, *, now: datetime | None = None) -> int:
        return await self.repository.get_token_usage(day=usage_day(now or datetime.now(timezone.utc)))

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum


class Metric(str, Enum):
    RULES_PROCESSED = "rules_processed"
    DEALS_PUBLISHED = "deals_published"
    DUPLICATES_SKIPPED = "duplicates_skipped"
    TOKEN_WAITS = "token_waits"
    ERRORS = "errors"
    JOBS_COMPLETED = "jobs_completed"
    CACHE_HITS = "cache_hits"


TOKEN_BUCKET_KEY = "provider"
LAST_PROCESSED_KEY = "last_processed_at"
PREFETCH_REQUEST_KEY = "prefetch_requested"


def usage_day(now: datetime) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date()


def manual_job_id(rule_id: str, started_at: datetime) -> str:
    return f"manual:{rule_id}:{int(started_at.timestamp() * 1000)}"

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dealflow.domain.models import AutomationRule, CategoryJob
from dealflow.jobs.queue import CategoryJobQueue
from dealflow.services.repository import StateRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AggregationResult:
    rules_seen: int = 0
    rules_skipped: int = 0
    jobs: list[CategoryJob] = field(default_factory=list)


def group_by_primary_category(rules: list[AutomationRule]) -> tuple[dict[str, list[str]], list[AutomationRule]]:
    groups: dict[str, list[str]] = {}
    skipped: list[AutomationRule] = []
    for rule in rules:
        category = rule.primary_category
        if category is None:
            skipped.append(rule)
            continue
        groups.setdefault(category, []).append(rule.id)
    return groups, skipped


class RuleAggregator:
    def __init__(self, repository: StateRepository, queue: CategoryJobQueue, *, batch_size: int) -> None:
        self.repository = repository
        self.queue = queue
        self.batch_size = max(1, batch_size)

    async def run(self, *, now: datetime | None = None) -> AggregationResult:
        now = now or datetime.now(timezone.utc)
        rules = await self.repository.list_due_rules(now=now, limit=self.batch_size)
        groups, skipped = group_by_primary_category(rules)
        for rule in skipped:
            logger.warning("skipping due rule without category id=%s", rule.id)

        result = AggregationResult(rules_seen=len(rules), rules_skipped=len(skipped))
        for category_id, rule_ids in groups.items():
            job = await self.queue.enqueue(category_id, rule_ids, now=now)
            result.jobs.append(job)
            logger.debug("batched rules category=%s job=%s rules=%s", category_id, job.id, len(job.rule_ids))
        return result

    async def prefetch(self, categories: list[str], *, now: datetime | None = None) -> list[CategoryJob]:
        now = now or datetime.now(timezone.utc)
        jobs: list[CategoryJob] = []
        for category_id in dict.fromkeys(item for item in categories if item):
            jobs.append(await self.queue.enqueue(category_id, [], now=now))
        return jobs

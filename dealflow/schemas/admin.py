from pydantic import BaseModel, Field


class MetricsOut(BaseModel):
    metrics: dict[str, int]
    tokens_available: float
    tokens_used_today: int
    queue_depth: int


class ClearCacheOut(BaseModel):
    cleared: int


class PrefetchRequest(BaseModel):
    categories: list[str] = Field(default_factory=list, max_length=100)
    lookahead_minutes: int = Field(default=60, ge=1, le=24 * 60)


class PrefetchOut(BaseModel):
    requested: list[str]

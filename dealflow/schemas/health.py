from datetime import datetime

from pydantic import BaseModel


class IngestionHealthOut(BaseModel):
    status: str
    tokens_available: float
    token_capacity: int
    tokens_used_today: int
    queue_depth: int
    last_processed_at: datetime | None = None

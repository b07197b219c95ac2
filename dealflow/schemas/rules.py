from pydantic import BaseModel

from dealflow.domain.models import RuleStatus


class RuleRunOut(BaseModel):
    rule_id: str
    deals_processed: int
    deals_published: int
    execution_time_ms: int


class RuleStatusOut(BaseModel):
    rule_id: str
    status: RuleStatus

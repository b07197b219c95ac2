from fastapi import APIRouter, Depends, HTTPException, status

from dealflow.api.deps import get_context
from dealflow.context import IngestionContext
from dealflow.jobs.manual_run import (
    QuotaExhaustedError,
    RuleInactiveError,
    RuleNotFoundError,
    rule_status,
    run_rule_now,
)
from dealflow.schemas.rules import RuleRunOut, RuleStatusOut
from dealflow.services.provider_client import ProviderError
from dealflow.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("/{rule_id}/run", response_model=RuleRunOut)
async def run_rule(rule_id: str, context: IngestionContext = Depends(get_context)) -> RuleRunOut:
    try:
        result = await run_rule_now(context, rule_id)
    except RuleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="rule not found") from exc
    except RuleInactiveError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="rule is not active") from exc
    except QuotaExhaustedError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="provider quota exhausted; try again later",
        ) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RuleRunOut(
        rule_id=result.rule_id,
        deals_processed=result.deals_processed,
        deals_published=result.deals_published,
        execution_time_ms=result.execution_time_ms,
    )


@router.get("/{rule_id}/status", response_model=RuleStatusOut)
async def get_rule_status(rule_id: str, context: IngestionContext = Depends(get_context)) -> RuleStatusOut:
    try:
        value = await rule_status(context, rule_id)
    except RuleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="rule not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RuleStatusOut(rule_id=rule_id, status=value)

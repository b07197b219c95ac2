from fastapi import APIRouter, Depends, HTTPException, status

from dealflow.api.deps import get_context
from dealflow.context import IngestionContext
from dealflow.schemas.health import IngestionHealthOut
from dealflow.services.repository import RepositoryError, RepositoryUnavailableError

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ingestion", response_model=IngestionHealthOut)
async def ingestion_health(context: IngestionContext = Depends(get_context)) -> IngestionHealthOut:
    try:
        bucket = await context.limiter.snapshot()
        used_today = await context.limiter.usage_today()
        depth = await context.queue.depth()
        last_processed_at = await context.repository.get_last_processed_at()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return IngestionHealthOut(
        status="ok",
        tokens_available=round(bucket.tokens_available, 2),
        token_capacity=bucket.capacity,
        tokens_used_today=used_today,
        queue_depth=depth,
        last_processed_at=last_processed_at,
    )

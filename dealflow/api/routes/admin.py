from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Body, Depends, HTTPException, status

from dealflow.api.deps import get_context
from dealflow.context import IngestionContext
from dealflow.core.security import require_admin_key
from dealflow.schemas.admin import ClearCacheOut, MetricsOut, PrefetchOut, PrefetchRequest
from dealflow.services.repository import RepositoryUnavailableError

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.get("/metrics", response_model=MetricsOut)
async def get_metrics(context: IngestionContext = Depends(get_context)) -> MetricsOut:
    try:
        metrics = await context.repository.get_metrics()
        tokens_available = await context.limiter.available()
        used_today = await context.limiter.usage_today()
        depth = await context.queue.depth()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MetricsOut(
        metrics=metrics,
        tokens_available=round(tokens_available, 2),
        tokens_used_today=used_today,
        queue_depth=depth,
    )


@router.post("/actions/clear-cache", response_model=ClearCacheOut)
async def clear_cache(context: IngestionContext = Depends(get_context)) -> ClearCacheOut:
    try:
        cleared = await context.repository.clear_cached_categories()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ClearCacheOut(cleared=cleared)


@router.post("/actions/trigger-prefetch", response_model=PrefetchOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_prefetch(
    payload: PrefetchRequest | None = Body(default=None),
    context: IngestionContext = Depends(get_context),
) -> PrefetchOut:
    payload = payload or PrefetchRequest()
    now = datetime.now(timezone.utc)
    try:
        categories = list(dict.fromkeys(item.strip() for item in payload.categories if item.strip()))
        if not categories:
            categories = await context.repository.list_upcoming_categories(
                now=now,
                until=now + timedelta(minutes=payload.lookahead_minutes),
                limit=100,
            )
        if categories:
            await context.repository.request_prefetch(categories=categories, now=now)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return PrefetchOut(requested=categories)

from fastapi import HTTPException, Request, status

from dealflow.context import IngestionContext


def get_context(request: Request) -> IngestionContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="ingestion context not ready")
    return context

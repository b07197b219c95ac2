import hmac

from fastapi import Depends, Header, HTTPException, status

from dealflow.api.deps import get_context
from dealflow.context import IngestionContext


async def require_admin_key(
    context: IngestionContext = Depends(get_context),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    admin_api_key = context.settings.admin_api_key
    if not admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin access is not configured",
        )
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin access requires X-API-Key")
    if not hmac.compare_digest(x_api_key.encode("utf-8"), admin_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid admin key")

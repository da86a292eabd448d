import hmac

from fastapi import Depends, Header, HTTPException, status

from kindsync.core.auth import OPERATOR_SCOPES, WORKER_SCOPES, Principal, PrincipalType
from kindsync.core.config import Settings, get_settings


async def get_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"operator auth requires {settings.api_key_header}",
        )

    if not settings.operator_api_key and not settings.worker_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API keys are not configured",
        )

    if settings.operator_api_key and hmac.compare_digest(x_api_key, settings.operator_api_key):
        return Principal(principal_type=PrincipalType.OPERATOR, subject="operator", scopes=set(OPERATOR_SCOPES))
    if settings.worker_api_key and hmac.compare_digest(x_api_key, settings.worker_api_key):
        return Principal(principal_type=PrincipalType.WORKER, subject="worker", scopes=set(WORKER_SCOPES))

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid API key")

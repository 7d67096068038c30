"""Bearer-token authentication for operator and collaborator routes."""

from __future__ import annotations

from hmac import compare_digest

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from agent_pool.core.config import settings
from agent_pool.core.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)
KEY_QUERY_PARAM = "key"


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value:
        return None
    if not value.lower().startswith("bearer "):
        return None
    token = value.split(" ", maxsplit=1)[1].strip()
    return token or None


def _token_matches(candidate: str | None) -> bool:
    expected = settings.pool_api_key.strip()
    if not expected or not candidate:
        return False
    return compare_digest(candidate.encode(), expected.encode())


async def require_pool_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
) -> None:
    """Reject requests that lack the pool API key.

    The key is read from the `Authorization: Bearer` header, or from the
    `?key=` query parameter for EventSource clients that cannot set headers.
    """
    token = credentials.credentials if credentials is not None else None
    if token is None:
        token = _extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        token = request.query_params.get(KEY_QUERY_PARAM)
    if not _token_matches(token):
        logger.info("auth.pool_key.rejected", extra={"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


AUTH_DEP = Depends(require_pool_api_key)

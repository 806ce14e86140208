"""Authentication dependencies for admin API endpoints.

Two guards:
  - require_admin_token()  — HTTP endpoints (Bearer token in Authorization header)
  - require_admin_ws()     — WebSocket endpoints (?token= query param)

Behavior matrix:
  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 Unauthorized
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev convenience)
  ADMIN_API_KEY empty + DEBUG=false → 403 Forbidden (locked in production)
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Query, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from intake.config import settings

log = logging.getLogger("intake.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _check_token(token: str | None) -> int | None:
    """Return None when allowed, else the HTTP status to reject with."""
    key = settings.admin_api_key
    if not key:
        return None if settings.debug else status.HTTP_403_FORBIDDEN
    if not token or not secrets.compare_digest(token, key):
        return status.HTTP_401_UNAUTHORIZED
    return None


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency — protect HTTP admin endpoints with bearer token."""
    rejected = _check_token(credentials.credentials if credentials else None)
    if rejected == status.HTTP_403_FORBIDDEN:
        raise HTTPException(
            status_code=rejected,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )
    if rejected == status.HTTP_401_UNAUTHORIZED:
        log.warning("Rejected admin request with invalid token")
        raise HTTPException(
            status_code=rejected,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(
    websocket: WebSocket,
    token: str = Query(default=""),
) -> None:
    """WebSocket auth — browsers can't send headers, so use ?token= query param."""
    rejected = _check_token(token)
    if rejected == status.HTTP_403_FORBIDDEN:
        await websocket.close(code=4003, reason="Admin API key not configured")
        raise HTTPException(status_code=rejected)
    if rejected == status.HTTP_401_UNAUTHORIZED:
        await websocket.close(code=4001, reason="Unauthorized")
        raise HTTPException(status_code=rejected)

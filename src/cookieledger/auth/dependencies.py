"""FastAPI authentication dependencies."""

from __future__ import annotations

from typing import Any

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cookieledger.auth.jwt import has_role, verify_token

_bearer = HTTPBearer()


async def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
) -> dict[str, Any]:
    """Verify the bearer token and return its claims. Raises 401 on failure."""
    try:
        return verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e


async def get_current_account(
    payload: dict[str, Any] = Depends(get_token_payload),
) -> str:
    """The signed-in account id."""
    return str(payload["sub"])


async def require_admin(
    payload: dict[str, Any] = Depends(get_token_payload),
) -> str:
    """
    Same as get_current_account but additionally requires the admin role.

    Used for pack provisioning.
    """
    if not has_role(payload, "admin"):
        raise HTTPException(status_code=403, detail="Admin role required")
    return str(payload["sub"])

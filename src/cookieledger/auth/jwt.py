"""
RS256 JWT verification.

Tokens are issued by the external sign-in service; this service only holds the
public key. The ``sub`` claim is the account id, and an ``admin`` entry in the
``roles`` claim grants pack provisioning.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import jwt

from cookieledger.config import get_settings

_public_key: str | None = None


def _load_public_key() -> str:
    """Load the RSA public key from disk (cached after first call)."""
    global _public_key  # noqa: PLW0603
    if _public_key is None:
        settings = get_settings()
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _public_key


def reset_keys() -> None:
    """Reset the cached key (useful for testing)."""
    global _public_key  # noqa: PLW0603
    _public_key = None


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode an access token.

    Args:
        token: The encoded JWT string.

    Returns:
        Decoded payload dictionary.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or has no subject.
    """
    public_key = _load_public_key()
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            public_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if not isinstance(payload.get("sub"), str) or not payload["sub"]:
        msg = "Token has no account subject"
        raise jwt.InvalidTokenError(msg)
    return payload


def has_role(payload: dict[str, Any], role: str) -> bool:
    roles = payload.get("roles") or []
    return isinstance(roles, list) and role in roles

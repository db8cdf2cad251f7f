"""Normalization of raw payloads read from physical tokens."""

from __future__ import annotations

from cookieledger.ledger.errors import InvalidToken

TOKEN_SCHEME_PREFIX = "cookies:"
MAX_TOKEN_LENGTH = 128


def normalize_token(raw: str, prefix: str = TOKEN_SCHEME_PREFIX) -> str:
    """Strip whitespace and the scheme prefix; reject empty or unusable ids.

    ``"cookies:abc123"`` and ``" abc123\\n"`` both normalize to ``"abc123"``.
    """
    token = raw.strip()
    if token.startswith(prefix):
        token = token[len(prefix):].strip()
    if not token:
        raise InvalidToken("empty token payload")
    if "/" in token or len(token) > MAX_TOKEN_LENGTH:
        raise InvalidToken(f"unusable token id {token!r}")
    return token

"""Ledger error taxonomy.

Every kind carries a stable ``code``, the HTTP status the API answers with,
and one fixed user-facing message. Raw store errors are chained as
``__cause__`` for the logs but never rendered to the user.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar


class LedgerError(Exception):
    """Base class for all expected ledger failures."""

    code: ClassVar[str] = "unknown"
    status_code: ClassVar[int] = 500
    default_message: ClassVar[str] = "Something went wrong. Please try again."
    transient: ClassVar[bool] = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_message)
        self.detail = detail

    @property
    def user_message(self) -> str:
        """Fixed message safe to show to the account holder."""
        return self.default_message


class InvalidPack(LedgerError):
    code = "invalid_pack"
    status_code = 422
    default_message = "This pack is invalid or missing cookies."


class TokenAlreadyRegistered(LedgerError):
    code = "token_already_registered"
    status_code = 409
    default_message = "One of these cookies is already registered."


class PackAlreadyClaimed(LedgerError):
    code = "pack_already_claimed"
    status_code = 409
    default_message = "This pack has already been claimed."


class PackNotFound(LedgerError):
    code = "pack_not_found"
    status_code = 404
    default_message = "This cookie is not linked to a valid pack."


class TokenNotFound(LedgerError):
    code = "token_not_found"
    status_code = 404
    default_message = "This cookie is not registered to your account."


class AlreadyRedeemed(LedgerError):
    code = "already_redeemed"
    status_code = 409
    default_message = "This cookie was already redeemed today. Try again after the daily reset."


class CooldownActive(LedgerError):
    """Emergency unlock was used less than one cooldown period ago."""

    code = "cooldown_active"
    status_code = 429
    default_message = "Emergency unlock is not available yet."

    def __init__(self, available_at: datetime) -> None:
        self.available_at = available_at
        super().__init__(f"cooldown active until {available_at.isoformat()}")

    @property
    def user_message(self) -> str:
        when = self.available_at.astimezone(timezone.utc).strftime("%b %d, %Y %H:%M UTC")
        return f"Emergency unlock available on {when}."


class LedgerTimeout(LedgerError):
    code = "timeout"
    status_code = 504
    default_message = "Request timed out. Please check your connection."
    transient = True


class StoreUnavailable(LedgerError):
    code = "store_unavailable"
    status_code = 503
    default_message = "The service is temporarily unavailable. Please try again."
    transient = True


class InvalidToken(LedgerError):
    code = "invalid_token"
    status_code = 422
    default_message = "This tag is not provisioned for Cookies."


class InvalidProfileUpdate(LedgerError):
    code = "invalid_profile_update"
    status_code = 422
    default_message = "Cookie values are outside the allowed minutes or use an unknown cookie type."


class UnknownLedgerError(LedgerError):
    """Anything unexpected raised while talking to the store."""

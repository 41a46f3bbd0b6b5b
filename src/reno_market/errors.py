"""Error taxonomy shared by the ranking, billing and submission services.

Declined debits and duplicate credits are not errors: they come back as
result values with ``applied=False`` (see ``reno_market.services.ledger``).
"""

from __future__ import annotations

from typing import Optional


class MarketError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(MarketError):
    """Malformed input, rejected before any store access."""


class AuthorizationError(MarketError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class QuotaExceeded(MarketError):
    """The agency already holds as many active listings as its pack allows."""

    def __init__(self, current: int, maximum: int, suggested_pack: Optional[str]) -> None:
        super().__init__(f"Listing limit reached ({current}/{maximum})")
        self.current = current
        self.maximum = maximum
        self.suggested_pack = suggested_pack

    def to_dict(self) -> dict:
        return {
            "error": "limit_reached",
            "current": self.current,
            "maximum": self.maximum,
            "suggestedPack": self.suggested_pack,
            "message": f"Upgrade to {self.suggested_pack} to publish more listings",
        }


class NotFound(MarketError):
    pass


class SignatureVerificationFailure(MarketError):
    pass


class StoreUnavailable(MarketError):
    """The persistent store could not be reached; callers may retry."""

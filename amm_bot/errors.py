"""Error taxonomy shared across the engine.

Only ``ConfigurationError`` is meant to escape to callers; the rest are
raised at the ledger/data boundary and converted into structured results
(or dropped candidates) by the component that catches them.
"""

from __future__ import annotations


class AmmBotError(Exception):
    """Base class for engine errors."""


class ConfigurationError(AmmBotError, ValueError):
    """Invalid policy or threshold values. Raised before any side effect."""


class LedgerError(AmmBotError):
    """A ledger query failed for a reason other than rate limiting."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class RateLimitedError(LedgerError):
    """The ledger node asked us to slow down (HTTP 429, ``slowDown``)."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        super().__init__(message, code="slowDown")
        self.retry_after = retry_after


class DataError(AmmBotError):
    """Malformed or missing pool/reserve data."""


class SafetyViolation(AmmBotError):
    """A pre-trade guard denied the trade."""


class ExecutionFailure(AmmBotError):
    """A leg was rejected or timed out at the transactional layer."""


class InvalidTransition(AmmBotError):
    """A bot instance was asked to move to a status it cannot reach."""

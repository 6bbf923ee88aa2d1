"""Custom exceptions for the portfolio engine.

Every condition here is a normal user-facing state (empty balance, plan
already cancelled, rates offline), so callers are expected to catch them.
All live in one module to avoid circular imports between the ledger,
scheduler and fx packages.
"""


class EngineError(Exception):
    """Base exception for all engine errors."""


class InsufficientFunds(EngineError):
    """Raised when a debit exceeds the available cash balance."""


class InsufficientShares(EngineError):
    """Raised when a sell exceeds the shares held for an instrument."""


class DuplicateActivePlan(EngineError):
    """Raised when an instrument already has an active or paused recurring plan."""


class PlanNotFound(EngineError):
    """Raised when a recurring plan id is unknown."""


class InvalidTransition(EngineError):
    """Raised when a plan status change is not allowed (e.g. resuming a cancelled plan)."""


class RateUnavailable(EngineError):
    """Raised when an exchange rate cannot be fetched and nothing is cached."""


class PriceUnavailableError(EngineError):
    """Raised when no price is known for an instrument."""

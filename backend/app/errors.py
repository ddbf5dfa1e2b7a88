"""Error taxonomy shared by the settlement services and the HTTP layer."""

from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Base class for every failure surfaced by the settlement core."""

    code = "settlement_error"

    def __init__(
        self,
        message: str,
        *,
        market_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.market_id = market_id
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.market_id:
            payload["market_id"] = self.market_id
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInput(SettlementError):
    """Raised when a request is malformed or violates a precondition."""

    code = "invalid_input"


class InvalidFeeRange(InvalidInput):
    """Raised when a creator fee falls outside the permitted band."""

    code = "invalid_fee_range"


class EvidenceValidationError(InvalidInput):
    """Raised when resolution evidence is missing or unusable."""

    code = "evidence_validation_error"

    def __init__(self, errors: list[str], *, market_id: str | None = None) -> None:
        super().__init__(
            "Evidence validation failed: " + "; ".join(errors),
            market_id=market_id,
            details={"errors": list(errors)},
        )
        self.errors = list(errors)


class InsufficientFunds(SettlementError):
    code = "insufficient_funds"


class ConcurrentModification(SettlementError):
    """Raised when a versioned balance write loses a race."""

    code = "concurrent_modification"


class MarketNotFound(SettlementError):
    code = "market_not_found"


class InvalidState(SettlementError):
    """Raised when a market or record is not in a status that allows the operation."""

    code = "invalid_state"


class LedgerApplicationFailed(SettlementError):
    """Recorded when a user's payout postings could not be applied."""

    code = "ledger_application_failed"

    def __init__(self, user_id: str, reason: str, *, market_id: str | None = None) -> None:
        super().__init__(
            f"Ledger postings for {user_id} failed: {reason}",
            market_id=market_id,
            details={"user_id": user_id, "reason": reason},
        )
        self.user_id = user_id
        self.reason = reason


class NothingToFix(SettlementError):
    code = "nothing_to_fix"


class ResolutionFailed(SettlementError):
    code = "resolution_failed"


class RollbackFailed(SettlementError):
    code = "rollback_failed"


__all__ = [
    "ConcurrentModification",
    "EvidenceValidationError",
    "InsufficientFunds",
    "InvalidFeeRange",
    "InvalidInput",
    "InvalidState",
    "LedgerApplicationFailed",
    "MarketNotFound",
    "NothingToFix",
    "ResolutionFailed",
    "RollbackFailed",
    "SettlementError",
]

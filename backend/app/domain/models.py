"""Typed value objects passed between the settlement services and the API."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class WinningStake:
    """A single winning commitment fed into the payout calculator."""

    user_id: str
    tokens_committed: float
    commitment_id: str | None = None


@dataclass(slots=True)
class UserPayout:
    user_id: str
    tokens_staked: float
    payout_amount: float
    profit: float
    win_share: float
    commitment_id: str | None = None


@dataclass(slots=True)
class FeeBreakdown:
    house_fee_percentage: float
    creator_fee_percentage: float
    total_fee_percentage: float
    remaining_for_winners: float


@dataclass(slots=True)
class PayoutCalculationResult:
    """Outcome of splitting a pool between fees and winners."""

    total_pool: float
    house_fee: float
    creator_fee: float
    total_fees: float
    winner_pool: float
    winner_count: int
    payouts: list[UserPayout] = field(default_factory=list)
    fee_breakdown: FeeBreakdown | None = None

    @property
    def total_payout(self) -> float:
        return float(sum(payout.payout_amount for payout in self.payouts))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PayoutPreview:
    calculation: PayoutCalculationResult
    largest_payout: float
    smallest_payout: float
    average_payout: float
    total_profit: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class FeeSummary:
    total_pool: float
    house_fee: float
    house_fee_percentage: float
    creator_fee: float
    creator_fee_percentage: float
    total_fees: float
    total_fee_percentage: float
    winner_pool: float
    winner_pool_percentage: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ProportionalShare:
    user_id: str
    tokens_committed: float
    share: float
    amount: float


@dataclass(slots=True)
class BalanceUpdateRequest:
    """One ledger mutation. ``amount`` is read as a magnitude."""

    user_id: str
    amount: float
    type: str
    related_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    # Loss postings normally consume committed tokens; compensating entries
    # debit the spendable balance instead.
    debit_available: bool = False


@dataclass(slots=True)
class BalanceFigures:
    available_tokens: float = 0.0
    committed_tokens: float = 0.0
    total_earned: float = 0.0
    total_spent: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(slots=True)
class BalanceInconsistency:
    user_id: str
    field: str
    stored_value: float
    calculated_value: float
    difference: float


@dataclass(slots=True)
class BalanceAuditResult:
    user_id: str
    current_balance: BalanceFigures | None
    calculated_balance: BalanceFigures
    inconsistencies: list[BalanceInconsistency] = field(default_factory=list)
    transaction_count: int = 0
    active_commitment_count: int = 0

    @property
    def is_consistent(self) -> bool:
        return not self.inconsistencies

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ReconciliationReport:
    total_users_checked: int = 0
    users_with_inconsistencies: int = 0
    inconsistencies_found: list[BalanceInconsistency] = field(default_factory=list)
    users_fixed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_users_checked": self.total_users_checked,
            "users_with_inconsistencies": self.users_with_inconsistencies,
            "inconsistencies_found": [asdict(item) for item in self.inconsistencies_found],
            "users_fixed": self.users_fixed,
            "errors": self.errors,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(slots=True)
class IntegrityCheck:
    is_valid: bool
    violations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BalanceHealthReport:
    total_users: int
    total_tokens_in_circulation: float
    total_committed_tokens: float
    total_earned: float
    total_spent: float
    sampled_users: int
    inconsistent_users: int
    inconsistency_rate: float
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BalanceSnapshot:
    user_id: str
    balance: BalanceFigures | None
    version: int | None
    calculated_balance: BalanceFigures
    transaction_count: int
    active_commitment_count: int
    is_consistent: bool
    taken_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class EvidenceItem:
    type: str
    content: str
    description: str | None = None

    @classmethod
    def from_value(cls, value: Any) -> "EvidenceItem":
        if isinstance(value, EvidenceItem):
            return value
        if isinstance(value, dict):
            return cls(
                type=str(value.get("type") or ""),
                content=str(value.get("content") or ""),
                description=value.get("description"),
            )
        return cls(
            type=str(getattr(value, "type", "") or ""),
            content=str(getattr(value, "content", "") or ""),
            description=getattr(value, "description", None),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ResolutionOutcome:
    success: bool
    resolution_id: str
    ledger_failures: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class LedgerFanOutSummary:
    applied_users: int = 0
    failed_users: int = 0
    postings_applied: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class OptionAggregate:
    option_id: str
    text: str
    total_tokens: float = 0.0
    participant_count: int = 0
    odds: float = 2.0


@dataclass(slots=True)
class MarketAggregates:
    market_id: str
    options: list[OptionAggregate] = field(default_factory=list)
    total_participants: int = 0
    total_tokens_staked: float = 0.0


@dataclass(slots=True)
class MarketPayoutPreview:
    market_id: str
    winning_option_id: str
    creator_id: str
    total_pool: float
    participant_count: int
    preview: PayoutPreview

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class UserResolutionPayouts:
    user_id: str
    winner_payouts: list[Any] = field(default_factory=list)
    creator_payouts: list[Any] = field(default_factory=list)

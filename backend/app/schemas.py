from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class EvidenceItem(BaseModel):
    type: Literal["url", "screenshot", "description"]
    content: str
    description: str | None = None


class MarketOption(BaseModel):
    option_id: str
    text: str
    sort_order: int = 0

    model_config = {"from_attributes": True}


class Market(BaseModel):
    market_id: str
    title: str
    description: str | None = None
    category: str | None = None
    created_by: str
    status: str
    created_at: datetime
    ends_at: datetime | None = None
    resolved_at: datetime | None = None
    winning_option_id: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    options: list[MarketOption] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class ResolveMarketRequest(BaseModel):
    winning_option_id: str = Field(..., min_length=1)
    evidence: list[EvidenceItem] = Field(default_factory=list)
    admin_id: str = Field(..., min_length=1)
    creator_fee_percentage: float | None = Field(
        default=None, description="Creator fee as a fraction, e.g. 0.02"
    )
    creator_fee_percent: float | None = Field(
        default=None, description="Creator fee as a whole-number percentage, e.g. 2"
    )

    @model_validator(mode="after")
    def _single_fee_form(self) -> "ResolveMarketRequest":
        if self.creator_fee_percentage is not None and self.creator_fee_percent is not None:
            raise ValueError("Provide creator_fee_percentage or creator_fee_percent, not both")
        return self

    def fee_fraction(self) -> float | None:
        if self.creator_fee_percent is not None:
            return self.creator_fee_percent / 100
        return self.creator_fee_percentage


class ResolutionOutcome(BaseModel):
    success: bool
    resolution_id: str
    ledger_failures: list[dict[str, Any]] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class CancelMarketRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    admin_id: str = Field(..., min_length=1)


class RollbackRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    reason: str | None = None


class LedgerFanOutSummary(BaseModel):
    applied_users: int
    failed_users: int
    postings_applied: int
    failures: list[dict[str, Any]] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class UserPayout(BaseModel):
    user_id: str
    tokens_staked: float
    payout_amount: float
    profit: float
    win_share: float
    commitment_id: str | None = None

    model_config = {"from_attributes": True}


class FeeBreakdown(BaseModel):
    house_fee_percentage: float
    creator_fee_percentage: float
    total_fee_percentage: float
    remaining_for_winners: float

    model_config = {"from_attributes": True}


class PayoutCalculation(BaseModel):
    total_pool: float
    house_fee: float
    creator_fee: float
    total_fees: float
    winner_pool: float
    winner_count: int
    payouts: list[UserPayout] = Field(default_factory=list)
    fee_breakdown: FeeBreakdown | None = None

    model_config = {"from_attributes": True}


class PayoutPreview(BaseModel):
    calculation: PayoutCalculation
    largest_payout: float
    smallest_payout: float
    average_payout: float
    total_profit: float

    model_config = {"from_attributes": True}


class MarketPayoutPreview(BaseModel):
    market_id: str
    winning_option_id: str
    creator_id: str
    total_pool: float
    participant_count: int
    preview: PayoutPreview

    model_config = {"from_attributes": True}


class FeeSummary(BaseModel):
    total_pool: float
    house_fee: float
    house_fee_percentage: float
    creator_fee: float
    creator_fee_percentage: float
    total_fees: float
    total_fee_percentage: float
    winner_pool: float
    winner_pool_percentage: float

    model_config = {"from_attributes": True}


class ResolutionPayout(BaseModel):
    user_id: str
    commitment_id: str | None = None
    tokens_staked: float
    payout_amount: float
    profit: float
    win_share: float

    model_config = {"from_attributes": True}


class CreatorPayout(BaseModel):
    creator_id: str
    fee_amount: float
    fee_percentage: float

    model_config = {"from_attributes": True}


class HousePayout(BaseModel):
    fee_amount: float
    fee_percentage: float

    model_config = {"from_attributes": True}


class MarketResolution(BaseModel):
    resolution_id: str
    market_id: str
    winning_option_id: str
    resolved_by: str
    resolved_at: datetime
    evidence: list[dict[str, Any]] | None = None
    total_pool: float
    house_fee: float
    creator_fee: float
    winner_pool: float
    total_payout: float
    winner_count: int
    creator_fee_percentage: float
    creator_id: str
    status: str
    payouts: list[ResolutionPayout] = Field(default_factory=list)
    creator_payout: CreatorPayout | None = None
    house_payout: HousePayout | None = None

    model_config = {"from_attributes": True}


class MarketResolutionStatus(BaseModel):
    market_id: str
    status: str
    resolution: MarketResolution | None = None


class ResolutionLog(BaseModel):
    log_id: int
    market_id: str
    resolution_id: str | None = None
    admin_id: str
    action: str
    timestamp: datetime
    details: dict[str, Any] | None = None
    error: str | None = None

    model_config = {"from_attributes": True}


class ResolutionLogList(BaseModel):
    total: int
    items: list[ResolutionLog]


class CommitmentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    market_id: str = Field(..., min_length=1)
    tokens: float = Field(..., gt=0)
    option_id: str | None = None
    position: Literal["yes", "no"] | None = None

    @model_validator(mode="after")
    def _needs_target(self) -> "CommitmentRequest":
        if not self.option_id and not self.position:
            raise ValueError("Either option_id or position is required")
        return self


class Commitment(BaseModel):
    commitment_id: str
    user_id: str
    market_id: str
    option_id: str | None = None
    position: str | None = None
    tokens_committed: float
    odds: float | None = None
    potential_winning: float | None = None
    status: str
    committed_at: datetime
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}


class OptionAggregate(BaseModel):
    option_id: str
    text: str
    total_tokens: float
    participant_count: int
    odds: float

    model_config = {"from_attributes": True}


class MarketAggregates(BaseModel):
    market_id: str
    options: list[OptionAggregate] = Field(default_factory=list)
    total_participants: int
    total_tokens_staked: float

    model_config = {"from_attributes": True}


class UserBalance(BaseModel):
    user_id: str
    available_tokens: float
    committed_tokens: float
    total_earned: float
    total_spent: float
    version: int
    last_updated: datetime

    model_config = {"from_attributes": True}

    @field_validator(
        "available_tokens", "committed_tokens", "total_earned", "total_spent", mode="before"
    )
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        if value is None:
            return 0.0
        return float(value)


class BalanceFigures(BaseModel):
    available_tokens: float
    committed_tokens: float
    total_earned: float
    total_spent: float

    model_config = {"from_attributes": True}


class BalanceInconsistency(BaseModel):
    user_id: str
    field: str
    stored_value: float
    calculated_value: float
    difference: float

    model_config = {"from_attributes": True}


class BalanceAudit(BaseModel):
    user_id: str
    current_balance: BalanceFigures | None = None
    calculated_balance: BalanceFigures
    inconsistencies: list[BalanceInconsistency] = Field(default_factory=list)
    transaction_count: int
    active_commitment_count: int

    model_config = {"from_attributes": True}


class ReconciliationRequest(BaseModel):
    user_ids: list[str] | None = Field(
        default=None, description="Users to reconcile; every user with a balance when omitted"
    )
    fix: bool = True


class ReconciliationReport(BaseModel):
    total_users_checked: int
    users_with_inconsistencies: int
    inconsistencies_found: list[BalanceInconsistency] = Field(default_factory=list)
    users_fixed: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
    execution_time_ms: float

    model_config = {"from_attributes": True}


class BalanceHealthReport(BaseModel):
    total_users: int
    total_tokens_in_circulation: float
    total_committed_tokens: float
    total_earned: float
    total_spent: float
    sampled_users: int
    inconsistent_users: int
    inconsistency_rate: float
    generated_at: datetime

    model_config = {"from_attributes": True}


class PendingResolutionSweep(BaseModel):
    moved: list[str] = Field(default_factory=list)

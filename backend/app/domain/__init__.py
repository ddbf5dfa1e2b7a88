"""Domain value objects shared by the settlement services."""

from .models import (
    BalanceAuditResult,
    BalanceFigures,
    BalanceHealthReport,
    BalanceInconsistency,
    BalanceSnapshot,
    BalanceUpdateRequest,
    EvidenceItem,
    FeeBreakdown,
    FeeSummary,
    IntegrityCheck,
    LedgerFanOutSummary,
    MarketAggregates,
    MarketPayoutPreview,
    OptionAggregate,
    PayoutCalculationResult,
    PayoutPreview,
    ProportionalShare,
    ReconciliationReport,
    ResolutionOutcome,
    UserPayout,
    UserResolutionPayouts,
    WinningStake,
)

__all__ = [
    "BalanceAuditResult",
    "BalanceFigures",
    "BalanceHealthReport",
    "BalanceInconsistency",
    "BalanceSnapshot",
    "BalanceUpdateRequest",
    "EvidenceItem",
    "FeeBreakdown",
    "FeeSummary",
    "IntegrityCheck",
    "LedgerFanOutSummary",
    "MarketAggregates",
    "MarketPayoutPreview",
    "OptionAggregate",
    "PayoutCalculationResult",
    "PayoutPreview",
    "ProportionalShare",
    "ReconciliationReport",
    "ResolutionOutcome",
    "UserPayout",
    "UserResolutionPayouts",
    "WinningStake",
]

"""Pure payout arithmetic for resolved markets.

Pools are split into a fixed house fee, a creator fee chosen per resolution,
and a winner pool that is shared proportionally to stake. Every amount is
floored to a whole token; remainders stay with the house.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from app.domain import (
    FeeBreakdown,
    FeeSummary,
    PayoutCalculationResult,
    PayoutPreview,
    ProportionalShare,
    UserPayout,
    WinningStake,
)
from app.errors import InvalidFeeRange, InvalidInput

HOUSE_FEE_PERCENTAGE = 0.05
MIN_CREATOR_FEE_PERCENTAGE = 0.01
MAX_CREATOR_FEE_PERCENTAGE = 0.05


def _decimal(value: Any) -> Decimal:
    # str() keeps 0.29 from turning into 0.28999999999999998.
    return Decimal(str(value))


def _floor(value: Decimal) -> float:
    return float(value.to_integral_value(rounding=ROUND_FLOOR))


def _as_amount(value: Any, label: str) -> float:
    if isinstance(value, bool) or value is None:
        raise InvalidInput(f"{label} must be a number")
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{label} must be a number") from exc
    if not math.isfinite(amount):
        raise InvalidInput(f"{label} must be finite")
    return amount


def _coerce_stake(item: Any, index: int) -> WinningStake:
    if isinstance(item, WinningStake):
        user_id, tokens, commitment_id = item.user_id, item.tokens_committed, item.commitment_id
    elif isinstance(item, Mapping):
        user_id = item.get("user_id", item.get("userId"))
        tokens = item.get("tokens_committed", item.get("tokensCommitted"))
        commitment_id = item.get("commitment_id", item.get("id"))
    elif hasattr(item, "user_id") and hasattr(item, "tokens_committed"):
        user_id = item.user_id
        tokens = item.tokens_committed
        commitment_id = getattr(item, "commitment_id", None)
    else:
        raise InvalidInput(f"Winning commitment at index {index} is malformed")

    if not user_id:
        raise InvalidInput(f"Winning commitment at index {index} has no user id")
    return WinningStake(
        user_id=str(user_id),
        tokens_committed=_as_amount(tokens, f"Winning commitment {index} tokens"),
        commitment_id=str(commitment_id) if commitment_id is not None else None,
    )


def validate_creator_fee_percentage(fee_percentage: Any) -> bool:
    try:
        fee = float(fee_percentage)
    except (TypeError, ValueError):
        return False
    return MIN_CREATOR_FEE_PERCENTAGE <= fee <= MAX_CREATOR_FEE_PERCENTAGE


def _check_fee(creator_fee_percentage: Any) -> float:
    if not validate_creator_fee_percentage(creator_fee_percentage):
        raise InvalidFeeRange(
            "Creator fee percentage must be between "
            f"{MIN_CREATOR_FEE_PERCENTAGE:.0%} and {MAX_CREATOR_FEE_PERCENTAGE:.0%}",
            details={"creator_fee_percentage": creator_fee_percentage},
        )
    return float(creator_fee_percentage)


def _check_pool(total_pool: Any) -> float:
    pool = _as_amount(total_pool, "Total pool")
    if pool < 0:
        raise InvalidInput("Total pool cannot be negative", details={"total_pool": pool})
    return pool


def _split_fees(pool: float, creator_fee_percentage: float) -> tuple[float, float, float]:
    pool_decimal = _decimal(pool)
    house_fee = _floor(pool_decimal * _decimal(HOUSE_FEE_PERCENTAGE))
    creator_fee = _floor(pool_decimal * _decimal(creator_fee_percentage))
    winner_pool = float(pool_decimal - _decimal(house_fee) - _decimal(creator_fee))
    return house_fee, creator_fee, winner_pool


def _fee_breakdown(creator_fee_percentage: float) -> FeeBreakdown:
    total = round((HOUSE_FEE_PERCENTAGE + creator_fee_percentage) * 100) / 100
    return FeeBreakdown(
        house_fee_percentage=HOUSE_FEE_PERCENTAGE,
        creator_fee_percentage=creator_fee_percentage,
        total_fee_percentage=total,
        remaining_for_winners=round((1 - total) * 100) / 100,
    )


def calculate_payouts(
    total_pool: Any,
    winning_commitments: Iterable[Any],
    creator_fee_percentage: Any = 0.02,
) -> PayoutCalculationResult:
    """Split ``total_pool`` between the house, the creator and the winners.

    ``winning_commitments`` accepts :class:`WinningStake` objects, mappings with
    ``user_id``/``tokens_committed`` (camelCase keys are tolerated) or any
    object exposing those attributes. Winners keep their input order.
    """

    pool = _check_pool(total_pool)
    if not isinstance(winning_commitments, (list, tuple)):
        raise InvalidInput("Winning commitments must be provided as a list")

    stakes = [_coerce_stake(item, index) for index, item in enumerate(winning_commitments)]
    for stake in stakes:
        if stake.tokens_committed < 0:
            raise InvalidInput(
                "Commitment tokens cannot be negative",
                details={"user_id": stake.user_id, "tokens_committed": stake.tokens_committed},
            )

    fee_percentage = _check_fee(creator_fee_percentage)

    total_winning = sum((_decimal(stake.tokens_committed) for stake in stakes), Decimal(0))
    if total_winning > _decimal(pool):
        raise InvalidInput(
            "Total winning tokens cannot exceed total pool",
            details={"total_winning_tokens": float(total_winning), "total_pool": pool},
        )

    house_fee, creator_fee, winner_pool = _split_fees(pool, fee_percentage)

    payouts: list[UserPayout] = []
    if total_winning > 0:
        winner_pool_decimal = _decimal(winner_pool)
        for stake in stakes:
            tokens = _decimal(stake.tokens_committed)
            # Multiply before dividing so exact shares do not lose a token.
            payout_amount = _floor(winner_pool_decimal * tokens / total_winning)
            payouts.append(
                UserPayout(
                    user_id=stake.user_id,
                    tokens_staked=stake.tokens_committed,
                    payout_amount=payout_amount,
                    profit=float(_decimal(payout_amount) - tokens),
                    win_share=float(tokens / total_winning),
                    commitment_id=stake.commitment_id,
                )
            )

    return PayoutCalculationResult(
        total_pool=pool,
        house_fee=house_fee,
        creator_fee=creator_fee,
        total_fees=house_fee + creator_fee,
        winner_pool=winner_pool,
        winner_count=len(payouts),
        payouts=payouts,
        fee_breakdown=_fee_breakdown(fee_percentage),
    )


def calculate_payout_preview(
    total_pool: Any,
    winning_commitments: Iterable[Any],
    creator_fee_percentage: Any = 0.02,
) -> PayoutPreview:
    calculation = calculate_payouts(total_pool, winning_commitments, creator_fee_percentage)
    amounts = [payout.payout_amount for payout in calculation.payouts]
    if not amounts:
        return PayoutPreview(
            calculation=calculation,
            largest_payout=0.0,
            smallest_payout=0.0,
            average_payout=0.0,
            total_profit=0.0,
        )
    return PayoutPreview(
        calculation=calculation,
        largest_payout=max(amounts),
        smallest_payout=min(amounts),
        average_payout=float(math.floor(sum(amounts) / len(amounts))),
        total_profit=float(sum(payout.profit for payout in calculation.payouts)),
    )


def calculate_proportional_distribution(
    total_amount: Any, commitments: Iterable[Any]
) -> list[ProportionalShare]:
    """Share ``total_amount`` by stake without applying any fee."""

    amount = _check_pool(total_amount)
    if not isinstance(commitments, (list, tuple)):
        raise InvalidInput("Commitments must be provided as a list")
    stakes = [_coerce_stake(item, index) for index, item in enumerate(commitments)]
    total = sum((_decimal(stake.tokens_committed) for stake in stakes), Decimal(0))

    shares: list[ProportionalShare] = []
    for stake in stakes:
        if total <= 0:
            shares.append(ProportionalShare(stake.user_id, stake.tokens_committed, 0.0, 0.0))
            continue
        tokens = _decimal(stake.tokens_committed)
        shares.append(
            ProportionalShare(
                user_id=stake.user_id,
                tokens_committed=stake.tokens_committed,
                share=float(tokens / total),
                amount=_floor(_decimal(amount) * tokens / total),
            )
        )
    return shares


def get_fee_breakdown(total_pool: Any, creator_fee_percentage: Any = 0.02) -> FeeSummary:
    pool = _check_pool(total_pool)
    fee_percentage = _check_fee(creator_fee_percentage)
    house_fee, creator_fee, winner_pool = _split_fees(pool, fee_percentage)
    breakdown = _fee_breakdown(fee_percentage)
    return FeeSummary(
        total_pool=pool,
        house_fee=house_fee,
        house_fee_percentage=HOUSE_FEE_PERCENTAGE,
        creator_fee=creator_fee,
        creator_fee_percentage=fee_percentage,
        total_fees=house_fee + creator_fee,
        total_fee_percentage=breakdown.total_fee_percentage,
        winner_pool=winner_pool,
        winner_pool_percentage=breakdown.remaining_for_winners,
    )


__all__ = [
    "HOUSE_FEE_PERCENTAGE",
    "MAX_CREATOR_FEE_PERCENTAGE",
    "MIN_CREATOR_FEE_PERCENTAGE",
    "calculate_payout_preview",
    "calculate_payouts",
    "calculate_proportional_distribution",
    "get_fee_breakdown",
    "validate_creator_fee_percentage",
]

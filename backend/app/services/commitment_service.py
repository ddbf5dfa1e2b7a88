"""Placing stakes on market options and deriving option aggregates."""

from __future__ import annotations

import math
from uuid import uuid4

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import SessionLocal, session_scope
from app.domain import BalanceUpdateRequest, MarketAggregates, OptionAggregate
from app.domain.positions import effective_option_id, option_from_position, position_from_option
from app.errors import InvalidInput, InvalidState, MarketNotFound
from app.models import Market, MarketStatus, PredictionCommitment, TransactionType
from app.repositories import CommitmentStakeRow, MarketRepository

from .balance_ledger import BalanceLedger

DEFAULT_ODDS = 2.0
MIN_ODDS = 1.1
MAX_ODDS = 10.0


def calculate_odds(option_tokens: float, total_tokens: float) -> float:
    if total_tokens <= 0 or option_tokens <= 0:
        return DEFAULT_ODDS
    return max(MIN_ODDS, min(total_tokens / option_tokens, MAX_ODDS))


def aggregate_market(market: Market, rows: list[CommitmentStakeRow]) -> MarketAggregates:
    """Fold per-user stake rows into option and market totals.

    A user is counted once per option and once per market however many
    commitments they hold.
    """

    option_ids = [option.option_id for option in sorted(market.options, key=lambda opt: opt.sort_order)]
    totals = {option_id: 0.0 for option_id in option_ids}
    participants: dict[str, set[str]] = {option_id: set() for option_id in option_ids}
    market_users: set[str] = set()

    for row in rows:
        option_id = effective_option_id(row.option_id, row.position, option_ids)
        if option_id not in totals:
            continue
        totals[option_id] += row.tokens
        participants[option_id].add(row.user_id)
        market_users.add(row.user_id)

    total_staked = sum(totals.values())
    return MarketAggregates(
        market_id=market.market_id,
        options=[
            OptionAggregate(
                option_id=option.option_id,
                text=option.text,
                total_tokens=totals[option.option_id],
                participant_count=len(participants[option.option_id]),
                odds=calculate_odds(totals[option.option_id], total_staked),
            )
            for option in sorted(market.options, key=lambda opt: opt.sort_order)
        ],
        total_participants=len(market_users),
        total_tokens_staked=total_staked,
    )


class CommitmentService:
    """Stake tokens on an option; the ledger debit and the commitment commit together."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        ledger: BalanceLedger | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._ledger = ledger or BalanceLedger(self._session_factory, self._settings)

    def commit_tokens(
        self,
        *,
        user_id: str,
        market_id: str,
        tokens: float,
        option_id: str | None = None,
        position: str | None = None,
    ) -> PredictionCommitment:
        if not user_id:
            raise InvalidInput("User id is required")
        try:
            amount = float(tokens)
        except (TypeError, ValueError) as exc:
            raise InvalidInput("Tokens must be a number") from exc
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidInput("Tokens to commit must be positive", market_id=market_id)

        commitment = self._ledger.run_with_retries(
            lambda: self._place(user_id, market_id, amount, option_id, position),
            label=f"commitment by {user_id} on {market_id}",
        )
        logger.info(
            "User {} committed {} tokens to {} on market {}",
            user_id,
            amount,
            commitment.option_id,
            market_id,
        )
        return commitment

    def _place(
        self,
        user_id: str,
        market_id: str,
        amount: float,
        option_id: str | None,
        position: str | None,
    ) -> PredictionCommitment:
        with session_scope(self._session_factory) as session:
            repo = MarketRepository(session)
            market = repo.get_market(market_id)
            if market is None:
                raise MarketNotFound(f"Market {market_id} not found", market_id=market_id)
            if market.status != MarketStatus.ACTIVE.value:
                raise InvalidState(
                    f"Market {market_id} is {market.status}; commitments are closed",
                    market_id=market_id,
                )

            option_ids = repo.option_ids(market)
            target = option_id or option_from_position(position, option_ids)
            if target is None or target not in option_ids:
                raise InvalidInput(
                    "Commitment must reference one of the market's options",
                    market_id=market_id,
                    details={"option_id": option_id, "position": position},
                )

            aggregates = aggregate_market(market, repo.stake_rows(market_id))
            option_total = next(
                item.total_tokens for item in aggregates.options if item.option_id == target
            )
            odds = calculate_odds(option_total, aggregates.total_tokens_staked)

            # Holds the market row until commit, so a resolution either sees
            # this commitment or has already closed the market.
            if not repo.transition_status(
                market_id,
                from_statuses=[MarketStatus.ACTIVE.value],
                to_status=MarketStatus.ACTIVE.value,
            ):
                raise InvalidState(
                    f"Market {market_id} closed while the commitment was being placed",
                    market_id=market_id,
                )

            commitment_id = uuid4().hex
            self._ledger.apply_update(
                session,
                BalanceUpdateRequest(
                    user_id=user_id,
                    amount=amount,
                    type=TransactionType.COMMIT.value,
                    related_id=commitment_id,
                    metadata={"market_id": market_id, "option_id": target},
                    idempotency_key=f"commit:{commitment_id}",
                ),
            )
            commitment = repo.add_commitment(
                commitment_id=commitment_id,
                user_id=user_id,
                market_id=market_id,
                option_id=target,
                position=position_from_option(target, option_ids),
                tokens_committed=amount,
                odds=odds,
                potential_winning=amount * odds,
            )
        return commitment

    def get_market_aggregates(self, market_id: str) -> MarketAggregates:
        with session_scope(self._session_factory) as session:
            repo = MarketRepository(session)
            market = repo.get_market(market_id)
            if market is None:
                raise MarketNotFound(f"Market {market_id} not found", market_id=market_id)
            return aggregate_market(market, repo.stake_rows(market_id))


__all__ = ["CommitmentService", "aggregate_market", "calculate_odds"]

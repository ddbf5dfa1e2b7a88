"""Market, option and commitment data access helpers."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from app.models import (
    CommitmentStatus,
    Market,
    MarketOption,
    MarketStatus,
    PredictionCommitment,
)

from .types import CommitmentStakeRow


class MarketRepository:
    """Encapsulate all market and commitment persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Markets

    def add_market(
        self,
        *,
        market_id: str,
        title: str,
        created_by: str,
        options: Sequence[tuple[str, str]],
        ends_at: datetime | None = None,
        description: str | None = None,
        category: str | None = None,
        status: str = MarketStatus.ACTIVE.value,
    ) -> Market:
        market = Market(
            market_id=market_id,
            title=title,
            created_by=created_by,
            ends_at=ends_at,
            description=description,
            category=category,
            status=status,
        )
        market.options = [
            MarketOption(option_id=option_id, text=text, sort_order=index)
            for index, (option_id, text) in enumerate(options)
        ]
        self._session.add(market)
        self._session.flush()
        return market

    def get_market(self, market_id: str) -> Market | None:
        query = (
            select(Market)
            .options(selectinload(Market.options))
            .where(Market.market_id == market_id)
        )
        return self._session.execute(query).scalars().first()

    def option_ids(self, market: Market) -> list[str]:
        return [option.option_id for option in sorted(market.options, key=lambda opt: opt.sort_order)]

    def transition_status(
        self,
        market_id: str,
        *,
        from_statuses: Iterable[str],
        to_status: str,
        values: dict[str, Any] | None = None,
    ) -> int:
        """Move a market between statuses only if it is still in one of ``from_statuses``.

        Returns the number of rows changed; zero means another writer got there first.
        """

        statement = (
            update(Market)
            .where(Market.market_id == market_id, Market.status.in_(list(from_statuses)))
            .values(status=to_status, **(values or {}))
            .execution_options(synchronize_session="fetch")
        )
        result = self._session.execute(statement)
        return int(result.rowcount or 0)

    def markets_past_end(self, now: datetime) -> list[Market]:
        query = (
            select(Market)
            .where(
                Market.status == MarketStatus.ACTIVE.value,
                Market.ends_at.is_not(None),
                Market.ends_at <= now,
            )
            .order_by(Market.ends_at)
        )
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Commitments

    def add_commitment(
        self,
        *,
        commitment_id: str,
        user_id: str,
        market_id: str,
        option_id: str | None,
        position: str | None,
        tokens_committed: float,
        odds: float | None,
        potential_winning: float | None,
    ) -> PredictionCommitment:
        commitment = PredictionCommitment(
            commitment_id=commitment_id,
            user_id=user_id,
            market_id=market_id,
            option_id=option_id,
            position=position,
            tokens_committed=tokens_committed,
            odds=odds,
            potential_winning=potential_winning,
            status=CommitmentStatus.ACTIVE.value,
        )
        self._session.add(commitment)
        self._session.flush()
        return commitment

    def list_commitments(
        self, market_id: str, *, statuses: Sequence[str] | None = None
    ) -> list[PredictionCommitment]:
        query = select(PredictionCommitment).where(PredictionCommitment.market_id == market_id)
        if statuses:
            query = query.where(PredictionCommitment.status.in_(list(statuses)))
        query = query.order_by(PredictionCommitment.committed_at, PredictionCommitment.commitment_id)
        return list(self._session.execute(query).scalars().all())

    def list_commitments_for_resolution(self, resolution_id: str) -> list[PredictionCommitment]:
        query = (
            select(PredictionCommitment)
            .where(PredictionCommitment.resolution_id == resolution_id)
            .order_by(PredictionCommitment.committed_at, PredictionCommitment.commitment_id)
        )
        return list(self._session.execute(query).scalars().all())

    def active_commitment_totals(self, user_id: str) -> tuple[float, int]:
        query = select(
            func.coalesce(func.sum(PredictionCommitment.tokens_committed), 0),
            func.count(PredictionCommitment.commitment_id),
        ).where(
            PredictionCommitment.user_id == user_id,
            PredictionCommitment.status == CommitmentStatus.ACTIVE.value,
        )
        total, count = self._session.execute(query).one()
        return float(total or 0), int(count or 0)

    def stake_rows(self, market_id: str) -> list[CommitmentStakeRow]:
        """Aggregate non-refunded stakes per (option, legacy position, user)."""

        query = (
            select(
                PredictionCommitment.option_id,
                PredictionCommitment.position,
                PredictionCommitment.user_id,
                func.sum(PredictionCommitment.tokens_committed),
            )
            .where(
                PredictionCommitment.market_id == market_id,
                PredictionCommitment.status != CommitmentStatus.REFUNDED.value,
            )
            .group_by(
                PredictionCommitment.option_id,
                PredictionCommitment.position,
                PredictionCommitment.user_id,
            )
        )
        return [
            CommitmentStakeRow(
                option_id=option_id,
                position=position,
                user_id=user_id,
                tokens=float(tokens or 0),
            )
            for option_id, position, user_id, tokens in self._session.execute(query).all()
        ]


__all__ = ["MarketRepository"]

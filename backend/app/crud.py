from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy.orm import Session

from app.repositories import LedgerRepository, MarketRepository, ResolutionRepository

from .models import Market, MarketResolution, ResolutionLog, UserBalance


def create_market(
    session: Session,
    *,
    market_id: str,
    title: str,
    created_by: str,
    options: Sequence[tuple[str, str]],
    ends_at: datetime | None = None,
    description: str | None = None,
    category: str | None = None,
) -> Market:
    return MarketRepository(session).add_market(
        market_id=market_id,
        title=title,
        created_by=created_by,
        options=options,
        ends_at=ends_at,
        description=description,
        category=category,
    )


def get_market(session: Session, market_id: str) -> Market | None:
    return MarketRepository(session).get_market(market_id)


def get_balance(session: Session, user_id: str) -> UserBalance | None:
    return LedgerRepository(session).get_balance(user_id)


def get_latest_resolution(session: Session, market_id: str) -> MarketResolution | None:
    return ResolutionRepository(session).get_latest_for_market(market_id)


def list_resolution_logs(session: Session, market_id: str) -> list[ResolutionLog]:
    return ResolutionRepository(session).list_logs(market_id=market_id)

"""Persistence for resolution records, payouts and the resolution audit log."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.models import (
    CreatorPayout,
    MarketResolution,
    ResolutionLog,
    ResolutionPayout,
)


class ResolutionRepository:
    """Encapsulate resolution records and the append-only log."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Resolution records

    def add_resolution(self, record: MarketResolution) -> MarketResolution:
        self._session.add(record)
        self._session.flush()
        return record

    def get_resolution(self, resolution_id: str) -> MarketResolution | None:
        query = (
            select(MarketResolution)
            .options(
                selectinload(MarketResolution.payouts),
                selectinload(MarketResolution.creator_payout),
                selectinload(MarketResolution.house_payout),
            )
            .where(MarketResolution.resolution_id == resolution_id)
        )
        return self._session.execute(query).scalars().first()

    def get_latest_for_market(self, market_id: str) -> MarketResolution | None:
        query = (
            select(MarketResolution)
            .options(
                selectinload(MarketResolution.payouts),
                selectinload(MarketResolution.creator_payout),
                selectinload(MarketResolution.house_payout),
            )
            .where(MarketResolution.market_id == market_id)
            .order_by(MarketResolution.resolved_at.desc())
        )
        return self._session.execute(query).scalars().first()

    def delete_resolution(self, record: MarketResolution) -> None:
        self._session.delete(record)
        self._session.flush()

    def list_user_payouts(self, user_id: str) -> list[ResolutionPayout]:
        query = (
            select(ResolutionPayout)
            .options(selectinload(ResolutionPayout.resolution))
            .where(ResolutionPayout.user_id == user_id)
            .order_by(ResolutionPayout.payout_id)
        )
        return list(self._session.execute(query).scalars().all())

    def list_creator_payouts(self, creator_id: str) -> list[CreatorPayout]:
        query = (
            select(CreatorPayout)
            .options(selectinload(CreatorPayout.resolution))
            .where(CreatorPayout.creator_id == creator_id)
        )
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Audit log

    def add_log(
        self,
        *,
        market_id: str,
        admin_id: str,
        action: str,
        resolution_id: str | None = None,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ResolutionLog:
        entry = ResolutionLog(
            market_id=market_id,
            admin_id=admin_id,
            action=action,
            resolution_id=resolution_id,
            details=details,
            error=error,
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    def list_logs(
        self,
        *,
        market_id: str | None = None,
        admin_id: str | None = None,
        action: str | None = None,
        resolution_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[ResolutionLog]:
        query = select(ResolutionLog)
        if market_id:
            query = query.where(ResolutionLog.market_id == market_id)
        if admin_id:
            query = query.where(ResolutionLog.admin_id == admin_id)
        if action:
            query = query.where(ResolutionLog.action == action)
        if resolution_id:
            query = query.where(ResolutionLog.resolution_id == resolution_id)
        if start is not None:
            query = query.where(ResolutionLog.timestamp >= start)
        if end is not None:
            query = query.where(ResolutionLog.timestamp <= end)
        query = query.order_by(ResolutionLog.timestamp, ResolutionLog.log_id)
        if limit is not None:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def latest_log(self, market_id: str) -> ResolutionLog | None:
        query = (
            select(ResolutionLog)
            .where(ResolutionLog.market_id == market_id)
            .order_by(ResolutionLog.log_id.desc())
        )
        return self._session.execute(query).scalars().first()


__all__ = ["ResolutionRepository"]

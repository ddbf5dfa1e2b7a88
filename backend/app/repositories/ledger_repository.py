"""Balance and transaction persistence helpers."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import TokenTransaction, TransactionStatus, UserBalance


class LedgerRepository:
    """Encapsulate reads and writes against balances and their transaction log."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Balances

    def get_balance(self, user_id: str) -> UserBalance | None:
        return self._session.get(UserBalance, user_id)

    def create_balance(self, user_id: str) -> UserBalance:
        balance = UserBalance(
            user_id=user_id,
            available_tokens=0.0,
            committed_tokens=0.0,
            total_earned=0.0,
            total_spent=0.0,
        )
        self._session.add(balance)
        return balance

    def list_balance_user_ids(
        self, *, limit: int | None = None, offset: int = 0
    ) -> list[str]:
        query = select(UserBalance.user_id).order_by(UserBalance.user_id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def list_balances(self, user_ids: Sequence[str]) -> list[UserBalance]:
        if not user_ids:
            return []
        query = select(UserBalance).where(UserBalance.user_id.in_(list(user_ids)))
        return list(self._session.execute(query).scalars().all())

    def balance_totals(self) -> dict[str, float]:
        query = select(
            func.count(UserBalance.user_id),
            func.coalesce(func.sum(UserBalance.available_tokens), 0),
            func.coalesce(func.sum(UserBalance.committed_tokens), 0),
            func.coalesce(func.sum(UserBalance.total_earned), 0),
            func.coalesce(func.sum(UserBalance.total_spent), 0),
        )
        users, available, committed, earned, spent = self._session.execute(query).one()
        return {
            "total_users": int(users or 0),
            "available_tokens": float(available or 0),
            "committed_tokens": float(committed or 0),
            "total_earned": float(earned or 0),
            "total_spent": float(spent or 0),
        }

    # ------------------------------------------------------------------
    # Transactions

    def add_transaction(
        self,
        *,
        user_id: str,
        type: str,
        amount: float,
        balance_before: float,
        balance_after: float,
        related_id: str | None,
        details: dict[str, Any] | None,
        idempotency_key: str | None,
        status: str = TransactionStatus.COMPLETED.value,
    ) -> TokenTransaction:
        record = TokenTransaction(
            user_id=user_id,
            type=type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            status=status,
            related_id=related_id,
            details=details or None,
            idempotency_key=idempotency_key,
        )
        self._session.add(record)
        return record

    def get_transaction(self, transaction_id: int) -> TokenTransaction | None:
        return self._session.get(TokenTransaction, transaction_id)

    def find_transaction_by_key(self, idempotency_key: str) -> TokenTransaction | None:
        query = select(TokenTransaction).where(TokenTransaction.idempotency_key == idempotency_key)
        return self._session.execute(query).scalars().first()

    def list_transactions(
        self,
        user_id: str,
        *,
        status: str | None = None,
        types: Sequence[str] | None = None,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[TokenTransaction]:
        query = select(TokenTransaction).where(TokenTransaction.user_id == user_id)
        if status:
            query = query.where(TokenTransaction.status == status)
        if types:
            query = query.where(TokenTransaction.type.in_(list(types)))
        if since is not None:
            query = query.where(TokenTransaction.timestamp >= since)
        query = query.order_by(TokenTransaction.timestamp, TokenTransaction.transaction_id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def list_transactions_for_related(
        self, related_id: str, *, status: str | None = TransactionStatus.COMPLETED.value
    ) -> list[TokenTransaction]:
        query = select(TokenTransaction).where(TokenTransaction.related_id == related_id)
        if status:
            query = query.where(TokenTransaction.status == status)
        query = query.order_by(TokenTransaction.transaction_id)
        return list(self._session.execute(query).scalars().all())


__all__ = ["LedgerRepository"]

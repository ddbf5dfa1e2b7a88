"""Atomic, versioned mutations of user token balances.

Every write goes through :class:`UserBalance`'s version column, so two writers
that read the same version cannot both commit. Each mutation records a
:class:`TokenTransaction` in the same database transaction.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import TypeVar

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings, get_settings
from app.db import SessionLocal, session_scope
from app.domain import BalanceFigures, BalanceUpdateRequest
from app.errors import (
    ConcurrentModification,
    InsufficientFunds,
    InvalidInput,
    InvalidState,
)
from app.models import TokenTransaction, TransactionStatus, TransactionType, UserBalance
from app.repositories import LedgerRepository

T = TypeVar("T")

_CREDIT_TYPES = {
    TransactionType.PURCHASE.value,
    TransactionType.WIN.value,
    TransactionType.REFUND.value,
}
_VALID_TYPES = {member.value for member in TransactionType}


def _d(value: float | int | None) -> Decimal:
    return Decimal(str(value or 0))


def figures_of(balance: UserBalance | None) -> BalanceFigures | None:
    if balance is None:
        return None
    return BalanceFigures(
        available_tokens=float(balance.available_tokens or 0),
        committed_tokens=float(balance.committed_tokens or 0),
        total_earned=float(balance.total_earned or 0),
        total_spent=float(balance.total_spent or 0),
    )


def apply_mutation(
    current: BalanceFigures,
    transaction_type: str,
    amount: float,
    *,
    debit_available: bool = False,
) -> BalanceFigures:
    """Return the balance that results from applying one posting to ``current``.

    A ``refund`` counts towards ``total_earned`` and a ``loss`` draws down
    ``committed_tokens`` (``available_tokens`` with ``debit_available``); the
    reconciler's earned/spent/committed formula relies on both.
    """

    magnitude = abs(_d(amount))
    available = _d(current.available_tokens)
    committed = _d(current.committed_tokens)
    earned = _d(current.total_earned)
    spent = _d(current.total_spent)

    if transaction_type in _CREDIT_TYPES:
        available += magnitude
        earned += magnitude
    elif transaction_type == TransactionType.COMMIT.value:
        if available < magnitude:
            raise InsufficientFunds(
                "Insufficient available tokens",
                details={"available": float(available), "requested": float(magnitude)},
            )
        available -= magnitude
        committed += magnitude
    elif transaction_type == TransactionType.LOSS.value:
        spent += magnitude
        if debit_available:
            available -= magnitude
        else:
            committed -= magnitude
    else:
        raise InvalidInput(f"Unsupported transaction type: {transaction_type}")

    zero = Decimal(0)
    return BalanceFigures(
        available_tokens=float(max(zero, available)),
        committed_tokens=float(max(zero, committed)),
        total_earned=float(max(zero, earned)),
        total_spent=float(max(zero, spent)),
    )


def validate_request(request: BalanceUpdateRequest) -> None:
    if not request.user_id:
        raise InvalidInput("User id is required")
    if request.type not in _VALID_TYPES:
        raise InvalidInput(f"Unsupported transaction type: {request.type}")
    try:
        amount = float(request.amount)
    except (TypeError, ValueError) as exc:
        raise InvalidInput("Amount must be a number") from exc
    if not math.isfinite(amount):
        raise InvalidInput("Amount must be finite")
    if amount == 0:
        raise InvalidInput("Amount cannot be zero")


def compensation_for(
    transaction: TokenTransaction, reason: str, *, restore_commitment: bool = False
) -> list[BalanceUpdateRequest]:
    """Postings that undo ``transaction`` without deleting it.

    With ``restore_commitment`` a forfeited stake goes back into committed
    tokens instead of the spendable balance.
    """

    base_key = f"rollback:{transaction.transaction_id}"
    metadata = {
        "reason": reason,
        "rolled_back_transaction_id": transaction.transaction_id,
        "rolled_back_type": transaction.type,
    }

    def request(kind: str, key: str, *, debit_available: bool = False) -> BalanceUpdateRequest:
        return BalanceUpdateRequest(
            user_id=transaction.user_id,
            amount=float(transaction.amount),
            type=kind,
            related_id=transaction.related_id,
            metadata=dict(metadata),
            idempotency_key=key,
            debit_available=debit_available,
        )

    if transaction.type in _CREDIT_TYPES:
        return [request(TransactionType.LOSS.value, base_key, debit_available=True)]
    if transaction.type == TransactionType.LOSS.value:
        refund = request(TransactionType.REFUND.value, base_key)
        if restore_commitment:
            return [refund, request(TransactionType.COMMIT.value, f"{base_key}:commit")]
        return [refund]
    if transaction.type == TransactionType.COMMIT.value:
        # Release the stake from committed tokens back into the spendable balance.
        return [
            request(TransactionType.LOSS.value, base_key),
            request(TransactionType.REFUND.value, f"{base_key}:refund"),
        ]
    raise InvalidInput(f"Unsupported transaction type: {transaction.type}")


class BalanceLedger:
    """Sole writer of user balances."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Mutations

    def apply_update(self, session: Session, request: BalanceUpdateRequest) -> UserBalance:
        """Apply one posting inside a caller-owned session (single attempt).

        Raises :class:`ConcurrentModification` when the stored version moved
        since this session loaded the balance.
        """

        validate_request(request)
        repo = LedgerRepository(session)

        if request.idempotency_key:
            existing = repo.find_transaction_by_key(request.idempotency_key)
            if existing is not None:
                logger.debug(
                    "Skipping ledger posting {} for {}; already applied",
                    request.idempotency_key,
                    request.user_id,
                )
                balance = repo.get_balance(request.user_id)
                if balance is None:
                    raise InvalidState(
                        f"Transaction {existing.transaction_id} exists without a balance for {request.user_id}"
                    )
                return balance

        balance = repo.get_balance(request.user_id)
        if balance is None:
            balance = repo.create_balance(request.user_id)

        current = figures_of(balance) or BalanceFigures()
        updated = apply_mutation(
            current,
            request.type,
            request.amount,
            debit_available=request.debit_available,
        )
        balance.available_tokens = updated.available_tokens
        balance.committed_tokens = updated.committed_tokens
        balance.total_earned = updated.total_earned
        balance.total_spent = updated.total_spent

        repo.add_transaction(
            user_id=request.user_id,
            type=request.type,
            amount=float(abs(_d(request.amount))),
            balance_before=current.available_tokens,
            balance_after=updated.available_tokens,
            related_id=request.related_id,
            details=dict(request.metadata),
            idempotency_key=request.idempotency_key,
        )

        try:
            session.flush()
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Balance for {request.user_id} was modified concurrently",
                details={"user_id": request.user_id},
            ) from exc
        except IntegrityError as exc:
            # A concurrent first write created the balance or used the same key.
            raise ConcurrentModification(
                f"Balance for {request.user_id} was created concurrently",
                details={"user_id": request.user_id},
            ) from exc
        return balance

    def update_balance_atomic(self, request: BalanceUpdateRequest) -> UserBalance:
        validate_request(request)

        def attempt() -> UserBalance:
            with session_scope(self._session_factory) as session:
                return self.apply_update(session, request)

        balance = self.run_with_retries(attempt, label=f"{request.type} for {request.user_id}")
        logger.debug(
            "Applied {} of {} for {} (version {})",
            request.type,
            request.amount,
            request.user_id,
            balance.version,
        )
        return balance

    def update_multiple_balances_atomic(
        self, requests: Sequence[BalanceUpdateRequest]
    ) -> list[UserBalance]:
        """Apply every posting or none of them."""

        if not requests:
            return []
        for request in requests:
            validate_request(request)

        def attempt() -> list[UserBalance]:
            with session_scope(self._session_factory) as session:
                return [self.apply_update(session, request) for request in requests]

        return self.run_with_retries(attempt, label=f"batch of {len(requests)} postings")

    def rollback_transaction(
        self, transaction_id: int, reason: str, *, restore_commitment: bool = False
    ) -> UserBalance:
        """Post the compensating entries for a completed transaction."""

        def attempt() -> UserBalance:
            with session_scope(self._session_factory) as session:
                repo = LedgerRepository(session)
                transaction = repo.get_transaction(transaction_id)
                if transaction is None:
                    raise InvalidInput(f"Transaction {transaction_id} not found")
                if transaction.status != TransactionStatus.COMPLETED.value:
                    raise InvalidState(
                        f"Transaction {transaction_id} is {transaction.status}; only completed transactions roll back"
                    )
                balances = [
                    self.apply_update(session, request)
                    for request in compensation_for(
                        transaction, reason, restore_commitment=restore_commitment
                    )
                ]
                return balances[-1]

        balance = self.run_with_retries(attempt, label=f"rollback of transaction {transaction_id}")
        logger.info("Rolled back transaction {}: {}", transaction_id, reason)
        return balance

    # ------------------------------------------------------------------
    # Reads

    def get_balance(self, user_id: str) -> UserBalance | None:
        with session_scope(self._session_factory) as session:
            return LedgerRepository(session).get_balance(user_id)

    def get_transactions(
        self,
        user_id: str,
        *,
        types: Sequence[str] | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[TokenTransaction]:
        with session_scope(self._session_factory) as session:
            return LedgerRepository(session).list_transactions(
                user_id, types=types, limit=limit, offset=offset
            )

    def validate_sufficient_balance(self, user_id: str, amount: float) -> bool:
        balance = self.get_balance(user_id)
        if balance is None:
            return False
        return float(balance.available_tokens) >= abs(float(amount))

    def get_balance_summary(self, user_ids: Sequence[str]) -> dict[str, BalanceFigures]:
        with session_scope(self._session_factory) as session:
            balances = LedgerRepository(session).list_balances(user_ids)
            return {balance.user_id: figures_of(balance) for balance in balances}

    # ------------------------------------------------------------------
    # Helpers

    def run_with_retries(self, operation: Callable[[], T], *, label: str) -> T:
        attempts = self._settings.ledger_max_retries
        schedule = self._settings.ledger_retry_backoff_schedule
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except ConcurrentModification:
                if attempt >= attempts:
                    logger.warning("Giving up on {} after {} conflicting attempts", label, attempt)
                    raise
                delay = schedule[min(attempt - 1, len(schedule) - 1)]
                logger.debug(
                    "Version conflict on {} (attempt {}/{}); retrying in {}s",
                    label,
                    attempt,
                    attempts,
                    delay,
                )
                if delay > 0:
                    time.sleep(delay)
        raise ConcurrentModification(f"{label} did not complete")


__all__ = [
    "BalanceLedger",
    "apply_mutation",
    "compensation_for",
    "figures_of",
    "validate_request",
]

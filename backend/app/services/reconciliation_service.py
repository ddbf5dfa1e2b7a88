"""Detect and repair drift between stored balances and transaction history."""

from __future__ import annotations

import time
from collections.abc import Sequence
from decimal import Decimal

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings, get_settings
from app.db import SessionLocal, session_scope
from app.domain import (
    BalanceAuditResult,
    BalanceFigures,
    BalanceHealthReport,
    BalanceInconsistency,
    BalanceSnapshot,
    IntegrityCheck,
    ReconciliationReport,
)
from app.errors import ConcurrentModification, InvalidInput, NothingToFix, SettlementError
from app.models import TokenTransaction, TransactionStatus, TransactionType, UserBalance, utcnow
from app.repositories import LedgerRepository, MarketRepository

from .balance_ledger import BalanceLedger, figures_of

_EARNING_TYPES = {
    TransactionType.PURCHASE.value,
    TransactionType.WIN.value,
    TransactionType.REFUND.value,
}
_FIELDS = ("available_tokens", "committed_tokens", "total_earned", "total_spent")


def calculate_balance(
    transactions: Sequence[TokenTransaction], active_committed: float
) -> BalanceFigures:
    """Rebuild a balance from completed transactions and currently active stakes."""

    earned = Decimal(0)
    spent = Decimal(0)
    for transaction in transactions:
        if transaction.status != TransactionStatus.COMPLETED.value:
            continue
        amount = abs(Decimal(str(transaction.amount)))
        if transaction.type in _EARNING_TYPES:
            earned += amount
        elif transaction.type == TransactionType.LOSS.value:
            spent += amount
    committed = Decimal(str(active_committed))
    available = max(Decimal(0), earned - spent - committed)
    return BalanceFigures(
        available_tokens=float(available),
        committed_tokens=float(committed),
        total_earned=float(earned),
        total_spent=float(spent),
    )


def detect_inconsistencies(
    user_id: str,
    stored: BalanceFigures | None,
    calculated: BalanceFigures,
    *,
    tolerance: float = 0.01,
) -> list[BalanceInconsistency]:
    if stored is None:
        if calculated.available_tokens > 0:
            return [
                BalanceInconsistency(
                    user_id=user_id,
                    field="available_tokens",
                    stored_value=0.0,
                    calculated_value=calculated.available_tokens,
                    difference=calculated.available_tokens,
                )
            ]
        return []

    found: list[BalanceInconsistency] = []
    for name in _FIELDS:
        stored_value = getattr(stored, name)
        calculated_value = getattr(calculated, name)
        difference = float(Decimal(str(calculated_value)) - Decimal(str(stored_value)))
        if abs(difference) > tolerance:
            found.append(
                BalanceInconsistency(
                    user_id=user_id,
                    field=name,
                    stored_value=stored_value,
                    calculated_value=calculated_value,
                    difference=difference,
                )
            )
    return found


def validate_balance_integrity(balance: UserBalance) -> IntegrityCheck:
    violations: list[str] = []
    figures = figures_of(balance) or BalanceFigures()
    if figures.available_tokens < 0:
        violations.append("Available tokens cannot be negative")
    if figures.committed_tokens < 0:
        violations.append("Committed tokens cannot be negative")
    if figures.total_earned < 0:
        violations.append("Total earned cannot be negative")
    if figures.total_spent < 0:
        violations.append("Total spent cannot be negative")

    held = figures.available_tokens + figures.committed_tokens
    net = figures.total_earned - figures.total_spent
    if held > net + 0.01:
        violations.append(f"Total tokens ({held}) exceed net earned tokens ({net})")
    if not balance.version or balance.version <= 0:
        violations.append("Version must be positive")
    return IntegrityCheck(is_valid=not violations, violations=violations)


class ReconciliationService:
    """Audit balances against history and overwrite them when they drift."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        ledger: BalanceLedger | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._ledger = ledger or BalanceLedger(self._session_factory, self._settings)

    def audit_user_balance(self, user_id: str) -> BalanceAuditResult:
        if not user_id or not user_id.strip():
            raise InvalidInput("User id is required")
        with session_scope(self._session_factory) as session:
            return self._audit(session, user_id)

    def fix_user_balance(self, user_id: str) -> UserBalance:
        """Overwrite the stored balance with the recomputed one.

        The write is versioned like any ledger mutation, so a concurrent
        posting forces a fresh audit rather than being overwritten.
        """

        if not user_id or not user_id.strip():
            raise InvalidInput("User id is required")

        def attempt() -> UserBalance:
            with session_scope(self._session_factory) as session:
                audit = self._audit(session, user_id)
                repo = LedgerRepository(session)
                balance = repo.get_balance(user_id)
                if not audit.inconsistencies:
                    if balance is not None:
                        return balance
                    raise NothingToFix(
                        f"No balance found and no inconsistencies to fix for {user_id}"
                    )
                if balance is None:
                    balance = repo.create_balance(user_id)
                calculated = audit.calculated_balance
                balance.available_tokens = calculated.available_tokens
                balance.committed_tokens = calculated.committed_tokens
                balance.total_earned = calculated.total_earned
                balance.total_spent = calculated.total_spent
                try:
                    session.flush()
                except (StaleDataError, IntegrityError) as exc:
                    raise ConcurrentModification(
                        f"Balance for {user_id} changed while it was being fixed"
                    ) from exc
                logger.info(
                    "Fixed balance for {}: {} field(s) corrected",
                    user_id,
                    len(audit.inconsistencies),
                )
                return balance

        return self._ledger.run_with_retries(attempt, label=f"balance fix for {user_id}")

    def reconcile_multiple_users(
        self, user_ids: Sequence[str], *, fix: bool = True
    ) -> ReconciliationReport:
        started = time.perf_counter()
        report = ReconciliationReport()
        for user_id in user_ids:
            report.total_users_checked += 1
            try:
                audit = self.audit_user_balance(user_id)
            except SettlementError as exc:
                report.errors.append({"user_id": user_id, "stage": "audit", "error": str(exc)})
                continue
            except Exception as exc:
                logger.exception("Audit of {} failed", user_id)
                report.errors.append({"user_id": user_id, "stage": "audit", "error": str(exc)})
                continue

            if audit.is_consistent:
                continue
            report.users_with_inconsistencies += 1
            report.inconsistencies_found.extend(audit.inconsistencies)
            if not fix:
                continue
            try:
                self.fix_user_balance(user_id)
            except Exception as exc:
                logger.warning("Fixing balance for {} failed: {}", user_id, exc)
                report.errors.append({"user_id": user_id, "stage": "fix", "error": str(exc)})
                continue
            report.users_fixed += 1

        report.execution_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Reconciled {} users: {} inconsistent, {} fixed, {} errors",
            report.total_users_checked,
            report.users_with_inconsistencies,
            report.users_fixed,
            len(report.errors),
        )
        return report

    def reconcile_all_users(self, *, fix: bool = True) -> ReconciliationReport:
        started = time.perf_counter()
        batch_size = self._settings.reconciliation_batch_size
        combined = ReconciliationReport()
        offset = 0
        while True:
            with session_scope(self._session_factory) as session:
                user_ids = LedgerRepository(session).list_balance_user_ids(
                    limit=batch_size, offset=offset
                )
            if not user_ids:
                break
            batch = self.reconcile_multiple_users(user_ids, fix=fix)
            combined.total_users_checked += batch.total_users_checked
            combined.users_with_inconsistencies += batch.users_with_inconsistencies
            combined.inconsistencies_found.extend(batch.inconsistencies_found)
            combined.users_fixed += batch.users_fixed
            combined.errors.extend(batch.errors)
            offset += len(user_ids)
        combined.execution_time_ms = (time.perf_counter() - started) * 1000
        return combined

    def generate_health_report(self) -> BalanceHealthReport:
        with session_scope(self._session_factory) as session:
            repo = LedgerRepository(session)
            totals = repo.balance_totals()
            sample = repo.list_balance_user_ids(limit=self._settings.health_report_sample_size)
        report = self.reconcile_multiple_users(sample, fix=False)
        rate = report.users_with_inconsistencies / len(sample) if sample else 0.0
        return BalanceHealthReport(
            total_users=totals["total_users"],
            total_tokens_in_circulation=totals["available_tokens"] + totals["committed_tokens"],
            total_committed_tokens=totals["committed_tokens"],
            total_earned=totals["total_earned"],
            total_spent=totals["total_spent"],
            sampled_users=len(sample),
            inconsistent_users=report.users_with_inconsistencies,
            inconsistency_rate=rate,
            generated_at=utcnow(),
        )

    def create_balance_snapshot(self, user_id: str) -> BalanceSnapshot:
        with session_scope(self._session_factory) as session:
            audit = self._audit(session, user_id)
            balance = LedgerRepository(session).get_balance(user_id)
            return BalanceSnapshot(
                user_id=user_id,
                balance=audit.current_balance,
                version=balance.version if balance is not None else None,
                calculated_balance=audit.calculated_balance,
                transaction_count=audit.transaction_count,
                active_commitment_count=audit.active_commitment_count,
                is_consistent=audit.is_consistent,
                taken_at=utcnow(),
            )

    def _audit(self, session: Session, user_id: str) -> BalanceAuditResult:
        ledger = LedgerRepository(session)
        stored = figures_of(ledger.get_balance(user_id))
        transactions = ledger.list_transactions(
            user_id, status=TransactionStatus.COMPLETED.value
        )
        committed, active_count = MarketRepository(session).active_commitment_totals(user_id)
        calculated = calculate_balance(transactions, committed)
        return BalanceAuditResult(
            user_id=user_id,
            current_balance=stored,
            calculated_balance=calculated,
            inconsistencies=detect_inconsistencies(
                user_id,
                stored,
                calculated,
                tolerance=self._settings.reconciliation_tolerance,
            ),
            transaction_count=len(transactions),
            active_commitment_count=active_count,
        )


__all__ = [
    "ReconciliationService",
    "calculate_balance",
    "detect_inconsistencies",
    "validate_balance_integrity",
]

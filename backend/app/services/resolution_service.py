"""Drive markets through resolution and keep an audit trail of every step.

A resolution validates evidence, computes payouts, persists the payout record
together with the market and commitment status changes, and then credits
balances user by user. Ledger failures during that last step are recorded but
never undo a committed resolution; they can be replayed with
:meth:`ResolutionService.retry_ledger_application`.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from loguru import logger
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import SessionLocal, session_scope
from app.domain import (
    BalanceUpdateRequest,
    EvidenceItem,
    LedgerFanOutSummary,
    MarketPayoutPreview,
    PayoutCalculationResult,
    ResolutionOutcome,
    UserResolutionPayouts,
    WinningStake,
)
from app.domain.positions import effective_option_id, option_from_position
from app.errors import (
    EvidenceValidationError,
    InvalidInput,
    InvalidState,
    LedgerApplicationFailed,
    MarketNotFound,
    ResolutionFailed,
    RollbackFailed,
    SettlementError,
)
from app.models import (
    RESOLVABLE_MARKET_STATUSES,
    CommitmentStatus,
    CreatorPayout,
    HousePayout,
    MarketResolution,
    MarketStatus,
    ResolutionAction,
    ResolutionLog,
    ResolutionPayout,
    TransactionType,
    utcnow,
)
from app.repositories import LedgerRepository, MarketRepository, ResolutionRepository

from . import payouts
from .balance_ledger import BalanceLedger

EVIDENCE_TYPES = ("url", "screenshot", "description")
_HTTP_URL = TypeAdapter(AnyHttpUrl)

PayoutCalculator = Callable[[Any, Sequence[Any], Any], PayoutCalculationResult]


@dataclass(slots=True)
class _Stake:
    commitment_id: str
    user_id: str
    option_id: str | None
    tokens: float


@dataclass(slots=True)
class _ResolutionContext:
    market_id: str
    title: str
    creator_id: str
    winning_option_id: str
    stakes: list[_Stake] = field(default_factory=list)

    @property
    def total_pool(self) -> float:
        return float(sum(stake.tokens for stake in self.stakes))

    @property
    def winners(self) -> list[_Stake]:
        return [stake for stake in self.stakes if stake.option_id == self.winning_option_id]


def validate_evidence(evidence: Sequence[Any] | None, *, min_length: int = 10) -> list[EvidenceItem]:
    """Return normalized evidence or raise :class:`EvidenceValidationError`."""

    if not evidence:
        raise EvidenceValidationError(["At least one piece of evidence is required"])

    items = [EvidenceItem.from_value(value) for value in evidence]
    errors: list[str] = []
    for index, item in enumerate(items, start=1):
        content = item.content.strip()
        if item.type not in EVIDENCE_TYPES:
            errors.append(f"Evidence {index}: unsupported type '{item.type}'")
            continue
        if len(content) < min_length:
            errors.append(f"Evidence {index}: content must be at least {min_length} characters")
        if item.type == "url":
            try:
                _HTTP_URL.validate_python(content)
            except ValidationError:
                errors.append(f"Evidence {index}: '{content}' is not a valid URL")

    if not any(item.type in ("url", "description") and item.content.strip() for item in items):
        errors.append("At least one URL or description is required")

    if errors:
        raise EvidenceValidationError(errors)
    return items


def derive_resolution_status(latest: ResolutionLog | None) -> str:
    if latest is None:
        return "not_started"
    action = latest.action
    if action == ResolutionAction.RESOLUTION_COMPLETED.value:
        return "completed"
    if action == ResolutionAction.RESOLUTION_FAILED.value:
        return "failed"
    if action == ResolutionAction.ROLLBACK_COMPLETED.value:
        return "rolled_back"
    return "in_progress"


class ResolutionService:
    """Resolution state machine plus market cancellation and read helpers."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        ledger: BalanceLedger | None = None,
        settings: Settings | None = None,
        calculator: PayoutCalculator | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._ledger = ledger or BalanceLedger(self._session_factory, self._settings)
        self._calculator = calculator or payouts.calculate_payouts

    # ------------------------------------------------------------------
    # Resolution

    def resolve_market(
        self,
        market_id: str,
        winning_option_id: str,
        evidence: Sequence[Any] | None,
        admin_id: str,
        creator_fee_percentage: float | None = None,
    ) -> ResolutionOutcome:
        fee_percentage = (
            self._settings.default_creator_fee_percentage
            if creator_fee_percentage is None
            else creator_fee_percentage
        )
        resolution_id = uuid4().hex
        self._log(
            market_id,
            admin_id,
            ResolutionAction.RESOLUTION_STARTED,
            resolution_id=resolution_id,
            details={
                "winning_option_id": winning_option_id,
                "creator_fee_percentage": fee_percentage,
                "evidence_count": len(evidence or []),
            },
        )

        prior_status: str | None = None
        try:
            context = self._load_context(market_id, winning_option_id)
            items = validate_evidence(
                evidence, min_length=self._settings.evidence_min_content_length
            )
            self._log(
                market_id,
                admin_id,
                ResolutionAction.EVIDENCE_VALIDATED,
                resolution_id=resolution_id,
                details={"evidence_count": len(items)},
            )

            result = self._calculator(
                context.total_pool,
                [
                    WinningStake(
                        user_id=stake.user_id,
                        tokens_committed=stake.tokens,
                        commitment_id=stake.commitment_id,
                    )
                    for stake in context.winners
                ],
                fee_percentage,
            )
            self._log(
                market_id,
                admin_id,
                ResolutionAction.PAYOUTS_CALCULATED,
                resolution_id=resolution_id,
                details=result.to_dict(),
            )

            prior_status = self._persist_resolution(
                resolution_id, context, result, items, admin_id, float(fee_percentage)
            )
            postings = self._plan_postings(resolution_id)
        except Exception as exc:
            self._log(
                market_id,
                admin_id,
                ResolutionAction.RESOLUTION_FAILED,
                resolution_id=resolution_id,
                details={"code": getattr(exc, "code", type(exc).__name__)},
                error=str(exc),
            )
            rollback_error: RollbackFailed | None = None
            if prior_status is not None:
                try:
                    self.rollback_resolution(
                        market_id,
                        resolution_id,
                        admin_id,
                        reason=str(exc),
                        restore_status=prior_status,
                    )
                except RollbackFailed as error:
                    logger.error(
                        "Resolution {} of market {} failed ({}) and was not rolled back: {}",
                        resolution_id,
                        market_id,
                        exc,
                        error,
                    )
                    rollback_error = error
            if isinstance(exc, SettlementError):
                if rollback_error is not None:
                    raise exc from rollback_error
                raise
            logger.exception("Resolution of market {} failed unexpectedly", market_id)
            raise ResolutionFailed(
                f"Resolution of market {market_id} failed: {exc}", market_id=market_id
            ) from (rollback_error or exc)

        summary = self._distribute(postings, market_id=market_id)
        self._log(
            market_id,
            admin_id,
            ResolutionAction.TOKENS_DISTRIBUTED,
            resolution_id=resolution_id,
            details=summary.to_dict(),
        )
        self._log(
            market_id,
            admin_id,
            ResolutionAction.RESOLUTION_COMPLETED,
            resolution_id=resolution_id,
            details={
                "total_payout": result.total_payout,
                "winner_count": result.winner_count,
                "creator_fee": result.creator_fee,
                "house_fee": result.house_fee,
                "ledger_failures": summary.failed_users,
            },
        )
        logger.info(
            "Market {} resolved to {}: pool={}, winners={}, ledger_failures={}",
            market_id,
            context.winning_option_id,
            result.total_pool,
            result.winner_count,
            summary.failed_users,
        )
        return ResolutionOutcome(
            success=True, resolution_id=resolution_id, ledger_failures=summary.failures
        )

    def calculate_payout_preview(
        self,
        market_id: str,
        winning_option_id: str,
        creator_fee_percentage: float | None = None,
    ) -> MarketPayoutPreview:
        fee_percentage = (
            self._settings.default_creator_fee_percentage
            if creator_fee_percentage is None
            else creator_fee_percentage
        )
        context = self._load_context(market_id, winning_option_id)
        preview = payouts.calculate_payout_preview(
            context.total_pool,
            [
                WinningStake(stake.user_id, stake.tokens, stake.commitment_id)
                for stake in context.winners
            ],
            fee_percentage,
        )
        return MarketPayoutPreview(
            market_id=market_id,
            winning_option_id=context.winning_option_id,
            creator_id=context.creator_id,
            total_pool=context.total_pool,
            participant_count=len({stake.user_id for stake in context.stakes}),
            preview=preview,
        )

    def rollback_resolution(
        self,
        market_id: str,
        resolution_id: str,
        admin_id: str,
        *,
        reason: str | None = None,
        restore_status: str = MarketStatus.PENDING_RESOLUTION.value,
    ) -> LedgerFanOutSummary:
        """Undo a persisted resolution and compensate any ledger postings it made.

        The market goes back to ``restore_status``: pending resolution for an
        operator rollback, or whatever status a failed attempt started from.
        """

        self._log(
            market_id,
            admin_id,
            ResolutionAction.ROLLBACK_INITIATED,
            resolution_id=resolution_id,
            details={"reason": reason, "restore_status": restore_status},
        )
        try:
            with session_scope(self._session_factory) as session:
                resolutions = ResolutionRepository(session)
                markets = MarketRepository(session)
                record = resolutions.get_resolution(resolution_id)
                if record is None or record.market_id != market_id:
                    raise InvalidState(
                        f"No resolution {resolution_id} recorded for market {market_id}",
                        market_id=market_id,
                    )
                for commitment in markets.list_commitments_for_resolution(resolution_id):
                    commitment.status = CommitmentStatus.ACTIVE.value
                    commitment.resolved_at = None
                    commitment.resolution_id = None
                resolutions.delete_resolution(record)
                markets.transition_status(
                    market_id,
                    from_statuses=[MarketStatus.RESOLVED.value],
                    to_status=restore_status,
                    values={"resolved_at": None, "winning_option_id": None},
                )

            summary = self._compensate_ledger(resolution_id, reason or "resolution rollback")
        except Exception as exc:
            logger.exception("Rollback of resolution {} failed", resolution_id)
            self._log(
                market_id,
                admin_id,
                ResolutionAction.RESOLUTION_FAILED,
                resolution_id=resolution_id,
                details={"stage": "rollback"},
                error=str(exc),
            )
            raise RollbackFailed(
                f"Rollback of resolution {resolution_id} failed: {exc}", market_id=market_id
            ) from exc

        self._log(
            market_id,
            admin_id,
            ResolutionAction.ROLLBACK_COMPLETED,
            resolution_id=resolution_id,
            details=summary.to_dict(),
        )
        logger.info(
            "Rolled back resolution {} of market {} ({} postings reversed, {} failures)",
            resolution_id,
            market_id,
            summary.postings_applied,
            summary.failed_users,
        )
        return summary

    def retry_ledger_application(
        self, resolution_id: str, admin_id: str = "system"
    ) -> LedgerFanOutSummary:
        """Re-apply a resolution's postings; those already applied are skipped."""

        with session_scope(self._session_factory) as session:
            record = ResolutionRepository(session).get_resolution(resolution_id)
            if record is None:
                raise InvalidInput(f"Resolution {resolution_id} not found")
            market_id = record.market_id

        summary = self._distribute(self._plan_postings(resolution_id), market_id=market_id)
        self._log(
            market_id,
            admin_id,
            ResolutionAction.TOKENS_DISTRIBUTED,
            resolution_id=resolution_id,
            details={"retry": True, **summary.to_dict()},
        )
        return summary

    # ------------------------------------------------------------------
    # Lifecycle outside resolution

    def cancel_market(self, market_id: str, reason: str, admin_id: str) -> LedgerFanOutSummary:
        """Cancel an unresolved market and refund every active stake."""

        if not reason or not reason.strip():
            raise InvalidInput("A cancellation reason is required", market_id=market_id)

        now = utcnow()
        postings: dict[str, list[BalanceUpdateRequest]] = {}
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session)
            market = markets.get_market(market_id)
            if market is None:
                raise MarketNotFound(f"Market {market_id} not found", market_id=market_id)
            changed = markets.transition_status(
                market_id,
                from_statuses=RESOLVABLE_MARKET_STATUSES,
                to_status=MarketStatus.CANCELLED.value,
                values={"cancelled_at": now, "cancellation_reason": reason.strip()},
            )
            if not changed:
                raise InvalidState(
                    f"Market {market_id} is {market.status} and cannot be cancelled",
                    market_id=market_id,
                )
            for commitment in markets.list_commitments(
                market_id, statuses=[CommitmentStatus.ACTIVE.value]
            ):
                commitment.status = CommitmentStatus.REFUNDED.value
                commitment.resolved_at = now
                stake = float(commitment.tokens_committed)
                if stake <= 0:
                    continue
                metadata = {
                    "market_id": market_id,
                    "commitment_id": commitment.commitment_id,
                    "reason": "market_cancelled",
                }
                postings.setdefault(commitment.user_id, []).extend(
                    [
                        BalanceUpdateRequest(
                            user_id=commitment.user_id,
                            amount=stake,
                            type=TransactionType.LOSS.value,
                            related_id=market_id,
                            metadata=dict(metadata),
                            idempotency_key=f"cancel:{market_id}:stake:{commitment.commitment_id}",
                        ),
                        BalanceUpdateRequest(
                            user_id=commitment.user_id,
                            amount=stake,
                            type=TransactionType.REFUND.value,
                            related_id=market_id,
                            metadata=dict(metadata),
                            idempotency_key=f"cancel:{market_id}:refund:{commitment.commitment_id}",
                        ),
                    ]
                )

        summary = self._distribute(postings, market_id=market_id)
        logger.info(
            "Market {} cancelled by {}: {} users refunded, {} failures",
            market_id,
            admin_id,
            summary.applied_users,
            summary.failed_users,
        )
        return summary

    def mark_pending_resolution_markets(self, now: datetime | None = None) -> list[str]:
        """Move active markets whose end time has passed to pending resolution."""

        cutoff = now or utcnow()
        moved: list[str] = []
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session)
            for market in markets.markets_past_end(cutoff):
                changed = markets.transition_status(
                    market.market_id,
                    from_statuses=[MarketStatus.ACTIVE.value],
                    to_status=MarketStatus.PENDING_RESOLUTION.value,
                )
                if changed:
                    moved.append(market.market_id)
        if moved:
            logger.info("{} markets moved to pending resolution", len(moved))
        return moved

    # ------------------------------------------------------------------
    # Reads

    def get_market_resolution(self, market_id: str) -> MarketResolution | None:
        with session_scope(self._session_factory) as session:
            return ResolutionRepository(session).get_latest_for_market(market_id)

    def get_user_resolution_payouts(self, user_id: str) -> UserResolutionPayouts:
        with session_scope(self._session_factory) as session:
            repo = ResolutionRepository(session)
            return UserResolutionPayouts(
                user_id=user_id,
                winner_payouts=repo.list_user_payouts(user_id),
                creator_payouts=repo.list_creator_payouts(user_id),
            )

    def get_resolution_logs(
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
        with session_scope(self._session_factory) as session:
            return ResolutionRepository(session).list_logs(
                market_id=market_id,
                admin_id=admin_id,
                action=action,
                resolution_id=resolution_id,
                start=start,
                end=end,
                limit=limit,
            )

    def get_resolution_status(self, market_id: str) -> str:
        with session_scope(self._session_factory) as session:
            return derive_resolution_status(ResolutionRepository(session).latest_log(market_id))

    # ------------------------------------------------------------------
    # Steps

    def _load_context(self, market_id: str, winning_option_id: str) -> _ResolutionContext:
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session)
            market = markets.get_market(market_id)
            if market is None:
                raise MarketNotFound(f"Market {market_id} not found", market_id=market_id)
            if market.status not in RESOLVABLE_MARKET_STATUSES:
                raise InvalidState(
                    f"Market {market_id} is {market.status} and cannot be resolved",
                    market_id=market_id,
                    details={"status": market.status},
                )

            option_ids = markets.option_ids(market)
            winning = winning_option_id
            if winning not in option_ids:
                winning = option_from_position(winning_option_id, option_ids)
            if winning is None:
                raise InvalidInput(
                    f"Option {winning_option_id} does not belong to market {market_id}",
                    market_id=market_id,
                    details={"winning_option_id": winning_option_id, "options": option_ids},
                )

            stakes = [
                _Stake(
                    commitment_id=commitment.commitment_id,
                    user_id=commitment.user_id,
                    option_id=effective_option_id(
                        commitment.option_id, commitment.position, option_ids
                    ),
                    tokens=float(commitment.tokens_committed),
                )
                for commitment in markets.list_commitments(
                    market_id, statuses=[CommitmentStatus.ACTIVE.value]
                )
            ]
            return _ResolutionContext(
                market_id=market_id,
                title=market.title,
                creator_id=market.created_by,
                winning_option_id=winning,
                stakes=stakes,
            )

    def _persist_resolution(
        self,
        resolution_id: str,
        context: _ResolutionContext,
        result: PayoutCalculationResult,
        evidence: list[EvidenceItem],
        admin_id: str,
        fee_percentage: float,
    ) -> str:
        """Write the resolution atomically and return the market's prior status."""

        now = utcnow()
        with session_scope(self._session_factory) as session:
            markets = MarketRepository(session)
            market = markets.get_market(context.market_id)
            prior_status = market.status if market is not None else None
            changed = prior_status in RESOLVABLE_MARKET_STATUSES and markets.transition_status(
                context.market_id,
                from_statuses=[prior_status],
                to_status=MarketStatus.RESOLVED.value,
                values={"resolved_at": now, "winning_option_id": context.winning_option_id},
            )
            if not changed:
                raise InvalidState(
                    f"Market {context.market_id} was resolved or cancelled concurrently",
                    market_id=context.market_id,
                )

            commitments = markets.list_commitments(
                context.market_id, statuses=[CommitmentStatus.ACTIVE.value]
            )
            expected = {stake.commitment_id for stake in context.stakes}
            if {commitment.commitment_id for commitment in commitments} != expected:
                raise InvalidState(
                    f"Commitments on market {context.market_id} changed during resolution",
                    market_id=context.market_id,
                )

            record = MarketResolution(
                resolution_id=resolution_id,
                market_id=context.market_id,
                winning_option_id=context.winning_option_id,
                resolved_by=admin_id,
                resolved_at=now,
                evidence=[item.to_dict() for item in evidence],
                total_pool=result.total_pool,
                house_fee=result.house_fee,
                creator_fee=result.creator_fee,
                winner_pool=result.winner_pool,
                total_payout=result.total_payout,
                winner_count=result.winner_count,
                creator_fee_percentage=fee_percentage,
                creator_id=context.creator_id,
            )
            record.payouts = [
                ResolutionPayout(
                    user_id=payout.user_id,
                    commitment_id=payout.commitment_id,
                    tokens_staked=payout.tokens_staked,
                    payout_amount=payout.payout_amount,
                    profit=payout.profit,
                    win_share=payout.win_share,
                )
                for payout in result.payouts
            ]
            record.creator_payout = CreatorPayout(
                creator_id=context.creator_id,
                fee_amount=result.creator_fee,
                fee_percentage=fee_percentage,
            )
            record.house_payout = HousePayout(
                fee_amount=result.house_fee,
                fee_percentage=payouts.HOUSE_FEE_PERCENTAGE,
            )
            ResolutionRepository(session).add_resolution(record)

            winner_ids = {stake.commitment_id for stake in context.winners}
            for commitment in commitments:
                commitment.status = (
                    CommitmentStatus.WON.value
                    if commitment.commitment_id in winner_ids
                    else CommitmentStatus.LOST.value
                )
                commitment.resolved_at = now
                commitment.resolution_id = resolution_id
        return prior_status

    def _plan_postings(self, resolution_id: str) -> dict[str, list[BalanceUpdateRequest]]:
        """Build each user's ledger postings from the persisted payout record."""

        with session_scope(self._session_factory) as session:
            record = ResolutionRepository(session).get_resolution(resolution_id)
            if record is None:
                raise InvalidState(f"Resolution {resolution_id} not found")
            markets = MarketRepository(session)
            market = markets.get_market(record.market_id)
            title = market.title if market else None
            base = {
                "market_id": record.market_id,
                "market_title": title,
                "resolution_id": resolution_id,
            }

            postings: dict[str, list[BalanceUpdateRequest]] = {}
            for commitment in markets.list_commitments_for_resolution(resolution_id):
                stake = float(commitment.tokens_committed)
                if stake <= 0:
                    continue
                postings.setdefault(commitment.user_id, []).append(
                    BalanceUpdateRequest(
                        user_id=commitment.user_id,
                        amount=stake,
                        type=TransactionType.LOSS.value,
                        related_id=resolution_id,
                        metadata={
                            **base,
                            "commitment_id": commitment.commitment_id,
                            "outcome": commitment.status,
                        },
                        idempotency_key=f"{resolution_id}:stake:{commitment.commitment_id}",
                    )
                )

            for payout in record.payouts:
                if payout.payout_amount <= 0:
                    continue
                postings.setdefault(payout.user_id, []).append(
                    BalanceUpdateRequest(
                        user_id=payout.user_id,
                        amount=float(payout.payout_amount),
                        type=TransactionType.WIN.value,
                        related_id=resolution_id,
                        metadata={
                            **base,
                            "commitment_id": payout.commitment_id,
                            "tokens_staked": payout.tokens_staked,
                            "profit": payout.profit,
                        },
                        idempotency_key=(
                            f"{resolution_id}:win:{payout.commitment_id or payout.user_id}"
                        ),
                    )
                )

            if record.creator_fee > 0:
                postings.setdefault(record.creator_id, []).append(
                    BalanceUpdateRequest(
                        user_id=record.creator_id,
                        amount=float(record.creator_fee),
                        type=TransactionType.WIN.value,
                        related_id=resolution_id,
                        metadata={
                            **base,
                            "fee_type": "creator_fee",
                            "fee_percentage": record.creator_fee_percentage,
                        },
                        idempotency_key=f"{resolution_id}:creator_fee",
                    )
                )
            return postings

    def _distribute(
        self,
        postings: dict[str, list[BalanceUpdateRequest]],
        *,
        market_id: str,
    ) -> LedgerFanOutSummary:
        """Apply each user's postings concurrently; failures are collected, not raised.

        Users still queued when the deadline passes are never started and are
        reported as failed. Calls already running are waited for, so the
        summary only reports what actually happened in the ledger.
        """

        summary = LedgerFanOutSummary()
        if not postings:
            return summary

        workers = max(1, min(self._settings.payout_worker_count, len(postings)))
        waves = math.ceil(len(postings) / workers)
        deadline = self._settings.ledger_call_timeout_seconds * waves

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payout") as executor:
            futures = {
                executor.submit(self._ledger.update_multiple_balances_atomic, requests): user_id
                for user_id, requests in postings.items()
            }
            done, pending = wait(futures, timeout=deadline)

            running = []
            for future in pending:
                if future.cancel():
                    failure = LedgerApplicationFailed(
                        futures[future],
                        f"not started within {deadline:.1f}s",
                        market_id=market_id,
                    )
                    self._record_failure(summary, failure)
                else:
                    running.append(future)
            if running:
                logger.warning(
                    "{} ledger calls on market {} overran {:.1f}s; waiting for them",
                    len(running),
                    market_id,
                    deadline,
                )
                finished, _ = wait(running)
                done |= finished

        for future in done:
            user_id = futures[future]
            try:
                future.result()
            except Exception as exc:
                failure = LedgerApplicationFailed(user_id, str(exc), market_id=market_id)
                self._record_failure(summary, failure)
                continue
            summary.applied_users += 1
            summary.postings_applied += len(postings[user_id])
        return summary

    def _record_failure(self, summary: LedgerFanOutSummary, failure: LedgerApplicationFailed) -> None:
        logger.warning(
            "Ledger postings for {} on market {} failed: {}",
            failure.user_id,
            failure.market_id,
            failure.reason,
        )
        summary.failed_users += 1
        summary.failures.append(failure.to_dict())

    def _compensate_ledger(self, resolution_id: str, reason: str) -> LedgerFanOutSummary:
        with session_scope(self._session_factory) as session:
            transactions = [
                (transaction.transaction_id, transaction.user_id, transaction.type)
                for transaction in LedgerRepository(session).list_transactions_for_related(
                    resolution_id
                )
                if not (transaction.idempotency_key or "").startswith("rollback:")
            ]

        summary = LedgerFanOutSummary()
        reversed_users: set[str] = set()
        for transaction_id, user_id, transaction_type in transactions:
            try:
                self._ledger.rollback_transaction(
                    transaction_id,
                    reason,
                    restore_commitment=transaction_type == TransactionType.LOSS.value,
                )
            except SettlementError as exc:
                self._record_failure(summary, LedgerApplicationFailed(user_id, str(exc)))
                continue
            summary.postings_applied += 1
            reversed_users.add(user_id)
        summary.applied_users = len(reversed_users)
        return summary

    def _log(
        self,
        market_id: str,
        admin_id: str,
        action: ResolutionAction,
        *,
        resolution_id: str | None = None,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        try:
            with session_scope(self._session_factory) as session:
                ResolutionRepository(session).add_log(
                    market_id=market_id,
                    admin_id=admin_id,
                    action=action.value,
                    resolution_id=resolution_id,
                    details=details,
                    error=error,
                )
        except SQLAlchemyError:
            # The audit trail must not take a resolution down with it.
            logger.exception(
                "Failed to write resolution log {} for market {}", action.value, market_id
            )


__all__ = [
    "EVIDENCE_TYPES",
    "ResolutionService",
    "derive_resolution_status",
    "validate_evidence",
]

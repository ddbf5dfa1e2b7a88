from __future__ import annotations

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.db import session_scope
from app.errors import (
    ConcurrentModification,
    EvidenceValidationError,
    InvalidInput,
    InvalidState,
    MarketNotFound,
    ResolutionFailed,
    RollbackFailed,
)
from app.models import utcnow
from app.repositories import MarketRepository
from app.services import payouts
from app.services.balance_ledger import BalanceLedger
from app.services.reconciliation_service import ReconciliationService
from app.services.resolution_service import (
    ResolutionService,
    derive_resolution_status,
    validate_evidence,
)

EVIDENCE = [
    {"type": "url", "content": "https://example.com/official-result"},
    {"type": "description", "content": "Official announcement confirmed the outcome"},
]


class FlakyLedger(BalanceLedger):
    def __init__(self, *args, fail_users=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_users = set(fail_users)

    def update_multiple_balances_atomic(self, requests):
        if requests and requests[0].user_id in self.fail_users:
            raise ConcurrentModification(f"simulated conflict for {requests[0].user_id}")
        return super().update_multiple_balances_atomic(requests)


class SlowLedger(BalanceLedger):
    def __init__(self, *args, delay=0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay

    def update_multiple_balances_atomic(self, requests):
        time.sleep(self.delay)
        return super().update_multiple_balances_atomic(requests)


@pytest.fixture
def service(session_factory, ledger, test_settings) -> ResolutionService:
    return ResolutionService(session_factory, ledger, test_settings)


@pytest.fixture
def reconciler(session_factory, ledger, test_settings) -> ReconciliationService:
    return ReconciliationService(session_factory, ledger, test_settings)


@pytest.fixture
def staked_market(make_market, fund, commitments):
    """alice 300 and bob 200 on yes, carol 500 on no."""

    make_market()
    for user_id in ("alice", "bob", "carol"):
        fund(user_id, 1000)
    commitments.commit_tokens(user_id="alice", market_id="m1", tokens=300, option_id="opt-yes")
    commitments.commit_tokens(user_id="bob", market_id="m1", tokens=200, option_id="opt-yes")
    commitments.commit_tokens(user_id="carol", market_id="m1", tokens=500, option_id="opt-no")
    return "m1"


def _commitment_statuses(session_factory, market_id="m1"):
    with session_scope(session_factory) as session:
        return {
            commitment.user_id: commitment.status
            for commitment in MarketRepository(session).list_commitments(market_id)
        }


def _market_status(session_factory, market_id="m1"):
    with session_scope(session_factory) as session:
        return MarketRepository(session).get_market(market_id).status


def _actions(service, market_id="m1"):
    return [entry.action for entry in service.get_resolution_logs(market_id=market_id)]


def _payout_threads():
    return [thread for thread in threading.enumerate() if thread.name.startswith("payout")]


def test_validate_evidence_accepts_urls_and_descriptions():
    items = validate_evidence(EVIDENCE)

    assert [item.type for item in items] == ["url", "description"]


@pytest.mark.parametrize(
    "evidence",
    [
        None,
        [],
        [{"type": "url", "content": "not a url at all"}],
        [{"type": "description", "content": "short"}],
        [{"type": "screenshot", "content": "https://example.com/shot.png"}],
        [{"type": "video", "content": "https://example.com/clip.mp4"}],
    ],
)
def test_validate_evidence_rejects_unusable_evidence(evidence):
    with pytest.raises(EvidenceValidationError) as excinfo:
        validate_evidence(evidence)

    assert excinfo.value.errors


def test_validate_evidence_honours_min_length():
    validate_evidence([{"type": "description", "content": "abc"}], min_length=3)

    with pytest.raises(EvidenceValidationError):
        validate_evidence([{"type": "description", "content": "abc"}], min_length=4)


def test_resolve_market_pays_winners_and_fees(service, staked_market, ledger, session_factory):
    outcome = service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert outcome.success
    assert outcome.ledger_failures == []

    record = service.get_market_resolution(staked_market)
    assert record.resolution_id == outcome.resolution_id
    assert record.total_pool == 1000
    assert record.house_fee == 50
    assert record.creator_fee == 20
    assert record.winner_pool == 930
    assert record.total_payout == 930
    assert record.winner_count == 2
    assert record.creator_id == "creator"
    assert sorted((p.user_id, p.payout_amount) for p in record.payouts) == [
        ("alice", 558),
        ("bob", 372),
    ]
    assert record.creator_payout.fee_amount == 20
    assert record.house_payout.fee_amount == 50
    assert record.evidence[0]["type"] == "url"

    assert _market_status(session_factory) == "resolved"
    assert _commitment_statuses(session_factory) == {"alice": "won", "bob": "won", "carol": "lost"}

    alice = ledger.get_balance("alice")
    assert alice.available_tokens == 1258
    assert alice.committed_tokens == 0
    assert alice.total_spent == 300
    assert ledger.get_balance("bob").available_tokens == 1172
    carol = ledger.get_balance("carol")
    assert carol.available_tokens == 500
    assert carol.committed_tokens == 0
    assert carol.total_spent == 500
    assert ledger.get_balance("creator").available_tokens == 20


def test_resolution_leaves_balances_consistent(service, staked_market, reconciler):
    service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    report = reconciler.reconcile_multiple_users(["alice", "bob", "carol", "creator"], fix=False)

    assert report.users_with_inconsistencies == 0
    assert report.errors == []


def test_resolution_logs_each_step(service, staked_market):
    service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert _actions(service) == [
        "resolution_started",
        "evidence_validated",
        "payouts_calculated",
        "tokens_distributed",
        "resolution_completed",
    ]
    assert service.get_resolution_status(staked_market) == "completed"


def test_second_resolution_is_rejected_before_calculation(session_factory, ledger, test_settings, staked_market):
    calculator = MagicMock(wraps=payouts.calculate_payouts)
    service = ResolutionService(session_factory, ledger, test_settings, calculator=calculator)
    service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    with pytest.raises(InvalidState):
        service.resolve_market(staked_market, "opt-no", EVIDENCE, "admin-2")

    assert calculator.call_count == 1
    assert _actions(service)[-1] == "resolution_failed"
    assert service.get_market_resolution(staked_market).winning_option_id == "opt-yes"


def test_invalid_evidence_leaves_market_active(service, staked_market, session_factory):
    with pytest.raises(EvidenceValidationError):
        service.resolve_market(
            staked_market, "opt-yes", [{"type": "description", "content": "short"}], "admin-1"
        )

    assert _market_status(session_factory) == "active"
    assert service.get_market_resolution(staked_market) is None
    assert _actions(service) == ["resolution_started", "resolution_failed"]
    assert service.get_resolution_status(staked_market) == "failed"


def test_unknown_option_is_rejected(service, staked_market):
    with pytest.raises(InvalidInput):
        service.resolve_market(staked_market, "opt-maybe", EVIDENCE, "admin-1")


def test_unknown_market_is_rejected(service):
    with pytest.raises(MarketNotFound):
        service.resolve_market("nope", "opt-yes", EVIDENCE, "admin-1")


def test_out_of_range_fee_fails_the_resolution(service, staked_market, session_factory):
    with pytest.raises(InvalidInput):
        service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1", creator_fee_percentage=0.2)

    assert _market_status(session_factory) == "active"


def test_binary_markets_accept_yes_and_no_aliases(service, staked_market):
    service.resolve_market(staked_market, "NO", EVIDENCE, "admin-1")

    record = service.get_market_resolution(staked_market)
    assert record.winning_option_id == "opt-no"
    assert [(p.user_id, p.payout_amount) for p in record.payouts] == [("carol", 930)]


def test_resolution_with_no_winning_stakes(service, make_market, fund, commitments, ledger):
    make_market()
    fund("carol", 1000)
    commitments.commit_tokens(user_id="carol", market_id="m1", tokens=500, option_id="opt-no")

    service.resolve_market("m1", "opt-yes", EVIDENCE, "admin-1")

    record = service.get_market_resolution("m1")
    assert record.winner_count == 0
    assert record.payouts == []
    assert record.total_payout == 0
    assert ledger.get_balance("carol").available_tokens == 500
    assert ledger.get_balance("creator").available_tokens == 10


def test_commitments_changing_mid_resolution_abort_it(
    session_factory, ledger, test_settings, staked_market, commitments, fund
):
    fund("dave", 100)

    def calculator(pool, winners, fee):
        commitments.commit_tokens(user_id="dave", market_id="m1", tokens=50, option_id="opt-yes")
        return payouts.calculate_payouts(pool, winners, fee)

    service = ResolutionService(session_factory, ledger, test_settings, calculator=calculator)

    with pytest.raises(InvalidState):
        service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert _market_status(session_factory) == "active"
    assert service.get_market_resolution(staked_market) is None


def test_ledger_failures_are_reported_and_retryable(
    session_factory, ledger, test_settings, staked_market
):
    flaky = FlakyLedger(session_factory, test_settings, fail_users={"bob"})
    service = ResolutionService(session_factory, flaky, test_settings)

    outcome = service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert outcome.success
    assert [failure["details"]["user_id"] for failure in outcome.ledger_failures] == ["bob"]
    assert ledger.get_balance("bob").available_tokens == 800
    assert ledger.get_balance("alice").available_tokens == 1258
    distributed = service.get_resolution_logs(market_id=staked_market, action="tokens_distributed")
    assert distributed[0].details["failed_users"] == 1

    summary = ResolutionService(session_factory, ledger, test_settings).retry_ledger_application(
        outcome.resolution_id
    )

    assert summary.failed_users == 0
    assert summary.applied_users == 4
    assert ledger.get_balance("bob").available_tokens == 1172
    assert ledger.get_balance("bob").committed_tokens == 0
    assert ledger.get_balance("alice").available_tokens == 1258
    assert ledger.get_balance("creator").available_tokens == 20


def test_retry_for_unknown_resolution(service):
    with pytest.raises(InvalidInput):
        service.retry_ledger_application("missing")


def test_rollback_restores_market_and_balances(service, staked_market, ledger, reconciler, session_factory):
    outcome = service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    summary = service.rollback_resolution(
        staked_market, outcome.resolution_id, "admin-1", reason="wrong outcome"
    )

    assert summary.failed_users == 0
    assert _market_status(session_factory) == "pending_resolution"
    assert _commitment_statuses(session_factory) == {"alice": "active", "bob": "active", "carol": "active"}
    assert service.get_market_resolution(staked_market) is None
    assert service.get_resolution_status(staked_market) == "rolled_back"

    alice = ledger.get_balance("alice")
    assert alice.available_tokens == 700
    assert alice.committed_tokens == 300
    assert ledger.get_balance("carol").committed_tokens == 500
    assert ledger.get_balance("creator").available_tokens == 0

    report = reconciler.reconcile_multiple_users(["alice", "bob", "carol", "creator"], fix=False)
    assert report.users_with_inconsistencies == 0

    service.resolve_market(staked_market, "opt-no", EVIDENCE, "admin-2")
    assert ledger.get_balance("carol").available_tokens == 1430


def test_rollback_of_unknown_resolution_fails(service, staked_market):
    with pytest.raises(RollbackFailed):
        service.rollback_resolution(staked_market, "missing", "admin-1")


@pytest.mark.parametrize("prior_status", ["active", "pending_resolution"])
def test_failure_after_persisting_restores_the_prior_status(
    service, staked_market, ledger, session_factory, monkeypatch, prior_status
):
    with session_scope(session_factory) as session:
        MarketRepository(session).transition_status(
            staked_market, from_statuses=["active"], to_status=prior_status
        )
    monkeypatch.setattr(
        service, "_plan_postings", MagicMock(side_effect=InvalidState("resolution record vanished"))
    )

    with pytest.raises(InvalidState, match="vanished"):
        service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert _market_status(session_factory) == prior_status
    assert _commitment_statuses(session_factory) == {"alice": "active", "bob": "active", "carol": "active"}
    assert service.get_market_resolution(staked_market) is None
    assert ledger.get_balance("alice").committed_tokens == 300
    assert _actions(service)[-3:] == ["resolution_failed", "rollback_initiated", "rollback_completed"]


def test_failed_rollback_keeps_the_original_error(service, staked_market, monkeypatch):
    monkeypatch.setattr(
        service, "_plan_postings", MagicMock(side_effect=InvalidState("resolution record vanished"))
    )
    monkeypatch.setattr(
        service, "_compensate_ledger", MagicMock(side_effect=RuntimeError("ledger offline"))
    )

    with pytest.raises(InvalidState, match="vanished") as excinfo:
        service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert isinstance(excinfo.value.__cause__, RollbackFailed)
    assert "ledger offline" in str(excinfo.value.__cause__)


def test_unexpected_failure_with_failed_rollback_is_wrapped(service, staked_market, monkeypatch):
    monkeypatch.setattr(service, "_plan_postings", MagicMock(side_effect=RuntimeError("disk full")))
    monkeypatch.setattr(
        service, "_compensate_ledger", MagicMock(side_effect=RuntimeError("ledger offline"))
    )

    with pytest.raises(ResolutionFailed, match="disk full") as excinfo:
        service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert isinstance(excinfo.value.__cause__, RollbackFailed)


def test_overrunning_ledger_calls_are_awaited(session_factory, test_settings, staked_market):
    settings = test_settings.model_copy(update={"ledger_call_timeout_seconds": 0.1})
    slow = SlowLedger(session_factory, settings, delay=0.4)
    service = ResolutionService(session_factory, slow, settings)

    outcome = service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    assert outcome.ledger_failures == []
    assert _payout_threads() == []
    assert slow.get_balance("alice").available_tokens == 1258
    assert slow.get_balance("creator").available_tokens == 20
    distributed = service.get_resolution_logs(market_id=staked_market, action="tokens_distributed")
    assert distributed[0].details["applied_users"] == 4
    assert distributed[0].details["failed_users"] == 0


def test_queued_users_past_the_deadline_are_not_started(session_factory, test_settings, staked_market):
    settings = test_settings.model_copy(
        update={"ledger_call_timeout_seconds": 0.2, "payout_worker_count": 1}
    )
    slow = SlowLedger(session_factory, settings, delay=0.5)
    service = ResolutionService(session_factory, slow, settings)

    outcome = service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    failed = sorted(failure["details"]["user_id"] for failure in outcome.ledger_failures)
    assert failed == ["carol", "creator"]
    assert _payout_threads() == []
    assert slow.get_balance("alice").available_tokens == 1258
    assert slow.get_balance("bob").available_tokens == 1172
    assert slow.get_balance("carol").committed_tokens == 500
    assert slow.get_balance("creator") is None

    slow.delay = 0.0
    summary = service.retry_ledger_application(outcome.resolution_id)

    assert summary.failed_users == 0
    assert slow.get_balance("carol").committed_tokens == 0
    assert slow.get_balance("creator").available_tokens == 20


def test_cancel_market_refunds_active_stakes(service, staked_market, ledger, reconciler, session_factory):
    summary = service.cancel_market(staked_market, "Event postponed", "admin-1")

    assert summary.applied_users == 3
    assert summary.failed_users == 0
    assert _market_status(session_factory) == "cancelled"
    assert set(_commitment_statuses(session_factory).values()) == {"refunded"}
    for user_id in ("alice", "bob", "carol"):
        balance = ledger.get_balance(user_id)
        assert balance.available_tokens == 1000
        assert balance.committed_tokens == 0

    report = reconciler.reconcile_multiple_users(["alice", "bob", "carol"], fix=False)
    assert report.users_with_inconsistencies == 0


def test_cancelled_or_resolved_markets_cannot_be_cancelled(service, staked_market):
    service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    with pytest.raises(InvalidState):
        service.cancel_market(staked_market, "Too late", "admin-1")


def test_cancel_requires_reason_and_known_market(service, make_market):
    make_market()

    with pytest.raises(InvalidInput):
        service.cancel_market("m1", "  ", "admin-1")
    with pytest.raises(MarketNotFound):
        service.cancel_market("nope", "reason", "admin-1")


def test_mark_pending_resolution_markets(service, make_market, session_factory):
    now = utcnow()
    make_market("past", ends_at=now - timedelta(hours=1))
    make_market("future", ends_at=now + timedelta(hours=1))
    make_market("open-ended")

    moved = service.mark_pending_resolution_markets(now=now)

    assert moved == ["past"]
    assert _market_status(session_factory, "past") == "pending_resolution"
    assert _market_status(session_factory, "future") == "active"
    assert service.mark_pending_resolution_markets(now=now) == []


def test_pending_markets_can_be_resolved(service, make_market, fund, commitments):
    make_market(ends_at=utcnow() + timedelta(minutes=5))
    fund("alice", 100)
    commitments.commit_tokens(user_id="alice", market_id="m1", tokens=100, option_id="opt-yes")
    assert service.mark_pending_resolution_markets(now=utcnow() + timedelta(days=1)) == ["m1"]

    outcome = service.resolve_market("m1", "opt-yes", EVIDENCE, "admin-1")

    assert outcome.success


def test_payout_preview_does_not_resolve(service, staked_market, session_factory):
    preview = service.calculate_payout_preview(staked_market, "yes", 0.03)

    assert preview.winning_option_id == "opt-yes"
    assert preview.total_pool == 1000
    assert preview.participant_count == 3
    assert preview.preview.calculation.creator_fee == 30
    assert preview.preview.largest_payout == 552
    assert _market_status(session_factory) == "active"


def test_user_resolution_payouts(service, staked_market):
    service.resolve_market(staked_market, "opt-yes", EVIDENCE, "admin-1")

    alice = service.get_user_resolution_payouts("alice")
    creator = service.get_user_resolution_payouts("creator")

    assert [payout.payout_amount for payout in alice.winner_payouts] == [558]
    assert alice.creator_payouts == []
    assert [payout.fee_amount for payout in creator.creator_payouts] == [20]


def test_derive_resolution_status():
    assert derive_resolution_status(None) == "not_started"
    assert derive_resolution_status(MagicMock(action="payouts_calculated")) == "in_progress"
    assert derive_resolution_status(MagicMock(action="rollback_completed")) == "rolled_back"

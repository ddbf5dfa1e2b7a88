from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from app.domain import BalanceFigures, BalanceUpdateRequest
from app.errors import ConcurrentModification, InsufficientFunds, InvalidInput
from app.models import TransactionType, UserBalance
from app.services.balance_ledger import apply_mutation, compensation_for


def _request(user_id: str, amount: float, kind: str, **kwargs) -> BalanceUpdateRequest:
    return BalanceUpdateRequest(user_id=user_id, amount=amount, type=kind, **kwargs)


def test_credit_postings_raise_available_and_earned():
    current = BalanceFigures(available_tokens=10, committed_tokens=5, total_earned=20, total_spent=5)

    for kind in ("purchase", "win", "refund"):
        updated = apply_mutation(current, kind, 15)
        assert updated.available_tokens == 25
        assert updated.total_earned == 35
        assert updated.committed_tokens == 5
        assert updated.total_spent == 5


def test_commit_moves_available_into_committed():
    current = BalanceFigures(available_tokens=100, total_earned=100)

    updated = apply_mutation(current, "commit", 40)

    assert updated.available_tokens == 60
    assert updated.committed_tokens == 40
    assert updated.total_earned == 100


def test_commit_beyond_available_is_rejected():
    with pytest.raises(InsufficientFunds):
        apply_mutation(BalanceFigures(available_tokens=10), "commit", 11)


def test_loss_consumes_committed_tokens():
    current = BalanceFigures(available_tokens=60, committed_tokens=40, total_earned=100)

    updated = apply_mutation(current, "loss", 40)

    assert updated.available_tokens == 60
    assert updated.committed_tokens == 0
    assert updated.total_spent == 40


def test_loss_from_available_and_clamped_at_zero():
    current = BalanceFigures(available_tokens=5, total_earned=5)

    updated = apply_mutation(current, "loss", 8, debit_available=True)

    assert updated.available_tokens == 0
    assert updated.total_spent == 8


def test_negative_amounts_use_their_magnitude():
    updated = apply_mutation(BalanceFigures(), "purchase", -12.5)

    assert updated.available_tokens == 12.5


def test_first_update_creates_balance_at_version_one(ledger):
    balance = ledger.update_balance_atomic(_request("alice", 100, "purchase"))

    assert balance.version == 1
    assert balance.available_tokens == 100
    assert balance.total_earned == 100

    balance = ledger.update_balance_atomic(_request("alice", 30, "commit"))

    assert balance.version == 2
    assert balance.available_tokens == 70
    assert balance.committed_tokens == 30


def test_each_update_records_a_transaction(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase", related_id="order-1"))
    ledger.update_balance_atomic(_request("alice", 25, "commit", metadata={"market_id": "m1"}))

    transactions = ledger.get_transactions("alice")

    assert [tx.type for tx in transactions] == ["purchase", "commit"]
    assert transactions[0].balance_before == 0
    assert transactions[0].balance_after == 100
    assert transactions[0].related_id == "order-1"
    assert transactions[1].balance_before == 100
    assert transactions[1].balance_after == 75
    assert transactions[1].details == {"market_id": "m1"}
    assert transactions[1].status == "completed"


@pytest.mark.parametrize(
    "request_",
    [
        BalanceUpdateRequest(user_id="alice", amount=0, type="purchase"),
        BalanceUpdateRequest(user_id="alice", amount=10, type="bonus"),
        BalanceUpdateRequest(user_id="", amount=10, type="purchase"),
        BalanceUpdateRequest(user_id="alice", amount=float("inf"), type="purchase"),
    ],
)
def test_invalid_requests_are_rejected(ledger, request_):
    with pytest.raises(InvalidInput):
        ledger.update_balance_atomic(request_)

    assert ledger.get_balance("alice") is None


def test_insufficient_commit_leaves_balance_untouched(ledger):
    ledger.update_balance_atomic(_request("alice", 50, "purchase"))

    with pytest.raises(InsufficientFunds):
        ledger.update_balance_atomic(_request("alice", 80, "commit"))

    balance = ledger.get_balance("alice")
    assert balance.available_tokens == 50
    assert balance.version == 1
    assert len(ledger.get_transactions("alice")) == 1


def test_idempotency_key_applies_a_posting_once(ledger):
    request = _request("alice", 40, "win", idempotency_key="r1:win:c1")

    ledger.update_balance_atomic(request)
    balance = ledger.update_balance_atomic(request)

    assert balance.available_tokens == 40
    assert balance.version == 1
    assert len(ledger.get_transactions("alice")) == 1


def test_racing_updates_on_the_same_version_let_one_win(ledger, session_factory):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))

    first = session_factory()
    second = session_factory()
    try:
        assert first.get(UserBalance, "alice").version == 1
        assert second.get(UserBalance, "alice").version == 1

        ledger.apply_update(first, _request("alice", 10, "purchase"))
        first.commit()

        with pytest.raises(ConcurrentModification):
            ledger.apply_update(second, _request("alice", 20, "purchase"))
        second.rollback()
    finally:
        first.close()
        second.close()

    balance = ledger.get_balance("alice")
    assert balance.available_tokens == 110
    assert balance.version == 2
    assert len(ledger.get_transactions("alice")) == 2


def test_run_with_retries_retries_conflicts(ledger):
    operation = MagicMock(
        side_effect=[ConcurrentModification("conflict"), ConcurrentModification("conflict"), "done"]
    )

    assert ledger.run_with_retries(operation, label="test") == "done"
    assert operation.call_count == 3


def test_run_with_retries_gives_up_after_max_attempts(ledger):
    operation = MagicMock(side_effect=ConcurrentModification("conflict"))

    with pytest.raises(ConcurrentModification):
        ledger.run_with_retries(operation, label="test")

    assert operation.call_count == 3


def test_run_with_retries_does_not_retry_other_errors(ledger):
    operation = MagicMock(side_effect=InsufficientFunds("nope"))

    with pytest.raises(InsufficientFunds):
        ledger.run_with_retries(operation, label="test")

    assert operation.call_count == 1


def test_multiple_updates_are_all_or_nothing(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))

    with pytest.raises(InsufficientFunds):
        ledger.update_multiple_balances_atomic(
            [
                _request("alice", 40, "commit"),
                _request("bob", 10, "win"),
                _request("alice", 80, "commit"),
            ]
        )

    assert ledger.get_balance("alice").available_tokens == 100
    assert ledger.get_balance("bob") is None


def test_multiple_updates_apply_in_order(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))

    balances = ledger.update_multiple_balances_atomic(
        [_request("alice", 40, "commit"), _request("alice", 40, "loss")]
    )

    assert len(balances) == 2
    balance = ledger.get_balance("alice")
    assert balance.available_tokens == 60
    assert balance.committed_tokens == 0
    assert balance.total_spent == 40


def test_rollback_of_a_credit_debits_available(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))
    purchase = ledger.get_transactions("alice")[0]

    balance = ledger.rollback_transaction(purchase.transaction_id, "duplicate order")

    assert balance.available_tokens == 0
    assert balance.total_earned == 100
    assert balance.total_spent == 100
    compensation = ledger.get_transactions("alice")[-1]
    assert compensation.type == "loss"
    assert compensation.idempotency_key == f"rollback:{purchase.transaction_id}"
    assert compensation.details["reason"] == "duplicate order"


def test_rollback_is_idempotent(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))
    purchase = ledger.get_transactions("alice")[0]

    ledger.rollback_transaction(purchase.transaction_id, "first")
    balance = ledger.rollback_transaction(purchase.transaction_id, "second")

    assert balance.available_tokens == 0
    assert len(ledger.get_transactions("alice")) == 2


def test_rollback_of_a_commit_releases_the_stake(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))
    ledger.update_balance_atomic(_request("alice", 30, "commit"))
    commit = ledger.get_transactions("alice")[-1]

    balance = ledger.rollback_transaction(commit.transaction_id, "market voided")

    assert balance.available_tokens == 100
    assert balance.committed_tokens == 0


def test_rollback_of_a_loss_can_restore_the_commitment(ledger):
    ledger.update_balance_atomic(_request("alice", 100, "purchase"))
    ledger.update_balance_atomic(_request("alice", 30, "commit"))
    ledger.update_balance_atomic(_request("alice", 30, "loss"))
    loss = ledger.get_transactions("alice")[-1]

    balance = ledger.rollback_transaction(loss.transaction_id, "undo", restore_commitment=True)

    assert balance.available_tokens == 70
    assert balance.committed_tokens == 30


def test_rollback_of_unknown_transaction(ledger):
    with pytest.raises(InvalidInput):
        ledger.rollback_transaction(999, "missing")


def test_compensation_for_loss_without_restore():
    loss = MagicMock(transaction_id=7, user_id="alice", amount=30.0, type="loss", related_id="r1")

    postings = compensation_for(loss, "undo")

    assert [(p.type, p.idempotency_key) for p in postings] == [("refund", "rollback:7")]


def test_validate_sufficient_balance(ledger):
    assert not ledger.validate_sufficient_balance("alice", 1)

    ledger.update_balance_atomic(_request("alice", 50, "purchase"))

    assert ledger.validate_sufficient_balance("alice", 50)
    assert not ledger.validate_sufficient_balance("alice", 50.01)


def test_balance_summary(ledger):
    ledger.update_balance_atomic(_request("alice", 50, "purchase"))
    ledger.update_balance_atomic(_request("bob", 20, TransactionType.WIN.value))

    summary = ledger.get_balance_summary(["alice", "bob", "carol"])

    assert set(summary) == {"alice", "bob"}
    assert summary["bob"].available_tokens == 20

from __future__ import annotations

import sys
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import _build_db_components, init_db, session_scope
from app.domain import BalanceUpdateRequest
from app.models import Market, TransactionType
from app.repositories import MarketRepository
from app.services.balance_ledger import BalanceLedger
from app.services.commitment_service import CommitmentService


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'settlement.db'}",
        ledger_max_retries=3,
        ledger_retry_backoff_seconds=[0.0],
        payout_worker_count=4,
        reconciliation_batch_size=2,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine, factory = _build_db_components(test_settings.resolved_database_url)
    init_db(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def ledger(session_factory, test_settings) -> BalanceLedger:
    return BalanceLedger(session_factory, test_settings)


@pytest.fixture
def commitments(session_factory, ledger, test_settings) -> CommitmentService:
    return CommitmentService(session_factory, ledger, test_settings)


@pytest.fixture
def make_market(session_factory) -> Callable[..., Market]:
    def _make(
        market_id: str = "m1",
        *,
        options: Sequence[tuple[str, str]] = (("opt-yes", "Yes"), ("opt-no", "No")),
        created_by: str = "creator",
        ends_at: datetime | None = None,
        status: str = "active",
    ) -> Market:
        with session_scope(session_factory) as session:
            return MarketRepository(session).add_market(
                market_id=market_id,
                title=f"Market {market_id}",
                created_by=created_by,
                options=options,
                ends_at=ends_at,
                status=status,
            )

    return _make


@pytest.fixture
def fund(ledger) -> Callable[[str, float], None]:
    def _fund(user_id: str, amount: float) -> None:
        ledger.update_balance_atomic(
            BalanceUpdateRequest(
                user_id=user_id,
                amount=amount,
                type=TransactionType.PURCHASE.value,
                metadata={"source": "test"},
            )
        )

    return _fund

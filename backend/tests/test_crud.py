from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock, patch

from app import crud


@patch("app.crud.MarketRepository")
def test_create_market(mock_market_repo):
    """Verify that create_market calls the repository method correctly."""
    mock_session = MagicMock()
    ends_at = datetime.now()

    crud.create_market(
        mock_session,
        market_id="m1",
        title="Will it rain?",
        created_by="creator",
        options=[("opt-yes", "Yes"), ("opt-no", "No")],
        ends_at=ends_at,
    )

    mock_market_repo.assert_called_once_with(mock_session)
    mock_market_repo.return_value.add_market.assert_called_once_with(
        market_id="m1",
        title="Will it rain?",
        created_by="creator",
        options=[("opt-yes", "Yes"), ("opt-no", "No")],
        ends_at=ends_at,
        description=None,
        category=None,
    )


@patch("app.crud.MarketRepository")
def test_get_market(mock_market_repo):
    """Verify that get_market calls the repository method correctly."""
    mock_session = MagicMock()

    crud.get_market(mock_session, "m1")

    mock_market_repo.return_value.get_market.assert_called_once_with("m1")


@patch("app.crud.LedgerRepository")
def test_get_balance(mock_ledger_repo):
    """Verify that get_balance calls the repository method correctly."""
    mock_session = MagicMock()

    crud.get_balance(mock_session, "alice")

    mock_ledger_repo.assert_called_once_with(mock_session)
    mock_ledger_repo.return_value.get_balance.assert_called_once_with("alice")


@patch("app.crud.ResolutionRepository")
def test_resolution_reads(mock_resolution_repo):
    """Verify that resolution helpers call the repository methods correctly."""
    mock_session = MagicMock()

    crud.get_latest_resolution(mock_session, "m1")
    crud.list_resolution_logs(mock_session, "m1")

    mock_resolution_repo.return_value.get_latest_for_market.assert_called_once_with("m1")
    mock_resolution_repo.return_value.list_logs.assert_called_once_with(market_id="m1")


def test_create_market_round_trip(session_factory):
    """Verify a market created through crud can be read back with its options."""
    with session_factory() as session:
        crud.create_market(
            session,
            market_id="m1",
            title="Will it rain?",
            created_by="creator",
            options=[("opt-yes", "Yes"), ("opt-no", "No")],
        )
        session.commit()

    with session_factory() as session:
        market = crud.get_market(session, "m1")
        assert market.status == "active"
        assert [option.option_id for option in market.options] == ["opt-yes", "opt-no"]
        assert crud.get_balance(session, "creator") is None

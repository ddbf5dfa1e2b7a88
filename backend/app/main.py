from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session

from . import crud, schemas
from .core.config import settings
from .db import get_db, init_db
from .errors import (
    ConcurrentModification,
    InsufficientFunds,
    InvalidInput,
    InvalidState,
    MarketNotFound,
    NothingToFix,
    SettlementError,
)
from .services import payouts
from .services.balance_ledger import BalanceLedger
from .services.commitment_service import CommitmentService
from .services.reconciliation_service import ReconciliationService
from .services.resolution_service import ResolutionService

app = FastAPI(title="Settlement API", version="0.1.0", debug=settings.debug)

_STATUS_BY_ERROR: tuple[tuple[type[SettlementError], int], ...] = (
    (MarketNotFound, 404),
    (InvalidInput, 422),
    (InvalidState, 409),
    (NothingToFix, 409),
    (ConcurrentModification, 409),
    (InsufficientFunds, 402),
)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)), 500
    )
    if status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _resolution_service() -> ResolutionService:
    return ResolutionService()


def _ledger() -> BalanceLedger:
    return BalanceLedger()


def _reconciliation_service() -> ReconciliationService:
    return ReconciliationService()


def _commitment_service() -> CommitmentService:
    return CommitmentService()


@app.get("/markets/{market_id}", response_model=schemas.Market, tags=["markets"])
def get_market(market_id: str, db: Session = Depends(get_db)):
    """Return a market with its options."""

    market = crud.get_market(db, market_id)
    if market is None:
        raise MarketNotFound(f"Market {market_id} not found", market_id=market_id)
    return schemas.Market.model_validate(market)


# ----------------------------------------------------------------------
# Resolution


@app.post(
    "/markets/{market_id}/resolve",
    response_model=schemas.ResolutionOutcome,
    tags=["resolution"],
)
def resolve_market(
    market_id: str,
    payload: schemas.ResolveMarketRequest,
    service: ResolutionService = Depends(_resolution_service),
):
    """Resolve a market, settle payouts and return any per-user ledger failures."""

    outcome = service.resolve_market(
        market_id,
        payload.winning_option_id,
        [item.model_dump() for item in payload.evidence],
        payload.admin_id,
        creator_fee_percentage=payload.fee_fraction(),
    )
    return schemas.ResolutionOutcome.model_validate(outcome)


@app.get(
    "/markets/{market_id}/payout-preview",
    response_model=schemas.MarketPayoutPreview,
    tags=["resolution"],
)
def payout_preview(
    market_id: str,
    winning_option_id: Annotated[str, Query(min_length=1)],
    creator_fee_percentage: Annotated[float | None, Query(description="Creator fee fraction")] = None,
    service: ResolutionService = Depends(_resolution_service),
):
    preview = service.calculate_payout_preview(
        market_id, winning_option_id, creator_fee_percentage
    )
    return schemas.MarketPayoutPreview.model_validate(preview)


@app.post(
    "/markets/{market_id}/cancel",
    response_model=schemas.LedgerFanOutSummary,
    tags=["resolution"],
)
def cancel_market(
    market_id: str,
    payload: schemas.CancelMarketRequest,
    service: ResolutionService = Depends(_resolution_service),
):
    """Cancel an unresolved market and refund its active stakes."""

    summary = service.cancel_market(market_id, payload.reason, payload.admin_id)
    return schemas.LedgerFanOutSummary.model_validate(summary)


@app.post(
    "/markets/{market_id}/resolution/{resolution_id}/rollback",
    response_model=schemas.LedgerFanOutSummary,
    tags=["resolution"],
)
def rollback_resolution(
    market_id: str,
    resolution_id: str,
    payload: schemas.RollbackRequest,
    service: ResolutionService = Depends(_resolution_service),
):
    summary = service.rollback_resolution(
        market_id, resolution_id, payload.admin_id, reason=payload.reason
    )
    return schemas.LedgerFanOutSummary.model_validate(summary)


@app.post(
    "/resolutions/{resolution_id}/retry-ledger",
    response_model=schemas.LedgerFanOutSummary,
    tags=["resolution"],
)
def retry_ledger(
    resolution_id: str,
    admin_id: Annotated[str, Query(min_length=1)] = "system",
    service: ResolutionService = Depends(_resolution_service),
):
    """Re-apply payout postings that failed during a resolution."""

    summary = service.retry_ledger_application(resolution_id, admin_id)
    return schemas.LedgerFanOutSummary.model_validate(summary)


@app.get(
    "/markets/{market_id}/resolution",
    response_model=schemas.MarketResolutionStatus,
    tags=["resolution"],
)
def get_market_resolution(
    market_id: str, service: ResolutionService = Depends(_resolution_service)
):
    record = service.get_market_resolution(market_id)
    status = service.get_resolution_status(market_id)
    if record is None and status == "not_started":
        raise HTTPException(status_code=404, detail="Resolution not found")
    return schemas.MarketResolutionStatus(
        market_id=market_id,
        status=status,
        resolution=schemas.MarketResolution.model_validate(record) if record else None,
    )


@app.post(
    "/markets/pending-resolution/sweep",
    response_model=schemas.PendingResolutionSweep,
    tags=["resolution"],
)
def sweep_pending_resolution(service: ResolutionService = Depends(_resolution_service)):
    """Flag active markets whose end time has passed."""

    return schemas.PendingResolutionSweep(moved=service.mark_pending_resolution_markets())


@app.get("/resolution-logs", response_model=schemas.ResolutionLogList, tags=["resolution"])
def list_resolution_logs(
    *,
    market_id: Annotated[str | None, Query(description="Market filter")] = None,
    admin_id: Annotated[str | None, Query(description="Admin filter")] = None,
    action: Annotated[str | None, Query(description="Action filter")] = None,
    start: Annotated[datetime | None, Query(description="Entries at or after this time")] = None,
    end: Annotated[datetime | None, Query(description="Entries at or before this time")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    service: ResolutionService = Depends(_resolution_service),
):
    """Return the resolution audit trail, oldest first."""

    logs = service.get_resolution_logs(
        market_id=market_id,
        admin_id=admin_id,
        action=action,
        start=start,
        end=end,
        limit=limit,
    )
    items = [schemas.ResolutionLog.model_validate(entry) for entry in logs]
    return schemas.ResolutionLogList(total=len(items), items=items)


@app.get("/payouts/fee-breakdown", response_model=schemas.FeeSummary, tags=["payouts"])
def fee_breakdown(
    total_pool: Annotated[float, Query(ge=0)],
    creator_fee_percentage: Annotated[float, Query()] = 0.02,
):
    return schemas.FeeSummary.model_validate(
        payouts.get_fee_breakdown(total_pool, creator_fee_percentage)
    )


# ----------------------------------------------------------------------
# Commitments and balances


@app.post("/commitments", response_model=schemas.Commitment, status_code=201, tags=["commitments"])
def create_commitment(
    payload: schemas.CommitmentRequest,
    service: CommitmentService = Depends(_commitment_service),
):
    commitment = service.commit_tokens(
        user_id=payload.user_id,
        market_id=payload.market_id,
        tokens=payload.tokens,
        option_id=payload.option_id,
        position=payload.position,
    )
    return schemas.Commitment.model_validate(commitment)


@app.get(
    "/markets/{market_id}/aggregates",
    response_model=schemas.MarketAggregates,
    tags=["commitments"],
)
def market_aggregates(market_id: str, service: CommitmentService = Depends(_commitment_service)):
    return schemas.MarketAggregates.model_validate(service.get_market_aggregates(market_id))


@app.get("/users/{user_id}/balance", response_model=schemas.UserBalance, tags=["balances"])
def get_balance(user_id: str, ledger: BalanceLedger = Depends(_ledger)):
    balance = ledger.get_balance(user_id)
    if balance is None:
        raise HTTPException(status_code=404, detail="Balance not found")
    return schemas.UserBalance.model_validate(balance)


@app.post(
    "/users/{user_id}/balance/audit", response_model=schemas.BalanceAudit, tags=["balances"]
)
def audit_balance(
    user_id: str, service: ReconciliationService = Depends(_reconciliation_service)
):
    return schemas.BalanceAudit.model_validate(service.audit_user_balance(user_id))


@app.post("/users/{user_id}/balance/fix", response_model=schemas.UserBalance, tags=["balances"])
def fix_balance(
    user_id: str, service: ReconciliationService = Depends(_reconciliation_service)
):
    return schemas.UserBalance.model_validate(service.fix_user_balance(user_id))


@app.post(
    "/reconciliation/run", response_model=schemas.ReconciliationReport, tags=["balances"]
)
def run_reconciliation(
    payload: schemas.ReconciliationRequest,
    service: ReconciliationService = Depends(_reconciliation_service),
):
    if payload.user_ids:
        report = service.reconcile_multiple_users(payload.user_ids, fix=payload.fix)
    else:
        report = service.reconcile_all_users(fix=payload.fix)
    return schemas.ReconciliationReport.model_validate(report)


@app.get(
    "/reconciliation/health", response_model=schemas.BalanceHealthReport, tags=["balances"]
)
def balance_health(service: ReconciliationService = Depends(_reconciliation_service)):
    return schemas.BalanceHealthReport.model_validate(service.generate_health_report())

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class MarketStatus(str, Enum):
    ACTIVE = "active"
    PENDING_RESOLUTION = "pending_resolution"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


RESOLVABLE_MARKET_STATUSES = (
    MarketStatus.ACTIVE.value,
    MarketStatus.PENDING_RESOLUTION.value,
)


class CommitmentStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"


class Position(str, Enum):
    YES = "yes"
    NO = "no"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    COMMIT = "commit"
    WIN = "win"
    LOSS = "loss"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ResolutionAction(str, Enum):
    RESOLUTION_STARTED = "resolution_started"
    EVIDENCE_VALIDATED = "evidence_validated"
    PAYOUTS_CALCULATED = "payouts_calculated"
    TOKENS_DISTRIBUTED = "tokens_distributed"
    RESOLUTION_COMPLETED = "resolution_completed"
    RESOLUTION_FAILED = "resolution_failed"
    ROLLBACK_INITIATED = "rollback_initiated"
    ROLLBACK_COMPLETED = "rollback_completed"


class ResolutionRecordStatus(str, Enum):
    COMPLETED = "completed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _token_amount() -> Numeric:
    return Numeric(18, 4, asdecimal=False)


class Market(Base):
    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=MarketStatus.ACTIVE.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    winning_option_id: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    options: Mapped[list["MarketOption"]] = relationship(
        "MarketOption",
        back_populates="market",
        cascade="all, delete-orphan",
        order_by="MarketOption.sort_order",
    )
    commitments: Mapped[list["PredictionCommitment"]] = relationship(
        "PredictionCommitment", back_populates="market"
    )


class MarketOption(Base):
    __tablename__ = "market_options"

    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.market_id"), primary_key=True)
    option_id: Mapped[str] = mapped_column(String, primary_key=True)
    text: Mapped[str] = mapped_column(String, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    market: Mapped[Market] = relationship("Market", back_populates="options")


class PredictionCommitment(Base):
    __tablename__ = "prediction_commitments"

    commitment_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    market_id: Mapped[str] = mapped_column(
        String, ForeignKey("markets.market_id"), nullable=False, index=True
    )
    option_id: Mapped[str | None] = mapped_column(String, nullable=True)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    tokens_committed: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    odds: Mapped[float | None] = mapped_column(Numeric(10, 4, asdecimal=False), nullable=True)
    potential_winning: Mapped[float | None] = mapped_column(_token_amount(), nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=CommitmentStatus.ACTIVE.value, index=True
    )
    committed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    market: Mapped[Market] = relationship("Market", back_populates="commitments")


class UserBalance(Base):
    __tablename__ = "user_balances"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    available_tokens: Mapped[float] = mapped_column(_token_amount(), nullable=False, default=0)
    committed_tokens: Mapped[float] = mapped_column(_token_amount(), nullable=False, default=0)
    total_earned: Mapped[float] = mapped_column(_token_amount(), nullable=False, default=0)
    total_spent: Mapped[float] = mapped_column(_token_amount(), nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    # Every flush issues UPDATE ... WHERE version = :loaded and bumps it.
    __mapper_args__ = {"version_id_col": version}


class TokenTransaction(Base):
    __tablename__ = "token_transactions"

    transaction_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    balance_before: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    balance_after: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=TransactionStatus.COMPLETED.value
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    related_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)


class MarketResolution(Base):
    __tablename__ = "market_resolutions"

    resolution_id: Mapped[str] = mapped_column(String, primary_key=True)
    market_id: Mapped[str] = mapped_column(
        String, ForeignKey("markets.market_id"), nullable=False, index=True
    )
    winning_option_id: Mapped[str] = mapped_column(String, nullable=False)
    resolved_by: Mapped[str] = mapped_column(String, nullable=False)
    resolved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    evidence: Mapped[list | None] = mapped_column(JSON, nullable=True)
    total_pool: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    house_fee: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    creator_fee: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    winner_pool: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    total_payout: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    winner_count: Mapped[int] = mapped_column(Integer, nullable=False)
    creator_fee_percentage: Mapped[float] = mapped_column(Numeric(6, 5, asdecimal=False), nullable=False)
    creator_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ResolutionRecordStatus.COMPLETED.value
    )

    payouts: Mapped[list["ResolutionPayout"]] = relationship(
        "ResolutionPayout", back_populates="resolution", cascade="all, delete-orphan"
    )
    creator_payout: Mapped["CreatorPayout | None"] = relationship(
        "CreatorPayout", back_populates="resolution", cascade="all, delete-orphan", uselist=False
    )
    house_payout: Mapped["HousePayout | None"] = relationship(
        "HousePayout", back_populates="resolution", cascade="all, delete-orphan", uselist=False
    )


class ResolutionPayout(Base):
    __tablename__ = "resolution_payouts"

    payout_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resolution_id: Mapped[str] = mapped_column(
        String, ForeignKey("market_resolutions.resolution_id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    commitment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    tokens_staked: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    payout_amount: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    profit: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    win_share: Mapped[float] = mapped_column(Numeric(12, 10, asdecimal=False), nullable=False)

    resolution: Mapped[MarketResolution] = relationship("MarketResolution", back_populates="payouts")


class CreatorPayout(Base):
    __tablename__ = "creator_payouts"

    resolution_id: Mapped[str] = mapped_column(
        String, ForeignKey("market_resolutions.resolution_id"), primary_key=True
    )
    creator_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    fee_amount: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    fee_percentage: Mapped[float] = mapped_column(Numeric(6, 5, asdecimal=False), nullable=False)

    resolution: Mapped[MarketResolution] = relationship("MarketResolution", back_populates="creator_payout")


class HousePayout(Base):
    __tablename__ = "house_payouts"

    resolution_id: Mapped[str] = mapped_column(
        String, ForeignKey("market_resolutions.resolution_id"), primary_key=True
    )
    fee_amount: Mapped[float] = mapped_column(_token_amount(), nullable=False)
    fee_percentage: Mapped[float] = mapped_column(Numeric(6, 5, asdecimal=False), nullable=False)

    resolution: Mapped[MarketResolution] = relationship("MarketResolution", back_populates="house_payout")


class ResolutionLog(Base):
    __tablename__ = "resolution_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    resolution_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    admin_id: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

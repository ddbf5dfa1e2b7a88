"""Repository abstractions for database interactions."""

from .ledger_repository import LedgerRepository
from .market_repository import MarketRepository
from .resolution_repository import ResolutionRepository
from .types import CommitmentStakeRow

__all__ = [
    "CommitmentStakeRow",
    "LedgerRepository",
    "MarketRepository",
    "ResolutionRepository",
]

"""Shared repository result types."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class CommitmentStakeRow:
    """Summed stake of one user on one option (or legacy position)."""

    option_id: str | None
    position: str | None
    user_id: str
    tokens: float


__all__ = ["CommitmentStakeRow"]

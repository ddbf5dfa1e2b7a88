"""Mapping between legacy yes/no positions and option identifiers.

Binary markets list their "yes" option first and their "no" option second.
"""

from __future__ import annotations

from collections.abc import Sequence

from app.models import Position


def is_binary(option_ids: Sequence[str]) -> bool:
    return len(option_ids) == 2


def position_from_option(option_id: str | None, option_ids: Sequence[str]) -> str | None:
    if not option_id or not is_binary(option_ids) or option_id not in option_ids:
        return None
    return Position.YES.value if option_ids.index(option_id) == 0 else Position.NO.value


def option_from_position(position: str | None, option_ids: Sequence[str]) -> str | None:
    if not position or not is_binary(option_ids):
        return None
    normalized = position.strip().lower()
    if normalized == Position.YES.value:
        return option_ids[0]
    if normalized == Position.NO.value:
        return option_ids[1]
    return None


def effective_option_id(
    option_id: str | None, position: str | None, option_ids: Sequence[str]
) -> str | None:
    """Return the option a commitment counts towards, preferring the explicit id."""

    if option_id:
        return option_id
    return option_from_position(position, option_ids)


__all__ = [
    "effective_option_id",
    "is_binary",
    "option_from_position",
    "position_from_option",
]

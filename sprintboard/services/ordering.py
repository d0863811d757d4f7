"""
Ordering helpers for backlog partitions.

A partition is the (project, sprint, status) tuple. Positions of the active
items in a partition are always the dense sequence 1..n. These helpers work
on plain sequences so the services can keep every renumbering inside a
single session flush.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

POSITION_BASE = 1


class Positioned(Protocol):
    id: Any
    position: Optional[int]
    created_at: Optional[datetime]


P = TypeVar("P", bound=Positioned)


def _naive(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.min
    return value.replace(tzinfo=None)


def stable_key(item: Positioned) -> Tuple[int, datetime, Any]:
    """Sort key tolerant of duplicate positions left by a lost race."""
    position = item.position if item.position is not None else 0
    return (position, _naive(item.created_at), item.id or 0)


def stable_sort(items: Sequence[P]) -> List[P]:
    return sorted(items, key=stable_key)


def clamp_position(position: Optional[int], size: int) -> int:
    """Clamp a requested 1-based position into [1, size].

    `None` means "append"; zero or negative means "top".
    """
    if size <= 0:
        return POSITION_BASE
    if position is None:
        return size
    return max(POSITION_BASE, min(int(position), size))


def next_position(items: Sequence[Positioned]) -> int:
    """Position for an item appended at the end of a partition."""
    positions = [item.position for item in items if item.position is not None]
    return (max(positions) if positions else POSITION_BASE - 1) + 1


def insert_at(items: Sequence[P], item: P, position: int) -> List[P]:
    """Return `items` with `item` inserted so that it lands on `position`."""
    ordered = [other for other in items if other is not item]
    index = clamp_position(position, len(ordered) + 1) - POSITION_BASE
    ordered.insert(index, item)
    return ordered


def renumber(items: Sequence[P]) -> Dict[Any, Tuple[Optional[int], int]]:
    """Assign dense positions following the order of `items`.

    Only items whose position actually changes are written. Returns
    {id: (old, new)} for the items that moved.
    """
    changed: Dict[Any, Tuple[Optional[int], int]] = {}
    for index, item in enumerate(items):
        new_position = index + POSITION_BASE
        if item.position != new_position:
            changed[item.id] = (item.position, new_position)
            item.position = new_position
    return changed


def is_dense(positions: Sequence[int]) -> bool:
    """True when `positions` is exactly {1..n} with no duplicates."""
    return sorted(positions) == list(range(POSITION_BASE, len(positions) + POSITION_BASE))

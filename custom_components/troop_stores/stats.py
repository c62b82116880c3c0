"""Aggregate statistics snapshot and its delta function.

The snapshot is maintained incrementally: every write applies the outgoing
item with sign -1 and the incoming item with sign +1. ``apply_item_to_stats``
is pure, so folding all stored items from ``empty_stats()`` reproduces the
snapshot exactly; ``fold_items`` is that rescan.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Literal

from .const import CATEGORIES, DEFAULT_SPACE, SPACES
from .models import InventoryItem

Sign = Literal[1, -1]


@dataclass(frozen=True)
class Bucket:
    count: int = 0
    quantity: int = 0


@dataclass(frozen=True)
class ComputedStats:
    """Process-wide aggregate snapshot of the inventory."""

    total_items: int = 0
    total_quantity: int = 0
    category_breakdown: dict[str, Bucket] = field(default_factory=dict)
    space_breakdown: dict[str, Bucket] = field(default_factory=dict)
    low_stock_items: int = 0
    needs_repair_items: int = 0
    active_loans_count: int = 0


def empty_stats() -> ComputedStats:
    """Zero-valued snapshot with a bucket for every category and space."""

    return ComputedStats(
        category_breakdown={name: Bucket() for name in CATEGORIES},
        space_breakdown={name: Bucket() for name in SPACES},
    )


def _shift(buckets: dict[str, Bucket], name: str, sign: int, quantity: int) -> dict[str, Bucket]:
    current = buckets.get(name, Bucket())
    updated = dict(buckets)
    updated[name] = Bucket(count=current.count + sign, quantity=current.quantity + sign * quantity)
    return updated


def apply_item_to_stats(stats: ComputedStats, item: InventoryItem, sign: Sign) -> ComputedStats:
    """Return ``stats`` with ``item`` added (sign=1) or removed (sign=-1)."""

    if sign not in (1, -1):
        raise ValueError("sign must be 1 or -1")
    quantity = int(item.quantity)
    return replace(
        stats,
        total_items=stats.total_items + sign,
        total_quantity=stats.total_quantity + sign * quantity,
        category_breakdown=_shift(stats.category_breakdown, item.category, sign, quantity),
        space_breakdown=_shift(stats.space_breakdown, item.space or DEFAULT_SPACE, sign, quantity),
        low_stock_items=stats.low_stock_items + (sign if item.is_low_stock else 0),
        needs_repair_items=stats.needs_repair_items + (sign if item.needs_repair else 0),
    )


def replace_item_in_stats(
    stats: ComputedStats, old: InventoryItem | None, new: InventoryItem | None
) -> ComputedStats:
    """Swap one item's contribution: remove ``old`` then add ``new`` (either may be None)."""

    if old is not None:
        stats = apply_item_to_stats(stats, old, -1)
    if new is not None:
        stats = apply_item_to_stats(stats, new, 1)
    return stats


def adjust_active_loans(stats: ComputedStats, delta: int) -> ComputedStats:
    # Clamped at zero; only reachable after drift
    return replace(stats, active_loans_count=max(0, stats.active_loans_count + delta))


def fold_items(items: Iterable[InventoryItem], *, active_loans: int = 0) -> ComputedStats:
    """Full-rescan definition of the snapshot."""

    stats = empty_stats()
    for item in items:
        stats = apply_item_to_stats(stats, item, 1)
    return replace(stats, active_loans_count=max(0, active_loans))

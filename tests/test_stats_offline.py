"""Offline tests for the aggregate statistics engine.

Scenarios:
- Adding then removing an item returns the exact starting snapshot
- Low-stock and needs-repair counters follow their predicates
- The folded snapshot matches the documented food scenario
- The loan counter never drops below zero
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime

import pytest
from custom_components.troop_stores.models import create_item_from_create
from custom_components.troop_stores.stats import (
    Bucket,
    adjust_active_loans,
    apply_item_to_stats,
    empty_stats,
    fold_items,
    replace_item_in_stats,
)

NOW = datetime(2025, 1, 1, tzinfo=UTC)
FOOD_QUANTITY = 10


@pytest.mark.asyncio
async def test_delta_symmetry(make_tent, make_food) -> None:
    start = fold_items(
        [create_item_from_create(make_food(), now=NOW)], active_loans=2
    )
    tent = create_item_from_create(make_tent(condition="needs-repair"), now=NOW)

    after = apply_item_to_stats(apply_item_to_stats(start, tent, 1), tent, -1)

    assert after == start


@pytest.mark.asyncio
async def test_food_scenario(make_food) -> None:
    item = create_item_from_create(
        make_food(quantity=FOOD_QUANTITY, min_threshold=12, expiry="2025-01-01"), now=NOW
    )

    stats = fold_items([item])

    assert stats.total_items == 1
    assert stats.total_quantity == FOOD_QUANTITY
    assert stats.low_stock_items == 1
    assert stats.category_breakdown["food"] == Bucket(count=1, quantity=FOOD_QUANTITY)
    assert stats.space_breakdown["camp-store"] == Bucket(count=1, quantity=FOOD_QUANTITY)
    assert stats.category_breakdown["tent"] == Bucket()


@pytest.mark.asyncio
async def test_needs_repair_from_condition_or_flagged_units(make_tent) -> None:
    by_condition = create_item_from_create(make_tent(condition="needs-repair"), now=NOW)
    by_units = create_item_from_create(make_tent(quantity_needs_repair=1), now=NOW)
    healthy = create_item_from_create(make_tent(quantity_needs_repair=0), now=NOW)

    stats = fold_items([by_condition, by_units, healthy])

    assert stats.needs_repair_items == 2


@pytest.mark.asyncio
async def test_update_moves_buckets(make_tent) -> None:
    old = create_item_from_create(make_tent(quantity=4), now=NOW)
    new = replace(old, space="scout-post-loft", quantity=0)
    stats = fold_items([old])

    updated = replace_item_in_stats(stats, old, new)

    assert updated == fold_items([new])
    assert updated.space_breakdown["camp-store"] == Bucket()
    assert updated.low_stock_items == 1


@pytest.mark.asyncio
async def test_active_loans_clamped_at_zero() -> None:
    stats = adjust_active_loans(empty_stats(), 1)
    assert stats.active_loans_count == 1
    assert adjust_active_loans(stats, -5).active_loans_count == 0


@pytest.mark.asyncio
async def test_invalid_sign_rejected(make_tent) -> None:
    item = create_item_from_create(make_tent(), now=NOW)
    with pytest.raises(ValueError):
        apply_item_to_stats(empty_stats(), item, 2)  # type: ignore[arg-type]

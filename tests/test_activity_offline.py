"""Offline tests for the activity log.

Scenarios:
- Entries come back newest first
- A burst of writes in the same millisecond keeps newest-first order
- The limit defaults to 100 and is capped at 500
- Entries expire after 90 days
- Unknown actions and failed writes never raise
"""

from __future__ import annotations

import logging

import pytest
from custom_components.troop_stores.activity import ActivityLog, inverted_epoch
from custom_components.troop_stores.const import (
    ACTIVITY_DEFAULT_LIMIT,
    ACTIVITY_MAX_LIMIT,
    ACTIVITY_RETENTION_SECONDS,
)
from custom_components.troop_stores.exceptions import StorageError

BURST_SIZE = 20


@pytest.mark.asyncio
async def test_recent_returns_newest_first(kv, date_clock) -> None:
    log = ActivityLog(kv, clock=date_clock)

    first = await log.log("item.created", username="akela", resource="Stove", resource_id="i1")
    date_clock.advance(seconds=5)
    second = await log.log("item.deleted", username="baloo", resource_id="i1")

    entries = await log.recent()

    assert first is not None and second is not None
    assert [e["id"] for e in entries] == [second["id"], first["id"]]
    assert entries[1]["resource"] == "Stove"
    assert entries[0]["timestamp"].endswith("Z")
    assert "resource" not in entries[0]


@pytest.mark.asyncio
async def test_burst_within_one_millisecond_stays_ordered(kv, date_clock) -> None:
    log = ActivityLog(kv, clock=date_clock)

    for index in range(BURST_SIZE):
        await log.log("stocktake.completed", username="akela", details=str(index))

    entries = await log.recent()

    assert [e["details"] for e in entries] == [str(i) for i in reversed(range(BURST_SIZE))]


@pytest.mark.asyncio
async def test_recent_limits(kv, date_clock) -> None:
    log = ActivityLog(kv, clock=date_clock)
    for _ in range(ACTIVITY_DEFAULT_LIMIT + 5):
        date_clock.advance(seconds=1)
        await log.log("loan.created", username="akela")

    assert len(await log.recent()) == ACTIVITY_DEFAULT_LIMIT
    assert len(await log.recent(limit=3)) == 3
    assert len(await log.recent(limit=ACTIVITY_MAX_LIMIT * 2)) == ACTIVITY_DEFAULT_LIMIT + 5
    assert await log.recent(limit=0) == []


@pytest.mark.asyncio
async def test_entries_expire(kv, clock, date_clock) -> None:
    log = ActivityLog(kv, clock=date_clock)
    await log.log("db.cleaned", username="akela")

    clock.advance(ACTIVITY_RETENTION_SECONDS + 1)

    assert await log.recent() == []


@pytest.mark.asyncio
async def test_unknown_action_and_write_failure_are_swallowed(
    kv, date_clock, monkeypatch, caplog
) -> None:
    log = ActivityLog(kv, clock=date_clock)
    caplog.set_level(logging.WARNING)

    assert await log.log("user.login", username="akela") is None

    async def _failing_set(*_args, **_kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(kv, "set", _failing_set)
    assert await log.log("item.created", username="akela") is None
    assert any(r.levelname == "ERROR" for r in caplog.records)


@pytest.mark.asyncio
async def test_inverted_epoch_orders_later_first(date_clock) -> None:
    earlier = inverted_epoch(date_clock.now)
    date_clock.advance(milliseconds=1)
    later = inverted_epoch(date_clock.now)

    assert len(earlier) == len(later) == 17
    assert later < earlier

"""Offline tests for the ordered key-value backend.

Scenarios:
- Prefix scans return keys in part-wise order, strings before numbers
- A scan never returns the prefix key itself
- Atomic commit applies all mutations under one versionstamp
- A failed check applies nothing and reports ok=False
- Entries with an expiry disappear once the clock passes it
- Listeners fire after writes but not after refused commits
- Export/load preserves entries, versionstamps and expiry
"""

from __future__ import annotations

import pytest
from custom_components.troop_stores.exceptions import StorageError, ValidationError
from custom_components.troop_stores.kv import KvStore, key_sort_key

TTL_SECONDS = 60


@pytest.mark.asyncio
async def test_scan_orders_keys_partwise(kv: KvStore) -> None:
    await kv.set(("a", "b"), 1)
    await kv.set(("a", "a", "z"), 2)
    await kv.set(("a", 10), 3)
    await kv.set(("a", 2), 4)
    await kv.set(("b",), 5)

    keys = [entry.key async for entry in kv.scan(("a",))]

    assert keys == [("a", "a", "z"), ("a", "b"), ("a", 2), ("a", 10)]


@pytest.mark.asyncio
async def test_scan_excludes_prefix_key_and_supports_reverse_and_limit(kv: KvStore) -> None:
    await kv.set(("log",), "root")
    for part in ("001", "002", "003"):
        await kv.set(("log", part), part)

    forward = await kv.list_entries(("log",))
    backward = await kv.list_entries(("log",), reverse=True, limit=2)

    assert [e.value for e in forward] == ["001", "002", "003"]
    assert [e.value for e in backward] == ["003", "002"]


@pytest.mark.asyncio
async def test_atomic_commit_applies_all_mutations_with_one_versionstamp(kv: KvStore) -> None:
    await kv.set(("x",), 1)

    result = await kv.atomic().set(("y",), 2).set(("z",), 3).delete(("x",)).commit()

    assert result.ok is True
    y = await kv.get(("y",))
    z = await kv.get(("z",))
    assert await kv.get(("x",)) is None
    assert y is not None and z is not None
    assert y.versionstamp == z.versionstamp == result.versionstamp


@pytest.mark.asyncio
async def test_failed_check_applies_nothing(kv: KvStore) -> None:
    await kv.set(("counter",), 1)
    stale = await kv.get(("counter",))
    assert stale is not None
    await kv.set(("counter",), 2)

    result = (
        await kv.atomic()
        .check(("counter",), stale.versionstamp)
        .set(("counter",), 3)
        .set(("other",), "x")
        .commit()
    )

    assert result.ok is False
    current = await kv.get(("counter",))
    assert current is not None and current.value == 2
    assert await kv.get(("other",)) is None


@pytest.mark.asyncio
async def test_check_for_absent_key(kv: KvStore) -> None:
    first = await kv.atomic().check(("new",), None).set(("new",), "a").commit()
    second = await kv.atomic().check(("new",), None).set(("new",), "b").commit()

    assert first.ok is True
    assert second.ok is False
    entry = await kv.get(("new",))
    assert entry is not None and entry.value == "a"


@pytest.mark.asyncio
async def test_expired_entries_are_invisible(kv: KvStore, clock) -> None:
    await kv.set(("session", "s1"), {"user": "akela"}, expire_in=TTL_SECONDS)
    assert await kv.get(("session", "s1")) is not None

    clock.advance(TTL_SECONDS + 1)

    assert await kv.get(("session", "s1")) is None
    assert await kv.list_entries(("session",)) == []
    assert kv.export_state()["entries"] == []


@pytest.mark.asyncio
async def test_values_are_copied_on_write_and_read(kv: KvStore) -> None:
    value = {"tags": ["a"]}
    await kv.set(("doc",), value)
    value["tags"].append("b")

    entry = await kv.get(("doc",))
    assert entry is not None
    entry.value["tags"].append("c")

    again = await kv.get(("doc",))
    assert again is not None and again.value == {"tags": ["a"]}


@pytest.mark.asyncio
async def test_invalid_keys_and_values_are_rejected(kv: KvStore) -> None:
    with pytest.raises(ValidationError):
        await kv.set((), 1)
    with pytest.raises(ValidationError):
        await kv.set(("a", 1.5), 1)  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        await kv.set(("a",), None)
    with pytest.raises(StorageError):
        await kv.set(("a",), object())


@pytest.mark.asyncio
async def test_listeners_fire_on_write_only(kv: KvStore) -> None:
    calls: list[str] = []

    async def _listener() -> None:
        calls.append("changed")

    unsubscribe = kv.add_listener(_listener)
    await kv.set(("a",), 1)
    await kv.atomic().check(("a",), "0" * 20).set(("a",), 2).commit()
    unsubscribe()
    await kv.set(("a",), 3)

    assert calls == ["changed"]


@pytest.mark.asyncio
async def test_export_then_load_preserves_state(kv: KvStore, clock) -> None:
    await kv.set(("inventory", "items", "i1"), {"name": "Stove"})
    await kv.set(("activity", "log", "0001", "u1"), {"action": "item.created"}, expire_in=30)
    original = await kv.get(("inventory", "items", "i1"))

    restored = KvStore.from_state(kv.export_state(), clock=clock)

    copy = await restored.get(("inventory", "items", "i1"))
    assert copy is not None and original is not None
    assert copy.value == {"name": "Stove"}
    assert copy.versionstamp == original.versionstamp
    assert len(restored) == len(kv)

    # New writes get a versionstamp above every restored one
    result = await restored.set(("inventory", "items", "i2"), {"name": "Pot"})
    assert result.versionstamp is not None and result.versionstamp > original.versionstamp

    clock.advance(31)
    assert await restored.get(("activity", "log", "0001", "u1")) is None


@pytest.mark.asyncio
async def test_load_skips_malformed_entries(clock) -> None:
    payload = {
        "versionstamp": 3,
        "entries": [
            [["ok"], 1, "00000000000000000001", None],
            ["not-a-list-entry"],
            [[], 2, "00000000000000000002", None],
            [["null"], None, "00000000000000000003", None],
        ],
    }

    kv = KvStore.from_state(payload, clock=clock)

    assert len(kv) == 1
    assert await kv.get(("ok",)) is not None


@pytest.mark.asyncio
async def test_key_sort_key_ranks_strings_before_numbers() -> None:
    keys = [("a", 1), ("a", "b"), ("a",)]
    assert sorted(keys, key=key_sort_key) == [("a",), ("a", "b"), ("a", 1)]

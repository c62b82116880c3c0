"""Shared fixtures for offline tests.

Provides a controllable clock, an in-memory replacement for Home Assistant's
``Store`` (installed with ``monkeypatch`` so nothing touches disk), a
``MagicMock`` hass with a real ``data`` dict, and a repository wired to a
fresh key-value store.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest
from custom_components.troop_stores import storage as storage_mod
from custom_components.troop_stores.cache import CollectionCache
from custom_components.troop_stores.const import DOMAIN
from custom_components.troop_stores.kv import KvStore
from custom_components.troop_stores.repository import InventoryRepository

# Fixed "now" for repository tests: 2025-06-01 12:00:00 UTC
FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Monotonic seconds clock advanced by hand."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """UTC datetime clock advanced by hand."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class MemoryStore:
    """In-memory double for ``homeassistant.helpers.storage.Store``."""

    saved: dict[str, Any] = {}

    def __init__(self, _hass: Any, version: int, key: str) -> None:
        self.version = version
        self.key = key
        self.save_count = 0

    async def async_load(self) -> Any:
        return MemoryStore.saved.get(self.key)

    async def async_save(self, data: Any) -> None:
        self.save_count += 1
        MemoryStore.saved[self.key] = data


@pytest.fixture
def memory_store(monkeypatch: pytest.MonkeyPatch) -> type[MemoryStore]:
    MemoryStore.saved = {}
    monkeypatch.setattr(storage_mod, "Store", MemoryStore)
    return MemoryStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock()


@pytest.fixture
def kv(clock: FakeClock) -> KvStore:
    return KvStore(clock=clock)


@pytest.fixture
def repo(kv: KvStore, clock: FakeClock, date_clock: FakeDateClock) -> InventoryRepository:
    return InventoryRepository(
        kv,
        items_cache=CollectionCache(name="items", clock=clock),
        checkouts_cache=CollectionCache(name="checkouts", clock=clock),
        clock=date_clock,
    )


@pytest.fixture
def hass(kv: KvStore, repo: InventoryRepository) -> MagicMock:
    mock = MagicMock()
    mock.data = {DOMAIN: {"kv": kv, "repository": repo}}
    return mock


def tent_payload(name: str = "Patrol Tent", **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": name,
        "category": "tent",
        "quantity": 4,
        "min_threshold": 1,
        "tent_type": "patrol",
        "capacity": 6,
        "condition": "good",
    }
    payload.update(overrides)
    return payload


def food_payload(
    name: str = "Baked Beans", expiry: str = "2025-09-01", **overrides: Any
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": name,
        "category": "food",
        "quantity": 10,
        "min_threshold": 2,
        "food_type": "canned",
        "expiry_date": expiry,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_tent():
    return tent_payload


@pytest.fixture
def make_food():
    return food_payload

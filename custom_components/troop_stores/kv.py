"""Ordered, transactional key-value backend for Troop Stores.

Keys are tuples of strings and integers ordered part by part (strings sort
before numbers). The backend offers point reads and writes, prefix scans in
key order, optional per-entry expiry and atomic multi-key operations guarded
by versionstamp checks:

    op = kv.atomic()
    op.check(("inventory", "stats", "computed"), entry.versionstamp)
    op.set(("inventory", "items", item_id), payload)
    op.delete(("inventory", "idx", "space", "camp-store", item_id))
    result = await op.commit()  # result.ok is False if a check failed

A commit applies all of its mutations or none of them. Commits are serialized
by an ``asyncio.Lock`` so concurrent readers observe a group either fully
before or fully after it.

The dataset lives in memory and is persisted by ``storage.py`` through a
change listener registered with ``add_listener``.
"""

from __future__ import annotations

import asyncio
import bisect
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

from .const import DOMAIN
from .exceptions import StorageError, ValidationError

_LOGGER = logging.getLogger(__name__)

KeyPart = str | int
Key = tuple[KeyPart, ...]

VERSIONSTAMP_WIDTH = 20


@dataclass(frozen=True)
class KvEntry:
    """A stored value together with the versionstamp of its last write."""

    key: Key
    value: Any
    versionstamp: str


@dataclass(frozen=True)
class CommitResult:
    """Outcome of an atomic commit."""

    ok: bool
    versionstamp: str | None = None


@dataclass
class _Record:
    value: Any
    versionstamp: str
    expires_at: float | None = None


def _part_sort_key(part: KeyPart) -> tuple[int, Any]:
    # bool is an int subclass; rank it separately
    if isinstance(part, bool):
        return (2, part)
    if isinstance(part, str):
        return (0, part)
    return (1, part)


def key_sort_key(key: Key) -> tuple[tuple[int, Any], ...]:
    """Return a totally ordered sort key for a tuple key with mixed part types."""

    return tuple(_part_sort_key(part) for part in key)


def validate_key(key: Iterable[KeyPart]) -> Key:
    """Normalize ``key`` to a tuple and check its part types."""

    parts = tuple(key)
    if not parts:
        raise ValidationError("key must have at least one part")
    for part in parts:
        if not isinstance(part, str | int):
            raise ValidationError("key parts must be strings or integers")
    return parts


def _storable_copy(value: Any) -> Any:
    if value is None:
        raise ValidationError("value must not be None; delete the key instead")
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise StorageError("value is not JSON serializable") from exc
    return deepcopy(value)


class AtomicOperation:
    """A batch of checks and mutations committed indivisibly."""

    def __init__(self, kv: KvStore) -> None:
        self._kv = kv
        self._checks: list[tuple[Key, str | None]] = []
        self._mutations: list[tuple[str, Key, Any, float | None]] = []

    def check(self, key: Iterable[KeyPart], versionstamp: str | None) -> AtomicOperation:
        """Require ``key`` to still carry ``versionstamp`` (``None`` means absent)."""

        self._checks.append((validate_key(key), versionstamp))
        return self

    def set(
        self, key: Iterable[KeyPart], value: Any, *, expire_in: float | None = None
    ) -> AtomicOperation:
        self._mutations.append(("set", validate_key(key), _storable_copy(value), expire_in))
        return self

    def delete(self, key: Iterable[KeyPart]) -> AtomicOperation:
        self._mutations.append(("delete", validate_key(key), None, None))
        return self

    @property
    def mutation_count(self) -> int:
        return len(self._mutations)

    async def commit(self) -> CommitResult:
        return await self._kv._commit(self._checks, self._mutations)


class KvStore:
    """In-memory ordered key-value store with atomic operations."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._records: dict[Key, _Record] = {}
        # Keys kept sorted by key_sort_key for prefix scans
        self._keys: list[Key] = []
        self._version = 0
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[], Awaitable[None]]] = []

    # -----------------------------
    # Listeners
    # -----------------------------

    def add_listener(self, listener: Callable[[], Awaitable[None]]) -> Callable[[], None]:
        """Call ``listener`` after every successful write. Returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception:  # pragma: no cover
                _LOGGER.warning(
                    "KV change listener failed",
                    extra={"domain": DOMAIN, "op": "kv_notify"},
                    exc_info=True,
                )

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _next_versionstamp(self) -> str:
        self._version += 1
        return f"{self._version:0{VERSIONSTAMP_WIDTH}x}"

    def _live(self, key: Key, now: float) -> _Record | None:
        record = self._records.get(key)
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= now:
            self._remove_key(key)
            return None
        return record

    def _insert_key(self, key: Key) -> None:
        if key not in self._records:
            bisect.insort(self._keys, key, key=key_sort_key)

    def _remove_key(self, key: Key) -> None:
        if self._records.pop(key, None) is None:
            return
        index = bisect.bisect_left(self._keys, key_sort_key(key), key=key_sort_key)
        if index < len(self._keys) and self._keys[index] == key:
            del self._keys[index]

    def _put(self, key: Key, record: _Record) -> None:
        self._insert_key(key)
        self._records[key] = record

    async def _commit(
        self,
        checks: list[tuple[Key, str | None]],
        mutations: list[tuple[str, Key, Any, float | None]],
    ) -> CommitResult:
        async with self._lock:
            now = self._clock()
            for key, expected in checks:
                record = self._live(key, now)
                actual = record.versionstamp if record is not None else None
                if actual != expected:
                    _LOGGER.debug(
                        "Atomic check failed",
                        extra={"domain": DOMAIN, "op": "kv_commit", "key": list(key)},
                    )
                    return CommitResult(ok=False)

            versionstamp = self._next_versionstamp()
            for kind, key, value, expire_in in mutations:
                if kind == "set":
                    expires_at = now + expire_in if expire_in is not None else None
                    self._put(key, _Record(deepcopy(value), versionstamp, expires_at))
                else:
                    self._remove_key(key)

        if mutations:
            await self._notify()
        return CommitResult(ok=True, versionstamp=versionstamp)

    # -----------------------------
    # Public API
    # -----------------------------

    def atomic(self) -> AtomicOperation:
        return AtomicOperation(self)

    async def get(self, key: Iterable[KeyPart]) -> KvEntry | None:
        parts = validate_key(key)
        record = self._live(parts, self._clock())
        if record is None:
            return None
        return KvEntry(key=parts, value=deepcopy(record.value), versionstamp=record.versionstamp)

    async def get_many(self, keys: Iterable[Iterable[KeyPart]]) -> list[KvEntry | None]:
        return [await self.get(key) for key in keys]

    async def set(
        self, key: Iterable[KeyPart], value: Any, *, expire_in: float | None = None
    ) -> CommitResult:
        return await self.atomic().set(key, value, expire_in=expire_in).commit()

    async def delete(self, key: Iterable[KeyPart]) -> None:
        await self.atomic().delete(key).commit()

    async def scan(
        self, prefix: Iterable[KeyPart], *, limit: int | None = None, reverse: bool = False
    ) -> AsyncIterator[KvEntry]:
        """Yield live entries strictly under ``prefix`` in key order.

        The set of keys is captured when the scan starts; entries deleted
        while the scan is suspended are skipped.
        """

        parts = validate_key(prefix)
        width = len(parts)
        start = bisect.bisect_left(self._keys, key_sort_key(parts), key=key_sort_key)
        matched: list[Key] = []
        for key in self._keys[start:]:
            if key[:width] != parts:
                break
            if len(key) > width:
                matched.append(key)
        if reverse:
            matched.reverse()

        yielded = 0
        for key in matched:
            if limit is not None and yielded >= limit:
                return
            entry = await self.get(key)
            if entry is None:
                continue
            yielded += 1
            yield entry

    async def list_entries(
        self, prefix: Iterable[KeyPart], *, limit: int | None = None, reverse: bool = False
    ) -> list[KvEntry]:
        return [entry async for entry in self.scan(prefix, limit=limit, reverse=reverse)]

    def __len__(self) -> int:
        return len(self._records)

    # -----------------------------
    # Persistence: export/import
    # -----------------------------

    def export_state(self) -> dict[str, Any]:
        """Serialize the live dataset to a plain dict for storage.

        Shape:
            {"versionstamp": int, "entries": [[key, value, versionstamp, expires_at], ...]}
        """

        now = self._clock()
        entries: list[list[Any]] = []
        for key in self._keys:
            record = self._records[key]
            if record.expires_at is not None and record.expires_at <= now:
                continue
            entries.append(
                [list(key), deepcopy(record.value), record.versionstamp, record.expires_at]
            )
        return {"versionstamp": self._version, "entries": entries}

    def load_state(self, data: dict[str, Any]) -> None:
        """Replace the dataset with a persisted payload, skipping malformed entries."""

        self._records = {}
        self._keys = []
        self._version = 0

        if not isinstance(data, dict):
            return

        now = self._clock()
        highest = int(data.get("versionstamp", 0) or 0)
        for raw in data.get("entries") or []:
            try:
                raw_key, value, versionstamp, expires_at = raw
                key = validate_key(raw_key)
                if value is None:
                    raise ValueError("null value")
                if expires_at is not None and float(expires_at) <= now:
                    continue
                stamp = str(versionstamp)
                highest = max(highest, int(stamp, 16))
                self._put(
                    key,
                    _Record(
                        value=value,
                        versionstamp=stamp,
                        expires_at=float(expires_at) if expires_at is not None else None,
                    ),
                )
            except (TypeError, ValueError, ValidationError):
                _LOGGER.warning(
                    "Failed to load KV entry from persisted state",
                    extra={"domain": DOMAIN, "op": "kv_load_state", "entry": repr(raw)[:200]},
                    exc_info=True,
                )
                continue
        self._version = highest

    @staticmethod
    def from_state(data: dict[str, Any], *, clock: Callable[[], float] | None = None) -> KvStore:
        """Create a KvStore instance from a persisted payload."""

        kv = KvStore(clock=clock)
        kv.load_state(data)
        return kv

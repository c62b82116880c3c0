"""Inventory and loan repository for Troop Stores.

This module is the single entry point for reading and writing inventory data.
It keeps primary records, the secondary indexes and the aggregate statistics
snapshot consistent by committing each logical change as one atomic operation
on the key-value backend, and it fronts collection reads with a process-local
cache.

Every write is guarded by versionstamp checks on the keys it read (the primary
record and the stats snapshot). When another write lands in between, the
commit is refused and ``TransactionConflictError`` is raised; nothing from the
refused operation is applied and the caller may retry.

The repository is framework-agnostic and designed to be exercised by offline
tests and invoked by the service layer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, TypedDict

from .cache import CollectionCache
from .codec import (
    deserialize_checkout,
    deserialize_item,
    deserialize_stats,
    serialize_checkout,
    serialize_item,
    serialize_stats,
)
from .const import (
    CATEGORY_FOOD,
    CATEGORY_INDEX_PREFIX,
    CHECKOUTS_PREFIX,
    DOMAIN,
    EXPIRY_INDEX_PREFIX,
    INDEX_PREFIX,
    ITEMS_PREFIX,
    LOAN_RETENTION_DAYS,
    NECKERS_KEY,
    SPACE_INDEX_PREFIX,
    STATS_KEY,
    STATUS_RETURNED,
)
from .exceptions import (
    ConflictError,
    StorageError,
    TransactionConflictError,
    TroopStoresError,
    ValidationError,
)
from .indexes import (
    add_to_index,
    index_keys,
    remove_from_index,
    replace_in_index,
)
from .kv import AtomicOperation, Key, KvEntry, KvStore
from .models import (
    SERVER_FIELDS,
    CheckOut,
    CheckOutCreate,
    InventoryItem,
    ItemCreate,
    ItemUpdate,
    StocktakeUpdate,
    apply_item_update,
    create_checkout_from_create,
    create_item_from_create,
    expiry_sort_key,
    item_matches_query,
    monotonic_timestamp_after,
    sort_items_by_name,
    utc_now,
)
from .stats import (
    ComputedStats,
    adjust_active_loans,
    apply_item_to_stats,
    empty_stats,
    fold_items,
    replace_item_in_stats,
)

LOGGER = logging.getLogger(__name__)


class RebuildReport(TypedDict):
    items: int
    index_entries: int
    active_loans: int


class StocktakeResult(TypedDict):
    applied: int
    errors: list[str]


class CleanUpReport(TypedDict):
    orphaned_index_entries: int
    old_returned_loans: int


class ImportRowError(TypedDict):
    row: int
    name: str | None
    error: str


class ImportResult(TypedDict):
    created: list[InventoryItem]
    errors: list[ImportRowError]


def item_key(item_id: str) -> Key:
    return (*ITEMS_PREFIX, item_id)


def checkout_key(checkout_id: str) -> Key:
    return (*CHECKOUTS_PREFIX, checkout_id)


class InventoryRepository:
    """Facade over the key-value backend for items, loans and counters.

    Notes:
        - Point lookups of a missing id return ``None`` (or ``False`` for
          deletes) and never mutate anything.
        - Validation errors are raised before the store is touched.
        - Caches are injected so tests can control their clocks.
    """

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def __init__(
        self,
        kv: KvStore,
        *,
        items_cache: CollectionCache[list[InventoryItem]] | None = None,
        checkouts_cache: CollectionCache[list[CheckOut]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._kv = kv
        self._items_cache = items_cache or CollectionCache(name="items")
        self._checkouts_cache = checkouts_cache or CollectionCache(name="checkouts")
        self._clock = clock or utc_now

    @property
    def kv(self) -> KvStore:
        return self._kv

    def invalidate_caches(self) -> None:
        self._items_cache.invalidate()
        self._checkouts_cache.invalidate()

    # -----------------------------
    # Internal helpers: reads
    # -----------------------------

    def _decode_item(self, entry: KvEntry) -> InventoryItem | None:
        try:
            return deserialize_item(entry.value)
        except StorageError:
            LOGGER.warning(
                "Skipping undecodable item record",
                extra={"domain": DOMAIN, "op": "decode_item", "key": list(entry.key)},
                exc_info=True,
            )
            return None

    def _decode_checkout(self, entry: KvEntry) -> CheckOut | None:
        try:
            return deserialize_checkout(entry.value)
        except StorageError:
            LOGGER.warning(
                "Skipping undecodable checkout record",
                extra={"domain": DOMAIN, "op": "decode_checkout", "key": list(entry.key)},
                exc_info=True,
            )
            return None

    async def _scan_items(self) -> list[InventoryItem]:
        items: list[InventoryItem] = []
        async for entry in self._kv.scan(ITEMS_PREFIX):
            item = self._decode_item(entry)
            if item is not None:
                items.append(item)
        return items

    async def _scan_checkouts(self) -> list[CheckOut]:
        checkouts: list[CheckOut] = []
        async for entry in self._kv.scan(CHECKOUTS_PREFIX):
            checkout = self._decode_checkout(entry)
            if checkout is not None:
                checkouts.append(checkout)
        return checkouts

    async def _fetch_items_from_index(self, prefix: Key) -> list[InventoryItem]:
        """Resolve index entries under ``prefix`` to items, in index order."""

        ids = [str(entry.value) async for entry in self._kv.scan(prefix)]
        entries = await self._kv.get_many(item_key(item_id) for item_id in ids)
        items: list[InventoryItem] = []
        for entry in entries:
            # Orphaned index entries resolve to nothing
            if entry is None:
                continue
            item = self._decode_item(entry)
            if item is not None:
                items.append(item)
        return items

    async def _read_item(self, item_id: str) -> tuple[KvEntry, InventoryItem] | None:
        entry = await self._kv.get(item_key(item_id))
        if entry is None:
            return None
        return entry, deserialize_item(entry.value)

    async def _read_stats(self) -> tuple[str | None, ComputedStats]:
        entry = await self._kv.get(STATS_KEY)
        if entry is None:
            return None, empty_stats()
        return entry.versionstamp, deserialize_stats(entry.value)

    async def _commit(self, op: AtomicOperation, *, op_name: str) -> None:
        result = await op.commit()
        if not result.ok:
            LOGGER.debug(
                "Atomic commit refused",
                extra={"domain": DOMAIN, "op": op_name},
            )
            raise TransactionConflictError(f"{op_name} conflicted with a concurrent write; retry")

    # -----------------------------
    # Public API: Item reads
    # -----------------------------

    async def get_all_items(self) -> list[InventoryItem]:
        items = await self._items_cache.get(self._scan_items)
        return list(items)

    async def get_item_by_id(self, item_id: str) -> InventoryItem | None:
        found = await self._read_item(str(item_id))
        return found[1] if found is not None else None

    async def get_items_by_category(self, category: str) -> list[InventoryItem]:
        cached = self._items_cache.peek()
        if cached is not None:
            matches = [item for item in cached if item.category == category]
            return sorted(matches, key=lambda item: item.id)
        return await self._fetch_items_from_index((*CATEGORY_INDEX_PREFIX, category))

    async def get_items_by_space(self, space: str) -> list[InventoryItem]:
        cached = self._items_cache.peek()
        if cached is not None:
            matches = [item for item in cached if item.space == space]
            return sorted(matches, key=lambda item: item.id)
        return await self._fetch_items_from_index((*SPACE_INDEX_PREFIX, space))

    async def get_food_items_sorted_by_expiry(self) -> list[InventoryItem]:
        """Food items ordered by ascending expiry date, then id."""

        cached = self._items_cache.peek()
        if cached is not None:
            food = [
                item
                for item in cached
                if item.category == CATEGORY_FOOD and item.expiry_date is not None
            ]
            return sorted(food, key=expiry_sort_key)
        return await self._fetch_items_from_index(EXPIRY_INDEX_PREFIX)

    async def search_items(
        self, query: str, *, category: str | None = None, needs_repair: bool = False
    ) -> list[InventoryItem]:
        """Case-insensitive search over name, category and notes, sorted by name."""

        needle = (query or "").strip()
        results: list[InventoryItem] = []
        for item in await self.get_all_items():
            if category is not None and item.category != category:
                continue
            if needs_repair and not item.needs_repair:
                continue
            if item_matches_query(item, needle):
                results.append(item)
        return sort_items_by_name(results)

    async def get_computed_stats(self) -> ComputedStats:
        """Return the stored snapshot; a single point read, never a rescan."""

        _, stats = await self._read_stats()
        return stats

    # -----------------------------
    # Public API: Item writes
    # -----------------------------

    async def create_item(self, payload: ItemCreate | dict[str, Any]) -> InventoryItem:
        item = create_item_from_create(payload, now=self._clock())
        stats_stamp, stats = await self._read_stats()

        op = self._kv.atomic()
        op.check(item_key(item.id), None)
        op.check(STATS_KEY, stats_stamp)
        op.set(item_key(item.id), serialize_item(item))
        add_to_index(op, item)
        op.set(STATS_KEY, serialize_stats(apply_item_to_stats(stats, item, 1)))
        await self._commit(op, op_name="create_item")

        self._items_cache.invalidate()
        LOGGER.debug(
            "Created item",
            extra={
                "domain": DOMAIN,
                "op": "create_item",
                "item_id": item.id,
                "category": item.category,
            },
        )
        return item

    async def update_item(
        self, item_id: str, update: ItemUpdate | dict[str, Any]
    ) -> InventoryItem | None:
        found = await self._read_item(str(item_id))
        if found is None:
            return None
        entry, current = found
        updated = apply_item_update(current, update, now=self._clock())
        stats_stamp, stats = await self._read_stats()

        op = self._kv.atomic()
        op.check(entry.key, entry.versionstamp)
        op.check(STATS_KEY, stats_stamp)
        op.set(entry.key, serialize_item(updated))
        replace_in_index(op, current, updated)
        op.set(STATS_KEY, serialize_stats(replace_item_in_stats(stats, current, updated)))
        await self._commit(op, op_name="update_item")

        self._items_cache.invalidate()
        LOGGER.debug(
            "Updated item",
            extra={
                "domain": DOMAIN,
                "op": "update_item",
                "item_id": updated.id,
                "changed_fields": sorted(k for k in dict(update) if k not in SERVER_FIELDS),
            },
        )
        return updated

    async def delete_item(self, item_id: str) -> bool:
        found = await self._read_item(str(item_id))
        if found is None:
            return False
        entry, current = found
        stats_stamp, stats = await self._read_stats()

        op = self._kv.atomic()
        op.check(entry.key, entry.versionstamp)
        op.check(STATS_KEY, stats_stamp)
        op.delete(entry.key)
        remove_from_index(op, current)
        op.set(STATS_KEY, serialize_stats(apply_item_to_stats(stats, current, -1)))
        await self._commit(op, op_name="delete_item")

        self._items_cache.invalidate()
        LOGGER.debug(
            "Deleted item",
            extra={"domain": DOMAIN, "op": "delete_item", "item_id": current.id},
        )
        return True

    async def apply_stocktake(self, updates: Iterable[StocktakeUpdate]) -> StocktakeResult:
        """Apply stock-take corrections one by one, collecting per-row failures."""

        applied = 0
        errors: list[str] = []
        for update in updates:
            item_id = str(update.get("id", ""))
            quantity = update.get("quantity")
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
                errors.append(f"Invalid quantity for item {item_id}")
                continue
            patch: dict[str, Any] = {"quantity": quantity}
            if update.get("condition"):
                patch["condition"] = update["condition"]
            try:
                result = await self.update_item(item_id, patch)
            except TroopStoresError as exc:
                errors.append(f"Failed to update {item_id}: {exc}")
                continue
            if result is None:
                errors.append(f"Item {item_id} not found")
            else:
                applied += 1
        LOGGER.debug(
            "Applied stock-take",
            extra={"domain": DOMAIN, "op": "apply_stocktake", "applied": applied},
        )
        return {"applied": applied, "errors": errors}

    async def export_items(self) -> list[dict[str, Any]]:
        """Return import-compatible dicts without server-assigned fields, sorted by name."""

        exported: list[dict[str, Any]] = []
        for item in sort_items_by_name(await self.get_all_items()):
            data = serialize_item(item)
            for name in SERVER_FIELDS:
                data.pop(name, None)
            exported.append(data)
        return exported

    async def import_items(self, payloads: Iterable[dict[str, Any]]) -> ImportResult:
        """Create one item per payload; invalid rows are reported, not raised."""

        created: list[InventoryItem] = []
        errors: list[ImportRowError] = []
        for row, payload in enumerate(payloads, start=1):
            name = payload.get("name") if isinstance(payload, dict) else None
            try:
                created.append(await self.create_item(payload))
            except TroopStoresError as exc:
                errors.append(
                    {"row": row, "name": name if isinstance(name, str) else None, "error": str(exc)}
                )
        return {"created": created, "errors": errors}

    # -----------------------------
    # Public API: Maintenance
    # -----------------------------

    async def rebuild_indexes(self) -> RebuildReport:
        """Recreate every index entry and the stats snapshot from primary records.

        Repairs drift left by interrupted writes or by code that bypassed the
        repository. Idempotent.
        """

        op = self._kv.atomic()
        async for entry in self._kv.scan(INDEX_PREFIX):
            op.delete(entry.key)

        items = await self._scan_items()
        index_entries = 0
        for item in items:
            add_to_index(op, item)
            index_entries += len(index_keys(item))

        active_loans = sum(1 for checkout in await self._scan_checkouts() if checkout.is_active)
        stats = fold_items(items, active_loans=active_loans)
        op.set(STATS_KEY, serialize_stats(stats))
        await self._commit(op, op_name="rebuild_indexes")

        self.invalidate_caches()
        LOGGER.info(
            "Rebuilt indexes and stats",
            extra={
                "domain": DOMAIN,
                "op": "rebuild_indexes",
                "items": len(items),
                "index_entries": index_entries,
                "active_loans": active_loans,
            },
        )
        return {"items": len(items), "index_entries": index_entries, "active_loans": active_loans}

    async def clean_up(self, retention_days: int = LOAN_RETENTION_DAYS) -> CleanUpReport:
        """Remove orphaned index entries and returned loans past the retention window."""

        if not isinstance(retention_days, int) or retention_days < 0:
            raise ValidationError("retention_days must be an integer >= 0")

        op = self._kv.atomic()
        owned: dict[str, set[Key]] = {}
        orphaned = 0
        async for entry in self._kv.scan(INDEX_PREFIX):
            owner_id = str(entry.key[-1])
            if owner_id not in owned:
                found = await self._kv.get(item_key(owner_id))
                item = self._decode_item(found) if found is not None else None
                owned[owner_id] = set(index_keys(item)) if item is not None else set()
            if entry.key not in owned[owner_id]:
                op.delete(entry.key)
                orphaned += 1

        cutoff = self._clock() - timedelta(days=retention_days)
        old_loans = 0
        for checkout in await self._scan_checkouts():
            if checkout.status != STATUS_RETURNED or checkout.actual_return_date is None:
                continue
            if checkout.actual_return_date < cutoff:
                op.delete(checkout_key(checkout.id))
                old_loans += 1

        if op.mutation_count:
            await self._commit(op, op_name="clean_up")
            self.invalidate_caches()
        LOGGER.info(
            "Cleaned up store",
            extra={
                "domain": DOMAIN,
                "op": "clean_up",
                "orphaned_index_entries": orphaned,
                "old_returned_loans": old_loans,
            },
        )
        return {"orphaned_index_entries": orphaned, "old_returned_loans": old_loans}

    # -----------------------------
    # Public API: Loans
    # -----------------------------

    async def get_all_checkouts(self) -> list[CheckOut]:
        checkouts = await self._checkouts_cache.get(self._scan_checkouts)
        return list(checkouts)

    async def get_active_checkouts(self) -> list[CheckOut]:
        return [checkout for checkout in await self.get_all_checkouts() if checkout.is_active]

    async def get_checkout_by_id(self, checkout_id: str) -> CheckOut | None:
        entry = await self._kv.get(checkout_key(str(checkout_id)))
        if entry is None:
            return None
        return deserialize_checkout(entry.value)

    def _stock_mutations(
        self,
        op: AtomicOperation,
        entry: KvEntry,
        item: InventoryItem,
        stats: ComputedStats,
        delta: int,
        now: datetime,
    ) -> ComputedStats:
        """Append the stock change for ``item`` to ``op`` and return the new stats."""

        changed = replace(
            item,
            quantity=max(0, item.quantity + delta),
            last_updated=monotonic_timestamp_after(item.last_updated, now),
        )
        op.check(entry.key, entry.versionstamp)
        op.set(entry.key, serialize_item(changed))
        replace_in_index(op, item, changed)
        return replace_item_in_stats(stats, item, changed)

    async def create_checkout(self, payload: CheckOutCreate | dict[str, Any]) -> CheckOut:
        """Record a loan and deduct its quantity from stock in one commit."""

        if not isinstance(payload, dict):
            raise ValidationError("checkout payload must be a mapping")
        item_id = payload.get("item_id")
        if not isinstance(item_id, str) or not item_id:
            raise ValidationError("item_id is required")
        found = await self._read_item(item_id)
        if found is None:
            raise ValidationError("item_id must reference an existing item")
        entry, item = found

        now = self._clock()
        checkout = create_checkout_from_create(payload, item, now=now)
        stats_stamp, stats = await self._read_stats()

        op = self._kv.atomic()
        op.check(checkout_key(checkout.id), None)
        op.check(STATS_KEY, stats_stamp)
        op.set(checkout_key(checkout.id), serialize_checkout(checkout))
        stats = self._stock_mutations(op, entry, item, stats, -checkout.quantity, now)
        op.set(STATS_KEY, serialize_stats(adjust_active_loans(stats, 1)))
        await self._commit(op, op_name="create_checkout")

        self.invalidate_caches()
        LOGGER.debug(
            "Created checkout",
            extra={
                "domain": DOMAIN,
                "op": "create_checkout",
                "checkout_id": checkout.id,
                "item_id": item.id,
                "quantity": checkout.quantity,
            },
        )
        return checkout

    async def _close_checkout(
        self, checkout_id: str, *, op_name: str, delete: bool
    ) -> tuple[CheckOut, bool] | None:
        """Return or cancel a loan; returns the loan and whether stock was restored."""

        entry = await self._kv.get(checkout_key(str(checkout_id)))
        if entry is None:
            return None
        checkout = deserialize_checkout(entry.value)
        was_active = checkout.is_active
        if not was_active and not delete:
            raise ConflictError("checkout has already been returned")

        now = self._clock()
        op = self._kv.atomic()
        op.check(entry.key, entry.versionstamp)
        if delete:
            op.delete(entry.key)
        else:
            checkout = replace(checkout, status=STATUS_RETURNED, actual_return_date=now)
            op.set(entry.key, serialize_checkout(checkout))

        restored = False
        if was_active:
            stats_stamp, stats = await self._read_stats()
            op.check(STATS_KEY, stats_stamp)
            found = await self._read_item(checkout.item_id)
            if found is not None:
                item_entry, item = found
                stats = self._stock_mutations(op, item_entry, item, stats, checkout.quantity, now)
                restored = True
            op.set(STATS_KEY, serialize_stats(adjust_active_loans(stats, -1)))
        await self._commit(op, op_name=op_name)

        self.invalidate_caches()
        LOGGER.debug(
            "Closed checkout",
            extra={
                "domain": DOMAIN,
                "op": op_name,
                "checkout_id": checkout.id,
                "stock_restored": restored,
            },
        )
        return checkout, restored

    async def return_checkout(self, checkout_id: str) -> CheckOut | None:
        """Mark a loan returned and restore its quantity to stock."""

        closed = await self._close_checkout(checkout_id, op_name="return_checkout", delete=False)
        return closed[0] if closed is not None else None

    async def delete_checkout(self, checkout_id: str) -> bool:
        """Delete a loan; an active loan's quantity is restored to stock first."""

        closed = await self._close_checkout(checkout_id, op_name="delete_checkout", delete=True)
        return closed is not None

    # -----------------------------
    # Public API: Necker counter
    # -----------------------------

    async def get_necker_count(self) -> int:
        entry = await self._kv.get(NECKERS_KEY)
        if entry is None or not isinstance(entry.value, int):
            return 0
        return int(entry.value)

    async def adjust_necker_count(self, delta: int) -> int:
        """Adjust the counter by ``delta``; the result never drops below zero."""

        if not isinstance(delta, int) or isinstance(delta, bool):
            raise ValidationError("delta must be an integer")
        entry = await self._kv.get(NECKERS_KEY)
        current = int(entry.value) if entry is not None and isinstance(entry.value, int) else 0
        value = max(0, current + delta)
        op = self._kv.atomic()
        op.check(NECKERS_KEY, entry.versionstamp if entry is not None else None)
        op.set(NECKERS_KEY, value)
        await self._commit(op, op_name="adjust_necker_count")
        return value

    async def set_necker_count(self, value: int) -> int:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError("value must be an integer")
        value = max(0, value)
        await self._kv.set(NECKERS_KEY, value)
        return value

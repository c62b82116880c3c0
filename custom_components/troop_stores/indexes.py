"""Secondary index maintenance.

Every item owns one category entry and one space entry; food items also own an
expiry entry. Index values are the item id. The helpers here only append
mutations to an atomic operation supplied by the caller; committing is the
caller's job so an index change never lands without its primary write.
"""

from __future__ import annotations

from .const import (
    CATEGORY_FOOD,
    CATEGORY_INDEX_PREFIX,
    DEFAULT_SPACE,
    EXPIRY_INDEX_PREFIX,
    SPACE_INDEX_PREFIX,
)
from .kv import AtomicOperation, Key
from .models import InventoryItem


def category_key(category: str, item_id: str) -> Key:
    return (*CATEGORY_INDEX_PREFIX, category, item_id)


def space_key(space: str, item_id: str) -> Key:
    return (*SPACE_INDEX_PREFIX, space, item_id)


def expiry_key(expiry_iso: str, item_id: str) -> Key:
    # YYYY-MM-DD sorts chronologically as a plain string
    return (*EXPIRY_INDEX_PREFIX, expiry_iso, item_id)


def index_keys(item: InventoryItem) -> list[Key]:
    """Return every index key ``item`` owns."""

    keys = [
        category_key(item.category, item.id),
        space_key(item.space or DEFAULT_SPACE, item.id),
    ]
    if item.category == CATEGORY_FOOD and item.expiry_date is not None:
        keys.append(expiry_key(item.expiry_date.isoformat(), item.id))
    return keys


def add_to_index(op: AtomicOperation, item: InventoryItem) -> AtomicOperation:
    for key in index_keys(item):
        op.set(key, item.id)
    return op


def remove_from_index(op: AtomicOperation, item: InventoryItem) -> AtomicOperation:
    for key in index_keys(item):
        op.delete(key)
    return op


def replace_in_index(
    op: AtomicOperation, old: InventoryItem, new: InventoryItem
) -> AtomicOperation:
    """Remove the keys only ``old`` owns and write every key ``new`` owns."""

    new_keys = set(index_keys(new))
    for key in index_keys(old):
        if key not in new_keys:
            op.delete(key)
    return add_to_index(op, new)

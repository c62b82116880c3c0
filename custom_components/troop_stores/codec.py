"""Conversion between domain records and their stored representation.

Stored values are plain JSON-compatible dicts. Timestamps are ISO-8601 UTC
strings with a trailing ``Z``; calendar dates are ``YYYY-MM-DD``, which keeps
lexicographic order equal to chronological order.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from .const import CATEGORIES, DEFAULT_LOCATION, DEFAULT_SPACE, STATUS_CHECKED_OUT
from .exceptions import StorageError, ValidationError
from .models import (
    DETAILS_BY_CATEGORY,
    CheckOut,
    InventoryItem,
    details_to_dict,
    parse_date,
)
from .stats import Bucket, ComputedStats, empty_stats


def format_datetime(value: datetime) -> str:
    """Return an ISO-8601 UTC timestamp string with 'Z'."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_datetime(value: Any, *, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise StorageError(f"{field_name} is not an ISO-8601 timestamp") from exc
    else:
        raise StorageError(f"{field_name} is missing")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _format_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, list):
        return list(value)
    return value


# -----------------------------
# Items
# -----------------------------


def serialize_item(item: InventoryItem) -> dict[str, Any]:
    """Flatten an item and its details payload into a storable dict.

    Absent category fields are omitted rather than stored as null.
    """

    data: dict[str, Any] = {
        "id": item.id,
        "name": item.name,
        "category": item.category,
        "space": item.space,
        "quantity": int(item.quantity),
        "min_threshold": int(item.min_threshold),
        "location": item.location,
        "added_date": format_datetime(item.added_date),
        "last_updated": format_datetime(item.last_updated),
    }
    if item.notes is not None:
        data["notes"] = item.notes
    if item.quantity_needs_repair is not None:
        data["quantity_needs_repair"] = int(item.quantity_needs_repair)
    for name, value in details_to_dict(item.details).items():
        if value is not None:
            data[name] = _format_value(value)
    return data


def deserialize_item(data: dict[str, Any]) -> InventoryItem:
    """Rebuild an item, choosing the details shape from ``category``."""

    if not isinstance(data, dict):
        raise StorageError("stored item is not a mapping")
    category = data.get("category")
    if category not in CATEGORIES:
        raise StorageError(f"stored item has unknown category: {category!r}")

    details_cls = DETAILS_BY_CATEGORY[category]
    details_values: dict[str, Any] = {}
    for name in details_cls.__dataclass_fields__:
        if data.get(name) is None:
            continue
        value = data[name]
        if name == "expiry_date":
            try:
                value = parse_date(value, field_name=name)
            except ValidationError as exc:
                raise StorageError(f"stored item has invalid {name}") from exc
        elif isinstance(value, list):
            value = list(value)
        details_values[name] = value
    try:
        details = details_cls(**details_values)
    except TypeError as exc:
        raise StorageError(f"stored {category} item is missing required fields") from exc

    try:
        return InventoryItem(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            category=category,
            details=details,
            space=data.get("space") or DEFAULT_SPACE,
            quantity=int(data.get("quantity", 0)),
            min_threshold=int(data.get("min_threshold", 0)),
            location=data.get("location") or DEFAULT_LOCATION,
            notes=data.get("notes"),
            quantity_needs_repair=(
                int(data["quantity_needs_repair"])
                if data.get("quantity_needs_repair") is not None
                else None
            ),
            added_date=parse_datetime(data.get("added_date"), field_name="added_date"),
            last_updated=parse_datetime(data.get("last_updated"), field_name="last_updated"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise StorageError("stored item is malformed") from exc


# -----------------------------
# Loans
# -----------------------------


def serialize_checkout(checkout: CheckOut) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": checkout.id,
        "item_id": checkout.item_id,
        "item_name": checkout.item_name,
        "borrower": checkout.borrower,
        "quantity": int(checkout.quantity),
        "check_out_date": format_datetime(checkout.check_out_date),
        "expected_return_date": checkout.expected_return_date.isoformat(),
        "status": checkout.status,
    }
    if checkout.actual_return_date is not None:
        data["actual_return_date"] = format_datetime(checkout.actual_return_date)
    if checkout.notes is not None:
        data["notes"] = checkout.notes
    return data


def deserialize_checkout(data: dict[str, Any]) -> CheckOut:
    if not isinstance(data, dict):
        raise StorageError("stored checkout is not a mapping")
    try:
        expected = parse_date(data.get("expected_return_date"), field_name="expected_return_date")
        actual_raw = data.get("actual_return_date")
        return CheckOut(
            id=str(data["id"]),
            item_id=str(data["item_id"]),
            item_name=str(data.get("item_name", "")),
            borrower=str(data.get("borrower", "")),
            quantity=int(data["quantity"]),
            check_out_date=parse_datetime(data.get("check_out_date"), field_name="check_out_date"),
            expected_return_date=expected,
            actual_return_date=(
                parse_datetime(actual_raw, field_name="actual_return_date") if actual_raw else None
            ),
            status=data.get("status") or STATUS_CHECKED_OUT,
            notes=data.get("notes"),
        )
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise StorageError("stored checkout is malformed") from exc


# -----------------------------
# Stats
# -----------------------------


def _serialize_buckets(buckets: dict[str, Bucket]) -> dict[str, dict[str, int]]:
    return {
        name: {"count": bucket.count, "quantity": bucket.quantity}
        for name, bucket in buckets.items()
    }


def _deserialize_buckets(raw: Any, defaults: dict[str, Bucket]) -> dict[str, Bucket]:
    result = dict(defaults)
    if isinstance(raw, dict):
        for name, bucket in raw.items():
            if isinstance(bucket, dict):
                result[str(name)] = Bucket(
                    count=int(bucket.get("count", 0)), quantity=int(bucket.get("quantity", 0))
                )
    return result


def serialize_stats(stats: ComputedStats) -> dict[str, Any]:
    return {
        "total_items": stats.total_items,
        "total_quantity": stats.total_quantity,
        "category_breakdown": _serialize_buckets(stats.category_breakdown),
        "space_breakdown": _serialize_buckets(stats.space_breakdown),
        "low_stock_items": stats.low_stock_items,
        "needs_repair_items": stats.needs_repair_items,
        "active_loans_count": stats.active_loans_count,
    }


def deserialize_stats(data: dict[str, Any]) -> ComputedStats:
    """Rebuild a snapshot; buckets missing from older snapshots read as zero."""

    if not isinstance(data, dict):
        raise StorageError("stored stats snapshot is not a mapping")
    empty = empty_stats()
    try:
        return ComputedStats(
            total_items=int(data.get("total_items", 0)),
            total_quantity=int(data.get("total_quantity", 0)),
            category_breakdown=_deserialize_buckets(
                data.get("category_breakdown"), empty.category_breakdown
            ),
            space_breakdown=_deserialize_buckets(
                data.get("space_breakdown"), empty.space_breakdown
            ),
            low_stock_items=int(data.get("low_stock_items", 0)),
            needs_repair_items=int(data.get("needs_repair_items", 0)),
            active_loans_count=int(data.get("active_loans_count", 0)),
        )
    except (TypeError, ValueError) as exc:
        raise StorageError("stored stats snapshot is malformed") from exc

"""Typed models and validation helpers for Troop Stores.

This module defines the persisted shapes for inventory items and loans, along
with lightweight input schemas for create/update operations. Items are a
tagged union keyed by ``category``: one ``InventoryItem`` carries the shared
base fields and a category-specific ``details`` payload.

The intent is to keep these models framework-agnostic and free of I/O. Higher
layers (repository, services, storage) are expected to compose these helpers.
"""

from __future__ import annotations

import unicodedata
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, date, datetime, timedelta
from typing import Any, Final, TypedDict

from .const import (
    BORROWER_MAX_LENGTH,
    CATEGORIES,
    CATEGORY_CAMPING_TOOLS,
    CATEGORY_COOKING,
    CATEGORY_FIRST_AID,
    CATEGORY_FOOD,
    CATEGORY_GAMES,
    CATEGORY_TENT,
    CONDITION_NEEDS_REPAIR,
    CONDITIONS,
    DEFAULT_LOCATION,
    DEFAULT_SPACE,
    NAME_MAX_LENGTH,
    NOTES_MAX_LENGTH,
    SPACES,
    STATUS_CHECKED_OUT,
    STATUS_OVERDUE,
    STATUS_RETURNED,
)
from .exceptions import ValidationError

TENT_TYPES: Final = frozenset({"dome", "tunnel", "patrol", "ridge", "bell", "other"})
EQUIPMENT_TYPES: Final = frozenset(
    {"stove", "pots", "pans", "utensils", "cooler", "water-container", "other"}
)
FOOD_TYPES: Final = frozenset({"canned", "dried", "packaged", "fresh", "frozen"})
STORAGE_REQUIREMENTS: Final = frozenset({"frozen", "refrigerated", "cool-dry", "room-temp"})
TOOL_TYPES: Final = frozenset(
    {"axe", "saw", "knife", "shovel", "rope", "hammer", "multi-tool", "other"}
)
GAME_TYPES: Final = frozenset(
    {"board-game", "card-game", "outdoor-game", "sports", "puzzle", "other"}
)
FIRST_AID_TYPES: Final = frozenset({"bandages", "medication", "equipment", "kit", "other"})


# -----------------------------
# Category details
# -----------------------------


@dataclass
class TentDetails:
    tent_type: str | None = None
    capacity: int | None = None
    size: str | None = None
    condition: str | None = None
    brand: str | None = None
    year_purchased: int | None = None


@dataclass
class CookingDetails:
    equipment_type: str | None = None
    material: str | None = None
    fuel_type: str | None = None
    capacity: str | None = None
    condition: str | None = None


@dataclass
class FoodDetails:
    """Food carries the only required category field: its expiry date."""

    expiry_date: date
    food_type: str | None = None
    storage_requirements: str | None = None
    allergens: list[str] | None = None
    weight: str | None = None
    servings: int | None = None


@dataclass
class CampingToolDetails:
    tool_type: str | None = None
    condition: str | None = None
    material: str | None = None
    brand: str | None = None
    year_purchased: int | None = None


@dataclass
class GamesDetails:
    game_type: str | None = None
    condition: str | None = None
    player_count: str | None = None
    age_range: str | None = None
    brand: str | None = None
    year_purchased: int | None = None


@dataclass
class FirstAidDetails:
    item_type: str | None = None
    expiry_date: date | None = None


ItemDetails = (
    TentDetails
    | CookingDetails
    | FoodDetails
    | CampingToolDetails
    | GamesDetails
    | FirstAidDetails
)

DETAILS_BY_CATEGORY: Final[dict[str, type]] = {
    CATEGORY_TENT: TentDetails,
    CATEGORY_COOKING: CookingDetails,
    CATEGORY_FOOD: FoodDetails,
    CATEGORY_CAMPING_TOOLS: CampingToolDetails,
    CATEGORY_GAMES: GamesDetails,
    CATEGORY_FIRST_AID: FirstAidDetails,
}

# Value rule per detail field: a frozenset is an enumeration, otherwise a type
_DETAIL_RULES: Final[dict[str, dict[str, object]]] = {
    CATEGORY_TENT: {
        "tent_type": TENT_TYPES,
        "capacity": int,
        "size": str,
        "condition": CONDITIONS,
        "brand": str,
        "year_purchased": int,
    },
    CATEGORY_COOKING: {
        "equipment_type": EQUIPMENT_TYPES,
        "material": str,
        "fuel_type": str,
        "capacity": str,
        "condition": CONDITIONS,
    },
    CATEGORY_FOOD: {
        "expiry_date": date,
        "food_type": FOOD_TYPES,
        "storage_requirements": STORAGE_REQUIREMENTS,
        "allergens": list,
        "weight": str,
        "servings": int,
    },
    CATEGORY_CAMPING_TOOLS: {
        "tool_type": TOOL_TYPES,
        "condition": CONDITIONS,
        "material": str,
        "brand": str,
        "year_purchased": int,
    },
    CATEGORY_GAMES: {
        "game_type": GAME_TYPES,
        "condition": CONDITIONS,
        "player_count": str,
        "age_range": str,
        "brand": str,
        "year_purchased": int,
    },
    CATEGORY_FIRST_AID: {
        "item_type": FIRST_AID_TYPES,
        "expiry_date": date,
    },
}

BASE_FIELDS: Final[frozenset[str]] = frozenset(
    {"name", "space", "quantity", "min_threshold", "location", "notes", "quantity_needs_repair"}
)
SERVER_FIELDS: Final[frozenset[str]] = frozenset({"id", "added_date", "last_updated"})


# -----------------------------
# Persisted shapes
# -----------------------------


@dataclass
class InventoryItem:
    """Persisted shape for an inventory item."""

    id: str
    name: str
    category: str
    details: ItemDetails
    space: str = DEFAULT_SPACE
    quantity: int = 0
    min_threshold: int = 0
    location: str = DEFAULT_LOCATION
    notes: str | None = None
    quantity_needs_repair: int | None = None
    added_date: datetime = field(default_factory=lambda: utc_now())
    last_updated: datetime = field(default_factory=lambda: utc_now())

    @property
    def condition(self) -> str | None:
        return getattr(self.details, "condition", None)

    @property
    def expiry_date(self) -> date | None:
        return getattr(self.details, "expiry_date", None)

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.min_threshold

    @property
    def needs_repair(self) -> bool:
        """An item needs repair when its condition says so or some units are flagged."""

        if self.condition == CONDITION_NEEDS_REPAIR:
            return True
        return (self.quantity_needs_repair or 0) > 0


@dataclass
class CheckOut:
    """Persisted shape for a loan of some units of an item."""

    id: str
    item_id: str
    item_name: str
    borrower: str
    quantity: int
    check_out_date: datetime
    expected_return_date: date
    actual_return_date: datetime | None = None
    status: str = STATUS_CHECKED_OUT
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status != STATUS_RETURNED


class ItemCreate(TypedDict, total=False):
    """Creation input for an item.

    ``name`` and ``category`` are required; food also requires ``expiry_date``.
    Category-specific fields (e.g. ``tent_type``, ``condition``) are passed
    alongside the base fields.
    """

    name: str
    category: str
    space: str
    quantity: int
    min_threshold: int
    location: str
    notes: str | None
    quantity_needs_repair: int | None


class ItemUpdate(TypedDict, total=False):
    """Partial update for an item. ``category`` may only repeat the current value."""

    name: str
    category: str
    space: str
    quantity: int
    min_threshold: int
    location: str
    notes: str | None
    quantity_needs_repair: int | None


class CheckOutCreate(TypedDict, total=False):
    """Creation input for a loan."""

    item_id: str
    borrower: str
    quantity: int
    expected_return_date: str | date
    notes: str | None


class StocktakeUpdate(TypedDict, total=False):
    """One correction from a stock-take."""

    id: str
    quantity: int
    condition: str


# -----------------------------
# Utility helpers
# -----------------------------


def utc_now() -> datetime:
    """Return the current UTC time without microseconds."""

    return datetime.now(tz=UTC).replace(microsecond=0)


def new_uuid4_str() -> str:
    """Generate a hyphenated UUID v4 string."""

    return str(uuid.uuid4())


def monotonic_timestamp_after(previous: datetime, now: datetime | None = None) -> datetime:
    """Return a UTC timestamp strictly after ``previous``.

    If the current time is not greater than the previous timestamp (due to second
    resolution), bump by one second to maintain monotonicity.
    """

    current = (now or utc_now()).replace(microsecond=0)
    if current <= previous:
        current = previous.replace(microsecond=0) + timedelta(seconds=1)
    return current


def parse_date(value: Any, *, field_name: str) -> date:
    """Parse a calendar date.

    Accepts ``date``, ``datetime`` (reduced to its UTC date), ``YYYY-MM-DD``
    and full ISO-8601 timestamps such as ``2025-01-01T00:00:00.000Z``.
    """

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a date in 'YYYY-MM-DD' format")
    text = value.strip()
    try:
        if len(text) == len("YYYY-MM-DD"):
            return date.fromisoformat(text)
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be a valid calendar date (YYYY-MM-DD)") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.date()


def normalize_text_for_sort(text: str) -> str:
    """Return a case-insensitive, accent-folded string for lexicographic sorting."""

    if not text:
        return ""
    nfkd = unicodedata.normalize("NFKD", text)
    ascii_text = nfkd.encode("ascii", "ignore").decode("ascii")
    collapsed = " ".join(ascii_text.split())
    return collapsed.casefold()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_name(
    name: Any, *, field_name: str = "name", max_length: int = NAME_MAX_LENGTH
) -> str:
    if not isinstance(name, str) or len(name.strip()) == 0:
        raise ValidationError(f"{field_name} is required and must be a non-empty string")
    trimmed = name.strip()
    if len(trimmed) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters")
    return trimmed


def _validate_non_negative(value: Any, *, field_name: str) -> int:
    if not _is_int(value) or value < 0:
        raise ValidationError(f"{field_name} must be an integer >= 0")
    return value


def _validate_optional_text(
    value: Any, *, field_name: str, max_length: int | None = None
) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    trimmed = value.strip()
    if max_length is not None and len(trimmed) > max_length:
        raise ValidationError(f"{field_name} must be {max_length} characters or fewer")
    return trimmed or None


def validate_category(category: Any) -> str:
    if category not in CATEGORIES:
        raise ValidationError(f"category must be one of: {', '.join(CATEGORIES)}")
    return category


def validate_space(space: Any) -> str:
    if space is None:
        return DEFAULT_SPACE
    if space not in SPACES:
        raise ValidationError(f"space must be one of: {', '.join(SPACES)}")
    return space


def _coerce_detail(category: str, name: str, value: Any) -> Any:
    rules = _DETAIL_RULES[category]
    if name not in rules:
        raise ValidationError(f"unknown field '{name}' for category '{category}'")
    rule = rules[name]
    if value is None:
        if category == CATEGORY_FOOD and name == "expiry_date":
            raise ValidationError("expiry_date is required for food items")
        return None
    if isinstance(rule, frozenset):
        if value not in rule:
            raise ValidationError(f"{name} must be one of: {', '.join(sorted(rule))}")
        return value
    if rule is int:
        return _validate_non_negative(value, field_name=name)
    if rule is date:
        return parse_date(value, field_name=name)
    if rule is list:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValidationError(f"{name} must be a list of strings")
        return [v.strip() for v in value if v.strip()]
    return _validate_optional_text(value, field_name=name)


def build_details(category: str, values: dict[str, Any]) -> ItemDetails:
    """Validate category-specific ``values`` and build the details payload."""

    coerced = {name: _coerce_detail(category, name, value) for name, value in values.items()}
    if category == CATEGORY_FOOD and coerced.get("expiry_date") is None:
        raise ValidationError("expiry_date is required for food items")
    return DETAILS_BY_CATEGORY[category](**coerced)


def details_to_dict(details: ItemDetails) -> dict[str, Any]:
    return {f.name: getattr(details, f.name) for f in fields(details)}


# -----------------------------
# Creation and update helpers
# -----------------------------


def _split_payload(payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    base: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in payload.items():
        if key in BASE_FIELDS:
            base[key] = value
        elif key != "category":
            extra[key] = value
    return base, extra


def _validate_base_fields(base: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "name" in base:
        out["name"] = _validate_name(base["name"])
    if "space" in base:
        out["space"] = validate_space(base["space"])
    if "quantity" in base:
        out["quantity"] = _validate_non_negative(base["quantity"], field_name="quantity")
    if "min_threshold" in base:
        out["min_threshold"] = _validate_non_negative(
            base["min_threshold"], field_name="min_threshold"
        )
    if "location" in base:
        location = _validate_optional_text(base["location"], field_name="location")
        out["location"] = location or DEFAULT_LOCATION
    if "notes" in base:
        out["notes"] = _validate_optional_text(
            base["notes"], field_name="notes", max_length=NOTES_MAX_LENGTH
        )
    if "quantity_needs_repair" in base:
        qnr = base["quantity_needs_repair"]
        out["quantity_needs_repair"] = (
            None if qnr is None else _validate_non_negative(qnr, field_name="quantity_needs_repair")
        )
    return out


def create_item_from_create(
    payload: ItemCreate | dict[str, Any], *, now: datetime | None = None
) -> InventoryItem:
    """Create a validated item from an ItemCreate payload.

    Returns:
        A fully-populated InventoryItem with a server-generated id and timestamps.
    """

    if not isinstance(payload, dict):
        raise ValidationError("item payload must be a mapping")
    if "name" not in payload:
        raise ValidationError("name is required")
    category = validate_category(payload.get("category"))
    base, extra = _split_payload(dict(payload))
    server_keys = sorted(SERVER_FIELDS & extra.keys())
    if server_keys:
        raise ValidationError(f"{server_keys[0]} is assigned by the server")

    fields_ = _validate_base_fields(base)
    details = build_details(category, extra)

    created = now or utc_now()
    return InventoryItem(
        id=new_uuid4_str(),
        name=fields_["name"],
        category=category,
        details=details,
        space=fields_.get("space", DEFAULT_SPACE),
        quantity=fields_.get("quantity", 0),
        min_threshold=fields_.get("min_threshold", 0),
        location=fields_.get("location", DEFAULT_LOCATION),
        notes=fields_.get("notes"),
        quantity_needs_repair=fields_.get("quantity_needs_repair"),
        added_date=created,
        last_updated=created,
    )


def apply_item_update(
    item: InventoryItem, update: ItemUpdate | dict[str, Any], *, now: datetime | None = None
) -> InventoryItem:
    """Merge a partial update onto ``item`` and return a new instance.

    The category is immutable and ``last_updated`` is stamped strictly after
    the previous value.
    """

    if not isinstance(update, dict):
        raise ValidationError("update payload must be a mapping")
    if "category" in update and update["category"] != item.category:
        raise ValidationError("category cannot be changed after creation")
    base, extra = _split_payload(dict(update))
    server_keys = sorted(SERVER_FIELDS & extra.keys())
    if server_keys:
        raise ValidationError(f"{server_keys[0]} cannot be updated")

    fields_ = _validate_base_fields(base)
    details = item.details
    if extra:
        merged = {**details_to_dict(item.details), **extra}
        details = build_details(item.category, merged)

    return replace(
        item,
        **fields_,
        details=details,
        last_updated=monotonic_timestamp_after(item.last_updated, now),
    )


def create_checkout_from_create(
    payload: CheckOutCreate | dict[str, Any],
    item: InventoryItem,
    *,
    now: datetime | None = None,
) -> CheckOut:
    """Validate a loan request against the current item and build the loan.

    - Food items are consumable and cannot be loaned
    - quantity must be between 1 and the item's current quantity
    - expected_return_date must be after today
    """

    if not isinstance(payload, dict):
        raise ValidationError("checkout payload must be a mapping")
    if item.category == CATEGORY_FOOD:
        raise ValidationError("food items cannot be loaned")

    borrower = _validate_name(
        payload.get("borrower"), field_name="borrower", max_length=BORROWER_MAX_LENGTH
    )
    quantity = payload.get("quantity")
    if not _is_int(quantity) or quantity < 1 or quantity > item.quantity:
        raise ValidationError(f"quantity must be between 1 and {item.quantity}")
    notes = _validate_optional_text(
        payload.get("notes"), field_name="notes", max_length=NOTES_MAX_LENGTH
    )

    created = now or utc_now()
    expected = parse_date(payload.get("expected_return_date"), field_name="expected_return_date")
    if expected <= created.astimezone(UTC).date():
        raise ValidationError("expected_return_date must be a valid date in the future")

    return CheckOut(
        id=new_uuid4_str(),
        item_id=item.id,
        item_name=item.name,
        borrower=borrower,
        quantity=quantity,
        check_out_date=created,
        expected_return_date=expected,
        status=STATUS_CHECKED_OUT,
        notes=notes,
    )


def display_status(checkout: CheckOut, today: date | None = None) -> str:
    """Return the status to show for a loan; ``overdue`` is derived, never stored."""

    if checkout.status == STATUS_RETURNED:
        return STATUS_RETURNED
    current = today or utc_now().date()
    if current > checkout.expected_return_date:
        return STATUS_OVERDUE
    return STATUS_CHECKED_OUT


# -----------------------------
# Filtering and sorting helpers
# -----------------------------


def item_matches_query(item: InventoryItem, q: str) -> bool:
    """Case-insensitive match on name, category and notes."""

    if not q:
        return True
    needle = q.casefold()
    if needle in item.name.casefold():
        return True
    if needle in item.category.casefold():
        return True
    return needle in (item.notes or "").casefold()


def sort_items_by_name(items: Iterable[InventoryItem]) -> list[InventoryItem]:
    """Sort by accent-folded name with id as the tie-break."""

    result = list(items)
    result.sort(key=lambda x: (normalize_text_for_sort(x.name), x.id))
    return result


def expiry_sort_key(item: InventoryItem) -> tuple[str, str]:
    """Sort key matching the expiry index order: ISO date, then id."""

    expiry = item.expiry_date
    return (expiry.isoformat() if expiry else "", item.id)

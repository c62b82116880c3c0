"""Service registration and handlers for Troop Stores.

Exposes Home Assistant services under the ``troop_stores`` domain to manage
items, loans, the necker counter and store maintenance. Input is validated
with voluptuous and operations are delegated to the ``InventoryRepository``.
Each successful operation is recorded in the activity log.

Errors from the domain layer (validation, not found, conflicts) are logged
with contextual fields and do not raise stack traces. Persistence happens
through the key-value store's change listener, not here.
"""

from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol
from homeassistant.core import HomeAssistant, ServiceCall

from .activity import ActivityLog
from .const import CATEGORIES, DOMAIN, LOAN_RETENTION_DAYS, SPACES
from .exceptions import ConflictError, NotFoundError, ValidationError
from .kv import KvStore
from .repository import InventoryRepository

LOGGER = logging.getLogger(__name__)

SYSTEM_USER = "system"


# -----------------------------
# Validation schemas
# -----------------------------

_BASE_ITEM_FIELDS = {
    vol.Optional("space"): vol.In(SPACES),
    vol.Optional("quantity"): int,
    vol.Optional("min_threshold"): int,
    vol.Optional("location"): vol.Any(str, None),
    vol.Optional("notes"): vol.Any(str, None),
    vol.Optional("quantity_needs_repair"): vol.Any(int, None),
}

# Category-specific fields pass through and are validated by the models
SCHEMA_ITEM_CREATE = vol.Schema(
    {
        vol.Required("name"): str,
        vol.Required("category"): vol.In(CATEGORIES),
        **_BASE_ITEM_FIELDS,
    },
    extra=vol.ALLOW_EXTRA,
)

SCHEMA_ITEM_UPDATE = vol.Schema(
    {
        vol.Required("item_id"): str,
        vol.Optional("name"): str,
        vol.Optional("category"): vol.In(CATEGORIES),
        **_BASE_ITEM_FIELDS,
    },
    extra=vol.ALLOW_EXTRA,
)

SCHEMA_ITEM_DELETE = vol.Schema({vol.Required("item_id"): str})

SCHEMA_CHECKOUT_CREATE = vol.Schema(
    {
        vol.Required("item_id"): str,
        vol.Required("borrower"): str,
        vol.Required("quantity"): int,
        vol.Required("expected_return_date"): str,
        vol.Optional("notes"): vol.Any(str, None),
    }
)

SCHEMA_CHECKOUT_RETURN = vol.Schema({vol.Required("checkout_id"): str})

SCHEMA_CHECKOUT_DELETE = vol.Schema({vol.Required("checkout_id"): str})

SCHEMA_NECKERS_ADJUST = vol.Schema({vol.Required("delta"): int})

SCHEMA_NECKERS_SET = vol.Schema({vol.Required("value"): int})

SCHEMA_STOCKTAKE = vol.Schema(
    {
        vol.Required("updates"): vol.All(
            [
                vol.Schema(
                    {
                        vol.Required("id"): str,
                        vol.Required("quantity"): int,
                        vol.Optional("condition"): str,
                    }
                )
            ],
            vol.Length(min=1),
        )
    }
)

SCHEMA_ITEMS_IMPORT = vol.Schema(
    {vol.Required("items"): vol.All([vol.Schema({}, extra=vol.ALLOW_EXTRA)], vol.Length(min=1))}
)

SCHEMA_REBUILD_INDEXES = vol.Schema({})

SCHEMA_CLEAN_UP = vol.Schema(
    {vol.Optional("retention_days", default=LOAN_RETENTION_DAYS): vol.All(int, vol.Range(min=0))}
)

_DOMAIN_ERRORS = (vol.Invalid, ValidationError, NotFoundError, ConflictError)


# -----------------------------
# Internal helpers
# -----------------------------


def _get_kv(hass: HomeAssistant) -> KvStore:
    bucket = hass.data.setdefault(DOMAIN, {})
    kv = bucket.get("kv")
    if kv is None:
        kv = KvStore()
        bucket["kv"] = kv
    return kv


def _get_repo(hass: HomeAssistant) -> InventoryRepository:
    bucket = hass.data.setdefault(DOMAIN, {})
    repo = bucket.get("repository")
    if repo is None:
        repo = InventoryRepository(_get_kv(hass))
        bucket["repository"] = repo
    return repo


def _get_activity(hass: HomeAssistant) -> ActivityLog:
    bucket = hass.data.setdefault(DOMAIN, {})
    activity = bucket.get("activity")
    if activity is None:
        activity = ActivityLog(_get_kv(hass))
        bucket["activity"] = activity
    return activity


def _log_domain_error(op: str, context: dict[str, Any], exc: Exception) -> None:
    level = logging.WARNING
    if isinstance(exc, ConflictError):
        level = logging.ERROR
    LOGGER.log(level, str(exc), extra={"domain": DOMAIN, "op": op, **context})


def _username(call: ServiceCall) -> str:
    context = getattr(call, "context", None)
    return getattr(context, "user_id", None) or SYSTEM_USER


# -----------------------------
# Service handlers (exported for tests)
# -----------------------------


async def service_item_create(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "item_create"
    try:
        payload = SCHEMA_ITEM_CREATE(data)
        item = await _get_repo(hass).create_item(payload)
        await _get_activity(hass).log(
            "item.created", username=username, resource=item.name, resource_id=item.id
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"item_name": data.get("name")}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_item_update(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "item_update"
    item_id = data.get("item_id")
    try:
        payload = SCHEMA_ITEM_UPDATE(data)
        update = {k: v for k, v in payload.items() if k != "item_id"}
        item = await _get_repo(hass).update_item(payload["item_id"], update)
        if item is None:
            raise NotFoundError(f"item {payload['item_id']} not found")
        await _get_activity(hass).log(
            "item.updated",
            username=username,
            resource=item.name,
            resource_id=item.id,
            details=", ".join(sorted(update)),
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"item_id": item_id}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_item_delete(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "item_delete"
    item_id = data.get("item_id")
    try:
        payload = SCHEMA_ITEM_DELETE(data)
        repo = _get_repo(hass)
        existing = await repo.get_item_by_id(payload["item_id"])
        if existing is None or not await repo.delete_item(payload["item_id"]):
            raise NotFoundError(f"item {payload['item_id']} not found")
        await _get_activity(hass).log(
            "item.deleted", username=username, resource=existing.name, resource_id=existing.id
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"item_id": item_id}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_checkout_create(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "checkout_create"
    try:
        payload = SCHEMA_CHECKOUT_CREATE(data)
        checkout = await _get_repo(hass).create_checkout(payload)
        await _get_activity(hass).log(
            "loan.created",
            username=username,
            resource=checkout.item_name,
            resource_id=checkout.id,
            details=f"{checkout.quantity} loaned to {checkout.borrower}",
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"item_id": data.get("item_id")}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_checkout_return(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "checkout_return"
    checkout_id = data.get("checkout_id")
    try:
        payload = SCHEMA_CHECKOUT_RETURN(data)
        checkout = await _get_repo(hass).return_checkout(payload["checkout_id"])
        if checkout is None:
            raise NotFoundError(f"checkout {payload['checkout_id']} not found")
        await _get_activity(hass).log(
            "loan.returned",
            username=username,
            resource=checkout.item_name,
            resource_id=checkout.id,
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"checkout_id": checkout_id}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_checkout_delete(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "checkout_delete"
    checkout_id = data.get("checkout_id")
    try:
        payload = SCHEMA_CHECKOUT_DELETE(data)
        repo = _get_repo(hass)
        existing = await repo.get_checkout_by_id(payload["checkout_id"])
        if existing is None or not await repo.delete_checkout(payload["checkout_id"]):
            raise NotFoundError(f"checkout {payload['checkout_id']} not found")
        await _get_activity(hass).log(
            "loan.cancelled",
            username=username,
            resource=existing.item_name,
            resource_id=existing.id,
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"checkout_id": checkout_id}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_neckers_adjust(hass: HomeAssistant, data: dict) -> None:
    op = "neckers_adjust"
    try:
        payload = SCHEMA_NECKERS_ADJUST(data)
        value = await _get_repo(hass).adjust_necker_count(payload["delta"])
        LOGGER.debug(
            "Necker count adjusted",
            extra={"domain": DOMAIN, "op": op, "delta": payload["delta"], "value": value},
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"delta": data.get("delta")}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_neckers_set(hass: HomeAssistant, data: dict) -> None:
    op = "neckers_set"
    try:
        payload = SCHEMA_NECKERS_SET(data)
        await _get_repo(hass).set_necker_count(payload["value"])
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"value": data.get("value")}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_stocktake(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "stocktake"
    try:
        payload = SCHEMA_STOCKTAKE(data)
        result = await _get_repo(hass).apply_stocktake(payload["updates"])
        for error in result["errors"]:
            LOGGER.warning(error, extra={"domain": DOMAIN, "op": op})
        details = f"Stock-take applied {result['applied']} correction(s)"
        if result["errors"]:
            details += f" ({len(result['errors'])} error(s))"
        await _get_activity(hass).log("stocktake.completed", username=username, details=details)
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_items_import(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "items_import"
    try:
        payload = SCHEMA_ITEMS_IMPORT(data)
        result = await _get_repo(hass).import_items(payload["items"])
        for error in result["errors"]:
            LOGGER.warning(
                error["error"],
                extra={"domain": DOMAIN, "op": op, "row": error["row"], "item_name": error["name"]},
            )
        details = f"Imported {len(result['created'])} item(s)"
        if result["errors"]:
            details += f" ({len(result['errors'])} error(s))"
        await _get_activity(hass).log("items.imported", username=username, details=details)
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_rebuild_indexes(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "rebuild_indexes"
    try:
        SCHEMA_REBUILD_INDEXES(data)
        report = await _get_repo(hass).rebuild_indexes()
        await _get_activity(hass).log(
            "indexes.rebuilt",
            username=username,
            details=(
                f"{report['items']} items, {report['index_entries']} index entries, "
                f"{report['active_loans']} active loans"
            ),
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


async def service_clean_up(
    hass: HomeAssistant, data: dict, *, username: str = SYSTEM_USER
) -> None:
    op = "clean_up"
    try:
        payload = SCHEMA_CLEAN_UP(data)
        report = await _get_repo(hass).clean_up(payload["retention_days"])
        await _get_activity(hass).log(
            "db.cleaned",
            username=username,
            details=(
                f"{report['orphaned_index_entries']} orphaned index entries, "
                f"{report['old_returned_loans']} old loan records"
            ),
        )
    except _DOMAIN_ERRORS as exc:
        _log_domain_error(op, {"retention_days": data.get("retention_days")}, exc)
    except Exception:  # pragma: no cover
        LOGGER.error("Unhandled service error", exc_info=True, extra={"domain": DOMAIN, "op": op})


# -----------------------------
# Registration
# -----------------------------

_SERVICES: dict[str, tuple[Any, vol.Schema, bool]] = {
    "item_create": (service_item_create, SCHEMA_ITEM_CREATE, True),
    "item_update": (service_item_update, SCHEMA_ITEM_UPDATE, True),
    "item_delete": (service_item_delete, SCHEMA_ITEM_DELETE, True),
    "checkout_create": (service_checkout_create, SCHEMA_CHECKOUT_CREATE, True),
    "checkout_return": (service_checkout_return, SCHEMA_CHECKOUT_RETURN, True),
    "checkout_delete": (service_checkout_delete, SCHEMA_CHECKOUT_DELETE, True),
    "neckers_adjust": (service_neckers_adjust, SCHEMA_NECKERS_ADJUST, False),
    "neckers_set": (service_neckers_set, SCHEMA_NECKERS_SET, False),
    "stocktake": (service_stocktake, SCHEMA_STOCKTAKE, True),
    "items_import": (service_items_import, SCHEMA_ITEMS_IMPORT, True),
    "rebuild_indexes": (service_rebuild_indexes, SCHEMA_REBUILD_INDEXES, True),
    "clean_up": (service_clean_up, SCHEMA_CLEAN_UP, True),
}


def _make_handler(hass: HomeAssistant, handler: Any, audited: bool) -> Any:
    if audited:
        return lambda call: handler(hass, dict(call.data), username=_username(call))
    return lambda call: handler(hass, dict(call.data))


def setup(hass: HomeAssistant) -> None:
    """Register troop_stores.* services on Home Assistant."""

    # Idempotent: avoid duplicate registration across reloads
    bucket = hass.data.setdefault(DOMAIN, {})
    if bucket.get("services_registered"):
        return

    # Home Assistant will validate inputs according to these schemas before
    # invoking the handler. Handlers are exported above for testability.
    for name, (handler, schema, audited) in _SERVICES.items():
        hass.services.async_register(DOMAIN, name, _make_handler(hass, handler, audited), schema)

    bucket["services_registered"] = True


def teardown(hass: HomeAssistant) -> None:
    """Remove the services registered by ``setup``."""

    bucket = hass.data.get(DOMAIN) or {}
    if not bucket.pop("services_registered", False):
        return
    for name in _SERVICES:
        hass.services.async_remove(DOMAIN, name)

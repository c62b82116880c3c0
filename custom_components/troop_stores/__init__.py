"""Troop Stores integration bootstrap.

This module initializes the integration, loads the persisted key-value
dataset, and sets up the core data structures in hass.data:

    hass.data[DOMAIN] = {
        "store": DomainStore,
        "kv": KvStore,
        "repository": InventoryRepository,
        "activity": ActivityLog,
        ...
    }
"""

from __future__ import annotations

import logging
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryNotReady
from homeassistant.helpers import config_validation as cv

from . import services as services_mod
from .activity import ActivityLog
from .const import DOMAIN, STATS_KEY
from .exceptions import StorageError
from .kv import KvStore
from .repository import InventoryRepository
from .storage import (
    CURRENT_SCHEMA_VERSION,
    STORAGE_KEY,
    DomainStore,
    async_persist_immediate,
    async_request_persist,
)

STORAGE_VERSION = CURRENT_SCHEMA_VERSION
LOGGER = logging.getLogger(__name__)


# This integration is config-entry only; no YAML configuration is accepted.
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


async def async_setup(hass: HomeAssistant, _config: dict) -> bool:
    """Set up the Troop Stores domain at Home Assistant startup.

    Initializes an empty domain bucket in hass.data with no side effects.
    """
    if DOMAIN not in hass.data:
        hass.data[DOMAIN] = {}
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Troop Stores from a config entry."""
    if DOMAIN not in hass.data:
        hass.data[DOMAIN] = {}
    bucket = hass.data[DOMAIN]

    store = DomainStore(hass, key=STORAGE_KEY, version=STORAGE_VERSION)
    bucket["store"] = store

    try:
        payload = await store.async_load()
        _validate_storage_payload(payload, schema_version=store.schema_version)
    except StorageError as exc:
        LOGGER.error(
            "Storage validation failed during setup",
            extra={"domain": DOMAIN, "op": "setup_storage", "schema_version": store.schema_version},
            exc_info=True,
        )
        raise ConfigEntryNotReady("storage validation failed") from exc

    kv = KvStore.from_state(payload)
    _log_storage_health(kv, schema_version=store.schema_version)

    async def _on_kv_change() -> None:
        await async_request_persist(hass)

    bucket["kv"] = kv
    bucket["kv_unsubscribe"] = kv.add_listener(_on_kv_change)
    bucket["repository"] = InventoryRepository(kv)
    bucket["activity"] = ActivityLog(kv)

    # First start, or a dataset persisted before the snapshot existed
    if len(kv) > 0 and await kv.get(STATS_KEY) is None:
        await bucket["repository"].rebuild_indexes()

    services_mod.setup(hass)

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry.

    Flushes pending writes, removes the services and drops the change
    listener so a reload starts from the persisted dataset.
    """

    bucket = hass.data.get(DOMAIN) or {}

    unsubscribe = bucket.pop("kv_unsubscribe", None)
    if unsubscribe is not None:
        unsubscribe()

    # Ensure any pending changes are persisted before unload
    try:
        await async_persist_immediate(hass)
    except StorageError:
        LOGGER.warning(
            "Failed to persist during unload",
            extra={"domain": DOMAIN, "op": "unload"},
            exc_info=True,
        )

    services_mod.teardown(hass)

    for key in ("repository", "activity", "kv", "persist_task"):
        bucket.pop(key, None)

    return True


def _validate_storage_payload(payload: dict[str, Any], *, schema_version: int) -> None:
    """Validate loaded storage payload shape and version."""

    if not isinstance(payload, dict):
        raise StorageError("storage payload is not a dict")

    if int(payload.get("schema_version", -1)) != int(schema_version):
        raise StorageError("storage payload schema_version mismatch")

    if not isinstance(payload.get("entries"), list):
        raise StorageError("storage payload missing required entries list")


def _log_storage_health(kv: KvStore, *, schema_version: int) -> None:
    """Log storage health summary after load."""

    entry_count = len(kv)
    level = logging.WARNING if entry_count == 0 else logging.DEBUG
    LOGGER.log(
        level,
        "Storage health: schema_version=%s entries=%s",
        schema_version,
        entry_count,
        extra={
            "domain": DOMAIN,
            "op": "setup_storage_health",
            "schema_version": schema_version,
            "entries_count": entry_count,
        },
    )

"""Persistence of the key-value dataset through Home Assistant's Store.

On disk (schema 1):
    {
        "schema_version": int,
        "versionstamp": int,
        "entries": [[key, value, versionstamp, expires_at], ...],
    }

A missing file loads as an empty dataset. Older envelopes are migrated
forward and written back before use. Every committed write in the key-value
backend ends in ``async_request_persist``; the save itself is debounced so a
burst of commits costs one write.
"""

from __future__ import annotations

import asyncio
import logging
import time
from copy import deepcopy
from typing import Any, Final

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from . import migrations
from .const import DOMAIN
from .exceptions import StorageError

_LOGGER = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION: Final[int] = 1

STORAGE_KEY: Final[str] = "troop_stores_kv"

# Seconds to wait for further writes before saving
PERSIST_DEBOUNCE_DELAY: Final[float] = 1.0


def _empty_payload() -> dict[str, Any]:
    return {"schema_version": CURRENT_SCHEMA_VERSION, "versionstamp": 0, "entries": []}


def _get_persist_lock(hass: HomeAssistant) -> asyncio.Lock:
    bucket = hass.data.setdefault(DOMAIN, {})
    return bucket.setdefault("persist_lock", asyncio.Lock())


class DomainStore:
    """Versioned envelope around the integration's ``Store`` file.

    Lives at ``hass.data[DOMAIN]["store"]``.
    """

    def __init__(
        self, hass: HomeAssistant, *, key: str = STORAGE_KEY, version: int = CURRENT_SCHEMA_VERSION
    ) -> None:
        self._hass = hass
        self._store = Store(hass, version, key)
        self._schema_version = version
        self._key = key

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @property
    def key(self) -> str:
        return self._key

    def _migrate_context(self, from_version: int | None) -> dict[str, Any]:
        return {
            "domain": DOMAIN,
            "op": "migrate",
            "from_version": from_version,
            "to_version": self._schema_version,
            "storage_key": self._key,
        }

    async def async_load(self) -> dict[str, Any]:
        """Return the stored envelope at the current schema (a private copy)."""

        raw = await self._store.async_load()
        if raw is None:
            return _empty_payload()
        return deepcopy(await self.async_migrate_if_needed(raw))

    async def async_save(self, data: dict[str, Any]) -> None:
        payload = deepcopy(data) if isinstance(data, dict) else {}
        payload["schema_version"] = self._schema_version
        payload.setdefault("versionstamp", 0)
        payload.setdefault("entries", [])
        await self._store.async_save(payload)

    async def async_migrate_if_needed(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Bring ``raw`` up to the current schema, saving it back when it changed.

        Raises ``StorageError`` for a non-dict payload, a payload written by a
        newer schema, or a failing migration step. The file is never
        overwritten in those cases.
        """

        if not isinstance(raw, dict):
            _LOGGER.error(
                "Corrupted storage payload: expected dict, got %s",
                type(raw).__name__,
                extra=self._migrate_context(None),
            )
            raise StorageError("corrupted storage payload: not a dict")

        from_version = int(raw.get("schema_version", 0))
        to_version = self._schema_version
        if from_version == to_version:
            return {**_empty_payload(), **raw}

        if from_version > to_version:
            _LOGGER.error(
                "Storage payload is newer than this integration",
                extra=self._migrate_context(from_version),
            )
            raise StorageError(
                f"storage schema {from_version} is newer than supported schema {to_version}"
            )

        try:
            migrated = migrations.migrate(raw, from_version=from_version, to_version=to_version)
        except Exception as exc:
            _LOGGER.error(
                "Storage migration failed",
                extra=self._migrate_context(from_version),
                exc_info=True,
            )
            raise StorageError("storage migration failed") from exc
        migrated = {**_empty_payload(), **migrated, "schema_version": to_version}

        await self._store.async_save(migrated)
        _LOGGER.info("Migrated storage payload", extra=self._migrate_context(from_version))
        return migrated


async def async_persist_kv(hass: HomeAssistant) -> None:
    """Save the backend's exported state; one save at a time per hass.

    Raises ``StorageError`` when setup has not populated the bucket or the
    save fails.
    """

    async with _get_persist_lock(hass):
        bucket = hass.data.get(DOMAIN) or {}
        store = bucket.get("store")
        kv = bucket.get("kv")
        if store is None:
            raise StorageError("storage manager not initialized; run integration setup")
        if kv is None:
            raise StorageError("key-value store not initialized; run integration setup")

        started = time.monotonic()
        payload = kv.export_state()
        _LOGGER.debug(
            "Persisting key-value state",
            extra={"domain": DOMAIN, "op": "persist_start", "entries": len(payload["entries"])},
        )
        try:
            await store.async_save(payload)
        except Exception as exc:
            _LOGGER.error(
                "Failed to persist key-value state",
                extra={
                    "domain": DOMAIN,
                    "op": "persist_failed",
                    "elapsed_ms": int((time.monotonic() - started) * 1000),
                },
                exc_info=True,
            )
            raise StorageError("failed to persist key-value state") from exc

        _LOGGER.debug(
            "Key-value state persisted",
            extra={
                "domain": DOMAIN,
                "op": "persist_complete",
                "elapsed_ms": int((time.monotonic() - started) * 1000),
            },
        )


def _cancel_pending_persist(bucket: dict[str, Any], *, op: str) -> None:
    task = bucket.get("persist_task")
    if task is not None and not task.done():
        task.cancel()
        _LOGGER.debug("Cancelled pending persist task", extra={"domain": DOMAIN, "op": op})


async def async_request_persist(hass: HomeAssistant) -> None:
    """Schedule a save after ``PERSIST_DEBOUNCE_DELAY``, replacing any pending one."""

    bucket = hass.data.setdefault(DOMAIN, {})
    _cancel_pending_persist(bucket, op="persist_debounce_cancel")

    async def _delayed_persist() -> None:
        try:
            await asyncio.sleep(PERSIST_DEBOUNCE_DELAY)
            await async_persist_kv(hass)
        except asyncio.CancelledError:
            _LOGGER.debug(
                "Debounced persist superseded",
                extra={"domain": DOMAIN, "op": "persist_debounce_cancelled"},
            )
        except StorageError:
            _LOGGER.error(
                "Debounced persist failed",
                extra={"domain": DOMAIN, "op": "persist_debounce_failed"},
                exc_info=True,
            )

    bucket["persist_task"] = asyncio.create_task(_delayed_persist())


async def async_persist_immediate(hass: HomeAssistant) -> None:
    """Drop any pending debounced save and save now (used on unload)."""

    _cancel_pending_persist(hass.data.setdefault(DOMAIN, {}), op="persist_immediate_cancel")
    await async_persist_kv(hass)

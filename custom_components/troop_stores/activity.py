"""Activity log for inventory mutations.

Entries live under
``("activity", "log", <inverted epoch ms>, <inverted sequence>, <uuid>)``. Both
inverted parts are zero-padded so a forward prefix scan yields the newest entry
first; the per-log sequence orders entries written in the same millisecond.
Entries expire after 90 days.

Writing an entry never fails the operation being logged: errors are logged
and dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Final, NotRequired, TypedDict

from .codec import format_datetime
from .const import (
    ACTIVITY_DEFAULT_LIMIT,
    ACTIVITY_MAX_LIMIT,
    ACTIVITY_PREFIX,
    ACTIVITY_RETENTION_SECONDS,
    DOMAIN,
)
from .exceptions import TroopStoresError
from .kv import KvStore
from .models import new_uuid4_str

_LOGGER = logging.getLogger(__name__)

# Largest integer a JSON number round-trips exactly
MAX_EPOCH_MS: Final[int] = 2**53 - 1
EPOCH_KEY_WIDTH: Final[int] = 17

ACTIVITY_ACTIONS: Final[frozenset[str]] = frozenset(
    {
        "item.created",
        "item.updated",
        "item.deleted",
        "items.imported",
        "loan.created",
        "loan.returned",
        "loan.cancelled",
        "stocktake.completed",
        "indexes.rebuilt",
        "db.cleaned",
    }
)


class ActivityEntry(TypedDict):
    id: str
    timestamp: str
    username: str
    action: str
    resource: NotRequired[str]
    resource_id: NotRequired[str]
    details: NotRequired[str]


def inverted_epoch(moment: datetime) -> str:
    """Zero-padded inverted epoch milliseconds; later moments sort first."""

    epoch_ms = int(moment.timestamp() * 1000)
    return str(MAX_EPOCH_MS - epoch_ms).zfill(EPOCH_KEY_WIDTH)


def _now_ms() -> datetime:
    now = datetime.now(tz=UTC)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


class ActivityLog:
    def __init__(self, kv: KvStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._kv = kv
        self._clock = clock or _now_ms
        self._sequence = 0

    async def log(
        self,
        action: str,
        *,
        username: str,
        resource: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> ActivityEntry | None:
        """Record one entry; returns it, or ``None`` when the write failed."""

        if action not in ACTIVITY_ACTIONS:
            _LOGGER.warning(
                "Unknown activity action",
                extra={"domain": DOMAIN, "op": "activity_log", "action": action},
            )
            return None

        now = self._clock()
        entry: ActivityEntry = {
            "id": new_uuid4_str(),
            "timestamp": format_datetime(now),
            "username": username,
            "action": action,
        }
        if resource is not None:
            entry["resource"] = resource
        if resource_id is not None:
            entry["resource_id"] = resource_id
        if details is not None:
            entry["details"] = details

        self._sequence += 1
        sequence = str(MAX_EPOCH_MS - self._sequence).zfill(EPOCH_KEY_WIDTH)
        key = (*ACTIVITY_PREFIX, inverted_epoch(now), sequence, entry["id"])
        try:
            await self._kv.set(key, dict(entry), expire_in=ACTIVITY_RETENTION_SECONDS)
        except TroopStoresError:
            _LOGGER.error(
                "Failed to write activity entry",
                extra={"domain": DOMAIN, "op": "activity_log", "action": action},
                exc_info=True,
            )
            return None
        return entry

    async def recent(self, limit: int = ACTIVITY_DEFAULT_LIMIT) -> list[ActivityEntry]:
        """Return up to ``limit`` entries, newest first (``limit`` is capped)."""

        capped = max(0, min(int(limit), ACTIVITY_MAX_LIMIT))
        if capped == 0:
            return []
        entries = await self._kv.list_entries(ACTIVITY_PREFIX, limit=capped)
        return [entry.value for entry in entries]

"""Forward-only upgrades of the persisted storage envelope.

A step named ``migrate_<n>_to_<n+1>`` takes the whole envelope and returns
the upgraded one. Running a step twice gives the same result as running it
once.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any


def migrate(payload: dict[str, Any], *, from_version: int, to_version: int) -> dict[str, Any]:
    """Run every step from ``from_version`` up to ``to_version`` in order.

    Downgrades are not supported: ``payload`` is returned untouched. Versions
    with no step function pass through unchanged.
    """

    if from_version > to_version:
        return payload

    data: dict[str, Any] = deepcopy(payload)
    for version in range(int(from_version), to_version):
        step = globals().get(f"migrate_{version}_to_{version + 1}")
        if callable(step):
            data = step(data)

    data["schema_version"] = to_version
    return data


def migrate_0_to_1(payload: dict[str, Any]) -> dict[str, Any]:
    """Envelope of the key-value dataset: an ``entries`` list and a ``versionstamp``.

    Rows inside ``entries`` are left alone; the backend skips malformed ones
    on load.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    if not isinstance(data.get("entries"), list):
        data["entries"] = []
    data.setdefault("versionstamp", 0)
    return data

"""Exception taxonomy for the Troop Stores integration.

Defines a small hierarchy of exceptions used by the data layer and the
services. These extend Home Assistant's HomeAssistantError to ensure
consistent behavior when surfaced through the platform.

Lookups of a missing id are not exceptional in the repository; they return
``None``/``False``. ``NotFoundError`` is raised by the service layer only.

All exceptions accept a human-readable message. ``str(exception)`` returns the
message unchanged.
"""

from __future__ import annotations

from homeassistant.exceptions import HomeAssistantError


class TroopStoresError(HomeAssistantError):
    """Base exception for Troop Stores errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(TroopStoresError):
    """Raised when input payloads fail validation or violate invariants."""


class NotFoundError(TroopStoresError):
    """Raised when a requested resource does not exist."""


class ConflictError(TroopStoresError):
    """Raised when an operation conflicts with current state (e.g., a returned loan)."""


class TransactionConflictError(ConflictError):
    """Raised when an atomic commit is refused because a checked key changed.

    Nothing from the refused operation was applied; callers may retry.
    """


class StorageError(TroopStoresError):
    """Raised when storage operations fail or data is corrupted."""

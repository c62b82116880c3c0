"""Config flow for Troop Stores."""

from __future__ import annotations

from typing import Any

from homeassistant import config_entries
from homeassistant.data_entry_flow import FlowResult

from .const import DOMAIN


class TroopStoresConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Troop Stores."""

    VERSION = 1

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Single-instance setup: the store holds one troop's inventory."""
        if self._async_current_entries():
            return self.async_abort(reason="single_instance_allowed")

        return self.async_create_entry(title="Troop Stores", data={})

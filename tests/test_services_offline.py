"""Offline tests for the troop_stores services layer.

Scenarios:
- item_create/update/delete wire through to the repository and record activity
- Validation and not-found errors are logged with context and never raise
- Loans deduct and restore stock; returning twice logs a conflict
- Necker counter services clamp at zero and are not audited
- Maintenance services record activity with a summary
- items_import creates valid rows and reports the rest
- setup registers every service once; teardown removes them
"""

from __future__ import annotations

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from custom_components.troop_stores import services as services_mod
from custom_components.troop_stores.const import DOMAIN

SERVICE_COUNT = 12


async def _actions(hass) -> list[str]:
    entries = await hass.data[DOMAIN]["activity"].recent()
    return [entry["action"] for entry in entries]


@pytest.mark.asyncio
async def test_item_create_update_delete_flow(hass, repo, make_tent) -> None:
    await services_mod.service_item_create(hass, make_tent(), username="akela")
    (item,) = await repo.get_all_items()

    updated_quantity = 2
    await services_mod.service_item_update(
        hass, {"item_id": item.id, "quantity": updated_quantity, "brand": "Vango"}
    )
    updated = await repo.get_item_by_id(item.id)
    assert updated.quantity == updated_quantity
    assert updated.details.brand == "Vango"

    await services_mod.service_item_delete(hass, {"item_id": item.id})
    assert await repo.get_item_by_id(item.id) is None

    assert await _actions(hass) == ["item.deleted", "item.updated", "item.created"]
    entries = await hass.data[DOMAIN]["activity"].recent()
    assert entries[-1]["username"] == "akela"
    assert entries[1]["details"] == "brand, quantity"


@pytest.mark.asyncio
async def test_validation_errors_are_logged_not_raised(hass, repo, make_tent, caplog) -> None:
    caplog.set_level(logging.WARNING)

    # Missing category fails the schema; an unknown tent type fails the model
    await services_mod.service_item_create(hass, {"name": "Tarp"})
    await services_mod.service_item_create(hass, make_tent(tent_type="yurt"))

    assert await repo.get_all_items() == []
    assert "activity" not in hass.data[DOMAIN]
    records = [rec for rec in caplog.records if getattr(rec, "op", None) == "item_create"]
    assert len(records) == 2
    assert [getattr(rec, "item_name", None) for rec in records] == ["Tarp", "Patrol Tent"]
    assert all(rec.exc_info is None for rec in caplog.records)


@pytest.mark.asyncio
async def test_missing_ids_log_not_found(hass, caplog) -> None:
    caplog.set_level(logging.WARNING)

    await services_mod.service_item_update(hass, {"item_id": "nope", "quantity": 1})
    await services_mod.service_item_delete(hass, {"item_id": "nope"})
    await services_mod.service_checkout_return(hass, {"checkout_id": "nope"})
    await services_mod.service_checkout_delete(hass, {"checkout_id": "nope"})

    messages = [rec.getMessage() for rec in caplog.records]
    assert sum("not found" in message for message in messages) == 4


@pytest.mark.asyncio
async def test_checkout_services_move_stock(hass, repo, make_tent, caplog) -> None:
    item = await repo.create_item(make_tent(quantity=4))

    await services_mod.service_checkout_create(
        hass,
        {
            "item_id": item.id,
            "borrower": "Beavers",
            "quantity": 3,
            "expected_return_date": "2025-06-05",
        },
    )
    (checkout,) = await repo.get_active_checkouts()
    assert (await repo.get_item_by_id(item.id)).quantity == 1

    await services_mod.service_checkout_return(hass, {"checkout_id": checkout.id})
    assert (await repo.get_item_by_id(item.id)).quantity == 4

    caplog.set_level(logging.ERROR)
    await services_mod.service_checkout_return(hass, {"checkout_id": checkout.id})
    assert any(getattr(rec, "op", None) == "checkout_return" for rec in caplog.records)
    assert (await repo.get_item_by_id(item.id)).quantity == 4

    await services_mod.service_checkout_delete(hass, {"checkout_id": checkout.id})
    assert await repo.get_all_checkouts() == []

    actions = await _actions(hass)
    assert actions == ["loan.cancelled", "loan.returned", "loan.created"]


@pytest.mark.asyncio
async def test_necker_services(hass, repo) -> None:
    await services_mod.service_neckers_set(hass, {"value": 5})
    await services_mod.service_neckers_adjust(hass, {"delta": -2})
    assert await repo.get_necker_count() == 3

    await services_mod.service_neckers_adjust(hass, {"delta": -10})
    assert await repo.get_necker_count() == 0

    # Rejected by the schema; value unchanged
    await services_mod.service_neckers_adjust(hass, {"delta": "lots"})
    assert await repo.get_necker_count() == 0
    assert "activity" not in hass.data[DOMAIN]


@pytest.mark.asyncio
async def test_stocktake_and_maintenance_services(hass, repo, make_tent) -> None:
    item = await repo.create_item(make_tent(quantity=4))

    await services_mod.service_stocktake(
        hass,
        {
            "updates": [
                {"id": item.id, "quantity": 7, "condition": "fair"},
                {"id": "ghost", "quantity": 1},
            ]
        },
    )
    counted = await repo.get_item_by_id(item.id)
    assert counted.quantity == 7
    assert counted.details.condition == "fair"

    await services_mod.service_rebuild_indexes(hass, {})
    await services_mod.service_clean_up(hass, {})

    entries = await hass.data[DOMAIN]["activity"].recent()
    assert [e["action"] for e in entries] == [
        "db.cleaned",
        "indexes.rebuilt",
        "stocktake.completed",
    ]
    assert entries[2]["details"] == "Stock-take applied 1 correction(s) (1 error(s))"
    assert entries[1]["details"].startswith("1 items")


@pytest.mark.asyncio
async def test_items_import_service(hass, repo, make_tent, make_food, caplog) -> None:
    caplog.set_level(logging.WARNING)

    await services_mod.service_items_import(
        hass, {"items": [make_tent(), make_food(), {"name": "Kayak", "category": "boats"}]}
    )

    assert sorted(item.name for item in await repo.get_all_items()) == [
        "Baked Beans",
        "Patrol Tent",
    ]
    (entry,) = await hass.data[DOMAIN]["activity"].recent()
    assert entry["action"] == "items.imported"
    assert entry["details"] == "Imported 2 item(s) (1 error(s))"
    rejected = [rec for rec in caplog.records if getattr(rec, "op", None) == "items_import"]
    assert [(rec.row, rec.item_name) for rec in rejected] == [(3, "Kayak")]


@pytest.mark.asyncio
async def test_empty_stocktake_is_rejected(hass, caplog) -> None:
    caplog.set_level(logging.WARNING)

    await services_mod.service_stocktake(hass, {"updates": []})

    assert any(getattr(rec, "op", None) == "stocktake" for rec in caplog.records)
    assert "activity" not in hass.data[DOMAIN]


@pytest.mark.asyncio
async def test_setup_registers_once_and_teardown_removes(hass, repo, make_tent) -> None:
    services_mod.setup(hass)
    services_mod.setup(hass)

    calls = hass.services.async_register.call_args_list
    assert len(calls) == SERVICE_COUNT
    registered = {call.args[1]: call.args[2] for call in calls}
    assert "item_create" in registered

    # Registered handlers take the call's user as the username
    call = SimpleNamespace(data=make_tent(), context=SimpleNamespace(user_id="user-123"))
    await registered["item_create"](call)
    entries = await hass.data[DOMAIN]["activity"].recent()
    assert entries[0]["username"] == "user-123"

    services_mod.teardown(hass)
    assert hass.services.async_remove.call_count == SERVICE_COUNT
    assert "services_registered" not in hass.data[DOMAIN]


@pytest.mark.asyncio
async def test_handlers_create_backend_lazily() -> None:
    hass = MagicMock()
    hass.data = {}

    await services_mod.service_neckers_set(hass, {"value": 2})

    assert await hass.data[DOMAIN]["repository"].get_necker_count() == 2

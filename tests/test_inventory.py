"""Inventory registration, consumption and the movement ledger."""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from workshop_erp.domain import MovementType
from workshop_erp.exceptions import InsufficientStock, InvalidTransition


@pytest.fixture
def sheet(service):
    return service.register_inventory_item(
        "Stainless sheet", quantity=3, unit_price="85.00", unit_of_measure="sheet"
    )


def test_register_records_opening_movement(service, sheet):
    assert sheet.quantity == 3
    assert sheet.unit_price == Decimal("85.00")
    movements = service.list_movements(sheet.id)
    assert [(m.movement_type, m.quantity) for m in movements] == [(MovementType.IN, 3)]


def test_register_without_stock_has_no_movement(service):
    item = service.register_inventory_item("Rivet")
    assert item.quantity == 0
    assert service.list_movements(item.id) == []


@pytest.mark.parametrize("quantity", [-1, 1.5, "3", True])
def test_register_rejects_bad_quantities(service, quantity):
    with pytest.raises(ValueError):
        service.register_inventory_item("Bad", quantity=quantity)


def test_consume_decrements_stock(service, order, sheet):
    task = service.create_task(order.id, "Cut")
    record = service.consume(task.id, sheet.id, 2, consumed_by="ana")
    assert record.order_id == order.id
    assert record.cost == Decimal("170.00")
    assert service.get_inventory_item(sheet.id).quantity == 1
    out = [m for m in service.list_movements(sheet.id) if m.movement_type is MovementType.OUT]
    assert [(m.quantity, m.task_id) for m in out] == [(2, task.id)]


def test_overdraw_is_rejected_and_stock_unchanged(service, order, sheet):
    task = service.create_task(order.id, "Cut")
    with pytest.raises(InsufficientStock) as excinfo:
        service.consume(task.id, sheet.id, 5)
    assert (excinfo.value.requested, excinfo.value.available) == (5, 3)
    assert service.get_inventory_item(sheet.id).quantity == 3
    assert service.list_consumption(task_id=task.id) == []
    assert len(service.list_movements(sheet.id)) == 1


@pytest.mark.parametrize("quantity", [0, -2])
def test_consume_requires_positive_quantity(service, order, sheet, quantity):
    task = service.create_task(order.id, "Cut")
    with pytest.raises(ValueError):
        service.consume(task.id, sheet.id, quantity)


def test_no_consumption_on_cancelled_order(service, order, sheet):
    task = service.create_task(order.id, "Cut")
    service.cancel_order(order.id)
    with pytest.raises(InvalidTransition):
        service.consume(task.id, sheet.id, 1)
    assert service.get_inventory_item(sheet.id).quantity == 3


def test_restock(service, sheet):
    restocked = service.restock(sheet.id, 7, reason="Supplier delivery")
    assert restocked.quantity == 10
    assert service.list_movements(sheet.id)[-1].reason == "Supplier delivery"
    with pytest.raises(ValueError):
        service.restock(sheet.id, 0)


def test_consumption_keeps_price_at_time_of_use(service, order, sheet):
    task = service.create_task(order.id, "Cut")
    service.consume(task.id, sheet.id, 1)
    item = service.inventory.get(sheet.id)
    item.unit_price = Decimal("99.00")
    service.inventory.upsert(item.id, item)
    assert service.list_consumption(order_id=order.id)[0].unit_price == Decimal("85.00")


def test_inventory_is_listed_by_name(service):
    service.register_inventory_item("Weld wire")
    service.register_inventory_item("Bolt")
    assert [item.name for item in service.list_inventory()] == ["Bolt", "Weld wire"]


@pytest.mark.concurrency
def test_concurrent_consumption_never_oversells(any_service):
    order = any_service.create_order("c", "C", "d", Decimal("1"))
    task = any_service.create_task(order.id, "Assemble")
    item = any_service.register_inventory_item("Bolt", quantity=50)
    requests = 20
    barrier = threading.Barrier(requests)

    def draw(_):
        barrier.wait()
        try:
            any_service.consume(task.id, item.id, 3)
        except InsufficientStock:
            return False
        return True

    with ThreadPoolExecutor(max_workers=requests) as pool:
        outcomes = list(pool.map(draw, range(requests)))

    assert outcomes.count(True) == 16
    assert any_service.get_inventory_item(item.id).quantity == 2
    assert sum(record.quantity for record in any_service.list_consumption(task_id=task.id)) == 48

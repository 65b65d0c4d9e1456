"""Order lifecycle through the service facade."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import drive_to_invoice, log_work
from workshop_erp import OrderStatus, TaskStatus
from workshop_erp.exceptions import InconsistentDerivedState, InvalidTransition
from workshop_erp.repository import RecordNotFoundError


def test_new_order_defaults(service, order, clock):
    assert order.status is OrderStatus.PENDING
    assert order.sale_value == Decimal("300.00")
    assert order.opening_date == clock().date()
    assert order.invoice_id is None


def test_pickup_path_reaches_to_invoice(service, order):
    task = service.create_task(order.id, "Cut")
    service.complete_task(task.id)
    assert service.get_order(order.id).status is OrderStatus.QUALITY_CONTROL
    service.approve_quality(order.id)
    assert service.get_order(order.id).status is OrderStatus.READY_FOR_PICKUP
    service.confirm_pickup(order.id)
    assert service.get_order(order.id).status is OrderStatus.TO_INVOICE


def test_installation_path_records_date(service, order):
    task = service.create_task(order.id, "Build")
    service.complete_task(task.id)
    service.approve_quality(order.id)
    service.schedule_installation(order.id, date(2024, 3, 20))
    scheduled = service.get_order(order.id)
    assert scheduled.status is OrderStatus.AWAITING_INSTALLATION
    assert scheduled.installation_date == date(2024, 3, 20)
    service.confirm_installation(order.id)
    assert service.get_order(order.id).status is OrderStatus.TO_INVOICE


def test_reject_quality_returns_to_production(service, order):
    task = service.create_task(order.id, "Weld")
    service.complete_task(task.id)
    service.reject_quality(order.id)
    assert service.get_order(order.id).status is OrderStatus.PRODUCTION


def test_invalid_action_leaves_order_unchanged(service, order):
    with pytest.raises(InvalidTransition):
        service.confirm_pickup(order.id)
    with pytest.raises(InvalidTransition):
        service.archive_order(order.id)
    assert service.get_order(order.id).status is OrderStatus.PENDING


def test_perform_action_by_name(service, order):
    service.create_task(order.id, "Paint")
    updated = service.perform_action(order.id, "stop")
    assert updated.status is OrderStatus.STOPPED


def test_engine_actions_are_not_manual(service, order):
    with pytest.raises(InvalidTransition):
        service.perform_action(order.id, "invoice")
    with pytest.raises(InvalidTransition):
        service.perform_action(order.id, "start_work")


def test_unknown_action_is_rejected(service, order):
    with pytest.raises(ValueError):
        service.perform_action(order.id, "teleport")


def test_schedule_installation_requires_date(service, order):
    with pytest.raises(ValueError):
        service.perform_action(order.id, "schedule_installation")


def test_hold_opens_call_and_resume_clears_reason(service, order):
    held = service.put_on_hold(order.id, "  Waiting for client drawings ", created_by="maria")
    assert held.status is OrderStatus.ON_HOLD
    assert held.hold_reason == "Waiting for client drawings"

    calls = service.list_calls(order_id=order.id)
    assert len(calls) == 1
    assert calls[0].reason == "Waiting for client drawings"
    assert calls[0].created_by == "maria"

    resumed = service.resume_order(order.id)
    assert resumed.status is OrderStatus.PENDING
    assert resumed.hold_reason == ""

    resolved = service.resolve_call(calls[0].id, resolved_by="maria")
    assert resolved.resolved
    assert service.list_calls(order_id=order.id, resolved=False) == []
    with pytest.raises(InvalidTransition):
        service.resolve_call(calls[0].id)


def test_hold_requires_reason(service, order):
    with pytest.raises(ValueError):
        service.put_on_hold(order.id, "   ")
    assert service.get_order(order.id).status is OrderStatus.PENDING
    assert service.list_calls() == []


def test_resume_after_work_goes_to_production(service, order, clock):
    task = service.create_task(order.id, "Bend")
    log_work(service, clock, task.id, "ana", 1)
    service.put_on_hold(order.id, "Material missing")
    assert service.resume_order(order.id).status is OrderStatus.PRODUCTION


def test_hold_keeps_running_timer_from_changing_status(service, order, clock):
    task = service.create_task(order.id, "Bend")
    session = service.start_session(task.id, "ana")
    service.put_on_hold(order.id, "Machine broken")
    clock.advance(minutes=30)
    service.stop_session(session.id)
    assert service.get_order(order.id).status is OrderStatus.ON_HOLD


def test_cancel_closes_running_sessions(service, order, clock):
    task = service.create_task(order.id, "Weld")
    session = service.start_session(task.id, "bruno")
    clock.advance(hours=1, minutes=15)
    cancelled = service.cancel_order(order.id)
    assert cancelled.status is OrderStatus.CANCELLED
    closed = service.get_session(session.id)
    assert not closed.is_open
    assert closed.hours_worked == Decimal("1.2500")
    with pytest.raises(InvalidTransition):
        service.create_task(order.id, "Late task")


def test_cancel_of_invoiced_order_is_refused(service, order):
    service.create_task(order.id, "Cut")
    drive_to_invoice(service, order.id)
    service.generate_invoice([order.id], period_start=date(2024, 3, 1), period_end=date(2024, 3, 31))
    with pytest.raises(InvalidTransition):
        service.cancel_order(order.id)
    assert service.get_order(order.id).status is OrderStatus.INVOICED


def test_list_orders_filters(service):
    first = service.create_order("c1", "One", "a", Decimal("1"))
    service.create_order("c2", "Two", "b", Decimal("1"))
    service.put_on_hold(first.id, "Waiting")
    assert [o.id for o in service.list_orders(client_id="c1")] == [first.id]
    assert [o.id for o in service.list_orders(status=OrderStatus.ON_HOLD)] == [first.id]
    assert len(service.list_orders()) == 2


def test_assign_order(service, order):
    assert service.assign_order(order.id, "carla").assigned_worker_id == "carla"


def test_delete_order_returns_stock_and_removes_work(service, order, clock):
    item = service.register_inventory_item("Bolt", quantity=10)
    task = service.create_task(order.id, "Mount")
    service.consume(task.id, item.id, 4)
    log_work(service, clock, task.id, "ana", 1)
    service.put_on_hold(order.id, "Client gave up")

    service.delete_order(order.id)

    with pytest.raises(RecordNotFoundError):
        service.get_order(order.id)
    assert service.get_inventory_item(item.id).quantity == 10
    assert service.list_sessions(order_id=order.id) == []
    assert service.list_calls(order_id=order.id) == []


def test_reconcile_order_repairs_stale_status(service, order):
    task = service.create_task(order.id, "Cut")
    service.start_session(task.id, "ana")
    stored = service.orders.get(order.id)
    stored.status = OrderStatus.STOPPED
    service.orders.upsert(order.id, stored)

    assert service.reconcile_order(order.id) is OrderStatus.PRODUCTION
    assert service.get_order(order.id).status is OrderStatus.PRODUCTION


def test_inconsistent_work_data_is_reported_not_guessed(service, order, clock):
    task = service.create_task(order.id, "Cut")
    service.start_session(task.id, "ana")
    service.start_session(task.id, "bruno")

    # Corrupt the record behind the engine's back: mark the task completed
    # while both sessions are still running.
    stored = service.tasks.get(task.id)
    stored.status = TaskStatus.COMPLETED
    service.tasks.upsert(task.id, stored)

    with pytest.raises(InconsistentDerivedState) as excinfo:
        service.reconcile_order(order.id)
    assert excinfo.value.code == "INCONSISTENT_DERIVED_STATE"
    assert service.get_order(order.id).status is OrderStatus.PRODUCTION

    ana = service.open_sessions(worker_id="ana")[0]
    clock.advance(hours=1)
    service.stop_session(ana.id)
    assert service.get_order(order.id).status is OrderStatus.PRODUCTION
    assert len(service.consistency_alerts) == 1
    assert service.consistency_alerts[0].order_id == order.id


def test_hold_while_awaiting_pickup_resumes_at_pickup(service, order):
    task = service.create_task(order.id, "Cut")
    service.complete_task(task.id)
    service.approve_quality(order.id)
    service.put_on_hold(order.id, "Client travelling")

    resumed = service.resume_order(order.id)

    assert resumed.status is OrderStatus.READY_FOR_PICKUP
    assert resumed.held_from is None
    assert service.reconcile_order(order.id) is OrderStatus.READY_FOR_PICKUP
    assert service.confirm_pickup(order.id).status is OrderStatus.TO_INVOICE


def test_hold_while_awaiting_installation_resumes_at_installation(service, order):
    task = service.create_task(order.id, "Build")
    service.complete_task(task.id)
    service.approve_quality(order.id)
    service.schedule_installation(order.id, date(2024, 3, 20))
    service.put_on_hold(order.id, "Site not ready")

    resumed = service.resume_order(order.id)

    assert resumed.status is OrderStatus.AWAITING_INSTALLATION
    assert resumed.installation_date == date(2024, 3, 20)
    assert service.confirm_installation(order.id).status is OrderStatus.TO_INVOICE


def test_hold_in_quality_control_resumes_there(service, order):
    task = service.create_task(order.id, "Weld")
    service.complete_task(task.id)
    service.put_on_hold(order.id, "Inspector away")
    assert service.resume_order(order.id).status is OrderStatus.QUALITY_CONTROL


def test_order_held_after_production_refuses_timers_and_stop(service, order):
    task = service.create_task(order.id, "Cut")
    service.complete_task(task.id)
    service.approve_quality(order.id)
    service.put_on_hold(order.id, "Client travelling")
    other = service.create_task(order.id, "Touch-up")

    with pytest.raises(InvalidTransition):
        service.start_session(other.id, "ana")
    with pytest.raises(InvalidTransition):
        service.stop_order(order.id)
    assert service.open_sessions(worker_id="ana") == []
    assert service.get_order(order.id).status is OrderStatus.ON_HOLD
    assert service.cancel_order(order.id).status is OrderStatus.CANCELLED


def test_tasks_finished_during_hold_resume_to_quality_control(service, order, clock):
    task = service.create_task(order.id, "Cut")
    log_work(service, clock, task.id, "ana", 1)
    service.put_on_hold(order.id, "Waiting for paint")
    service.complete_task(task.id)
    assert service.get_order(order.id).status is OrderStatus.ON_HOLD
    assert service.resume_order(order.id).status is OrderStatus.QUALITY_CONTROL


def test_revision_rejects_negative_sale_value(service, order):
    with pytest.raises(ValueError):
        service.revise_order(order.id, sale_value="-100")
    assert [o.order_number for o in service.list_orders()] == ["OS0001-1"]
    assert service.next_order_number(base=1) == "OS0001-2"


def test_list_orders_sorts_revisions_numerically(service, order):
    later = service.create_order("client-2", "Other", "Fence", Decimal("50.00"))
    for _ in range(10):
        service.revise_order(order.id)

    numbers = [o.order_number for o in service.list_orders()]

    assert numbers == [f"OS0001-{revision}" for revision in range(1, 12)] + [later.order_number]
    assert numbers.index("OS0001-2") < numbers.index("OS0001-10")

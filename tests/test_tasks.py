"""Task management and its effect on the parent order."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import log_work
from workshop_erp import OrderStatus, TaskPriority, TaskStatus
from workshop_erp.exceptions import InvalidTransition, TaskHasActiveSession
from workshop_erp.repository import RecordNotFoundError


def test_create_task_defaults(service, order):
    task = service.create_task(
        order.id, "  Cut sheets ", assigned_worker_id="ana", priority="high", estimated_hours="2.5"
    )
    assert task.title == "Cut sheets"
    assert task.status is TaskStatus.PENDING
    assert task.priority is TaskPriority.HIGH
    assert task.estimated_hours == Decimal("2.5")
    assert service.list_tasks(order.id) == [task]


def test_blank_title_rejected(service, order):
    with pytest.raises(ValueError):
        service.create_task(order.id, "   ")


def test_task_on_unknown_order(service):
    with pytest.raises(RecordNotFoundError):
        service.create_task("missing", "Cut")


def test_update_fields(service, order):
    task = service.create_task(order.id, "Cut")
    updated = service.update_task(task.id, title="Cut and bend", priority=TaskPriority.LOW, estimated_hours=3)
    assert updated.title == "Cut and bend"
    assert updated.priority is TaskPriority.LOW
    assert updated.estimated_hours == Decimal("3")


def test_completing_last_task_moves_order_to_quality_control(service, order):
    first = service.create_task(order.id, "Cut")
    second = service.create_task(order.id, "Weld")
    service.complete_task(first.id)
    assert service.get_order(order.id).status is OrderStatus.PENDING
    service.complete_task(second.id)
    assert service.get_order(order.id).status is OrderStatus.QUALITY_CONTROL


def test_cancelled_tasks_do_not_block_quality_control(service, order):
    first = service.create_task(order.id, "Cut")
    second = service.create_task(order.id, "Optional polish")
    service.update_task(second.id, status="cancelled")
    service.complete_task(first.id)
    assert service.get_order(order.id).status is OrderStatus.QUALITY_CONTROL


def test_completing_task_closes_its_sessions(service, order, clock):
    task = service.create_task(order.id, "Weld")
    session = service.start_session(task.id, "bruno")
    clock.advance(minutes=45)
    service.complete_task(task.id)
    closed = service.get_session(session.id)
    assert closed.hours_worked == Decimal("0.7500")
    assert service.get_order(order.id).status is OrderStatus.QUALITY_CONTROL


def test_illegal_task_status_change(service, order):
    task = service.create_task(order.id, "Cut")
    service.update_task(task.id, status="cancelled")
    with pytest.raises(InvalidTransition):
        service.complete_task(task.id)
    assert service.get_task(task.id).status is TaskStatus.CANCELLED


def test_tasks_of_invoiced_order_are_frozen(service, order):
    task = service.create_task(order.id, "Cut")
    service.complete_task(task.id)
    service.approve_quality(order.id)
    service.confirm_pickup(order.id)
    service.generate_invoice([order.id], period_start=date(2024, 3, 1), period_end=date(2024, 3, 31))
    with pytest.raises(InvalidTransition):
        service.update_task(task.id, title="Renamed")
    with pytest.raises(InvalidTransition):
        service.create_task(order.id, "Extra")


def test_worker_task_list(service, order):
    open_task = service.create_task(order.id, "Cut", assigned_worker_id="ana")
    done = service.create_task(order.id, "Bend", assigned_worker_id="ana")
    service.create_task(order.id, "Weld", assigned_worker_id="bruno")
    service.complete_task(done.id)
    assert service.list_worker_tasks("ana") == [open_task]
    assert {task.id for task in service.list_worker_tasks("ana", include_closed=True)} == {
        open_task.id,
        done.id,
    }


def test_assign_task(service, order):
    task = service.create_task(order.id, "Cut")
    assert service.assign_task(task.id, "carla").assigned_worker_id == "carla"
    assert [t.id for t in service.list_worker_tasks("carla")] == [task.id]


class TestDeleteTask:
    def test_refused_while_session_runs(self, service, order):
        task = service.create_task(order.id, "Cut")
        session = service.start_session(task.id, "ana")
        with pytest.raises(TaskHasActiveSession) as excinfo:
            service.delete_task(task.id)
        assert excinfo.value.session_ids == (session.id,)
        assert not service.get_task(task.id).is_deleted

    def test_forced_delete_closes_sessions(self, service, order, clock):
        task = service.create_task(order.id, "Cut")
        session = service.start_session(task.id, "ana")
        clock.advance(hours=2)
        deleted = service.delete_task(task.id, force_close_sessions=True)
        assert deleted.is_deleted
        assert service.get_session(session.id).hours_worked == Decimal("2.0000")
        assert service.get_order(order.id).status is OrderStatus.STOPPED

    def test_tombstone_keeps_hours_and_returns_stock(self, service, order, clock):
        item = service.register_inventory_item("Sheet", quantity=5)
        task = service.create_task(order.id, "Cut")
        service.consume(task.id, item.id, 2)
        log_work(service, clock, task.id, "ana", 1.5)

        service.delete_task(task.id)

        assert service.list_tasks(order.id) == []
        assert [t.id for t in service.list_tasks(order.id, include_deleted=True)] == [task.id]
        assert service.total_hours(order_id=order.id) == Decimal("1.5000")
        assert service.get_inventory_item(item.id).quantity == 5
        assert service.list_consumption(task_id=task.id) == []

    def test_deleted_task_cannot_be_touched(self, service, order):
        task = service.create_task(order.id, "Cut")
        service.delete_task(task.id)
        with pytest.raises(RecordNotFoundError):
            service.update_task(task.id, title="Back")
        with pytest.raises(RecordNotFoundError):
            service.start_session(task.id, "ana")
        with pytest.raises(RecordNotFoundError):
            service.delete_task(task.id)

    def test_deleting_last_open_task_completes_order_work(self, service, order):
        done = service.create_task(order.id, "Cut")
        leftover = service.create_task(order.id, "Not needed")
        service.complete_task(done.id)
        service.delete_task(leftover.id)
        assert service.get_order(order.id).status is OrderStatus.QUALITY_CONTROL

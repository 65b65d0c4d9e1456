"""
Pytest fixtures for the workshop engine test suite.

Provides:
- A controllable clock so session hours are exact
- In-memory and SQLite backed services
- Helpers that drive an order through the workflow
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from workshop_erp import TaskStatus, WorkshopService
from workshop_erp.storage import WorkshopDatabase

START = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return WorkshopService(clock=clock)


@pytest.fixture
def sqlite_service(tmp_path, clock):
    database = WorkshopDatabase(str(tmp_path / "workshop.sqlite3"))
    yield WorkshopService(database, clock=clock)
    database.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_service(request, tmp_path, clock):
    if request.param == "memory":
        yield WorkshopService(clock=clock)
        return
    database = WorkshopDatabase(str(tmp_path / "workshop.sqlite3"))
    yield WorkshopService(database, clock=clock)
    database.close()


@pytest.fixture
def order(service):
    return service.create_order("client-1", "ACME Ltda.", "Steel gate", Decimal("300.00"))


def log_work(service, clock, task_id, worker_id, hours):
    """Run one closed session of ``hours`` on a task."""
    session = service.start_session(task_id, worker_id)
    clock.advance(hours=hours)
    return service.stop_session(session.id)


def drive_to_invoice(service, order_id):
    """Complete every open task and walk the order to ``to_invoice``."""
    for task in service.list_tasks(order_id):
        if task.status not in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            service.complete_task(task.id)
    service.approve_quality(order_id)
    service.confirm_pickup(order_id)
    return service.get_order(order_id)

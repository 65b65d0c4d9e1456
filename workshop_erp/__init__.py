"""Order workflow, time tracking and billing engine for a service workshop.

This package provides the data model, in-memory and SQLite persistence,
and the service layer that moves orders through production, records
worker time sessions, draws inventory for tasks, and aggregates finished
work into client invoices.
"""

from .domain import (
    BudgetItem,
    ExtraCharge,
    Invoice,
    OrderItem,
    OrderStatus,
    ServiceOrder,
    Task,
    TaskPriority,
    TaskStatus,
    TimeSession,
    Urgency,
)
from .exceptions import WorkshopError
from .services import WorkflowOptions, WorkshopService
from .workflow import OrderAction

__all__ = [
    "BudgetItem",
    "ExtraCharge",
    "Invoice",
    "OrderItem",
    "OrderStatus",
    "ServiceOrder",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TimeSession",
    "Urgency",
    "WorkshopError",
    "WorkflowOptions",
    "WorkshopService",
    "OrderAction",
]

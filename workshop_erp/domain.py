"""Core data structures for the workshop order and billing engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Lifecycle stages for a service order."""

    PENDING = "pending"
    PRODUCTION = "production"
    ON_HOLD = "on_hold"
    STOPPED = "stopped"
    QUALITY_CONTROL = "quality_control"
    READY_FOR_PICKUP = "ready_for_pickup"
    AWAITING_INSTALLATION = "awaiting_installation"
    TO_INVOICE = "to_invoice"
    INVOICED = "invoiced"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.INVOICED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
)


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    """Lifecycle stages for a task under an order."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MovementType(str, Enum):
    IN = "in"
    OUT = "out"


@dataclass(slots=True)
class ServiceOrder:
    """A unit of billable work for a client."""

    id: str
    order_number: str
    client_id: str
    client_name: str
    description: str
    sale_value: Decimal
    urgency: Urgency = Urgency.MEDIUM
    assigned_worker_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    opening_date: date = field(default_factory=lambda: utcnow().date())
    deadline: Optional[date] = None
    installation_date: Optional[date] = None
    invoice_id: Optional[str] = None
    hold_reason: str = ""
    held_from: Optional[OrderStatus] = None
    budget_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class OrderItem:
    """Priced service line of an order; the order's sale value is their sum."""

    id: str
    order_id: str
    service_name: str
    quantity: Decimal
    unit_price: Decimal
    sale_value: Decimal
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class BudgetItem:
    """Line of an approved quote handed over when the order is opened.

    ``total_price`` defaults to ``quantity * unit_price``.
    """

    service_name: str
    quantity: Decimal
    unit_price: Decimal
    description: str = ""
    total_price: Optional[Decimal] = None


@dataclass(slots=True)
class Task:
    """A discrete unit of work under an order."""

    id: str
    order_id: str
    title: str
    description: str = ""
    assigned_worker_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_hours: Optional[Decimal] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(slots=True)
class TimeSession:
    """A continuous interval during which a worker works on a task."""

    id: str
    task_id: str
    order_id: str
    worker_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    note: str = ""
    hours_worked: Optional[Decimal] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None


@dataclass(slots=True)
class InventoryItem:
    """Stock held in the workshop store."""

    id: str
    name: str
    quantity: int
    unit_price: Decimal
    unit_of_measure: str = "pcs"
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ConsumptionRecord:
    """Material drawn from stock for a task."""

    id: str
    task_id: str
    order_id: str
    item_id: str
    quantity: int
    unit_price: Decimal
    consumed_at: datetime = field(default_factory=utcnow)
    consumed_by: Optional[str] = None

    @property
    def cost(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(slots=True)
class InventoryMovement:
    """Audit entry for every change of an item's stock level."""

    id: str
    item_id: str
    movement_type: MovementType
    quantity: int
    reason: str = ""
    task_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ExtraCharge:
    """Ad-hoc amount billed on top of the order sale values."""

    description: str
    value: Decimal


@dataclass(frozen=True, slots=True)
class OrderInvoiceLine:
    """Order summary embedded in an invoice."""

    order_id: str
    order_number: str
    sale_value: Decimal
    total_hours: Decimal


@dataclass(frozen=True, slots=True)
class Invoice:
    """Immutable billing record aggregating orders and extra charges."""

    id: str
    client_id: str
    client_name: str
    period_start: date
    period_end: date
    orders: Tuple[OrderInvoiceLine, ...]
    extras: Tuple[ExtraCharge, ...]
    total_value: Decimal
    total_time: Decimal
    created_at: datetime = field(default_factory=utcnow)

    @property
    def order_ids(self) -> Tuple[str, ...]:
        return tuple(line.order_id for line in self.orders)


@dataclass(slots=True)
class ServiceOrderCall:
    """Issue raised against an order, e.g. when it is put on hold."""

    id: str
    order_id: str
    reason: str
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


__all__ = [
    "OrderStatus",
    "TERMINAL_ORDER_STATUSES",
    "Urgency",
    "TaskStatus",
    "TaskPriority",
    "MovementType",
    "ServiceOrder",
    "OrderItem",
    "BudgetItem",
    "Task",
    "TimeSession",
    "InventoryItem",
    "ConsumptionRecord",
    "InventoryMovement",
    "ExtraCharge",
    "OrderInvoiceLine",
    "Invoice",
    "ServiceOrderCall",
    "utcnow",
]

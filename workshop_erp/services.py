"""Service layer that implements the workshop workflow and billing logic."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from uuid import uuid4

from .config import Settings
from .domain import (
    BudgetItem,
    ConsumptionRecord,
    ExtraCharge,
    InventoryItem,
    InventoryMovement,
    Invoice,
    MovementType,
    OrderInvoiceLine,
    OrderItem,
    OrderStatus,
    ServiceOrder,
    ServiceOrderCall,
    Task,
    TaskPriority,
    TaskStatus,
    TimeSession,
    Urgency,
    utcnow,
)
from .exceptions import (
    InconsistentDerivedState,
    InsufficientStock,
    InvalidInvoiceRequest,
    InvalidTransition,
    OrderLockedForBilling,
    PartialInvoiceFailure,
    SequenceExhausted,
    SessionAlreadyClosed,
    SessionAlreadyOpen,
    SessionNotFound,
    TaskHasActiveSession,
)
from .numbering import DEFAULT_MAX_BASE, OrderNumber, next_order_number
from .repository import (
    DuplicateRecordError,
    InMemoryStore,
    RecordNotFoundError,
    RepositoryError,
)
from .timekeeping import (
    ZERO_HOURS,
    billed_hours,
    filter_sessions,
    hours_between,
    live_hours,
)
from .workflow import (
    RECONCILABLE_STATUSES,
    OrderAction,
    apply_transition,
    can_apply,
    check_task_transition,
    derive_order_status,
    work_completed,
)

logger = logging.getLogger(__name__)

ZERO_MONEY = Decimal("0.00")

# Actions a caller may request directly; the remaining ones are issued by
# the engine itself (timers, invoicing).
MANUAL_ACTIONS = frozenset(
    {
        OrderAction.APPROVE_QUALITY,
        OrderAction.REJECT_QUALITY,
        OrderAction.CONFIRM_PICKUP,
        OrderAction.SCHEDULE_INSTALLATION,
        OrderAction.CONFIRM_INSTALLATION,
        OrderAction.PUT_ON_HOLD,
        OrderAction.STOP,
        OrderAction.RESUME,
        OrderAction.CANCEL,
        OrderAction.ARCHIVE,
    }
)

ExtraChargeLike = Union[ExtraCharge, Tuple[str, Any], Mapping[str, Any]]
BudgetItemLike = Union[BudgetItem, Mapping[str, Any]]


@dataclass(slots=True)
class WorkflowOptions:
    """Tuning parameters for numbering and time tracking."""

    order_number_prefix: str = "OS"
    order_number_retries: int = 5
    max_order_base: int = DEFAULT_MAX_BASE
    hours_decimal_places: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkflowOptions":
        return cls(
            order_number_prefix=settings.ORDER_NUMBER_PREFIX,
            order_number_retries=settings.ORDER_NUMBER_RETRIES,
            max_order_base=settings.MAX_ORDER_BASE,
            hours_decimal_places=settings.HOURS_DECIMAL_PLACES,
        )


@dataclass(slots=True)
class TaskSummary:
    """Per-task row of an order summary."""

    task_id: str
    title: str
    status: TaskStatus
    assigned_worker_id: Optional[str]
    billed_hours: Decimal
    live_hours: Decimal
    open_sessions: int
    deleted: bool = False


@dataclass(slots=True)
class MaterialUsage:
    """Material drawn for an order, aggregated per inventory item."""

    item_id: str
    name: str
    quantity: int
    unit_price: Decimal
    cost: Decimal


@dataclass(slots=True)
class OrderSummary:
    """Fully resolved view of an order for document generation."""

    order: ServiceOrder
    tasks: List[TaskSummary]
    materials: List[MaterialUsage]
    billed_hours: Decimal
    live_hours: Decimal
    materials_cost: Decimal
    open_calls: int
    items: List[OrderItem] = field(default_factory=list)


@dataclass(slots=True)
class InvoiceDetail:
    """Invoice with its already aggregated subtotals."""

    invoice: Invoice
    orders_subtotal: Decimal
    extras_subtotal: Decimal
    lines: List[OrderInvoiceLine] = field(default_factory=list)
    extras: List[ExtraCharge] = field(default_factory=list)


@dataclass(slots=True)
class WorkerHours:
    """Closed-session hours booked by one worker within a period."""

    worker_id: str
    hours: Decimal
    session_count: int
    order_ids: Tuple[str, ...] = tuple()


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"{name} must be a decimal amount, got {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"{name} must be a finite amount")
    return result


def _to_quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Quantity must be an integer, got {value!r}")
    return value


def _to_money(value: Any, name: str) -> Decimal:
    result = _to_decimal(value, name)
    if result < 0:
        raise ValueError(f"{name} cannot be negative")
    return result


def _order_sort_key(order: ServiceOrder, prefix: str) -> Tuple[int, int, int, str]:
    number = OrderNumber.parse(order.order_number, prefix)
    if number is None:
        return (1, 0, 0, order.order_number)
    return (0, number.base, number.revision, "")


class WorkshopService:
    """Facade that exposes the order, task, time and billing use-cases.

    Every mutating operation runs under one re-entrant lock inside a store
    transaction, so a failing operation leaves no partial state behind and
    read-then-write checks (order numbers, open sessions, stock levels)
    cannot interleave.
    """

    def __init__(
        self,
        store: Optional[Any] = None,
        *,
        options: Optional[WorkflowOptions] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store if store is not None else InMemoryStore()
        self.options = options or WorkflowOptions()
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self.consistency_alerts: List[InconsistentDerivedState] = []

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    @property
    def orders(self):
        return self.store.orders

    @property
    def order_items(self):
        return self.store.items

    @property
    def tasks(self):
        return self.store.tasks

    @property
    def sessions(self):
        return self.store.sessions

    @property
    def inventory(self):
        return self.store.inventory

    @property
    def consumptions(self):
        return self.store.consumptions

    @property
    def movements(self):
        return self.store.movements

    @property
    def invoices(self):
        return self.store.invoices

    @property
    def calls(self):
        return self.store.calls

    def _now(self, at: Optional[datetime] = None) -> datetime:
        return at if at is not None else self._clock()

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        with self._lock, self.store.transaction():
            yield

    def _order_tasks(self, order_id: str, *, include_deleted: bool = False) -> List[Task]:
        return [
            task
            for task in self.tasks.list()
            if task.order_id == order_id and (include_deleted or not task.is_deleted)
        ]

    def _order_sessions(self, order_id: str) -> List[TimeSession]:
        return filter_sessions(self.sessions.list(), order_id=order_id)

    def _live_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task.is_deleted:
            raise RecordNotFoundError(f"Task {task_id!r} was deleted")
        return task

    def _set_status(self, order: ServiceOrder, status: OrderStatus, *, reason: str) -> None:
        previous = order.status
        order.status = status
        order.updated_at = self._now()
        self.orders.upsert(order.id, order)
        logger.info(
            "Order %s: %s -> %s (%s)",
            order.order_number,
            previous.value,
            status.value,
            reason,
        )

    def _transition(
        self, order: ServiceOrder, action: OrderAction, *, has_logged_work: bool = False
    ) -> ServiceOrder:
        try:
            previous = apply_transition(order, action, has_logged_work=has_logged_work)
        except InvalidTransition:
            logger.warning(
                "Rejected %s on order %s in status %s",
                action.value,
                order.order_number,
                order.status.value,
            )
            raise
        order.updated_at = self._now()
        self.orders.upsert(order.id, order)
        logger.info(
            "Order %s: %s -> %s (%s)",
            order.order_number,
            previous.value,
            order.status.value,
            action.value,
        )
        return order

    # ------------------------------------------------------------------
    # Order numbering
    # ------------------------------------------------------------------
    def next_order_number(self, *, base: Optional[int] = None) -> str:
        """Return the number the next order (or revision of ``base``) gets."""

        with self._lock:
            return str(self._compute_order_number(base))

    def _compute_order_number(self, base: Optional[int]) -> OrderNumber:
        return next_order_number(
            (order.order_number for order in self.orders.list()),
            base=base,
            prefix=self.options.order_number_prefix,
            max_base=self.options.max_order_base,
        )

    def _insert_order(
        self,
        base: Optional[int],
        build: Callable[[str], ServiceOrder],
        after_insert: Optional[Callable[[ServiceOrder], None]] = None,
    ) -> ServiceOrder:
        retries = max(self.options.order_number_retries, 1)
        for attempt in range(1, retries + 1):
            try:
                with self._atomic():
                    number = self._compute_order_number(base)
                    order = build(str(number))
                    self.orders.add(order.id, order)
                    if after_insert is not None:
                        after_insert(order)
            except DuplicateRecordError:
                logger.warning(
                    "Order number collision, retrying (%d/%d)", attempt, retries
                )
                continue
            logger.info("Created order %s for client %s", order.order_number, order.client_id)
            return self.orders.get(order.id)
        raise SequenceExhausted(
            f"Could not allocate a unique order number after {retries} attempts"
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def create_order(
        self,
        client_id: str,
        client_name: str,
        description: str,
        sale_value: Any,
        *,
        urgency: Union[Urgency, str] = Urgency.MEDIUM,
        assigned_worker_id: Optional[str] = None,
        deadline: Optional[date] = None,
        opening_date: Optional[date] = None,
    ) -> ServiceOrder:
        value = _to_money(sale_value, "Sale value")
        urgency = Urgency(urgency)

        def build(number: str) -> ServiceOrder:
            now = self._now()
            return ServiceOrder(
                id=str(uuid4()),
                order_number=number,
                client_id=client_id,
                client_name=client_name,
                description=description,
                sale_value=value,
                urgency=urgency,
                assigned_worker_id=assigned_worker_id,
                status=OrderStatus.PENDING,
                opening_date=opening_date or now.date(),
                deadline=deadline,
                created_at=now,
                updated_at=now,
            )

        return self._insert_order(None, build)

    def create_order_from_budget(
        self,
        client_id: str,
        client_name: str,
        description: str,
        items: Iterable[BudgetItemLike],
        *,
        budget_id: Optional[str] = None,
        urgency: Union[Urgency, str] = Urgency.MEDIUM,
        assigned_worker_id: Optional[str] = None,
        deadline: Optional[date] = None,
    ) -> ServiceOrder:
        """Open an order from an approved quote.

        Every quote line becomes an order item and the sale value is their
        total.
        """

        lines = [self._budget_item(item) for item in items]
        if not lines:
            raise ValueError("A budget needs at least one item to become an order")
        urgency = Urgency(urgency)

        def build(number: str) -> ServiceOrder:
            now = self._now()
            return ServiceOrder(
                id=str(uuid4()),
                order_number=number,
                client_id=client_id,
                client_name=client_name,
                description=description,
                sale_value=ZERO_MONEY,
                urgency=urgency,
                assigned_worker_id=assigned_worker_id,
                opening_date=now.date(),
                deadline=deadline,
                budget_id=budget_id,
                created_at=now,
                updated_at=now,
            )

        def add_items(order: ServiceOrder) -> None:
            for line in lines:
                self._add_item(
                    order,
                    line.service_name,
                    line.quantity,
                    line.unit_price,
                    description=line.description,
                    sale_value=line.total_price,
                )

        order = self._insert_order(None, build, add_items)
        logger.info(
            "Order %s opened from budget %s with %d item(s)",
            order.order_number,
            budget_id,
            len(lines),
        )
        return order

    def revise_order(
        self,
        order_id: str,
        *,
        description: Optional[str] = None,
        sale_value: Any = None,
        deadline: Optional[date] = None,
    ) -> ServiceOrder:
        """Open a new revision (``OS0001-2``) of an existing order.

        Without an explicit ``sale_value`` the revision inherits the items
        of the source order.
        """

        source = self.get_order(order_id)
        number = OrderNumber.parse(source.order_number, self.options.order_number_prefix)
        if number is None:
            raise ValueError(f"Order number {source.order_number!r} cannot be revised")
        value = source.sale_value if sale_value is None else _to_money(sale_value, "Sale value")
        inherited = self.list_order_items(order_id) if sale_value is None else []

        def build(new_number: str) -> ServiceOrder:
            now = self._now()
            return ServiceOrder(
                id=str(uuid4()),
                order_number=new_number,
                client_id=source.client_id,
                client_name=source.client_name,
                description=source.description if description is None else description,
                sale_value=value,
                urgency=source.urgency,
                assigned_worker_id=source.assigned_worker_id,
                opening_date=now.date(),
                deadline=deadline or source.deadline,
                budget_id=source.budget_id,
                created_at=now,
                updated_at=now,
            )

        def copy_items(order: ServiceOrder) -> None:
            for item in inherited:
                self._add_item(
                    order,
                    item.service_name,
                    item.quantity,
                    item.unit_price,
                    description=item.description,
                    sale_value=item.sale_value,
                )

        return self._insert_order(number.base, build, copy_items)

    def get_order(self, order_id: str) -> ServiceOrder:
        with self._lock:
            return self.orders.get(order_id)

    def list_orders(
        self,
        *,
        status: Optional[OrderStatus] = None,
        client_id: Optional[str] = None,
    ) -> List[ServiceOrder]:
        """Orders in numbering order: by base, then by revision."""

        with self._lock:
            orders = self.orders.list()
        prefix = self.options.order_number_prefix
        return sorted(
            (
                order
                for order in orders
                if (status is None or order.status is status)
                and (client_id is None or order.client_id == client_id)
            ),
            key=lambda order: _order_sort_key(order, prefix),
        )

    def assign_order(self, order_id: str, worker_id: Optional[str]) -> ServiceOrder:
        with self._atomic():
            order = self.orders.get(order_id)
            order.assigned_worker_id = worker_id
            order.updated_at = self._now()
            self.orders.upsert(order.id, order)
            return order

    # ------------------------------------------------------------------
    # Order items
    # ------------------------------------------------------------------
    @staticmethod
    def _budget_item(item: BudgetItemLike) -> BudgetItem:
        if isinstance(item, BudgetItem):
            fields = {
                "service_name": item.service_name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "description": item.description,
                "total_price": item.total_price,
            }
        else:
            fields = dict(item)
        total = fields.get("total_price")
        return BudgetItem(
            service_name=str(fields.get("service_name", "")),
            quantity=_to_money(fields.get("quantity", 1), "Item quantity"),
            unit_price=_to_money(fields.get("unit_price", 0), "Unit price"),
            description=str(fields.get("description") or ""),
            total_price=None if total is None else _to_money(total, "Item total"),
        )

    def _add_item(
        self,
        order: ServiceOrder,
        service_name: str,
        quantity: Any,
        unit_price: Any,
        *,
        description: str = "",
        sale_value: Any = None,
    ) -> OrderItem:
        if not service_name.strip():
            raise ValueError("An order item needs a service name")
        if order.status.is_terminal:
            raise InvalidTransition(order.id, order.status.value, "edit items")
        amount = _to_money(quantity, "Item quantity")
        if amount == 0:
            raise ValueError("Item quantity must be positive")
        price = _to_money(unit_price, "Unit price")
        value = amount * price if sale_value is None else _to_money(sale_value, "Item total")
        item = OrderItem(
            id=str(uuid4()),
            order_id=order.id,
            service_name=service_name.strip(),
            quantity=amount,
            unit_price=price,
            sale_value=value,
            description=description,
            created_at=self._now(),
        )
        self.order_items.add(item.id, item)
        self._sync_sale_value(order)
        return item

    def _sync_sale_value(self, order: ServiceOrder) -> None:
        items = [item for item in self.order_items.list() if item.order_id == order.id]
        total = sum((item.sale_value for item in items), ZERO_MONEY)
        if total != order.sale_value:
            logger.info(
                "Order %s sale value %s -> %s from %d item(s)",
                order.order_number,
                order.sale_value,
                total,
                len(items),
            )
        order.sale_value = total
        order.updated_at = self._now()
        self.orders.upsert(order.id, order)

    def add_order_item(
        self,
        order_id: str,
        service_name: str,
        quantity: Any,
        unit_price: Any,
        *,
        description: str = "",
        sale_value: Any = None,
    ) -> OrderItem:
        """Add a priced line; from then on the order's sale value is the items' total."""

        with self._atomic():
            order = self.orders.get(order_id)
            return self._add_item(
                order,
                service_name,
                quantity,
                unit_price,
                description=description,
                sale_value=sale_value,
            )

    def remove_order_item(self, item_id: str) -> ServiceOrder:
        with self._atomic():
            item = self.order_items.get(item_id)
            order = self.orders.get(item.order_id)
            if order.status.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "edit items")
            self.order_items.remove(item.id)
            self._sync_sale_value(order)
            return order

    def list_order_items(self, order_id: str) -> List[OrderItem]:
        with self._lock:
            self.orders.get(order_id)
            items = [item for item in self.order_items.list() if item.order_id == order_id]
        return sorted(items, key=lambda item: item.created_at)

    # ------------------------------------------------------------------
    # Workflow actions
    # ------------------------------------------------------------------
    def perform_action(
        self,
        order_id: str,
        action: Union[OrderAction, str],
        *,
        reason: str = "",
        installation_date: Optional[date] = None,
        actor_id: Optional[str] = None,
    ) -> ServiceOrder:
        """Dispatch a manual workflow action by name."""

        action = OrderAction(action)
        if action not in MANUAL_ACTIONS:
            raise InvalidTransition(order_id, "manual", action.value)
        if action is OrderAction.PUT_ON_HOLD:
            return self.put_on_hold(order_id, reason, created_by=actor_id)
        if action is OrderAction.SCHEDULE_INSTALLATION:
            if installation_date is None:
                raise ValueError("An installation date is required")
            return self.schedule_installation(order_id, installation_date)
        if action is OrderAction.CANCEL:
            return self.cancel_order(order_id)
        if action is OrderAction.RESUME:
            return self.resume_order(order_id)
        with self._atomic():
            return self._transition(self.orders.get(order_id), action)

    def approve_quality(self, order_id: str) -> ServiceOrder:
        return self.perform_action(order_id, OrderAction.APPROVE_QUALITY)

    def reject_quality(self, order_id: str) -> ServiceOrder:
        return self.perform_action(order_id, OrderAction.REJECT_QUALITY)

    def confirm_pickup(self, order_id: str) -> ServiceOrder:
        return self.perform_action(order_id, OrderAction.CONFIRM_PICKUP)

    def confirm_installation(self, order_id: str) -> ServiceOrder:
        return self.perform_action(order_id, OrderAction.CONFIRM_INSTALLATION)

    def stop_order(self, order_id: str) -> ServiceOrder:
        return self.perform_action(order_id, OrderAction.STOP)

    def archive_order(self, order_id: str) -> ServiceOrder:
        return self.perform_action(order_id, OrderAction.ARCHIVE)

    def schedule_installation(self, order_id: str, installation_date: date) -> ServiceOrder:
        with self._atomic():
            order = self.orders.get(order_id)
            self._transition(order, OrderAction.SCHEDULE_INSTALLATION)
            order.installation_date = installation_date
            self.orders.upsert(order.id, order)
            return order

    def put_on_hold(
        self, order_id: str, reason: str, *, created_by: Optional[str] = None
    ) -> ServiceOrder:
        """Hold an order and open a call carrying the reason."""

        reason = reason.strip()
        if not reason:
            raise ValueError("A reason is required to put an order on hold")
        with self._atomic():
            order = self.orders.get(order_id)
            self._transition(order, OrderAction.PUT_ON_HOLD)
            order.hold_reason = reason
            self.orders.upsert(order.id, order)
            call = ServiceOrderCall(
                id=str(uuid4()),
                order_id=order.id,
                reason=reason,
                created_by=created_by,
                created_at=self._now(),
            )
            self.calls.add(call.id, call)
            return order

    def resume_order(self, order_id: str) -> ServiceOrder:
        """Lift a hold.

        The order returns to the stage it was held from when that stage lies
        past production. Otherwise it goes back to production, or to pending
        when no time was logged, unless every task was finished during the
        hold, in which case it moves on to quality control.
        """

        with self._atomic():
            order = self.orders.get(order_id)
            has_work = bool(self._order_sessions(order_id))
            self._transition(order, OrderAction.RESUME, has_logged_work=has_work)
            order.hold_reason = ""
            self.orders.upsert(order.id, order)
            if order.status in RECONCILABLE_STATUSES and work_completed(
                self._order_tasks(order_id, include_deleted=True)
            ):
                self._set_status(order, OrderStatus.QUALITY_CONTROL, reason="work completed")
            return order

    def cancel_order(self, order_id: str, *, at: Optional[datetime] = None) -> ServiceOrder:
        """Cancel an order; running timers on it are stopped first."""

        with self._atomic():
            order = self.orders.get(order_id)
            if can_apply(order.status, OrderAction.CANCEL):
                end = self._now(at)
                for session in self._order_sessions(order_id):
                    if session.is_open:
                        self._close_session(session, end, note="Order cancelled")
            return self._transition(order, OrderAction.CANCEL)

    def delete_order(self, order_id: str) -> None:
        """Remove an order with its work records unless it has been billed."""

        with self._atomic():
            order = self.orders.get(order_id)
            if order.invoice_id is not None:
                logger.warning(
                    "Refused to delete order %s referenced by invoice %s",
                    order.order_number,
                    order.invoice_id,
                )
                raise OrderLockedForBilling(order.id, order.invoice_id)
            for record in self.consumptions.list():
                if record.order_id == order_id:
                    self._return_stock(record, f"Order {order.order_number} deleted")
            for session in self._order_sessions(order_id):
                self.sessions.remove(session.id)
            for task in self._order_tasks(order_id, include_deleted=True):
                self.tasks.remove(task.id)
            for call in self.calls.list():
                if call.order_id == order_id:
                    self.calls.remove(call.id)
            for item in self.order_items.list():
                if item.order_id == order_id:
                    self.order_items.remove(item.id)
            self.orders.remove(order_id)
        logger.info("Deleted order %s", order.order_number)

    # ------------------------------------------------------------------
    # Derived status
    # ------------------------------------------------------------------
    def reconcile_order(self, order_id: str) -> OrderStatus:
        """Recompute and store the derived status; raises on conflicting data."""

        with self._atomic():
            order = self.orders.get(order_id)
            derived = derive_order_status(
                order,
                self._order_tasks(order_id, include_deleted=True),
                self._order_sessions(order_id),
            )
            if derived is not order.status:
                self._set_status(order, derived, reason="reconciled")
            return derived

    def _reconcile(self, order_id: str) -> OrderStatus:
        order = self.orders.get(order_id)
        try:
            derived = derive_order_status(
                order,
                self._order_tasks(order_id, include_deleted=True),
                self._order_sessions(order_id),
            )
        except InconsistentDerivedState as exc:
            logger.error(
                "Left order %s at %s: %s",
                order.order_number,
                order.status.value,
                exc.reason,
            )
            self.consistency_alerts.append(exc)
            return order.status
        if derived is not order.status:
            self._set_status(order, derived, reason="derived")
        return derived

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def create_task(
        self,
        order_id: str,
        title: str,
        *,
        description: str = "",
        assigned_worker_id: Optional[str] = None,
        priority: Union[TaskPriority, str] = TaskPriority.MEDIUM,
        estimated_hours: Any = None,
    ) -> Task:
        if not title.strip():
            raise ValueError("A task needs a title")
        priority = TaskPriority(priority)
        estimate = None if estimated_hours is None else _to_decimal(estimated_hours, "Estimated hours")
        with self._atomic():
            order = self.orders.get(order_id)
            if order.status.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "add task")
            now = self._now()
            task = Task(
                id=str(uuid4()),
                order_id=order.id,
                title=title.strip(),
                description=description,
                assigned_worker_id=assigned_worker_id,
                priority=priority,
                estimated_hours=estimate,
                created_at=now,
                updated_at=now,
            )
            self.tasks.add(task.id, task)
            self._reconcile(order.id)
            return task

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            return self.tasks.get(task_id)

    def list_tasks(self, order_id: str, *, include_deleted: bool = False) -> List[Task]:
        with self._lock:
            self.orders.get(order_id)
            tasks = self._order_tasks(order_id, include_deleted=include_deleted)
        return sorted(tasks, key=lambda task: task.created_at)

    def list_worker_tasks(
        self, worker_id: str, *, include_closed: bool = False
    ) -> List[Task]:
        """Tasks assigned to a worker, open ones only unless asked otherwise."""

        with self._lock:
            tasks = self.tasks.list()
        return [
            task
            for task in tasks
            if task.assigned_worker_id == worker_id
            and not task.is_deleted
            and (
                include_closed
                or task.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
            )
        ]

    def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: Union[TaskPriority, str, None] = None,
        estimated_hours: Any = None,
        status: Union[TaskStatus, str, None] = None,
        at: Optional[datetime] = None,
    ) -> Task:
        """Edit a task. Completing or cancelling it stops its running timers."""

        new_status = TaskStatus(status) if status is not None else None
        new_priority = TaskPriority(priority) if priority is not None else None
        estimate = (
            _to_decimal(estimated_hours, "Estimated hours")
            if estimated_hours is not None
            else None
        )
        if title is not None and not title.strip():
            raise ValueError("A task needs a title")
        with self._atomic():
            task = self._live_task(task_id)
            order = self.orders.get(task.order_id)
            if order.status.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "edit task")
            if new_status is not None:
                check_task_transition(task, new_status)
            if title is not None:
                task.title = title.strip()
            if description is not None:
                task.description = description
            if new_priority is not None:
                task.priority = new_priority
            if estimate is not None:
                task.estimated_hours = estimate
            task.updated_at = self._now(at)
            if new_status is not None and new_status is not task.status:
                if new_status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                    self._close_open_sessions(task, self._now(at), note=f"Task {new_status.value}")
                logger.info(
                    "Task %s: %s -> %s", task.id, task.status.value, new_status.value
                )
                task.status = new_status
            self.tasks.upsert(task.id, task)
            if new_status is not None:
                self._reconcile(task.order_id)
            return task

    def complete_task(self, task_id: str, *, at: Optional[datetime] = None) -> Task:
        return self.update_task(task_id, status=TaskStatus.COMPLETED, at=at)

    def assign_task(self, task_id: str, worker_id: Optional[str]) -> Task:
        with self._atomic():
            task = self._live_task(task_id)
            task.assigned_worker_id = worker_id
            task.updated_at = self._now()
            self.tasks.upsert(task.id, task)
            return task

    def delete_task(
        self,
        task_id: str,
        *,
        force_close_sessions: bool = False,
        at: Optional[datetime] = None,
    ) -> Task:
        """Tombstone a task.

        Its time sessions are kept for billing; its consumption records are
        removed and their quantities returned to stock.
        """

        with self._atomic():
            task = self._live_task(task_id)
            running = [
                session
                for session in filter_sessions(self.sessions.list(), task_id=task.id)
                if session.is_open
            ]
            if running and not force_close_sessions:
                logger.warning(
                    "Refused to delete task %s with %d running session(s)",
                    task.id,
                    len(running),
                )
                raise TaskHasActiveSession(task.id, [session.id for session in running])
            end = self._now(at)
            for session in running:
                self._close_session(session, end, note="Task deleted")
            for record in self.consumptions.list():
                if record.task_id == task.id:
                    self._return_stock(record, f"Task {task.title!r} deleted")
            task.deleted_at = end
            task.updated_at = end
            self.tasks.upsert(task.id, task)
            self._reconcile(task.order_id)
            logger.info("Deleted task %s of order %s", task.id, task.order_id)
            return task

    # ------------------------------------------------------------------
    # Time sessions
    # ------------------------------------------------------------------
    def start_session(
        self, task_id: str, worker_id: str, *, at: Optional[datetime] = None
    ) -> TimeSession:
        with self._atomic():
            task = self._live_task(task_id)
            existing = self.sessions.find_by_key(f"{task.id}:{worker_id}")
            if existing is not None:
                logger.warning(
                    "Worker %s already runs session %s on task %s",
                    worker_id,
                    existing.id,
                    task.id,
                )
                raise SessionAlreadyOpen(task.id, worker_id, existing.id)
            if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                raise InvalidTransition(task.id, task.status.value, "start session")
            order = self.orders.get(task.order_id)
            if not can_apply(order.status, OrderAction.START_WORK):
                raise InvalidTransition(order.id, order.status.value, OrderAction.START_WORK.value)
            session = TimeSession(
                id=str(uuid4()),
                task_id=task.id,
                order_id=order.id,
                worker_id=worker_id,
                start_time=self._now(at),
            )
            try:
                self.sessions.add(session.id, session)
            except DuplicateRecordError as exc:
                raise SessionAlreadyOpen(task.id, worker_id) from exc
            if task.status is TaskStatus.PENDING:
                task.status = TaskStatus.IN_PROGRESS
                task.updated_at = session.start_time
                self.tasks.upsert(task.id, task)
            if order.status is not OrderStatus.PRODUCTION:
                self._transition(order, OrderAction.START_WORK)
            logger.info("Worker %s started session %s on task %s", worker_id, session.id, task.id)
            return session

    def stop_session(
        self, session_id: str, *, note: str = "", at: Optional[datetime] = None
    ) -> TimeSession:
        """Close a running session and re-derive the owning order's status."""

        with self._atomic():
            try:
                session = self.sessions.get(session_id)
            except RecordNotFoundError as exc:
                raise SessionNotFound(session_id) from exc
            if not session.is_open:
                raise SessionAlreadyClosed(session_id)
            self._close_session(session, self._now(at), note=note)
            self._reconcile(session.order_id)
            return session

    def _close_session(self, session: TimeSession, end: datetime, *, note: str = "") -> None:
        hours = hours_between(
            session.start_time, end, places=self.options.hours_decimal_places
        )
        session.end_time = end
        session.hours_worked = hours
        if note:
            session.note = note
        self.sessions.upsert(session.id, session)
        logger.info(
            "Closed session %s of worker %s after %s h", session.id, session.worker_id, hours
        )

    def _close_open_sessions(self, task: Task, end: datetime, *, note: str) -> List[TimeSession]:
        closed = []
        for session in filter_sessions(self.sessions.list(), task_id=task.id):
            if session.is_open:
                self._close_session(session, end, note=note)
                closed.append(session)
        return closed

    def get_session(self, session_id: str) -> TimeSession:
        with self._lock:
            try:
                return self.sessions.get(session_id)
            except RecordNotFoundError as exc:
                raise SessionNotFound(session_id) from exc

    def list_sessions(
        self,
        *,
        task_id: Optional[str] = None,
        order_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> List[TimeSession]:
        with self._lock:
            sessions = filter_sessions(
                self.sessions.list(), task_id=task_id, order_id=order_id, worker_id=worker_id
            )
        return sorted(sessions, key=lambda session: session.start_time)

    def open_sessions(
        self, *, worker_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[TimeSession]:
        return [
            session
            for session in self.list_sessions(worker_id=worker_id, order_id=order_id)
            if session.is_open
        ]

    def total_hours(
        self,
        *,
        task_id: Optional[str] = None,
        order_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        live: bool = False,
        at: Optional[datetime] = None,
    ) -> Decimal:
        """Hours booked on a task or an order.

        Only closed sessions count unless ``live`` is set, in which case
        running sessions contribute their elapsed time up to ``at``.
        """

        if (task_id is None) == (order_id is None):
            raise ValueError("Pass exactly one of task_id or order_id")
        sessions = self.list_sessions(task_id=task_id, order_id=order_id, worker_id=worker_id)
        if live:
            return live_hours(
                sessions, self._now(at), places=self.options.hours_decimal_places
            )
        return billed_hours(sessions)

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    def register_inventory_item(
        self,
        name: str,
        *,
        quantity: int = 0,
        unit_price: Any = ZERO_MONEY,
        unit_of_measure: str = "pcs",
    ) -> InventoryItem:
        quantity = _to_quantity(quantity)
        if quantity < 0:
            raise ValueError("Stock quantity cannot be negative")
        price = _to_money(unit_price, "Unit price")
        if price < 0:
            raise ValueError("Unit price cannot be negative")
        with self._atomic():
            item = InventoryItem(
                id=str(uuid4()),
                name=name,
                quantity=quantity,
                unit_price=price,
                unit_of_measure=unit_of_measure,
                created_at=self._now(),
            )
            self.inventory.add(item.id, item)
            if quantity:
                self._record_movement(item.id, MovementType.IN, quantity, "Opening stock")
            return item

    def get_inventory_item(self, item_id: str) -> InventoryItem:
        with self._lock:
            return self.inventory.get(item_id)

    def list_inventory(self) -> List[InventoryItem]:
        with self._lock:
            return sorted(self.inventory.list(), key=lambda item: item.name)

    def restock(self, item_id: str, quantity: int, *, reason: str = "Restock") -> InventoryItem:
        quantity = _to_quantity(quantity)
        if quantity <= 0:
            raise ValueError("Restock quantity must be positive")
        with self._atomic():
            item = self.inventory.get(item_id)
            self._record_movement(item.id, MovementType.IN, quantity, reason)
            item.quantity += quantity
            self.inventory.upsert(item.id, item)
            logger.info("Restocked %s by %d to %d", item.name, quantity, item.quantity)
            return item

    def consume(
        self,
        task_id: str,
        item_id: str,
        quantity: int,
        *,
        consumed_by: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> ConsumptionRecord:
        """Draw material from stock for a task.

        The stock level is read inside the write lock and the transaction,
        so the check and the decrement see the same value.
        """

        quantity = _to_quantity(quantity)
        if quantity <= 0:
            raise ValueError("Consumed quantity must be positive")
        with self._atomic():
            task = self._live_task(task_id)
            order = self.orders.get(task.order_id)
            if order.status.is_terminal:
                raise InvalidTransition(order.id, order.status.value, "consume materials")
            item = self.inventory.get(item_id)
            if item.quantity < quantity:
                logger.warning(
                    "Insufficient stock of %s: requested %d, available %d",
                    item.name,
                    quantity,
                    item.quantity,
                )
                raise InsufficientStock(item.id, quantity, item.quantity)
            record = ConsumptionRecord(
                id=str(uuid4()),
                task_id=task.id,
                order_id=order.id,
                item_id=item.id,
                quantity=quantity,
                unit_price=item.unit_price,
                consumed_at=self._now(at),
                consumed_by=consumed_by,
            )
            self.consumptions.add(record.id, record)
            self._record_movement(item.id, MovementType.OUT, quantity, "Used on task", task_id=task.id)
            item.quantity -= quantity
            self.inventory.upsert(item.id, item)
            logger.info(
                "Task %s consumed %d x %s, %d left", task.id, quantity, item.name, item.quantity
            )
            return record

    def list_consumption(
        self, *, task_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[ConsumptionRecord]:
        with self._lock:
            records = self.consumptions.list()
        return sorted(
            (
                record
                for record in records
                if (task_id is None or record.task_id == task_id)
                and (order_id is None or record.order_id == order_id)
            ),
            key=lambda record: record.consumed_at,
        )

    def list_movements(self, item_id: Optional[str] = None) -> List[InventoryMovement]:
        with self._lock:
            movements = self.movements.list()
        return [
            movement
            for movement in movements
            if item_id is None or movement.item_id == item_id
        ]

    def _record_movement(
        self,
        item_id: str,
        movement_type: MovementType,
        quantity: int,
        reason: str,
        *,
        task_id: Optional[str] = None,
    ) -> InventoryMovement:
        movement = InventoryMovement(
            id=str(uuid4()),
            item_id=item_id,
            movement_type=movement_type,
            quantity=quantity,
            reason=reason,
            task_id=task_id,
            created_at=self._now(),
        )
        self.movements.add(movement.id, movement)
        return movement

    def _return_stock(self, record: ConsumptionRecord, reason: str) -> None:
        item = self.inventory.get(record.item_id)
        self._record_movement(item.id, MovementType.IN, record.quantity, reason, task_id=record.task_id)
        item.quantity += record.quantity
        self.inventory.upsert(item.id, item)
        self.consumptions.remove(record.id)

    # ------------------------------------------------------------------
    # Invoicing
    # ------------------------------------------------------------------
    @staticmethod
    def _extra_charge(extra: ExtraChargeLike) -> ExtraCharge:
        if isinstance(extra, ExtraCharge):
            description, value = extra.description, extra.value
        elif isinstance(extra, Mapping):
            description, value = extra.get("description", ""), extra.get("value")
        else:
            description, value = extra
        value = _to_decimal(value, "Extra charge")
        if value < 0:
            raise InvalidInvoiceRequest(f"Extra charge {description!r} cannot be negative")
        return ExtraCharge(description=str(description), value=value)

    def generate_invoice(
        self,
        order_ids: Sequence[str],
        *,
        period_start: date,
        period_end: date,
        extras: Iterable[ExtraChargeLike] = (),
    ) -> Invoice:
        """Bill one client's orders plus extra charges.

        Order hours are recomputed from closed sessions. The invoice and the
        ``invoiced`` transition of every order are written in one
        transaction.
        """

        order_ids = list(order_ids)
        if not order_ids:
            raise InvalidInvoiceRequest("An invoice needs at least one order")
        if len(set(order_ids)) != len(order_ids):
            raise InvalidInvoiceRequest("An order can only appear once on an invoice")
        if period_end < period_start:
            raise InvalidInvoiceRequest("The billing period ends before it starts")
        charges = tuple(self._extra_charge(extra) for extra in extras)

        with self._atomic():
            orders = [self.orders.get(order_id) for order_id in order_ids]
            clients = {order.client_id for order in orders}
            if len(clients) > 1:
                raise InvalidInvoiceRequest(
                    f"Orders belong to different clients: {sorted(clients)}"
                )
            for order in orders:
                if not can_apply(order.status, OrderAction.INVOICE):
                    logger.warning(
                        "Order %s cannot be invoiced in status %s",
                        order.order_number,
                        order.status.value,
                    )
                    raise InvalidTransition(
                        order.id, order.status.value, OrderAction.INVOICE.value
                    )

            lines = tuple(
                OrderInvoiceLine(
                    order_id=order.id,
                    order_number=order.order_number,
                    sale_value=order.sale_value,
                    total_hours=billed_hours(self._order_sessions(order.id)),
                )
                for order in orders
            )
            total_value = sum((line.sale_value for line in lines), ZERO_MONEY) + sum(
                (charge.value for charge in charges), ZERO_MONEY
            )
            total_time = sum((line.total_hours for line in lines), ZERO_HOURS)
            invoice = Invoice(
                id=str(uuid4()),
                client_id=orders[0].client_id,
                client_name=orders[0].client_name,
                period_start=period_start,
                period_end=period_end,
                orders=lines,
                extras=charges,
                total_value=total_value,
                total_time=total_time,
                created_at=self._now(),
            )
            try:
                self.invoices.add(invoice.id, invoice)
                for order in orders:
                    self._transition(order, OrderAction.INVOICE)
                    order.invoice_id = invoice.id
                    self.orders.upsert(order.id, order)
            except (RepositoryError, InvalidTransition) as exc:
                logger.error("Invoice for %s rolled back: %s", order_ids, exc)
                raise PartialInvoiceFailure(order_ids, str(exc)) from exc
        logger.info(
            "Invoice %s: %d order(s), total %s, %s h",
            invoice.id,
            len(lines),
            invoice.total_value,
            invoice.total_time,
        )
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self._lock:
            return self.invoices.get(invoice_id)

    def list_invoices(self, *, client_id: Optional[str] = None) -> List[Invoice]:
        with self._lock:
            invoices = self.invoices.list()
        return sorted(
            (
                invoice
                for invoice in invoices
                if client_id is None or invoice.client_id == client_id
            ),
            key=lambda invoice: invoice.created_at,
        )

    def delete_invoice(self, invoice_id: str) -> None:
        """Delete an invoice and return its orders to ``to_invoice``.

        Refused once any of the orders has been archived.
        """

        with self._atomic():
            invoice = self.invoices.get(invoice_id)
            orders = [self.orders.get(order_id) for order_id in invoice.order_ids]
            for order in orders:
                if order.invoice_id == invoice.id and not can_apply(
                    order.status, OrderAction.REVERT_INVOICE
                ):
                    raise InvalidTransition(
                        order.id, order.status.value, OrderAction.REVERT_INVOICE.value
                    )
            for order in orders:
                if order.invoice_id != invoice.id:
                    continue
                self._transition(order, OrderAction.REVERT_INVOICE)
                order.invoice_id = None
                self.orders.upsert(order.id, order)
            self.invoices.remove(invoice.id)
        logger.info("Deleted invoice %s", invoice_id)

    # ------------------------------------------------------------------
    # Order calls
    # ------------------------------------------------------------------
    def list_calls(
        self, *, order_id: Optional[str] = None, resolved: Optional[bool] = None
    ) -> List[ServiceOrderCall]:
        with self._lock:
            calls = self.calls.list()
        return [
            call
            for call in calls
            if (order_id is None or call.order_id == order_id)
            and (resolved is None or call.resolved is resolved)
        ]

    def resolve_call(
        self, call_id: str, *, resolved_by: Optional[str] = None, at: Optional[datetime] = None
    ) -> ServiceOrderCall:
        with self._atomic():
            call = self.calls.get(call_id)
            if call.resolved:
                raise InvalidTransition(call.id, "resolved", "resolve")
            call.resolved = True
            call.resolved_by = resolved_by
            call.resolved_at = self._now(at)
            self.calls.upsert(call.id, call)
            return call

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def get_order_summary(self, order_id: str, *, at: Optional[datetime] = None) -> OrderSummary:
        """Resolve an order with per-task hours and material costs."""

        now = self._now(at)
        places = self.options.hours_decimal_places
        with self._lock:
            order = self.orders.get(order_id)
            tasks = sorted(
                self._order_tasks(order_id, include_deleted=True),
                key=lambda task: task.created_at,
            )
            sessions = self._order_sessions(order_id)
            records = [record for record in self.consumptions.list() if record.order_id == order_id]
            items = {record.item_id: self.inventory.get(record.item_id) for record in records}
            open_calls = len(
                [call for call in self.calls.list() if call.order_id == order_id and not call.resolved]
            )
            order_items = self.list_order_items(order_id)

        task_rows = []
        for task in tasks:
            task_sessions = filter_sessions(sessions, task_id=task.id)
            task_rows.append(
                TaskSummary(
                    task_id=task.id,
                    title=task.title,
                    status=task.status,
                    assigned_worker_id=task.assigned_worker_id,
                    billed_hours=billed_hours(task_sessions),
                    live_hours=live_hours(task_sessions, now, places=places),
                    open_sessions=len([s for s in task_sessions if s.is_open]),
                    deleted=task.is_deleted,
                )
            )

        usage: Dict[str, MaterialUsage] = {}
        for record in records:
            row = usage.get(record.item_id)
            if row is None:
                row = usage[record.item_id] = MaterialUsage(
                    item_id=record.item_id,
                    name=items[record.item_id].name,
                    quantity=0,
                    unit_price=record.unit_price,
                    cost=ZERO_MONEY,
                )
            row.quantity += record.quantity
            row.cost += record.cost
        materials = sorted(usage.values(), key=lambda row: row.name)

        return OrderSummary(
            order=order,
            tasks=task_rows,
            materials=materials,
            billed_hours=billed_hours(sessions),
            live_hours=live_hours(sessions, now, places=places),
            materials_cost=sum((row.cost for row in materials), ZERO_MONEY),
            open_calls=open_calls,
            items=order_items,
        )

    def get_invoice_detail(self, invoice_id: str) -> InvoiceDetail:
        invoice = self.get_invoice(invoice_id)
        return InvoiceDetail(
            invoice=invoice,
            orders_subtotal=sum((line.sale_value for line in invoice.orders), ZERO_MONEY),
            extras_subtotal=sum((extra.value for extra in invoice.extras), ZERO_MONEY),
            lines=list(invoice.orders),
            extras=list(invoice.extras),
        )

    def worker_hours_report(self, period_start: date, period_end: date) -> List[WorkerHours]:
        """Closed-session hours per worker for sessions ending in the period."""

        if period_end < period_start:
            raise ValueError("The report period ends before it starts")
        with self._lock:
            sessions = self.sessions.list()
        totals: Dict[str, WorkerHours] = {}
        orders: Dict[str, List[str]] = {}
        for session in sessions:
            if session.is_open or session.hours_worked is None:
                continue
            assert session.end_time is not None
            if not period_start <= session.end_time.date() <= period_end:
                continue
            row = totals.setdefault(
                session.worker_id,
                WorkerHours(worker_id=session.worker_id, hours=ZERO_HOURS, session_count=0),
            )
            row.hours += session.hours_worked
            row.session_count += 1
            seen = orders.setdefault(session.worker_id, [])
            if session.order_id not in seen:
                seen.append(session.order_id)
        for worker_id, row in totals.items():
            row.order_ids = tuple(orders[worker_id])
        return sorted(totals.values(), key=lambda row: row.worker_id)


__all__ = [
    "WorkshopService",
    "WorkflowOptions",
    "OrderSummary",
    "TaskSummary",
    "MaterialUsage",
    "InvoiceDetail",
    "WorkerHours",
    "MANUAL_ACTIONS",
]

"""Order state machine and task status rules.

Manual workflow actions are validated against :data:`ORDER_TRANSITIONS`.
Automatic changes (first timer started, last task completed, timer
stopped) are never taken from the caller: :func:`derive_order_status`
recomputes them from the order's tasks and time sessions.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .domain import OrderStatus, ServiceOrder, Task, TaskStatus, TimeSession
from .exceptions import InconsistentDerivedState, InvalidTransition


class OrderAction(str, Enum):
    """Manual and engine-issued workflow actions on an order."""

    APPROVE_QUALITY = "approve_quality"
    REJECT_QUALITY = "reject_quality"
    CONFIRM_PICKUP = "confirm_pickup"
    SCHEDULE_INSTALLATION = "schedule_installation"
    CONFIRM_INSTALLATION = "confirm_installation"
    PUT_ON_HOLD = "put_on_hold"
    STOP = "stop"
    RESUME = "resume"
    CANCEL = "cancel"
    START_WORK = "start_work"
    INVOICE = "invoice"
    REVERT_INVOICE = "revert_invoice"
    ARCHIVE = "archive"


_ACTIVE = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.PRODUCTION,
        OrderStatus.STOPPED,
        OrderStatus.QUALITY_CONTROL,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.AWAITING_INSTALLATION,
    }
)

# action -> (allowed sources, target); RESUME and START_WORK resolve their
# target at runtime.
ORDER_TRANSITIONS: Dict[OrderAction, Tuple[FrozenSet[OrderStatus], Optional[OrderStatus]]] = {
    OrderAction.APPROVE_QUALITY: (
        frozenset({OrderStatus.QUALITY_CONTROL}),
        OrderStatus.READY_FOR_PICKUP,
    ),
    OrderAction.REJECT_QUALITY: (
        frozenset({OrderStatus.QUALITY_CONTROL}),
        OrderStatus.PRODUCTION,
    ),
    OrderAction.CONFIRM_PICKUP: (
        frozenset({OrderStatus.READY_FOR_PICKUP}),
        OrderStatus.TO_INVOICE,
    ),
    OrderAction.SCHEDULE_INSTALLATION: (
        frozenset({OrderStatus.READY_FOR_PICKUP}),
        OrderStatus.AWAITING_INSTALLATION,
    ),
    OrderAction.CONFIRM_INSTALLATION: (
        frozenset({OrderStatus.AWAITING_INSTALLATION}),
        OrderStatus.TO_INVOICE,
    ),
    OrderAction.PUT_ON_HOLD: (_ACTIVE, OrderStatus.ON_HOLD),
    OrderAction.STOP: (
        frozenset({OrderStatus.PENDING, OrderStatus.PRODUCTION, OrderStatus.ON_HOLD}),
        OrderStatus.STOPPED,
    ),
    OrderAction.RESUME: (
        frozenset({OrderStatus.ON_HOLD, OrderStatus.STOPPED}),
        None,
    ),
    OrderAction.CANCEL: (
        _ACTIVE | {OrderStatus.ON_HOLD, OrderStatus.TO_INVOICE},
        OrderStatus.CANCELLED,
    ),
    OrderAction.START_WORK: (
        frozenset(
            {
                OrderStatus.PENDING,
                OrderStatus.PRODUCTION,
                OrderStatus.STOPPED,
                OrderStatus.ON_HOLD,
                OrderStatus.QUALITY_CONTROL,
            }
        ),
        OrderStatus.PRODUCTION,
    ),
    OrderAction.INVOICE: (frozenset({OrderStatus.TO_INVOICE}), OrderStatus.INVOICED),
    OrderAction.REVERT_INVOICE: (frozenset({OrderStatus.INVOICED}), OrderStatus.TO_INVOICE),
    OrderAction.ARCHIVE: (frozenset({OrderStatus.INVOICED}), OrderStatus.COMPLETED),
}

# Stored statuses that timers and task completion may overwrite.
RECONCILABLE_STATUSES = frozenset(
    {OrderStatus.PENDING, OrderStatus.PRODUCTION, OrderStatus.STOPPED}
)

TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED}
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PENDING, TaskStatus.COMPLETED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


def can_apply(status: OrderStatus, action: OrderAction) -> bool:
    sources, _ = ORDER_TRANSITIONS[action]
    return status in sources


def resolve_target(
    order: ServiceOrder, action: OrderAction, *, has_logged_work: bool = False
) -> OrderStatus:
    """Return the status ``action`` leads to, or raise ``InvalidTransition``.

    An order held from a stage past production resumes at that stage.
    While held, actions that the held-from stage would not allow (stopping
    an order awaiting pickup, timers on an order awaiting installation) are
    refused; cancelling is always possible.
    """

    sources, target = ORDER_TRANSITIONS[action]
    if order.status not in sources:
        raise InvalidTransition(order.id, order.status.value, action.value)
    held_from = order.held_from if order.status is OrderStatus.ON_HOLD else None
    if action is OrderAction.RESUME:
        if held_from is not None and held_from not in RECONCILABLE_STATUSES:
            return held_from
        return OrderStatus.PRODUCTION if has_logged_work else OrderStatus.PENDING
    if (
        action is not OrderAction.CANCEL
        and held_from is not None
        and held_from not in RECONCILABLE_STATUSES
        and held_from not in sources
    ):
        raise InvalidTransition(
            order.id, f"{order.status.value} from {held_from.value}", action.value
        )
    assert target is not None
    return target


def apply_transition(
    order: ServiceOrder, action: OrderAction, *, has_logged_work: bool = False
) -> OrderStatus:
    """Move ``order`` along ``action`` and return the previous status.

    Nothing on the order is touched when the transition is illegal. Entering
    ``on_hold`` remembers the status it was entered from; leaving it clears
    that again.
    """

    target = resolve_target(order, action, has_logged_work=has_logged_work)
    previous = order.status
    order.status = target
    if target is OrderStatus.ON_HOLD:
        order.held_from = previous
    elif previous is OrderStatus.ON_HOLD:
        order.held_from = None
    return previous


def check_task_transition(task: Task, status: TaskStatus) -> None:
    if status == task.status:
        return
    if status not in TASK_TRANSITIONS[task.status]:
        raise InvalidTransition(task.id, task.status.value, f"set status {status.value}")


def live_tasks(tasks: Iterable[Task]) -> List[Task]:
    return [
        task
        for task in tasks
        if not task.is_deleted and task.status is not TaskStatus.CANCELLED
    ]


def work_completed(tasks: Iterable[Task]) -> bool:
    """True when the order has live tasks and every one of them is completed."""

    live = live_tasks(tasks)
    return bool(live) and all(task.status is TaskStatus.COMPLETED for task in live)


def derive_order_status(
    order: ServiceOrder,
    tasks: Iterable[Task],
    sessions: Iterable[TimeSession],
) -> OrderStatus:
    """Recompute the status an order should have from its work records.

    Only orders in a reconcilable status are affected. All live tasks
    completed gives ``quality_control``; otherwise a running session gives
    ``production``; otherwise, once work has been logged, ``stopped``.
    """

    tasks = list(tasks)
    sessions = list(sessions)
    by_id = {task.id: task for task in tasks}

    for session in sessions:
        if session.order_id != order.id:
            raise InconsistentDerivedState(
                order.id, f"session {session.id!r} belongs to order {session.order_id!r}"
            )
        task = by_id.get(session.task_id)
        if task is None:
            raise InconsistentDerivedState(
                order.id, f"session {session.id!r} references unknown task {session.task_id!r}"
            )
        if session.is_open and (
            task.is_deleted
            or task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)
        ):
            raise InconsistentDerivedState(
                order.id,
                f"session {session.id!r} is running on {task.status.value} task {task.id!r}",
            )

    if order.status not in RECONCILABLE_STATUSES:
        return order.status

    if work_completed(tasks):
        return OrderStatus.QUALITY_CONTROL
    if any(session.is_open for session in sessions):
        return OrderStatus.PRODUCTION
    if sessions:
        return OrderStatus.STOPPED
    return order.status


__all__ = [
    "OrderAction",
    "ORDER_TRANSITIONS",
    "RECONCILABLE_STATUSES",
    "TASK_TRANSITIONS",
    "can_apply",
    "resolve_target",
    "apply_transition",
    "check_task_transition",
    "live_tasks",
    "work_completed",
    "derive_order_status",
]

"""Typed errors raised by the workshop engine.

Every error carries a machine-readable ``code`` and the structured data the
caller needs to react without parsing the message.

    WorkshopError
    +-- InvalidTransition
    +-- SessionError
    |   +-- SessionAlreadyOpen
    |   +-- SessionNotFound
    |   +-- SessionAlreadyClosed
    +-- InsufficientStock
    +-- TaskHasActiveSession
    +-- SequenceExhausted
    +-- PartialInvoiceFailure
    +-- InconsistentDerivedState
    +-- InvalidInvoiceRequest
    +-- OrderLockedForBilling
"""

from __future__ import annotations

from typing import Optional, Sequence


class WorkshopError(RuntimeError):
    """Base exception for engine errors."""

    code: str = "WORKSHOP_ERROR"


class InvalidTransition(WorkshopError):
    """Raised when a state change is not legal from the current state."""

    code = "INVALID_TRANSITION"

    def __init__(self, entity_id: str, current: str, action: str) -> None:
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(
            f"Cannot {action} {entity_id!r} while it is {current!r}"
        )


class SessionError(WorkshopError):
    code = "SESSION_ERROR"


class SessionAlreadyOpen(SessionError):
    code = "SESSION_ALREADY_OPEN"

    def __init__(self, task_id: str, worker_id: str, session_id: Optional[str] = None) -> None:
        self.task_id = task_id
        self.worker_id = worker_id
        self.session_id = session_id
        super().__init__(
            f"Worker {worker_id!r} already has an open session on task {task_id!r}"
        )


class SessionNotFound(SessionError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Time session {session_id!r} not found")


class SessionAlreadyClosed(SessionError):
    code = "SESSION_ALREADY_CLOSED"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Time session {session_id!r} is already closed")


class InsufficientStock(WorkshopError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, requested: int, available: int) -> None:
        self.item_id = item_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot consume {requested} of item {item_id!r}: only {available} in stock"
        )


class TaskHasActiveSession(WorkshopError):
    code = "TASK_HAS_ACTIVE_SESSION"

    def __init__(self, task_id: str, session_ids: Sequence[str]) -> None:
        self.task_id = task_id
        self.session_ids = tuple(session_ids)
        super().__init__(
            f"Task {task_id!r} has {len(self.session_ids)} open time session(s)"
        )


class SequenceExhausted(WorkshopError):
    code = "SEQUENCE_EXHAUSTED"


class PartialInvoiceFailure(WorkshopError):
    """The invoice could not be written together with its order transitions."""

    code = "PARTIAL_INVOICE_FAILURE"

    def __init__(self, order_ids: Sequence[str], reason: str) -> None:
        self.order_ids = tuple(order_ids)
        self.reason = reason
        super().__init__(f"Invoice for orders {list(self.order_ids)} rolled back: {reason}")


class InconsistentDerivedState(WorkshopError):
    """Derived order status cannot be determined from the recorded data."""

    code = "INCONSISTENT_DERIVED_STATE"

    def __init__(self, order_id: str, reason: str) -> None:
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id!r} has inconsistent work data: {reason}")


class InvalidInvoiceRequest(WorkshopError):
    code = "INVALID_INVOICE_REQUEST"


class OrderLockedForBilling(WorkshopError):
    code = "ORDER_LOCKED_FOR_BILLING"

    def __init__(self, order_id: str, invoice_id: str) -> None:
        self.order_id = order_id
        self.invoice_id = invoice_id
        super().__init__(
            f"Order {order_id!r} is referenced by invoice {invoice_id!r}"
        )


__all__ = [
    "WorkshopError",
    "InvalidTransition",
    "SessionError",
    "SessionAlreadyOpen",
    "SessionNotFound",
    "SessionAlreadyClosed",
    "InsufficientStock",
    "TaskHasActiveSession",
    "SequenceExhausted",
    "PartialInvoiceFailure",
    "InconsistentDerivedState",
    "InvalidInvoiceRequest",
    "OrderLockedForBilling",
]

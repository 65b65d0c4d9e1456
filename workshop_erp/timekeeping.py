"""Hour arithmetic for time sessions."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .domain import TimeSession

_MICROSECONDS_PER_HOUR = Decimal(3_600_000_000)
ZERO_HOURS = Decimal("0")


def quantum(places: int) -> Decimal:
    return Decimal(1).scaleb(-places)


def hours_between(start: datetime, end: datetime, *, places: int = 4) -> Decimal:
    """Return ``end - start`` in hours as a fixed-point decimal."""

    if end < start:
        raise ValueError("A time session cannot end before it starts")
    microseconds = (end - start) // timedelta(microseconds=1)
    hours = Decimal(microseconds) / _MICROSECONDS_PER_HOUR
    return hours.quantize(quantum(places), rounding=ROUND_HALF_UP)


def billed_hours(sessions: Iterable[TimeSession]) -> Decimal:
    """Sum the persisted hours of closed sessions; running ones never count."""

    total = ZERO_HOURS
    for session in sessions:
        if not session.is_open and session.hours_worked is not None:
            total += session.hours_worked
    return total


def live_hours(
    sessions: Iterable[TimeSession], at: datetime, *, places: int = 4
) -> Decimal:
    """Closed hours plus the elapsed time of sessions still running at ``at``."""

    total = ZERO_HOURS
    for session in sessions:
        if session.is_open:
            if at > session.start_time:
                total += hours_between(session.start_time, at, places=places)
        elif session.hours_worked is not None:
            total += session.hours_worked
    return total


def filter_sessions(
    sessions: Iterable[TimeSession],
    *,
    task_id: Optional[str] = None,
    order_id: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> list:
    return [
        session
        for session in sessions
        if (task_id is None or session.task_id == task_id)
        and (order_id is None or session.order_id == order_id)
        and (worker_id is None or session.worker_id == worker_id)
    ]


__all__ = [
    "ZERO_HOURS",
    "quantum",
    "hours_between",
    "billed_hours",
    "live_hours",
    "filter_sessions",
]

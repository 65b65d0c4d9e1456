"""Human-readable order numbers of the form ``OS0001-1``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .exceptions import SequenceExhausted

DEFAULT_PREFIX = "OS"
DEFAULT_MAX_BASE = 99_999_999
MAX_REVISION = 9_999


@dataclass(frozen=True, slots=True)
class OrderNumber:
    """Parsed order number: a base sequence plus a revision suffix."""

    base: int
    revision: int
    prefix: str = DEFAULT_PREFIX

    def __str__(self) -> str:
        return f"{self.prefix}{self.base:04d}-{self.revision}"

    @classmethod
    def parse(cls, value: str, prefix: str = DEFAULT_PREFIX) -> Optional["OrderNumber"]:
        match = re.fullmatch(rf"{re.escape(prefix)}(\d{{4,}})-(\d+)", value.strip())
        if match is None:
            return None
        return cls(base=int(match.group(1)), revision=int(match.group(2)), prefix=prefix)


def next_order_number(
    existing: Iterable[str],
    *,
    base: Optional[int] = None,
    prefix: str = DEFAULT_PREFIX,
    max_base: int = DEFAULT_MAX_BASE,
) -> OrderNumber:
    """Compute the number for a new order.

    Without ``base`` a new base one above the highest existing base is
    opened. The revision is one above the highest revision already issued
    for the chosen base, starting at 1. Numbers that do not parse are
    ignored.
    """

    parsed = [
        number
        for number in (OrderNumber.parse(value, prefix) for value in existing)
        if number is not None
    ]
    if base is None:
        base = max((number.base for number in parsed), default=0) + 1
    if base < 1 or base > max_base:
        raise SequenceExhausted(f"Order base {base} is outside 1..{max_base}")
    revision = max(
        (number.revision for number in parsed if number.base == base), default=0
    ) + 1
    if revision > MAX_REVISION:
        raise SequenceExhausted(f"Order base {base} has no revisions left")
    return OrderNumber(base=base, revision=revision, prefix=prefix)


__all__ = ["OrderNumber", "next_order_number", "DEFAULT_PREFIX", "DEFAULT_MAX_BASE"]

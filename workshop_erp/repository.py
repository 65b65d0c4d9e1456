"""Simple in-memory repositories used by the workshop service layer."""

from __future__ import annotations

import copy
from contextlib import contextmanager
from typing import (
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    MutableMapping,
    Optional,
    Tuple,
    TypeVar,
)

from .domain import (
    ConsumptionRecord,
    InventoryItem,
    InventoryMovement,
    Invoice,
    OrderItem,
    ServiceOrder,
    ServiceOrderCall,
    Task,
    TimeSession,
)

T = TypeVar("T")
KeyFunc = Callable[[T], Optional[str]]


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError):
    """Raised when a requested record is missing."""


def order_number_key(order: ServiceOrder) -> Optional[str]:
    return order.order_number


def open_session_key(session: TimeSession) -> Optional[str]:
    """Index key held only while the session is running."""

    if not session.is_open:
        return None
    return f"{session.task_id}:{session.worker_id}"


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a simple dictionary.

    Records are copied on the way in and on the way out, so callers never
    hold a reference to the stored object and must ``upsert`` changes.

    An optional ``unique_key`` function maps a record to an index key; two
    records may not share a non-null key. A record whose key is ``None`` is
    simply not indexed.
    """

    def __init__(self, unique_key: Optional[KeyFunc] = None) -> None:
        self._items: MutableMapping[str, T] = {}
        self._unique_key = unique_key
        self._index: Dict[str, str] = {}

    def _index_item(self, item_id: str, item: T) -> None:
        if self._unique_key is None:
            return
        key = self._unique_key(item)
        owner = self._index.get(key) if key is not None else None
        if owner is not None and owner != item_id:
            raise DuplicateRecordError(f"Unique key {key!r} is already taken by {owner!r}")
        self._unindex(item_id)
        if key is not None:
            self._index[key] = item_id

    def _unindex(self, item_id: str) -> None:
        for key, owner in list(self._index.items()):
            if owner == item_id:
                del self._index[key]

    def add(self, item_id: str, item: T) -> None:
        if item_id in self._items:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._index_item(item_id, item)
        self._items[item_id] = copy.deepcopy(item)

    def upsert(self, item_id: str, item: T) -> None:
        self._index_item(item_id, item)
        self._items[item_id] = copy.deepcopy(item)

    def get(self, item_id: str) -> T:
        try:
            return copy.deepcopy(self._items[item_id])
        except KeyError as exc:  # pragma: no cover - trivial
            raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def find_by_key(self, key: str) -> Optional[T]:
        item_id = self._index.get(key)
        return copy.deepcopy(self._items[item_id]) if item_id is not None else None

    def remove(self, item_id: str) -> None:
        if item_id not in self._items:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        self._unindex(item_id)
        del self._items[item_id]

    def list(self) -> List[T]:
        return copy.deepcopy(list(self._items.values()))

    def snapshot(self) -> Tuple[Dict[str, T], Dict[str, str]]:
        # Stored records are private copies that are replaced, never mutated.
        return dict(self._items), dict(self._index)

    def restore(self, state: Tuple[Dict[str, T], Dict[str, str]]) -> None:
        items, index = state
        self._items = items
        self._index = index


class InMemoryStore:
    """Bundle of in-memory repositories with snapshot based transactions."""

    def __init__(self) -> None:
        self.orders = InMemoryRepository[ServiceOrder](unique_key=order_number_key)
        self.items = InMemoryRepository[OrderItem]()
        self.tasks = InMemoryRepository[Task]()
        self.sessions = InMemoryRepository[TimeSession](unique_key=open_session_key)
        self.inventory = InMemoryRepository[InventoryItem]()
        self.consumptions = InMemoryRepository[ConsumptionRecord]()
        self.movements = InMemoryRepository[InventoryMovement]()
        self.invoices = InMemoryRepository[Invoice]()
        self.calls = InMemoryRepository[ServiceOrderCall]()
        self._depth = 0

    def repositories(self) -> List[InMemoryRepository]:
        return [
            self.orders,
            self.items,
            self.tasks,
            self.sessions,
            self.inventory,
            self.consumptions,
            self.movements,
            self.invoices,
            self.calls,
        ]

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """Run a block atomically; every repository is restored if it raises."""

        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        snapshots = [(repo, repo.snapshot()) for repo in self.repositories()]
        self._depth = 1
        try:
            yield self
        except BaseException:
            for repo, state in snapshots:
                repo.restore(state)
            raise
        finally:
            self._depth = 0


__all__ = [
    "InMemoryRepository",
    "InMemoryStore",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "order_number_key",
    "open_session_key",
]

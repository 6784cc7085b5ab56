"""Keyed storage interface and its in-memory implementation."""

import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Minimal keyed store the core depends on.

    Implementations raise StoreUnavailableError when the backing store cannot
    serve a request.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        ...

    @abstractmethod
    def put(self, key: str, value: T) -> None:
        ...

    @abstractmethod
    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    def put_many(self, items: Iterable[tuple]) -> None:
        """Stores (key, value) pairs. Implementations may make this atomic."""
        for key, value in items:
            self.put(key, value)

    def delete_where(self, predicate: Callable[[T], bool]) -> int:
        removed = 0
        for key in self.keys():
            value = self.get(key)
            if value is not None and predicate(value):
                removed += int(self.delete(key))
        return removed

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def __len__(self) -> int:
        return len(self.keys())


class InMemoryRepository(Repository[T]):
    """Process-memory store. Insertion order is preserved."""

    def __init__(self):
        self._items: Dict[str, T] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._items.get(key)

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = value

    def put_many(self, items: Iterable[tuple]) -> None:
        batch = dict(items)
        with self._lock:
            self._items.update(batch)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            values = list(self._items.values())
        if predicate is None:
            return values
        return [v for v in values if predicate(v)]

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[T], bool]) -> int:
        with self._lock:
            doomed = [k for k, v in self._items.items() if predicate(v)]
            for key in doomed:
                del self._items[key]
            return len(doomed)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())

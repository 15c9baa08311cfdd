from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Iterator, Optional, Tuple, TypeVar

V = TypeVar("V")


class KeyValueStore(ABC, Generic[V]):
    """Minimal mapping interface for process-wide caches.

    The rate limiter windows and the in-flight request map both live behind
    this interface so a shared backend can replace the in-memory dict without
    touching callers.

    Callers mutate entries only between ``await`` points on a single event
    loop, which makes each read-modify-write atomic with respect to other
    tasks. Implementations used from multiple threads must guard every method
    with a lock.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[V]:
        """Return the value for ``key`` or None."""

    @abstractmethod
    def set(self, key: str, value: V) -> None:
        """Insert or replace ``key``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, V]]:
        """Iterate over a snapshot of entries; safe to delete while iterating."""

    @abstractmethod
    def __len__(self) -> int: ...

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None


class InMemoryStore(KeyValueStore[V]):
    def __init__(self) -> None:
        self._data: Dict[str, V] = {}

    def get(self, key: str) -> Optional[V]:
        return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterator[Tuple[str, V]]:
        return iter(list(self._data.items()))

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"InMemoryStore(size={len(self._data)})"


def snapshot(store: KeyValueStore[Any]) -> Dict[str, Any]:
    """Copy the store contents into a plain dict (tests and debug endpoints)."""

    return {key: value for key, value in store.items()}

"""Thread-safe mapping with per-key atomic compute operations."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Generic, Hashable, Iterator, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0  # holders plus waiters


class ConcurrentMap(Generic[K, V]):
    """A dict guarded by one lock per key.

    ``compute_if_absent`` and ``compute`` run their callback while holding the
    key's lock, so concurrent callers for the same key observe a single
    evaluation. Callers for different keys do not block each other. A key's
    lock lives only while some caller holds or waits for it.
    """

    def __init__(self) -> None:
        self._data: dict[K, V] = {}
        self._data_lock = threading.Lock()
        self._key_locks: dict[K, _KeyLock] = {}

    @contextmanager
    def _locked(self, key: K) -> Iterator[None]:
        with self._data_lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._data_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def get(self, key: K, default: V | None = None) -> V | None:
        with self._data_lock:
            return self._data.get(key, default)

    def compute_if_absent(self, key: K, factory: Callable[[K], V]) -> V:
        """Return the value for key, building it with factory(key) only if missing."""
        with self._locked(key):
            with self._data_lock:
                if key in self._data:
                    return self._data[key]
            value = factory(key)
            with self._data_lock:
                self._data[key] = value
            return value

    def compute(self, key: K, remapping: Callable[[K, V | None], V | None]) -> V | None:
        """Atomically replace the value for key with remapping(key, current).

        Returning None from remapping removes the entry.
        """
        with self._locked(key):
            with self._data_lock:
                current = self._data.get(key)
            value = remapping(key, current)
            with self._data_lock:
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value
            return value

    def pop(self, key: K, default: V | None = None) -> V | None:
        with self._locked(key):
            with self._data_lock:
                return self._data.pop(key, default)

    def snapshot(self) -> dict[K, V]:
        with self._data_lock:
            return dict(self._data)

    def __contains__(self, key: object) -> bool:
        with self._data_lock:
            return key in self._data

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._data)

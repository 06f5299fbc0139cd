"""Lock-striped map of used codes to the time they stop being blocked."""

from __future__ import annotations

import threading
from collections.abc import Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)


class StripedCodeStore(Generic[K]):
    """Dict with atomic insert-if-absent and remove-if-equals.

    Each key maps to one of ``stripes`` locks by hash, so operations on
    unrelated keys rarely share a lock and never share a global one.
    """

    def __init__(self, stripes: int = 64) -> None:
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._data: dict[K, int] = {}

    def _lock_for(self, key: K) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def put_if_absent(self, key: K, value: int) -> int | None:
        """Store *value* unless *key* is present. Return the existing value or None."""
        with self._lock_for(key):
            existing = self._data.get(key)
            if existing is None:
                self._data[key] = value
            return existing

    def remove_if_equals(self, key: K, value: int) -> bool:
        """Remove *key* only while it still maps to *value*."""
        with self._lock_for(key):
            if self._data.get(key) != value:
                return False
            del self._data[key]
            return True

    def snapshot(self) -> list[tuple[K, int]]:
        """Weakly-consistent copy of all entries, safe to walk during writes."""
        return list(self._data.copy().items())

    def __len__(self) -> int:
        return len(self._data)

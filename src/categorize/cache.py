"""Bounded in-memory cache for AI category distributions.

Keyed by the lowercased, trimmed merchant. Lives on the PipelineContext for
the life of the process and is never persisted.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Protocol

DEFAULT_MAX_ENTRIES = 1000


class CategorizationCache(Protocol):
    def get(self, key: str) -> list | None: ...

    def put(self, key: str, value: list) -> None: ...


def cache_key(merchant: str) -> str:
    return merchant.strip().lower()


class LRUCache:
    """Thread-safe least-recently-used cache."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._data: OrderedDict[str, list] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> list | None:
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
            return value

    def put(self, key: str, value: list) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

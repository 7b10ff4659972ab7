from __future__ import annotations

import hashlib
from collections import OrderedDict
from threading import Lock
from typing import Any, Generic, Hashable, Optional, TypeVar

import numpy as np

from .models import as_float_array

V = TypeVar("V")


class LRUCache(Generic[V]):
    """
    Thread-safe, bounded least-recently-used map.

    Analysis functions take one of these as an injectable argument so that the
    host decides how much memory memoization may use. Once ``capacity`` entries
    are stored, the least recently read or written entry is evicted.
    """

    def __init__(self, capacity: int = 128) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = int(capacity)
        self._entries: "OrderedDict[Hashable, V]" = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            try:
                value = self._entries[key]
            except KeyError:
                self._misses += 1
                return default
            self._entries.move_to_end(key)
            self._hits += 1
            return value

    def put(self, key: Hashable, value: V) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = value
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "capacity": self._capacity, "hits": self._hits, "misses": self._misses}

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def fingerprint(*arrays: Any) -> str:
    """
    Content hash of one or more numeric arrays.

    Keys derived from this change whenever any sample changes, so cached
    results are invalidated by in-place edits of a host's series.
    """
    digest = hashlib.blake2b(digest_size=16)
    for array in arrays:
        if array is None:
            digest.update(b"<none>")
            continue
        arr = np.ascontiguousarray(as_float_array(array))
        digest.update(str(arr.size).encode("ascii"))
        digest.update(b":")
        digest.update(arr.tobytes())
        digest.update(b"|")
    return digest.hexdigest()


__all__ = ["LRUCache", "fingerprint"]

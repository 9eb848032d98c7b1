"""
Sharded mutex pool.

A fixed number of locks is allocated up front and a key is mapped onto one of
them with `crc32(key) % size`. Memory stays constant no matter how many keys
are seen; two unrelated keys may land on the same lock and serialize each
other (false sharing), with probability roughly 1/size per pair.
"""

import threading
import zlib
from typing import List

DEFAULT_POOL_SIZE = 1024


class ShardedLock:
    """Pool of `threading.Lock` objects selected by key hash."""

    def __init__(self, size: int = DEFAULT_POOL_SIZE):
        if size < 1:
            raise ValueError("Lock pool size must be positive")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(size)]

    def __len__(self) -> int:
        return len(self._locks)

    def index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def get(self, key: str) -> threading.Lock:
        """Return the lock guarding `key`. Usable as a context manager."""
        return self._locks[self.index(key)]

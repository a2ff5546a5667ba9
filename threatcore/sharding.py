"""Per-entity state partitioned into lock-owning shards.

Baseline profiles and behavior patterns are mutated on every event.  A
global lock would serialize the whole engine; instead the key space is
hashed into N shards, each with its own re-entrant lock and dict.  Two
events for the same entity always land on the same shard and serialize;
events for different entities only contend when they collide on a shard.

crc32 rather than ``hash()`` so shard placement is stable across processes
(PYTHONHASHSEED randomizes str hashes).
"""

import threading
import zlib
from contextlib import contextmanager


def shard_index(key, n_shards: int) -> int:
    return zlib.crc32(str(key).encode("utf-8")) % n_shards


class _Shard:
    __slots__ = ("lock", "data")

    def __init__(self):
        self.lock = threading.RLock()
        self.data: dict = {}


class ShardedState:

    def __init__(self, n_shards: int = 64):
        if n_shards < 1:
            raise ValueError("n_shards must be >= 1")
        self._shards = [_Shard() for _ in range(n_shards)]

    def _shard(self, key) -> _Shard:
        return self._shards[shard_index(key, len(self._shards))]

    @contextmanager
    def locked(self, key):
        """Hold the shard lock for *key*; yields the shard's dict."""
        shard = self._shard(key)
        with shard.lock:
            yield shard.data

    def each_locked(self):
        """Yield ``(lock, data)`` per shard for maintenance sweeps."""
        for shard in self._shards:
            yield shard.lock, shard.data

    def __len__(self) -> int:
        return sum(len(s.data) for s in self._shards)

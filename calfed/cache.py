# calfed/cache.py
"""
Remote actor cache.

Resolved actors are kept for a TTL and evicted least-recently-used once
the cache is full. Remote servers rotate keys and move inboxes, so an
entry is never trusted forever.

The clock is injectable so expiry can be driven deterministically. With a
cache_dir the entries survive restarts:

    cache_dir/
        index.json      # key -> actor + stored_at
"""

import json
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .activitypub.actor import RemoteActor

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached actor and when it was stored."""
    key: str
    actor: RemoteActor
    stored_at: float

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "actor": self.actor.to_dict(),
            "stored_at": self.stored_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CacheEntry":
        return cls(
            key=data["key"],
            actor=RemoteActor.from_dict(data["actor"]),
            stored_at=data["stored_at"],
        )


@dataclass
class CacheStats:
    """Statistics about cache usage."""
    total_entries: int = 0
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    hit_rate: float = 0.0

    def record_hit(self):
        self.hits += 1
        self._update_rate()

    def record_miss(self):
        self.misses += 1
        self._update_rate()

    def _update_rate(self):
        total = self.hits + self.misses
        self.hit_rate = self.hits / total if total > 0 else 0.0


class ActorCache:
    """
    TTL + LRU cache of resolved remote actors.

    Args:
        ttl: Seconds an entry stays fresh
        max_size: Maximum entries, 0 for unlimited
        clock: Time source (seconds)
        cache_dir: Optional directory to persist entries in
    """

    def __init__(
        self,
        ttl: float = 86400.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.time,
        cache_dir: Path | str = None,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.stats = CacheStats()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        if self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._load_index()

    def _index_path(self) -> Path:
        return self.cache_dir / "index.json"

    def _load_index(self):
        """Load cache index from disk."""
        index_path = self._index_path()
        if index_path.exists():
            try:
                with open(index_path) as f:
                    data = json.load(f)
                for raw in data.get("entries", []):
                    entry = CacheEntry.from_dict(raw)
                    self._entries[entry.key] = entry
                self.stats.total_entries = len(self._entries)
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Failed to load actor cache index: {e}")
                self._entries = OrderedDict()

    def _save_index(self):
        """Save cache index to disk, replacing the old file atomically."""
        if not self.cache_dir:
            return
        data = {"entries": [e.to_dict() for e in self._entries.values()]}
        tmp_path = self._index_path().with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._index_path())

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.stored_at > self.ttl

    def get(self, key: str) -> Optional[RemoteActor]:
        """
        Get a fresh actor for a key.

        Expired entries are dropped and count as misses.
        """
        entry = self._entries.get(key)
        if entry is None:
            self.stats.record_miss()
            return None

        if self._is_expired(entry):
            logger.debug(f"Actor cache entry expired: {key}")
            self._remove_entry(key)
            self.stats.expirations += 1
            self.stats.record_miss()
            return None

        self._entries.move_to_end(key)
        self.stats.record_hit()
        return entry.actor

    def peek(self, key: str) -> Optional[RemoteActor]:
        """Get an actor without affecting stats, LRU order or expiry."""
        entry = self._entries.get(key)
        return entry.actor if entry else None

    def put(self, key: str, actor: RemoteActor) -> None:
        """Store an actor, evicting the least recently used if full."""
        self._entries[key] = CacheEntry(key=key, actor=actor, stored_at=self.clock())
        self._entries.move_to_end(key)

        while self.max_size and len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            logger.debug(f"Evicted actor cache entry: {evicted}")

        self.stats.total_entries = len(self._entries)
        self._save_index()

    def invalidate(self, key: str) -> bool:
        """Drop a key. Returns True if it was cached."""
        return self._remove_entry(key)

    def invalidate_actor(self, predicate: Callable[[RemoteActor], bool]) -> int:
        """Drop every entry whose actor matches. Returns the count dropped."""
        keys = [k for k, e in self._entries.items() if predicate(e.actor)]
        for key in keys:
            self._remove_entry(key)
        return len(keys)

    def _remove_entry(self, key: str) -> bool:
        if key not in self._entries:
            return False
        del self._entries[key]
        self.stats.total_entries = len(self._entries)
        self._save_index()
        return True

    def has(self, key: str) -> bool:
        """Check a key is cached and fresh (without affecting stats)."""
        entry = self._entries.get(key)
        return entry is not None and not self._is_expired(entry)

    def clear(self):
        """Clear all cached entries."""
        self._entries.clear()
        self.stats = CacheStats()
        self._save_index()

    def prune(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        expired = [k for k, e in self._entries.items() if self._is_expired(e)]
        for key in expired:
            self._remove_entry(key)
        self.stats.expirations += len(expired)
        return len(expired)

    def list_entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

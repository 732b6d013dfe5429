"""Two-tier read cache kept coherent by change events.

Read path: edge -> hot -> authoritative store; a store hit populates both tiers.

Consistency model (also sent to HTTP callers as `X-Consistency-Model`):
read-after-write via the change feed, not linearizable. Staleness is bounded
by event-consumption latency: once `apply_event` returns (the event is
acknowledged), no read that starts afterwards observes data older than that
event's version.

How that holds under concurrent reads:
- Keys are guarded by lock stripes. `apply_event` bumps the stripe generation
  and evicts the key from both tiers under the stripe lock, before returning.
- A miss captures the stripe generation, loads from the store without the
  lock, and only populates the tiers if the generation is unchanged
  (compare-and-swap). A load that raced with an invalidation is returned to
  its caller but never cached.
- Cached values are immutable records, so readers see either the pre- or the
  post-invalidation value, never a torn one.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from logging_utils import get_logger
from utils.change_feed import FeedEvent
from utils.edge_purge import EdgePurger, entity_path, resolve_path
from utils.entity_identity import partition_for
from utils.entity_store import EntityRecord, EntityStore
from utils.identifier_registry import normalize_external_id, normalize_namespace

logger = get_logger(__name__)

CONSISTENCY_MODEL = "read-after-write-via-feed"

TIER_EDGE = "edge"
TIER_HOT = "hot"
TIER_STORE = "store"


def entity_key(canonical_id: str) -> str:
    return f"entity:{canonical_id}"


def resolve_key(namespace: str, external_id: str) -> str:
    return f"resolve:{namespace}:{external_id}"


def _path_for_key(key: str) -> str:
    kind, _, rest = key.partition(":")
    if kind == "entity":
        return entity_path(rest)
    ns, _, ext = rest.partition(":")
    return resolve_path(ns, ext)


class HotStore:
    """Thread-safe, capacity-bounded LRU map."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = int(capacity)
        self._data: OrderedDict[str, Any] = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)
                self.evictions += 1

    def pop(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data


class EdgeCache:
    """TTL tier addressed by cache key; stands in for the CDN edge.

    TTL is only a backstop: coherence comes from explicit eviction.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._data: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._data[key]
                return None
            return value

    def put(self, key: str, value: Any) -> None:
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._data[key] = (expires_at, value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def pop(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class CacheCoherenceLayer:
    def __init__(
        self,
        *,
        store: EntityStore,
        hot_capacity: int = 10_000,
        edge_ttl_seconds: float = 60.0,
        lock_stripes: int = 64,
        purger: EdgePurger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if lock_stripes <= 0:
            raise ValueError("lock_stripes must be > 0")
        self.store = store
        self.hot = HotStore(hot_capacity)
        self.edge = EdgeCache(edge_ttl_seconds, max_entries=hot_capacity * 10, clock=clock)
        self.purger = purger

        self._locks = [threading.Lock() for _ in range(lock_stripes)]
        self._generations = [0] * lock_stripes

        self._stats_lock = threading.Lock()
        self._stats = {
            "edge_hits": 0,
            "hot_hits": 0,
            "misses": 0,
            "invalidations": 0,
            "stale_fills_skipped": 0,
            "start_time": time.time(),
        }

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _stripe(self, key: str) -> int:
        return partition_for(key, len(self._locks))

    def _read(self, key: str, loader: Callable[[], Any]) -> tuple[Any, str]:
        i = self._stripe(key)

        with self._locks[i]:
            value = self.edge.get(key)
            if value is not None:
                self._bump("edge_hits")
                return value, TIER_EDGE

            value = self.hot.get(key)
            if value is not None:
                self.edge.put(key, value)
                self._bump("hot_hits")
                return value, TIER_HOT

            generation = self._generations[i]

        # Store load outside the stripe lock; NotFound/Unavailable propagate uncached.
        value = loader()
        self._bump("misses")

        with self._locks[i]:
            if self._generations[i] == generation:
                self.hot.put(key, value)
                self.edge.put(key, value)
            else:
                self._bump("stale_fills_skipped")
                logger.debug("Skipped cache fill raced by invalidation | key=%s", key)

        return value, TIER_STORE

    def get_entity(self, canonical_id: str) -> tuple[EntityRecord, str]:
        """Return (record, tier) where tier is edge|hot|store."""

        return self._read(
            entity_key(canonical_id), lambda: self.store.get_entity(canonical_id)
        )

    def resolve(self, namespace: str, external_id: str) -> tuple[str, str]:
        """Return (canonical_id, tier) for a normalized external identifier."""

        ns = normalize_namespace(namespace)
        ext = normalize_external_id(ns, external_id)
        return self._read(resolve_key(ns, ext), lambda: self.store.resolve(ns, ext))

    def apply_event(self, event: FeedEvent) -> bool:
        """Evict everything `event` touches from both tiers, then acknowledge.

        Returns True once the event is acknowledged. Raises (no ack) if the
        remote edge purge fails; the caller must redeliver the event.
        """

        keys = [entity_key(event.entity_id)]
        details = event.details or {}
        if details.get("namespace") and details.get("external_id"):
            keys.append(resolve_key(details["namespace"], details["external_id"]))

        for key in keys:
            i = self._stripe(key)
            with self._locks[i]:
                self._generations[i] += 1
                self.hot.pop(key)
                self.edge.pop(key)

        if self.purger is not None:
            self.purger.purge([_path_for_key(k) for k in keys])

        self._bump("invalidations")
        logger.debug(
            "Invalidated | entity=%s kind=%s version=%s seq=%s:%s",
            event.entity_id,
            event.change_kind,
            event.version,
            event.partition,
            event.sequence_number,
        )
        return True

    def clear(self) -> None:
        """Drop both local tiers (used when the feed cursor expired)."""

        for i, lock in enumerate(self._locks):
            with lock:
                self._generations[i] += 1
        self.hot.clear()
        self.edge.clear()
        logger.info("Cache tiers cleared")

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            s = dict(self._stats)

        hits = s["edge_hits"] + s["hot_hits"]
        total = hits + s["misses"]
        return {
            "edge_hits": s["edge_hits"],
            "hot_hits": s["hot_hits"],
            "misses": s["misses"],
            "total_requests": total,
            "hit_rate_percent": round(hits / total * 100, 1) if total else 0.0,
            "invalidations": s["invalidations"],
            "stale_fills_skipped": s["stale_fills_skipped"],
            "hot_entries": len(self.hot),
            "hot_capacity": self.hot.capacity,
            "hot_evictions": self.hot.evictions,
            "edge_entries": len(self.edge),
            "edge_ttl_seconds": self.edge.ttl_seconds,
            "edge_purges": self.purger.purged if self.purger is not None else 0,
            "uptime_seconds": int(time.time() - s["start_time"]),
        }

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from utils.cache_coherence import CacheCoherenceLayer
from utils.change_feed import ChangeFeed
from utils.edge_purge import EdgePurger
from utils.entity_store import EntityStore


@dataclass
class Services:
    feed: ChangeFeed
    store: EntityStore
    cache: CacheCoherenceLayer


def build_services(config: Mapping[str, Any], *, session_factory: Any = None) -> Services:
    """Wire feed -> store -> cache from a Flask-style config mapping.

    The store pushes every committed event to the cache (in-process
    read-your-writes); other processes rely on the invalidation consumer.
    """

    feed = ChangeFeed(
        session_factory=session_factory,
        partition_count=int(config.get("FEED_PARTITIONS", 8)),
        page_limit=int(config.get("FEED_PAGE_LIMIT", 500)),
        max_page_limit=int(config.get("FEED_MAX_PAGE_LIMIT", 5000)),
    )
    store = EntityStore(
        feed=feed,
        session_factory=session_factory,
        max_attempts=int(config.get("STORE_MAX_ATTEMPTS", 3)),
    )

    purger = None
    purge_url = config.get("EDGE_PURGE_URL")
    if purge_url:
        purger = EdgePurger(str(purge_url), token=config.get("EDGE_PURGE_TOKEN") or None)

    cache = CacheCoherenceLayer(
        store=store,
        hot_capacity=int(config.get("HOT_CACHE_CAPACITY", 10_000)),
        edge_ttl_seconds=float(config.get("EDGE_CACHE_TTL_SECONDS", 60.0)),
        lock_stripes=int(config.get("CACHE_LOCK_STRIPES", 64)),
        purger=purger,
    )
    store.add_listener(cache.apply_event)
    return Services(feed=feed, store=store, cache=cache)

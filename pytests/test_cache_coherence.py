from __future__ import annotations

import threading

import pytest

from utils.cache_coherence import (
    TIER_EDGE,
    TIER_HOT,
    TIER_STORE,
    CacheCoherenceLayer,
    EdgeCache,
    HotStore,
    entity_key,
    resolve_key,
)
from utils.errors import NotFoundError


class _FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _RecordingPurger:
    def __init__(self, fail: bool = False):
        self.calls: list[list[str]] = []
        self.fail = fail
        self.purged = 0

    def purge(self, paths):
        if self.fail:
            raise RuntimeError("edge down")
        self.calls.append(list(paths))
        self.purged += len(paths)


def test_hot_store_evicts_least_recently_used() -> None:
    hot = HotStore(2)
    hot.put("a", 1)
    hot.put("b", 2)
    assert hot.get("a") == 1  # a is now most recent
    hot.put("c", 3)

    assert "b" not in hot
    assert "a" in hot and "c" in hot
    assert hot.evictions == 1


def test_hot_store_rejects_bad_capacity() -> None:
    with pytest.raises(ValueError):
        HotStore(0)


def test_edge_cache_expires_after_ttl() -> None:
    clock = _FakeClock()
    edge = EdgeCache(10.0, clock=clock)
    edge.put("k", "v")
    assert edge.get("k") == "v"

    clock.now += 9.9
    assert edge.get("k") == "v"
    clock.now += 0.2
    assert edge.get("k") is None
    assert len(edge) == 0


def test_read_path_fills_tiers_in_order(store, cache) -> None:
    e = store.create_entity("asset", name="BTC")

    _rec, tier1 = cache.get_entity(e.canonical_id)
    _rec, tier2 = cache.get_entity(e.canonical_id)
    assert tier1 == TIER_STORE
    assert tier2 == TIER_EDGE

    # Edge dropped (e.g. TTL), hot still holds it and re-promotes.
    cache.edge.clear()
    _rec, tier3 = cache.get_entity(e.canonical_id)
    _rec, tier4 = cache.get_entity(e.canonical_id)
    assert (tier3, tier4) == (TIER_HOT, TIER_EDGE)

    stats = cache.stats()
    assert stats["misses"] == 1
    assert stats["hot_hits"] == 1
    assert stats["edge_hits"] == 2


def test_not_found_is_not_cached(store, cache) -> None:
    with pytest.raises(NotFoundError):
        cache.get_entity("ent_missing")
    assert entity_key("ent_missing") not in cache.hot

    store.create_entity("asset", canonical_id="ent_missing")
    rec, tier = cache.get_entity("ent_missing")
    assert rec.canonical_id == "ent_missing"
    assert tier == TIER_STORE


def test_write_invalidates_before_returning(store, cache) -> None:
    e = store.create_entity("asset", name="old")
    cache.get_entity(e.canonical_id)
    assert cache.get_entity(e.canonical_id)[1] == TIER_EDGE

    store.update_entity(e.canonical_id, name="new")

    rec, tier = cache.get_entity(e.canonical_id)
    assert tier == TIER_STORE
    assert rec.name == "new"
    assert rec.version == 2


def test_remap_invalidates_resolve_key(store, cache) -> None:
    a = store.create_entity("asset", identifiers=[("chain", "0xabc")])
    assert cache.resolve("chain", "0xABC") == (a.canonical_id, TIER_STORE)
    assert cache.resolve("chain", "0xabc")[1] == TIER_EDGE

    store.tombstone_entity(a.canonical_id)
    b = store.create_entity("asset")
    store.register_mapping("chain", "0xabc", b.canonical_id)

    assert resolve_key("chain", "0xabc") not in cache.hot
    assert cache.resolve("chain", "0xabc") == (b.canonical_id, TIER_STORE)


def test_apply_event_purges_edge_paths_then_acks(store, feed) -> None:
    purger = _RecordingPurger()
    layer = CacheCoherenceLayer(store=store, hot_capacity=10, purger=purger)

    e = store.create_entity("asset", identifiers=[("slug", "btc")])
    layer.get_entity(e.canonical_id)

    events = list(feed.read_since(0))
    for ev in events:
        assert layer.apply_event(ev) is True

    assert entity_key(e.canonical_id) not in layer.hot
    flat = [p for call in purger.calls for p in call]
    assert f"/v1/entities/{e.canonical_id}" in flat
    assert "/v1/resolve?namespace=slug&external_id=btc" in flat
    assert layer.stats()["edge_purges"] == purger.purged


def test_failed_purge_does_not_ack(store, feed) -> None:
    layer = CacheCoherenceLayer(store=store, hot_capacity=10, purger=_RecordingPurger(fail=True))
    e = store.create_entity("asset")
    layer.get_entity(e.canonical_id)

    ev = next(feed.read_since(0))
    with pytest.raises(RuntimeError):
        layer.apply_event(ev)

    # Local tiers were still evicted before the remote purge was attempted.
    assert entity_key(e.canonical_id) not in layer.hot


def test_stale_fill_is_skipped_when_invalidation_races_load(store, feed) -> None:
    e = store.create_entity("asset", name="v1")
    layer = CacheCoherenceLayer(store=store, hot_capacity=10)

    loading = threading.Event()
    release = threading.Event()
    real_get = store.get_entity

    def _slow_get(cid):
        rec = real_get(cid)
        loading.set()
        release.wait(5)
        return rec

    store.get_entity = _slow_get  # type: ignore[method-assign]
    result: dict = {}

    t = threading.Thread(target=lambda: result.update(r=layer.get_entity(e.canonical_id)))
    t.start()
    assert loading.wait(5)

    # Write lands while the reader holds the old version.
    store.get_entity = real_get  # type: ignore[method-assign]
    store.update_entity(e.canonical_id, name="v2")
    layer.apply_event(list(feed.read_since(0))[-1])

    release.set()
    t.join(5)

    assert result["r"][0].name == "v1"
    assert entity_key(e.canonical_id) not in layer.hot
    assert layer.stats()["stale_fills_skipped"] == 1

    rec, tier = layer.get_entity(e.canonical_id)
    assert (rec.name, tier) == ("v2", TIER_STORE)


def test_clear_drops_everything(store, cache) -> None:
    e = store.create_entity("asset")
    cache.get_entity(e.canonical_id)
    cache.clear()
    assert len(cache.hot) == 0
    assert len(cache.edge) == 0
    assert cache.get_entity(e.canonical_id)[1] == TIER_STORE

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

import db
from jobs.invalidation_consumer import InvalidationConsumer
from models.consumer_offsets import ConsumerOffset
from utils.cache_coherence import CacheCoherenceLayer, entity_key
from utils.change_feed import FeedCursor
from utils.time_utils import utcnow


def _remote_cache(store) -> CacheCoherenceLayer:
    """A cache in "another process": not wired to the store's post-commit push."""

    return CacheCoherenceLayer(store=store, hot_capacity=100)


@pytest.fixture()
def remote_cache(store):
    return _remote_cache(store)


def _consumer(feed, cache, **kw) -> InvalidationConsumer:
    kw.setdefault("name", "test_consumer")
    return InvalidationConsumer(feed=feed, cache=cache, **kw)


def test_first_pass_registers_at_head_and_clears_cache(store, feed, remote_cache) -> None:
    e = store.create_entity("asset")
    remote_cache.get_entity(e.canonical_id)

    consumer = _consumer(feed, remote_cache)
    assert consumer.run_once() == {"events": 0, "batches": 0, "expired": False}
    assert len(remote_cache.hot) == 0
    assert consumer.load_cursor() == feed.head_cursor()


def test_run_once_evicts_and_persists_cursor(store, feed, remote_cache) -> None:
    consumer = _consumer(feed, remote_cache)
    consumer.run_once()

    e = store.create_entity("asset", name="old")
    consumer.run_once()
    remote_cache.get_entity(e.canonical_id)
    store.update_entity(e.canonical_id, name="new")

    # Stale until the feed is consumed.
    assert remote_cache.get_entity(e.canonical_id)[0].name == "old"

    summary = consumer.run_once()
    assert summary == {"events": 1, "batches": 1, "expired": False}

    assert entity_key(e.canonical_id) not in remote_cache.hot
    assert remote_cache.get_entity(e.canonical_id)[0].name == "new"

    with db.SessionLocal() as s:
        row = s.get(ConsumerOffset, "test_consumer")
        assert row is not None
        assert FeedCursor.decode(row.cursor, partition_count=feed.partition_count) == feed.head_cursor()


def test_restarted_consumer_resumes_from_saved_cursor(store, feed, remote_cache) -> None:
    _consumer(feed, remote_cache).run_once()

    store.create_entity("asset")
    again = _consumer(feed, remote_cache).run_once()
    assert again["events"] == 1

    assert _consumer(feed, remote_cache).run_once()["events"] == 0


def test_default_names_are_unique_per_consumer(feed, remote_cache) -> None:
    a = InvalidationConsumer(feed=feed, cache=remote_cache)
    b = InvalidationConsumer(feed=feed, cache=remote_cache)
    assert a.name != b.name
    assert a.name.startswith("cache_invalidator.")


def test_two_processes_each_invalidate_their_own_cache(store, feed) -> None:
    cache_a = _remote_cache(store)
    cache_b = _remote_cache(store)
    worker_a = InvalidationConsumer(feed=feed, cache=cache_a)
    worker_b = InvalidationConsumer(feed=feed, cache=cache_b)
    worker_a.run_once()
    worker_b.run_once()

    e = store.create_entity("asset", name="old")
    worker_a.run_once()
    worker_b.run_once()
    cache_a.get_entity(e.canonical_id)
    cache_b.get_entity(e.canonical_id)

    store.update_entity(e.canonical_id, name="new")
    assert worker_a.run_once()["events"] == 1
    assert worker_b.run_once()["events"] == 1

    assert cache_a.get_entity(e.canonical_id)[0].name == "new"
    assert cache_b.get_entity(e.canonical_id)[0].name == "new"


def test_failed_invalidation_is_redelivered(store, feed, remote_cache, monkeypatch) -> None:
    consumer = _consumer(feed, remote_cache)
    consumer.run_once()

    a = store.create_entity("asset", canonical_id="ent_a")
    store.create_entity("asset", canonical_id="ent_b")

    real_apply = remote_cache.apply_event
    calls = []

    def _flaky(ev):
        calls.append(ev.entity_id)
        if len(calls) == 2:
            raise RuntimeError("edge purge failed")
        return real_apply(ev)

    monkeypatch.setattr(remote_cache, "apply_event", _flaky)
    with pytest.raises(RuntimeError):
        consumer.run_once()

    # The first event was acknowledged; the failed one comes back next pass.
    monkeypatch.setattr(remote_cache, "apply_event", real_apply)
    summary = consumer.run_once()
    assert summary["events"] == 1
    assert a.canonical_id in calls


def test_expired_cursor_clears_cache_and_jumps_to_head(store, feed, remote_cache) -> None:
    consumer = _consumer(feed, remote_cache)
    consumer.run_once()

    e = store.create_entity("asset")
    remote_cache.get_entity(e.canonical_id)
    feed.prune(older_than=utcnow() + timedelta(seconds=1))

    summary = consumer.run_once()
    assert summary["expired"] is True
    assert len(remote_cache.hot) == 0
    assert consumer.load_cursor() == feed.head_cursor()


def test_write_during_expiry_recovery_is_still_delivered(
    store, feed, remote_cache, monkeypatch
) -> None:
    consumer = _consumer(feed, remote_cache)
    consumer.run_once()

    e = store.create_entity("asset", name="old")
    feed.prune(older_than=utcnow() + timedelta(seconds=1))

    real_clear = remote_cache.clear

    def _clear_then_race():
        real_clear()
        # A reader refills E, then another process commits an update to E.
        remote_cache.get_entity(e.canonical_id)
        store.update_entity(e.canonical_id, name="new")

    monkeypatch.setattr(remote_cache, "clear", _clear_then_race)
    summary = consumer.run_once()

    assert summary["expired"] is True
    assert summary["events"] == 1
    assert remote_cache.get_entity(e.canonical_id)[0].name == "new"


def test_run_forever_stops_on_event(store, feed, remote_cache) -> None:
    store.create_entity("asset")
    consumer = _consumer(feed, remote_cache)
    stop = threading.Event()

    t = threading.Thread(target=consumer.run_forever, args=(stop,), kwargs={"poll_interval": 0.01})
    t.start()
    deadline_cursor = feed.head_cursor()
    for _ in range(500):
        if consumer.load_cursor() == deadline_cursor:
            break
        stop.wait(0.01)
    stop.set()
    t.join(5)

    assert not t.is_alive()
    assert consumer.load_cursor() == deadline_cursor

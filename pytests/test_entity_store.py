from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

import db
import utils.entity_store as entity_store_mod
from utils.entity_store import EntityStore
from utils.errors import ConflictError, NotFoundError, UnavailableError


def _flaky_session_factory(failures: int):
    """Sessions whose commit raises OperationalError for the first `failures` calls."""

    state = {"left": failures, "commits": 0}

    def _factory():
        s = db.SessionLocal()
        real_commit = s.commit

        def _commit():
            state["commits"] += 1
            if state["left"] > 0:
                state["left"] -= 1
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            real_commit()

        s.commit = _commit  # type: ignore[method-assign]
        return s

    return _factory, state


def test_create_and_get_entity(store) -> None:
    e = store.create_entity(
        "Asset",
        name="Bitcoin",
        attributes={"decimals": 8},
        identifiers=[("chain", "0xABC"), ("slug", "bitcoin")],
    )
    assert e.canonical_id.startswith("ent_")
    assert e.kind == "asset"
    # "created" at version 1, then one mapping event per initial identifier.
    assert e.version == 3
    assert e.status == "live"
    assert e.identifiers == (("chain", "0xabc"), ("slug", "bitcoin"))

    got = store.get_entity(e.canonical_id)
    assert got == e
    assert got.attributes == {"decimals": 8}


def test_create_rejects_unknown_kind(store) -> None:
    with pytest.raises(ValueError):
        store.create_entity("planet")


def test_create_with_existing_canonical_id_conflicts(store) -> None:
    store.create_entity("asset", canonical_id="ent_btc")
    with pytest.raises(ConflictError):
        store.create_entity("asset", canonical_id="ent_btc")


def test_update_merges_attributes_and_bumps_version(store) -> None:
    e = store.create_entity("asset", attributes={"a": 1, "b": 2})
    u = store.update_entity(e.canonical_id, attributes={"b": None, "c": 3})
    assert u.attributes == {"a": 1, "c": 3}
    assert u.version == 2


def test_noop_update_emits_no_event(store, feed) -> None:
    e = store.create_entity("asset", name="same")
    u = store.update_entity(e.canonical_id, name="same")
    assert u.version == 1
    assert len(list(feed.read_since(0))) == 1


def test_update_with_stale_expected_version_conflicts(store) -> None:
    e = store.create_entity("asset")
    store.update_entity(e.canonical_id, name="x", expected_version=1)
    with pytest.raises(ConflictError) as ei:
        store.update_entity(e.canonical_id, name="y", expected_version=1)
    assert ei.value.details["version"] == 2


def test_tombstone_is_idempotent_and_blocks_updates(store, feed) -> None:
    e = store.create_entity("asset", identifiers=[("slug", "gone")])
    t1 = store.tombstone_entity(e.canonical_id)
    t2 = store.tombstone_entity(e.canonical_id)
    assert t1.tombstoned and t2.tombstoned
    assert t1.version == t2.version
    assert [ev.change_kind for ev in feed.read_since(0)].count("tombstoned") == 1

    # Still readable, and its mapping still resolves (history is preserved).
    assert store.get_entity(e.canonical_id).status == "tombstoned"
    assert store.resolve("slug", "gone") == e.canonical_id

    with pytest.raises(ConflictError):
        store.update_entity(e.canonical_id, name="zombie")


def test_unknown_entity_raises_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        store.get_entity("ent_nope")
    with pytest.raises(NotFoundError):
        store.update_entity("ent_nope", name="x")
    with pytest.raises(NotFoundError):
        store.tombstone_entity("ent_nope")


def test_snapshot_page_walks_all_entities(store) -> None:
    ids = sorted(store.create_entity("asset", name=f"a{i}").canonical_id for i in range(5))

    seen = []
    after = None
    while True:
        records, after = store.snapshot_page(after=after, limit=2)
        seen.extend(r.canonical_id for r in records)
        if after is None:
            break
    assert seen == ids


def test_transient_failure_is_retried_once(engine, feed, monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr(entity_store_mod.time, "sleep", lambda s: sleeps.append(s))

    factory, state = _flaky_session_factory(failures=1)
    store = EntityStore(feed=feed, session_factory=factory, max_attempts=3)
    published = []
    store.add_listener(published.append)

    e = store.create_entity("asset", canonical_id="ent_retry")

    assert state["commits"] == 2
    assert sleeps == [0.5]
    assert [ev.change_kind for ev in published] == ["created"]
    assert e.canonical_id == "ent_retry"
    assert [ev.entity_id for ev in feed.read_since(0)] == ["ent_retry"]


def test_persistent_failure_raises_unavailable_and_publishes_nothing(
    engine, feed, monkeypatch
) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr(entity_store_mod.time, "sleep", lambda s: sleeps.append(s))

    factory, state = _flaky_session_factory(failures=100)
    store = EntityStore(feed=feed, session_factory=factory, max_attempts=3)
    published = []
    store.add_listener(published.append)

    with pytest.raises(UnavailableError) as ei:
        store.create_entity("asset")

    assert ei.value.http_status == 503
    assert ei.value.details == {"op": "create_entity", "attempts": 3}
    assert state["commits"] == 3
    assert sleeps == [0.5, 1.0]
    assert published == []
    assert list(feed.read_since(0)) == []


def test_listener_failure_does_not_fail_the_write(store) -> None:
    def _boom(_ev):
        raise RuntimeError("listener down")

    store.add_listener(_boom)
    e = store.create_entity("asset")
    assert store.get_entity(e.canonical_id).version == 1

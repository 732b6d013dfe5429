"""End-to-end: partner client -> HTTP -> Flask -> SQLite."""

from __future__ import annotations

from datetime import timedelta

import pytest

from api.context import EXTENSION_KEY
from utils.changes_client import ChangesClient
from utils.errors import CursorExpiredError, NotFoundError
from utils.http_client import SlidingWindowRateLimiter
from utils.time_utils import utcnow


def _services(live_server):
    return live_server.app.extensions[EXTENSION_KEY]


def _client(live_server) -> ChangesClient:
    return ChangesClient(
        live_server.base_url,
        rate_limiter=SlidingWindowRateLimiter(max_requests=1000, window_seconds=1.0),
        max_attempts=1,
        timeout_seconds=5,
    )


def test_get_entity_and_resolve(live_server) -> None:
    store = _services(live_server).store
    e = store.create_entity("asset", name="Bitcoin", identifiers=[("slug", "bitcoin")])

    client = _client(live_server)
    data = client.get_entity(e.canonical_id)
    assert data["id"] == e.canonical_id
    assert data["name"] == "Bitcoin"
    assert client.resolve("slug", "Bitcoin") == e.canonical_id


def test_missing_entity_maps_to_not_found(live_server) -> None:
    with pytest.raises(NotFoundError) as ei:
        _client(live_server).get_entity("ent_missing")
    assert ei.value.details == {"entity_id": "ent_missing"}


def test_sync_follows_cursor_until_drained(live_server) -> None:
    store = _services(live_server).store
    for i in range(5):
        store.create_entity("asset", name=f"a{i}")

    client = _client(live_server)
    seen = []
    cursor = client.sync(None, on_event=seen.append, limit=2)
    assert len(seen) == 5
    assert {ev["change_kind"] for ev in seen} == {"created"}

    # Nothing new: same cursor comes back, no events.
    again = []
    assert client.sync(cursor, on_event=again.append) == cursor
    assert again == []

    store.create_entity("asset", name="late")
    client.sync(cursor, on_event=again.append)
    assert [ev["change_kind"] for ev in again] == ["created"]


def test_iter_changes_yields_events_in_partition_order(live_server) -> None:
    store = _services(live_server).store
    e = store.create_entity("asset", name="v1")
    store.update_entity(e.canonical_id, name="v2")

    pairs = list(_client(live_server).iter_changes(0, limit=1))
    kinds = [ev["change_kind"] for ev, _cursor in pairs if ev["entity_id"] == e.canonical_id]
    assert kinds == ["created", "updated"]
    assert all(cursor.startswith("v1.") for _ev, cursor in pairs)


def test_expired_cursor_without_snapshot_handler_raises(live_server) -> None:
    services = _services(live_server)
    services.store.create_entity("asset")
    services.feed.prune(older_than=utcnow() + timedelta(seconds=1))

    with pytest.raises(CursorExpiredError) as ei:
        _client(live_server).sync(0, on_event=lambda _ev: None)
    assert ei.value.details["retention_floor"] == 1


def test_expired_cursor_triggers_resnapshot(live_server) -> None:
    services = _services(live_server)
    ids = {services.store.create_entity("asset").canonical_id for _ in range(3)}
    services.feed.prune(older_than=utcnow() + timedelta(seconds=1))

    snap = []
    events = []
    cursor = _client(live_server).sync(
        0, on_event=events.append, on_snapshot_entity=snap.append
    )

    assert {ent["id"] for ent in snap} == ids
    assert events == []
    assert cursor == services.feed.head_cursor().encode()


def test_iter_snapshot_pages(live_server) -> None:
    store = _services(live_server).store
    ids = sorted(store.create_entity("issuer").canonical_id for _ in range(5))

    pages = list(_client(live_server).iter_snapshot(page_size=2))
    assert [len(entities) for entities, _c in pages] == [2, 2, 1]
    assert [e["id"] for entities, _c in pages for e in entities] == ids
    # Every page hands back the same resume cursor.
    assert len({c for _e, c in pages}) == 1


def test_base_url_required() -> None:
    with pytest.raises(ValueError):
        ChangesClient("")

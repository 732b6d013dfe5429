from __future__ import annotations

from flask import Blueprint, current_app, request

from api.context import get_services, int_arg, ok_response
from api.schemas.api_responses import ChangesPageOut, EntityOut, SnapshotPageOut

changes_v1_bp = Blueprint("changes_v1", __name__)


@changes_v1_bp.get("/changes")
def list_changes():
    """Ordered page of change events after `since`.

    Query params:
    - since: cursor from a previous `next_cursor` (empty or 0 = from the beginning)
    - partition: optional; restrict to one partition for parallel consumption
    - limit: optional (default FEED_PAGE_LIMIT, capped at FEED_MAX_PAGE_LIMIT)

    Errors:
    - 400 malformed cursor/partition
    - 410 cursor_expired: cursor predates retention, fetch /v1/snapshot
    """

    since = request.args.get("since")
    partition = int_arg("partition")
    limit = int_arg("limit")

    page = get_services().feed.read_page(since, partition=partition, limit=limit)
    return ok_response(ChangesPageOut.from_page(page).model_dump(mode="json"))


@changes_v1_bp.get("/snapshot")
def snapshot():
    """Page through all entities, for consumers recovering from cursor_expired.

    `cursor` is the feed head captured before the page was read; resume the
    change feed from it after the last page. Events that land during the
    snapshot may be delivered twice (at-least-once).
    """

    after = (request.args.get("after") or "").strip() or None
    limit = int_arg("limit", default=int(current_app.config.get("SNAPSHOT_PAGE_LIMIT", 500)))

    services = get_services()
    head = services.feed.head_cursor()
    records, next_after = services.store.snapshot_page(after=after, limit=limit)

    out = SnapshotPageOut(
        entities=[EntityOut.from_record(r) for r in records],
        next_after=next_after,
        cursor=head.encode(),
    )
    return ok_response(out.model_dump(mode="json"))

"""Partner-side client for the read and change APIs.

Typical pull loop:

    client = ChangesClient("https://entities.example.com")
    cursor = client.sync(saved_cursor, on_event=apply, on_snapshot_entity=upsert)
    save(cursor)

`sync` follows `next_cursor` until the feed is drained. When the server
answers 410 (cursor older than retention) it re-snapshots through
`/v1/snapshot` and continues from the cursor the snapshot hands back.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import requests

from logging_utils import get_logger
from utils.errors import (
    ConflictError,
    CursorExpiredError,
    EntitySyncError,
    NotFoundError,
    UnavailableError,
)
from utils.http_client import HttpStatusError, SlidingWindowRateLimiter, request

logger = get_logger(__name__)

_ERRORS_BY_STATUS: dict[int, type[EntitySyncError]] = {
    404: NotFoundError,
    409: ConflictError,
    410: CursorExpiredError,
    503: UnavailableError,
}


@dataclass(frozen=True)
class ChangesPage:
    events: list[dict[str, Any]]
    next_cursor: str


def _error_from_status(e: HttpStatusError) -> EntitySyncError:
    message = str(e)
    details = None
    try:
        body = json.loads(e.body.decode("utf-8")) if e.body else {}
        err = body.get("error") or {}
        message = err.get("message") or message
        details = err.get("details")
    except (ValueError, UnicodeDecodeError, AttributeError):
        pass

    cls = _ERRORS_BY_STATUS.get(e.status_code, EntitySyncError)
    return cls(message, details=details)


class ChangesClient:
    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        max_attempts: int = 3,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            r = request(
                url=f"{self.base_url}{path}",
                session=self.session,
                params=clean or None,
                rate_limiter=self.rate_limiter,
                max_attempts=self.max_attempts,
                timeout_seconds=self.timeout_seconds,
            )
        except HttpStatusError as e:
            raise _error_from_status(e) from e

        payload = r.json()
        if not isinstance(payload, dict) or not payload.get("ok"):
            err = (payload or {}).get("error") or {}
            raise EntitySyncError(err.get("message") or f"Unexpected response from {path}")
        return payload.get("data")

    # --- read API ---

    def get_entity(self, canonical_id: str) -> dict[str, Any]:
        return self._get(f"/v1/entities/{canonical_id}")

    def resolve(self, namespace: str, external_id: str) -> str:
        data = self._get(
            "/v1/resolve", {"namespace": namespace, "external_id": external_id}
        )
        return data["entity_id"]

    # --- change API ---

    def fetch_changes(
        self,
        since: str | int | None = None,
        *,
        partition: int | None = None,
        limit: int | None = None,
    ) -> ChangesPage:
        data = self._get(
            "/v1/changes",
            {"since": since, "partition": partition, "limit": limit},
        )
        return ChangesPage(events=list(data["events"]), next_cursor=data["next_cursor"])

    def iter_pages(
        self,
        since: str | int | None = None,
        *,
        partition: int | None = None,
        limit: int | None = None,
    ) -> Iterator[ChangesPage]:
        """Yield non-empty pages, following `next_cursor` until drained."""

        cursor = since
        while True:
            page = self.fetch_changes(cursor, partition=partition, limit=limit)
            if not page.events:
                return
            yield page
            cursor = page.next_cursor

    def iter_changes(
        self,
        since: str | int | None = None,
        *,
        partition: int | None = None,
        limit: int | None = None,
    ) -> Iterator[tuple[dict[str, Any], str]]:
        """Yield (event, cursor_after_its_page) until the feed is drained."""

        for page in self.iter_pages(since, partition=partition, limit=limit):
            for ev in page.events:
                yield ev, page.next_cursor

    def iter_snapshot(self, *, page_size: int = 500) -> Iterator[tuple[list[dict[str, Any]], str]]:
        """Yield (entities, resume_cursor) per snapshot page.

        `resume_cursor` is the feed position captured before the first page;
        resuming from it replays anything that changed during the snapshot.
        """

        after = None
        resume_cursor: str | None = None
        while True:
            data = self._get("/v1/snapshot", {"after": after, "limit": page_size})
            if resume_cursor is None:
                resume_cursor = data["cursor"]
            yield list(data["entities"]), resume_cursor
            after = data.get("next_after")
            if not after:
                return

    def resnapshot(self, on_entity: Callable[[dict[str, Any]], Any], *, page_size: int = 500) -> str:
        cursor = ""
        for entities, resume_cursor in self.iter_snapshot(page_size=page_size):
            for ent in entities:
                on_entity(ent)
            cursor = resume_cursor
        return cursor

    def sync(
        self,
        cursor: str | int | None,
        *,
        on_event: Callable[[dict[str, Any]], Any],
        on_snapshot_entity: Callable[[dict[str, Any]], Any] | None = None,
        limit: int | None = None,
    ) -> str:
        """Apply all available events and return the cursor to persist.

        Raises:
            CursorExpiredError: when the cursor expired and no snapshot handler
                was given (the caller must decide how to re-snapshot).
        """

        current = "" if cursor is None else str(cursor)
        try:
            for page in self.iter_pages(current, limit=limit):
                for ev in page.events:
                    on_event(ev)
                current = page.next_cursor
        except CursorExpiredError:
            if on_snapshot_entity is None:
                raise
            logger.warning("Change cursor expired; re-snapshotting | cursor=%s", current)
            current = self.resnapshot(on_snapshot_entity)
            for page in self.iter_pages(current, limit=limit):
                for ev in page.events:
                    on_event(ev)
                current = page.next_cursor
        return current

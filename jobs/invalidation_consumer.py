"""Push consumer: change feed -> cache invalidation.

Reads the feed from the last acknowledged cursor, evicts every event from the
cache tiers (`CacheCoherenceLayer.apply_event`), and persists the cursor only
after the events are acknowledged. A crashed or stopped consumer resumes from
`consumer_offsets` with at-least-once delivery; re-applying an invalidation is
harmless.

Run standalone (purges the CDN edge when EDGE_PURGE_URL is set):

    python -m jobs.invalidation_consumer --once
"""

from __future__ import annotations

import argparse
import os
import socket
import threading
import uuid
from typing import Any

import db
from config import Config, config_dict
from logging_utils import get_logger
from models.consumer_offsets import ConsumerOffset
from utils.cache_coherence import CacheCoherenceLayer
from utils.change_feed import ChangeFeed, FeedCursor
from utils.errors import CursorExpiredError
from utils.time_utils import utcnow

logger = get_logger(__name__)

CONSUMER_NAME_PREFIX = "cache_invalidator"


def default_consumer_name() -> str:
    """Offset name unique to this process.

    Every process owns its own cache tiers, so it must also own its cursor: a
    shared offset row would let one process acknowledge events another never
    applied.
    """

    return f"{CONSUMER_NAME_PREFIX}.{socket.gethostname()}.{os.getpid()}.{uuid.uuid4().hex[:8]}"


class InvalidationConsumer:
    def __init__(
        self,
        *,
        feed: ChangeFeed,
        cache: CacheCoherenceLayer,
        session_factory: Any = None,
        name: str | None = None,
        batch_size: int = 500,
        max_batches: int = 100,
    ) -> None:
        self.feed = feed
        self.cache = cache
        self._session_factory = session_factory
        self.name = name or default_consumer_name()
        self.batch_size = max(1, int(batch_size))
        self.max_batches = max(1, int(max_batches))

    @property
    def session_factory(self):
        return self._session_factory or db.SessionLocal

    def _saved_token(self) -> str | None:
        with self.session_factory() as session:
            row = session.get(ConsumerOffset, self.name)
            return row.cursor if row is not None else None

    def load_cursor(self) -> FeedCursor:
        return FeedCursor.coerce(self._saved_token(), partition_count=self.feed.partition_count)

    def save_cursor(self, cursor: FeedCursor) -> None:
        with self.session_factory() as session:
            session.merge(
                ConsumerOffset(
                    consumer_name=self.name, cursor=cursor.encode(), updated_at=utcnow()
                )
            )
            session.commit()

    def _restart_at_head(self) -> FeedCursor:
        # Cache equivalent of a full re-snapshot. The head is read before the
        # clear so every event committed after it is still delivered.
        head = self.feed.head_cursor()
        self.cache.clear()
        self.save_cursor(head)
        return head

    def _recover_expired(self, err: CursorExpiredError) -> FeedCursor:
        logger.warning(
            "Consumer cursor expired; clearing cache and resuming at head | consumer=%s details=%s",
            self.name,
            err.details,
        )
        return self._restart_at_head()

    def run_once(self) -> dict[str, Any]:
        """Drain available events (bounded by `max_batches`).

        Returns summary counts: {"events", "batches", "expired"}.
        """

        events = 0
        batches = 0
        expired = False

        token = self._saved_token()
        if token is None:
            # First pass under this name: start from an empty cache at the head.
            cursor = self._restart_at_head()
            logger.info("Invalidation consumer registered at head | consumer=%s", self.name)
        else:
            try:
                cursor = FeedCursor.coerce(token, partition_count=self.feed.partition_count)
            except CursorExpiredError as e:
                cursor = self._recover_expired(e)
                expired = True

        while batches < self.max_batches:
            try:
                page = self.feed.read_page(cursor, limit=self.batch_size)
            except CursorExpiredError as e:
                cursor = self._recover_expired(e)
                expired = True
                continue

            if not page.events:
                break

            batches += 1
            acked = cursor
            try:
                for ev in page.events:
                    self.cache.apply_event(ev)
                    acked = acked.advance(ev)
                    events += 1
            finally:
                # Persist whatever was acknowledged, even if an invalidation failed.
                if acked != cursor:
                    self.save_cursor(acked)
            cursor = acked

        if events or expired:
            logger.info(
                "Invalidation pass | consumer=%s events=%s batches=%s expired=%s",
                self.name,
                events,
                batches,
                expired,
            )
        return {"events": events, "batches": batches, "expired": expired}

    def run_forever(self, stop_event: threading.Event, *, poll_interval: float = 1.0) -> None:
        logger.info("Invalidation consumer started | consumer=%s", self.name)
        while not stop_event.is_set():
            try:
                summary = self.run_once()
            except Exception:
                # Keep the loop alive; the unacknowledged events are redelivered next pass.
                logger.exception("Invalidation pass failed | consumer=%s", self.name)
                summary = {"events": 0}
            if not summary["events"]:
                stop_event.wait(poll_interval)
        logger.info("Invalidation consumer stopped | consumer=%s", self.name)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Consume the change feed and invalidate caches")
    p.add_argument("--once", action="store_true", help="Drain available events and exit")
    p.add_argument(
        "--poll-interval",
        type=float,
        default=Config.INVALIDATION_POLL_SECONDS,
        help="Seconds to wait when the feed is drained",
    )
    p.add_argument("--batch-size", type=int, default=Config.FEED_PAGE_LIMIT)
    p.add_argument(
        "--name",
        default=Config.INVALIDATION_CONSUMER_NAME,
        help="Consumer offset name (default: unique per process)",
    )
    p.add_argument("--log-level", default=None)
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.log_level:
        os.environ["LOG_LEVEL"] = str(args.log_level)

    from utils.service_container import build_services

    db.Base.metadata.create_all(bind=db.engine)
    services = build_services(config_dict())
    consumer = InvalidationConsumer(
        feed=services.feed,
        cache=services.cache,
        name=args.name,
        batch_size=int(args.batch_size),
    )

    if args.once:
        summary = consumer.run_once()
        logger.info("invalidation_consumer complete | %s", summary)
        return

    stop = threading.Event()
    try:
        consumer.run_forever(stop, poll_interval=float(args.poll_interval))
    except KeyboardInterrupt:
        stop.set()


if __name__ == "__main__":
    main()

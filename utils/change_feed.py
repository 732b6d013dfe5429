"""Partitioned, resumable change feed.

Events are appended inside the same transaction as the entity mutation they
describe (write-ahead ordering), so a reader can never observe a mutation whose
event is not durable.

Ordering:
- `sequence_number` is strictly increasing and gapless per partition.
- Reads interleave partitions in append order; only per-partition order is a
  contract. Cursors therefore track one position per partition.

Cursor tokens are opaque to callers (`v1.<base64url>`); `None`, `""` and `0`
mean "from the beginning".
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session as SASession

import db
from logging_utils import get_logger
from models.change_events import CHANGE_KINDS, ChangeEvent, ChangeFeedPartition
from models.entities import Entity
from utils.entity_identity import partition_for
from utils.errors import CursorExpiredError
from utils.time_utils import ensure_utc, utcnow

logger = get_logger(__name__)

_CURSOR_VERSION = "v1"


@dataclass(frozen=True)
class FeedEvent:
    """Detached, immutable view of a `change_events` row."""

    partition: int
    sequence_number: int
    entity_id: str
    change_kind: str
    version: int
    created_at: datetime
    details: dict[str, Any] | None = field(default=None, compare=False, hash=False)

    @classmethod
    def from_row(cls, row: ChangeEvent) -> "FeedEvent":
        return cls(
            partition=int(row.partition),
            sequence_number=int(row.sequence_number),
            entity_id=row.entity_id,
            change_kind=row.change_kind,
            version=int(row.version),
            created_at=ensure_utc(row.created_at),
            details=dict(row.details) if row.details else None,
        )


@dataclass(frozen=True)
class FeedCursor:
    """Per-partition resume position (last seen sequence number)."""

    partition_count: int
    positions: tuple[int, ...]

    @classmethod
    def start(cls, partition_count: int) -> "FeedCursor":
        return cls(partition_count, (0,) * partition_count)

    def position(self, partition: int) -> int:
        return self.positions[partition]

    def advance(self, event: FeedEvent) -> "FeedCursor":
        if event.sequence_number <= self.positions[event.partition]:
            return self
        pos = list(self.positions)
        pos[event.partition] = event.sequence_number
        return FeedCursor(self.partition_count, tuple(pos))

    def encode(self) -> str:
        raw = f"{self.partition_count}|{','.join(str(p) for p in self.positions)}"
        b64 = base64.urlsafe_b64encode(raw.encode("ascii")).decode("ascii").rstrip("=")
        return f"{_CURSOR_VERSION}.{b64}"

    @classmethod
    def decode(cls, token: str, *, partition_count: int) -> "FeedCursor":
        """Parse a token issued by `encode`.

        Raises:
            ValueError: malformed token.
            CursorExpiredError: token issued for a different partition layout.
        """

        version, _, body = (token or "").partition(".")
        if version != _CURSOR_VERSION or not body:
            raise ValueError(f"malformed cursor: {token!r}")
        try:
            padded = body + "=" * (-len(body) % 4)
            raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("ascii")
            count_s, _, pos_s = raw.partition("|")
            count = int(count_s)
            positions = tuple(int(p) for p in pos_s.split(",")) if pos_s else ()
        except (binascii.Error, UnicodeError, ValueError) as e:
            raise ValueError(f"malformed cursor: {token!r}") from e

        if len(positions) != count or any(p < 0 for p in positions):
            raise ValueError(f"malformed cursor: {token!r}")
        if count != partition_count:
            raise CursorExpiredError(
                "Cursor was issued for a different partition layout; re-snapshot required",
                details={"cursor_partitions": count, "feed_partitions": partition_count},
            )
        return cls(count, positions)

    @classmethod
    def coerce(
        cls,
        value: "FeedCursor | str | int | None",
        *,
        partition_count: int,
        partition: int | None = None,
    ) -> "FeedCursor":
        """Accept a cursor object, token, or bare sequence number.

        A bare integer N means "after sequence N" in `partition`, or in every
        partition when no partition is given.
        """

        if isinstance(value, FeedCursor):
            if value.partition_count != partition_count:
                raise CursorExpiredError(
                    "Cursor was issued for a different partition layout; re-snapshot required"
                )
            return value

        if value is None:
            return cls.start(partition_count)

        if isinstance(value, str):
            v = value.strip()
            if not v:
                return cls.start(partition_count)
            if not v.isdigit():
                return cls.decode(v, partition_count=partition_count)
            value = int(v)

        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"unsupported cursor: {value!r}")
        if value < 0:
            raise ValueError("cursor sequence must be >= 0")

        if partition is None:
            return cls(partition_count, (value,) * partition_count)
        pos = [0] * partition_count
        pos[partition] = value
        return cls(partition_count, tuple(pos))


@dataclass(frozen=True)
class FeedPage:
    events: list[FeedEvent]
    next_cursor: FeedCursor


class ChangeFeed:
    """Append/read access to the `change_events` log."""

    def __init__(
        self,
        *,
        session_factory: Any = None,
        partition_count: int = 8,
        page_limit: int = 500,
        max_page_limit: int = 5000,
    ) -> None:
        if partition_count <= 0:
            raise ValueError("partition_count must be > 0")
        self._session_factory = session_factory
        self.partition_count = int(partition_count)
        self.page_limit = max(1, int(page_limit))
        self.max_page_limit = max(self.page_limit, int(max_page_limit))

    @property
    def session_factory(self):
        # Resolved lazily so tests can repoint db.SessionLocal.
        return self._session_factory or db.SessionLocal

    def partition_for(self, canonical_id: str) -> int:
        return partition_for(canonical_id, self.partition_count)

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.page_limit
        return max(1, min(int(limit), self.max_page_limit))

    def _partitions(self, partition: int | None) -> list[int]:
        if partition is None:
            return list(range(self.partition_count))
        if not 0 <= int(partition) < self.partition_count:
            raise ValueError(
                f"partition must be in [0, {self.partition_count - 1}], got {partition}"
            )
        return [int(partition)]

    # --- write path ---

    def ensure_partitions(self, session: SASession) -> int:
        """Create missing partition counter rows. Returns how many were added."""

        existing = {
            int(p) for (p,) in session.query(ChangeFeedPartition.partition).all()
        }
        added = 0
        for p in range(self.partition_count):
            if p not in existing:
                session.add(ChangeFeedPartition(partition=p, last_sequence=0, retention_floor=0))
                added += 1
        if added:
            session.flush()
        return added

    def append(
        self,
        session: SASession,
        *,
        entity_id: str,
        change_kind: str,
        version: int,
        details: dict[str, Any] | None = None,
    ) -> FeedEvent:
        """Append one event inside the caller's transaction.

        The sequence counter row is updated in the same transaction, so a rolled
        back mutation rolls back its sequence number too (no gaps).
        """

        if change_kind not in CHANGE_KINDS:
            raise ValueError(f"unknown change_kind: {change_kind!r}")

        p = self.partition_for(entity_id)
        counter = (
            session.query(ChangeFeedPartition)
            .filter_by(partition=p)
            .with_for_update()
            .first()
        )
        if counter is None:
            counter = ChangeFeedPartition(partition=p, last_sequence=0, retention_floor=0)
            session.add(counter)

        counter.last_sequence = int(counter.last_sequence or 0) + 1

        row = ChangeEvent(
            partition=p,
            sequence_number=counter.last_sequence,
            entity_id=entity_id,
            change_kind=change_kind,
            version=int(version),
            details=details or None,
            created_at=utcnow(),
        )
        session.add(row)
        session.flush()

        logger.debug(
            "Appended change | partition=%s seq=%s entity=%s kind=%s version=%s",
            p,
            row.sequence_number,
            entity_id,
            change_kind,
            version,
        )
        return FeedEvent.from_row(row)

    def record_mutation(
        self,
        session: SASession,
        entity: Entity,
        change_kind: str,
        details: dict[str, Any] | None = None,
    ) -> FeedEvent:
        """Bump `entity.version` (except on create) and append the matching event."""

        if change_kind != "created":
            entity.version = int(entity.version or 0) + 1
            entity.updated_at = utcnow()
        session.flush()
        return self.append(
            session,
            entity_id=entity.canonical_id,
            change_kind=change_kind,
            version=int(entity.version or 1),
            details=details,
        )

    # --- read path ---

    def _check_cursor(
        self, session: SASession, cursor: FeedCursor, partitions: list[int]
    ) -> None:
        floors = dict(
            session.query(ChangeFeedPartition.partition, ChangeFeedPartition.retention_floor)
            .filter(ChangeFeedPartition.partition.in_(partitions))
            .all()
        )
        for p in partitions:
            floor = int(floors.get(p) or 0)
            if cursor.position(p) < floor:
                raise CursorExpiredError(
                    "Cursor predates the change feed retention horizon; re-snapshot required",
                    details={
                        "partition": p,
                        "cursor_sequence": cursor.position(p),
                        "retention_floor": floor,
                    },
                )

    def read_since(
        self,
        cursor: FeedCursor | str | int | None = None,
        *,
        partition: int | None = None,
        limit: int | None = None,
    ) -> Iterator[FeedEvent]:
        """Return a lazy, finite iterator of events after `cursor`.

        Validation (malformed or expired cursor) happens eagerly; rows are
        fetched when the iterator is consumed. Re-reading from the same cursor
        yields the same ordered events until new events are appended.

        Raises:
            ValueError: malformed cursor or partition.
            CursorExpiredError: cursor predates the retention horizon.
        """

        partitions = self._partitions(partition)
        cur = FeedCursor.coerce(
            cursor, partition_count=self.partition_count, partition=partition
        )
        n = self._clamp_limit(limit)

        with self.session_factory() as session:
            self._check_cursor(session, cur, partitions)

        return self._iter_events(cur, partitions, n)

    def _iter_events(
        self,
        cursor: FeedCursor,
        partitions: list[int],
        limit: int,
    ) -> Iterator[FeedEvent]:
        # The session opens on first next(), so an unconsumed iterator holds nothing.
        session = self.session_factory()
        try:
            conds = [
                and_(
                    ChangeEvent.partition == p,
                    ChangeEvent.sequence_number > cursor.position(p),
                )
                for p in partitions
            ]
            q = (
                session.query(ChangeEvent)
                .filter(or_(*conds))
                .order_by(ChangeEvent.id.asc())
                .limit(limit)
            )
            for row in q.yield_per(200):
                yield FeedEvent.from_row(row)
        finally:
            session.close()

    def read_page(
        self,
        cursor: FeedCursor | str | int | None = None,
        *,
        partition: int | None = None,
        limit: int | None = None,
    ) -> FeedPage:
        start = FeedCursor.coerce(
            cursor, partition_count=self.partition_count, partition=partition
        )
        events = list(self.read_since(start, partition=partition, limit=limit))
        nxt = start
        for ev in events:
            nxt = nxt.advance(ev)
        return FeedPage(events=events, next_cursor=nxt)

    def head_cursor(self) -> FeedCursor:
        """Cursor positioned after the newest event of every partition."""

        with self.session_factory() as session:
            rows = session.query(
                ChangeFeedPartition.partition, ChangeFeedPartition.last_sequence
            ).all()
        pos = [0] * self.partition_count
        for p, last in rows:
            if 0 <= int(p) < self.partition_count:
                pos[int(p)] = int(last or 0)
        return FeedCursor(self.partition_count, tuple(pos))

    # --- retention ---

    def prune(self, *, older_than: datetime) -> dict[str, Any]:
        """Delete events created before `older_than` and raise retention floors.

        Returns summary counts: {"deleted": int, "floors": {partition: floor}}.
        """

        # SQLite stores naive UTC; compare like with like.
        cutoff = ensure_utc(older_than).replace(tzinfo=None)
        deleted = 0
        floors: dict[int, int] = {}

        with self.session_factory() as session:
            counters = session.query(ChangeFeedPartition).order_by(
                ChangeFeedPartition.partition
            )
            for counter in counters.all():
                p = int(counter.partition)
                max_seq = (
                    session.query(func.max(ChangeEvent.sequence_number))
                    .filter(ChangeEvent.partition == p, ChangeEvent.created_at < cutoff)
                    .scalar()
                )
                if max_seq is None:
                    floors[p] = int(counter.retention_floor or 0)
                    continue

                n = (
                    session.query(ChangeEvent)
                    .filter(
                        ChangeEvent.partition == p,
                        ChangeEvent.sequence_number <= int(max_seq),
                    )
                    .delete(synchronize_session=False)
                )
                deleted += int(n or 0)
                counter.retention_floor = max(int(counter.retention_floor or 0), int(max_seq))
                floors[p] = int(counter.retention_floor)

            session.commit()

        if deleted:
            logger.info(
                "Pruned change feed | cutoff=%s deleted=%s floors=%s",
                cutoff.isoformat(),
                deleted,
                floors,
            )
        return {"deleted": deleted, "floors": floors}

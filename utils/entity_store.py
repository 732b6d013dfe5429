"""Authoritative store write/read path.

Every public method is one unit of work:
- runs in its own session/transaction,
- appends change events in that same transaction (write-ahead ordering),
- retries transient database errors with exponential backoff,
- after commit, pushes the produced events to listeners (the cache layer),
  so the writing process reads its own writes without waiting for the
  background invalidation consumer.

Results are immutable `EntityRecord`s, safe to share between threads and to
hold in cache tiers.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.orm import Session as SASession

import db
from logging_utils import get_logger
from models.entities import ENTITY_KINDS, STATUS_TOMBSTONED, Entity
from utils.change_feed import ChangeFeed, FeedEvent
from utils.entity_identity import new_canonical_id, validate_canonical_id
from utils.errors import ConflictError, NotFoundError, UnavailableError
from utils.identifier_registry import IdentifierRegistry
from utils.time_utils import ensure_utc, isoformat_utc, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

_UNSET: Any = object()


@dataclass(frozen=True)
class EntityRecord:
    canonical_id: str
    kind: str
    name: str | None
    status: str
    version: int
    identifiers: tuple[tuple[str, str], ...]
    created_at: datetime
    updated_at: datetime
    tombstoned_at: datetime | None = None
    attributes: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def tombstoned(self) -> bool:
        return self.status == STATUS_TOMBSTONED

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.canonical_id,
            "kind": self.kind,
            "name": self.name,
            "attributes": dict(self.attributes),
            "status": self.status,
            "version": self.version,
            "identifiers": [
                {"namespace": ns, "external_id": ext} for ns, ext in self.identifiers
            ],
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
            "tombstoned_at": isoformat_utc(self.tombstoned_at),
        }


def _sleep_backoff(
    attempt_index: int, *, base_seconds: float = 0.5, cap_seconds: float = 8.0
) -> None:
    # Basic exponential backoff: 0.5, 1, 2 ... capped
    delay = min(base_seconds * (2**attempt_index), cap_seconds)
    time.sleep(delay)


class EntityStore:
    def __init__(
        self,
        *,
        feed: ChangeFeed,
        registry: IdentifierRegistry | None = None,
        session_factory: Any = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_cap_seconds: float = 8.0,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be >= 1")
        self.feed = feed
        self.registry = registry or IdentifierRegistry(feed)
        self._session_factory = session_factory
        self.max_attempts = int(max_attempts)
        self.backoff_base_seconds = float(backoff_base_seconds)
        self.backoff_cap_seconds = float(backoff_cap_seconds)
        self._listeners: list[Callable[[FeedEvent], Any]] = []

    @property
    def session_factory(self):
        return self._session_factory or db.SessionLocal

    def add_listener(self, fn: Callable[[FeedEvent], Any]) -> None:
        """Register a post-commit callback invoked once per produced event."""

        self._listeners.append(fn)

    # --- plumbing ---

    def _run(self, op: str, fn: Callable[[SASession], tuple[T, list[FeedEvent]]]) -> T:
        last_exc: Exception | None = None

        for attempt in range(self.max_attempts):
            session = self.session_factory()
            try:
                result, events = fn(session)
                session.commit()
            except (OperationalError, DisconnectionError) as e:
                last_exc = e
                logger.warning(
                    "Store operation failed | op=%s attempt=%s/%s err=%s",
                    op,
                    attempt + 1,
                    self.max_attempts,
                    e,
                )
                if attempt < self.max_attempts - 1:
                    _sleep_backoff(
                        attempt,
                        base_seconds=self.backoff_base_seconds,
                        cap_seconds=self.backoff_cap_seconds,
                    )
                continue
            except IntegrityError as e:
                # Lost a race against a concurrent writer (unique id / active mapping).
                logger.warning("Store integrity conflict | op=%s err=%s", op, e.orig or e)
                raise ConflictError(
                    f"Concurrent modification during {op}; re-fetch and retry"
                ) from e
            finally:
                session.close()

            self._publish(events)
            return result

        raise UnavailableError(
            f"Authoritative store unavailable during {op}",
            details={"op": op, "attempts": self.max_attempts},
        ) from last_exc

    def _publish(self, events: Iterable[FeedEvent]) -> None:
        for ev in events:
            for fn in self._listeners:
                try:
                    fn(ev)
                except Exception:
                    # Already committed; the invalidation consumer re-delivers from the feed.
                    logger.warning(
                        "Post-commit listener failed | entity=%s seq=%s:%s",
                        ev.entity_id,
                        ev.partition,
                        ev.sequence_number,
                        exc_info=True,
                    )

    def _load(self, session: SASession, canonical_id: str) -> Entity:
        with session.no_autoflush:
            entity = session.query(Entity).filter_by(canonical_id=canonical_id).first()
        if entity is None:
            raise NotFoundError(
                f"Unknown entity {canonical_id}", details={"entity_id": canonical_id}
            )
        return entity

    def _record(self, session: SASession, entity: Entity) -> EntityRecord:
        return EntityRecord(
            canonical_id=entity.canonical_id,
            kind=entity.kind,
            name=entity.name,
            attributes=dict(entity.attributes or {}),
            status=entity.status,
            version=int(entity.version),
            identifiers=tuple(self.registry.identifiers_for(session, entity)),
            created_at=ensure_utc(entity.created_at),
            updated_at=ensure_utc(entity.updated_at),
            tombstoned_at=ensure_utc(entity.tombstoned_at) if entity.tombstoned_at else None,
        )

    # --- entity write path ---

    def create_entity(
        self,
        kind: str,
        *,
        name: str | None = None,
        attributes: dict[str, Any] | None = None,
        canonical_id: str | None = None,
        identifiers: Iterable[tuple[str, str]] = (),
    ) -> EntityRecord:
        """Create a live entity and register its initial identifiers.

        Raises:
            ValueError: unknown kind / invalid id.
            ConflictError: canonical id already used, or an identifier is held
                by another live entity (nothing is written in that case).
        """

        kind_n = (kind or "").strip().lower()
        if kind_n not in ENTITY_KINDS:
            raise ValueError(f"kind must be one of {', '.join(ENTITY_KINDS)}")
        if attributes is not None and not isinstance(attributes, dict):
            raise ValueError("attributes must be an object")

        # Fixed before the retry loop so a retried commit cannot mint a second entity.
        cid = validate_canonical_id(canonical_id) if canonical_id else new_canonical_id()
        idents = [(ns, ext) for ns, ext in identifiers]

        def _tx(session: SASession):
            with session.no_autoflush:
                exists = session.query(Entity.id).filter_by(canonical_id=cid).first()
            if exists is not None:
                raise ConflictError(
                    f"Canonical id {cid} already exists", details={"entity_id": cid}
                )

            now = utcnow()
            entity = Entity(
                canonical_id=cid,
                kind=kind_n,
                name=name,
                attributes=dict(attributes or {}),
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(entity)
            session.flush()

            events = [self.feed.record_mutation(session, entity, "created")]
            for ns, ext in idents:
                _m, evs = self.registry.register_mapping(session, ns, ext, cid)
                events.extend(evs)
            return self._record(session, entity), events

        record = self._run("create_entity", _tx)
        logger.info("Created entity | id=%s kind=%s", record.canonical_id, record.kind)
        return record

    def update_entity(
        self,
        canonical_id: str,
        *,
        name: Any = _UNSET,
        attributes: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> EntityRecord:
        """Update name and/or merge attributes (a `None` value removes a key).

        No event is emitted when nothing changes.

        Raises:
            NotFoundError: unknown entity.
            ConflictError: tombstoned entity or `expected_version` mismatch.
        """

        if attributes is not None and not isinstance(attributes, dict):
            raise ValueError("attributes must be an object")

        def _tx(session: SASession):
            entity = self._load(session, canonical_id)
            if entity.is_tombstoned:
                raise ConflictError(
                    f"Entity {canonical_id} is tombstoned", details={"entity_id": canonical_id}
                )
            if expected_version is not None and int(entity.version) != int(expected_version):
                raise ConflictError(
                    f"Version mismatch for {canonical_id}",
                    details={
                        "entity_id": canonical_id,
                        "expected_version": int(expected_version),
                        "version": int(entity.version),
                    },
                )

            changed = False
            if name is not _UNSET and name != entity.name:
                entity.name = name
                changed = True
            if attributes:
                merged = dict(entity.attributes or {})
                for k, v in attributes.items():
                    if v is None:
                        merged.pop(k, None)
                    else:
                        merged[k] = v
                if merged != (entity.attributes or {}):
                    # New object so the JSON column change is detected.
                    entity.attributes = merged
                    changed = True

            events = []
            if changed:
                events.append(self.feed.record_mutation(session, entity, "updated"))
            return self._record(session, entity), events

        return self._run("update_entity", _tx)

    def tombstone_entity(self, canonical_id: str) -> EntityRecord:
        """Soft-delete an entity. Idempotent; mappings are kept for history."""

        def _tx(session: SASession):
            entity = self._load(session, canonical_id)
            if entity.is_tombstoned:
                return self._record(session, entity), []
            entity.status = STATUS_TOMBSTONED
            entity.tombstoned_at = utcnow()
            event = self.feed.record_mutation(session, entity, "tombstoned")
            return self._record(session, entity), [event]

        record = self._run("tombstone_entity", _tx)
        logger.info("Tombstoned entity | id=%s version=%s", record.canonical_id, record.version)
        return record

    # --- identifier registry (transactional wrappers) ---

    def register_mapping(self, namespace: str, external_id: str, entity_id: str) -> dict[str, Any]:
        def _tx(session: SASession):
            mapping, events = self.registry.register_mapping(
                session, namespace, external_id, entity_id
            )
            out = {
                "namespace": mapping.namespace,
                "external_id": mapping.external_id,
                "entity_id": entity_id,
                "created": bool(events),
            }
            return out, events

        return self._run("register_mapping", _tx)

    def tombstone_mapping(self, namespace: str, external_id: str) -> dict[str, Any]:
        def _tx(session: SASession):
            mapping, events = self.registry.tombstone_mapping(session, namespace, external_id)
            out = {
                "namespace": mapping.namespace,
                "external_id": mapping.external_id,
                "entity_id": events[0].entity_id,
                "status": mapping.status,
            }
            return out, events

        return self._run("tombstone_mapping", _tx)

    def resolve(
        self, namespace: str, external_id: str, *, as_of: datetime | None = None
    ) -> str:
        def _tx(session: SASession):
            return self.registry.resolve(session, namespace, external_id, as_of=as_of), []

        return self._run("resolve", _tx)

    def mapping_history(self, namespace: str, external_id: str) -> list[dict[str, Any]]:
        def _tx(session: SASession):
            rows = self.registry.mapping_history(session, namespace, external_id)
            out = [
                {
                    "namespace": m.namespace,
                    "external_id": m.external_id,
                    "entity_id": cid,
                    "status": m.status,
                    "created_at": isoformat_utc(m.created_at),
                    "tombstoned_at": isoformat_utc(m.tombstoned_at),
                }
                for m, cid in rows
            ]
            return out, []

        return self._run("mapping_history", _tx)

    # --- reads ---

    def get_entity(self, canonical_id: str) -> EntityRecord:
        def _tx(session: SASession):
            return self._record(session, self._load(session, canonical_id)), []

        return self._run("get_entity", _tx)

    def snapshot_page(
        self, *, after: str | None = None, limit: int = 100
    ) -> tuple[list[EntityRecord], str | None]:
        """Entities ordered by canonical id, for consumers re-snapshotting.

        Returns (records, next_after); `next_after` is None on the last page.
        """

        limit = max(1, min(int(limit), 1000))

        def _tx(session: SASession):
            q = session.query(Entity)
            if after:
                q = q.filter(Entity.canonical_id > after)
            rows = q.order_by(Entity.canonical_id.asc()).limit(limit).all()
            records = [self._record(session, e) for e in rows]
            nxt = records[-1].canonical_id if len(records) == limit else None
            return (records, nxt), []

        return self._run("snapshot_page", _tx)

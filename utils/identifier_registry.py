"""Identifier Registry: external identifiers -> canonical entities.

All methods take the caller's session; `utils.entity_store.EntityStore` owns the
transaction boundaries, retries and post-commit cache notification.

Matching rules:
- Namespaces are folded onto canonical names (`address` -> `chain`, ...).
- External ids are normalized per namespace before any lookup or write.
- At most one active mapping per (namespace, external_id). Old mappings are
  tombstoned, never deleted.
"""

from __future__ import annotations

import re
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Session as SASession

from logging_utils import get_logger
from models.entities import Entity
from models.identifier_mappings import (
    MAPPING_ACTIVE,
    MAPPING_TOMBSTONED,
    IdentifierMapping,
)
from utils.change_feed import ChangeFeed, FeedEvent
from utils.errors import ConflictError, NotFoundError
from utils.time_utils import ensure_utc, utcnow

logger = get_logger(__name__)


_NAMESPACE_ALIASES = {
    "address": "chain",
    "chain_address": "chain",
    "contract": "chain",
    "partner_id": "partner",
    "handle": "slug",
}

_NAMESPACE_RE = re.compile(r"^[a-z0-9_]{1,64}$")
_HEX_RE = re.compile(r"^0x[0-9a-f]+$")
_WS_RE = re.compile(r"\s+")

_MAX_EXTERNAL_ID_LEN = 256


def normalize_namespace(namespace: str) -> str:
    """Map aliases onto canonical namespace names.

    Raises:
        ValueError: if the namespace is empty or not `[a-z0-9_]`.
    """

    s = (namespace or "").strip().lower().replace("-", "_")
    s = _NAMESPACE_ALIASES.get(s, s)
    if not _NAMESPACE_RE.match(s):
        raise ValueError(f"invalid namespace: {namespace!r}")
    return s


def normalize_external_id(namespace: str, external_id: str) -> str:
    """Normalize an external id for consistent strict matching.

    - chain: EVM-style `0x` hex addresses are lower-cased and must be hex;
      other chain address formats (case-sensitive encodings) are only trimmed.
    - slug: lower-cased, inner whitespace collapsed to `-`.
    - default: trimmed.
    """

    v = (external_id or "").strip()
    if not v:
        raise ValueError("external_id must be non-empty")
    if len(v) > _MAX_EXTERNAL_ID_LEN:
        raise ValueError(f"external_id longer than {_MAX_EXTERNAL_ID_LEN} chars")

    if namespace == "chain" and v[:2].lower() == "0x":
        v = v.lower()
        if not _HEX_RE.match(v):
            raise ValueError(f"invalid hex chain address: {external_id!r}")
        return v

    if namespace == "slug":
        return _WS_RE.sub("-", v.lower())

    return v


def _naive_utc(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(tzinfo=None)


class IdentifierRegistry:
    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed

    def _active_mapping(
        self, session: SASession, namespace: str, external_id: str
    ) -> IdentifierMapping | None:
        with session.no_autoflush:
            return (
                session.query(IdentifierMapping)
                .filter_by(namespace=namespace, external_id=external_id, status=MAPPING_ACTIVE)
                .first()
            )

    def resolve(
        self,
        session: SASession,
        namespace: str,
        external_id: str,
        *,
        as_of: datetime | None = None,
    ) -> str:
        """Return the canonical id mapped to (namespace, external_id).

        With `as_of`, return the mapping that was active at that instant
        (tombstoned rows included).

        Raises:
            NotFoundError: no mapping (at that time).
        """

        ns = normalize_namespace(namespace)
        ext = normalize_external_id(ns, external_id)

        q = session.query(Entity.canonical_id).join(
            IdentifierMapping, IdentifierMapping.entity_id == Entity.id
        )
        if as_of is None:
            q = q.filter(
                IdentifierMapping.namespace == ns,
                IdentifierMapping.external_id == ext,
                IdentifierMapping.status == MAPPING_ACTIVE,
            )
        else:
            at = _naive_utc(as_of)
            q = q.filter(
                IdentifierMapping.namespace == ns,
                IdentifierMapping.external_id == ext,
                IdentifierMapping.created_at <= at,
                or_(
                    IdentifierMapping.tombstoned_at.is_(None),
                    IdentifierMapping.tombstoned_at > at,
                ),
            ).order_by(IdentifierMapping.id.desc())

        row = q.first()
        if row is None:
            raise NotFoundError(
                f"No mapping for {ns}:{ext}",
                details={"namespace": ns, "external_id": ext},
            )
        return row[0]

    def register_mapping(
        self,
        session: SASession,
        namespace: str,
        external_id: str,
        entity_id: str,
    ) -> tuple[IdentifierMapping, list[FeedEvent]]:
        """Bind (namespace, external_id) to `entity_id`.

        - Same binding already active: no-op, no event.
        - Active binding to a different live entity: ConflictError, nothing changes.
        - Binding previously held by another entity (now tombstoned, or an
          explicitly tombstoned mapping): the old row is tombstoned and a
          `remapped` event is emitted for both entities.
        - Fresh binding: `updated` event for the entity.

        Raises:
            NotFoundError: unknown entity.
            ConflictError: collision with a live entity, or tombstoned target.
        """

        ns = normalize_namespace(namespace)
        ext = normalize_external_id(ns, external_id)

        with session.no_autoflush:
            target = session.query(Entity).filter_by(canonical_id=entity_id).first()
        if target is None:
            raise NotFoundError(f"Unknown entity {entity_id}", details={"entity_id": entity_id})
        if target.is_tombstoned:
            raise ConflictError(
                f"Entity {entity_id} is tombstoned; cannot map {ns}:{ext} to it",
                details={"entity_id": entity_id, "namespace": ns, "external_id": ext},
            )

        active = self._active_mapping(session, ns, ext)
        previous: Entity | None = None

        if active is not None:
            if active.entity_id == target.id:
                return active, []

            holder = session.get(Entity, active.entity_id)
            if holder is not None and not holder.is_tombstoned:
                # Keep strictness and surface the conflict; never steal a live mapping.
                logger.warning(
                    "Identifier conflict | %s:%s held by %s, requested for %s",
                    ns,
                    ext,
                    holder.canonical_id,
                    entity_id,
                )
                raise ConflictError(
                    f"Identifier conflict: {ns}:{ext} already belongs to entity {holder.canonical_id}",
                    details={
                        "namespace": ns,
                        "external_id": ext,
                        "entity_id": holder.canonical_id,
                    },
                )
            previous = holder
        else:
            with session.no_autoflush:
                last = (
                    session.query(IdentifierMapping)
                    .filter_by(namespace=ns, external_id=ext)
                    .order_by(IdentifierMapping.id.desc())
                    .first()
                )
            if last is not None and last.entity_id != target.id:
                previous = session.get(Entity, last.entity_id)

        now = utcnow()
        if active is not None:
            active.status = MAPPING_TOMBSTONED
            active.tombstoned_at = now
            # Free the partial unique index slot before inserting the new row.
            session.flush()

        mapping = IdentifierMapping(
            entity_id=target.id,
            namespace=ns,
            external_id=ext,
            status=MAPPING_ACTIVE,
            created_at=now,
        )
        session.add(mapping)
        session.flush()

        if active is not None:
            active.superseded_by_id = mapping.id

        details = {"namespace": ns, "external_id": ext}
        if previous is None:
            events = [self.feed.record_mutation(session, target, "updated", details)]
        else:
            logger.info(
                "Remapped %s:%s | %s -> %s", ns, ext, previous.canonical_id, target.canonical_id
            )
            events = [
                self.feed.record_mutation(
                    session,
                    target,
                    "remapped",
                    {**details, "previous_entity_id": previous.canonical_id},
                ),
                self.feed.record_mutation(
                    session,
                    previous,
                    "remapped",
                    {**details, "new_entity_id": target.canonical_id},
                ),
            ]
        return mapping, events

    def tombstone_mapping(
        self, session: SASession, namespace: str, external_id: str
    ) -> tuple[IdentifierMapping, list[FeedEvent]]:
        """Soft-delete the active mapping for (namespace, external_id).

        Raises:
            NotFoundError: no active mapping.
        """

        ns = normalize_namespace(namespace)
        ext = normalize_external_id(ns, external_id)

        active = self._active_mapping(session, ns, ext)
        if active is None:
            raise NotFoundError(
                f"No active mapping for {ns}:{ext}",
                details={"namespace": ns, "external_id": ext},
            )

        active.status = MAPPING_TOMBSTONED
        active.tombstoned_at = utcnow()
        session.flush()

        entity = session.get(Entity, active.entity_id)
        event = self.feed.record_mutation(
            session,
            entity,
            "remapped",
            {"namespace": ns, "external_id": ext, "unmapped": True},
        )
        return active, [event]

    def mapping_history(
        self, session: SASession, namespace: str, external_id: str
    ) -> list[tuple[IdentifierMapping, str]]:
        """All mappings ever recorded for the identifier, oldest first,
        paired with the canonical id they pointed to."""

        ns = normalize_namespace(namespace)
        ext = normalize_external_id(ns, external_id)
        rows = (
            session.query(IdentifierMapping, Entity.canonical_id)
            .join(Entity, IdentifierMapping.entity_id == Entity.id)
            .filter(IdentifierMapping.namespace == ns, IdentifierMapping.external_id == ext)
            .order_by(IdentifierMapping.id.asc())
            .all()
        )
        return [(m, cid) for m, cid in rows]

    def identifiers_for(self, session: SASession, entity: Entity) -> list[tuple[str, str]]:
        rows = (
            session.query(IdentifierMapping.namespace, IdentifierMapping.external_id)
            .filter_by(entity_id=entity.id, status=MAPPING_ACTIVE)
            .order_by(IdentifierMapping.namespace, IdentifierMapping.external_id)
            .all()
        )
        return [(ns, ext) for ns, ext in rows]

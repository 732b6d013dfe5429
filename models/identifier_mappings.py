from __future__ import annotations

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import relationship

from models import Base
from utils.time_utils import utcnow_sa_default

MAPPING_ACTIVE = "active"
MAPPING_TOMBSTONED = "tombstoned"


class IdentifierMapping(Base):
    """External identifier -> canonical entity.

    Uniqueness:
    - At most one *active* row per `(namespace, external_id)` (partial unique index).
    - Remaps tombstone the old row instead of deleting it, so the full history
      of a given external identifier stays queryable.

    Examples:
    - namespace='chain', external_id='0xabc...'
    - namespace='partner', external_id='coingecko:bitcoin'
    - namespace='slug', external_id='bitcoin'
    """

    __tablename__ = "identifier_mappings"
    __table_args__ = (
        Index(
            "uq_identifier_mappings_active",
            "namespace",
            "external_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_identifier_mappings_lookup", "namespace", "external_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    entity_id = Column(
        Integer,
        ForeignKey("entities.id"),
        nullable=False,
        index=True,
    )

    # Normalized by utils.identifier_registry before storage.
    namespace = Column(String, nullable=False)
    external_id = Column(String, nullable=False)

    status = Column(String, nullable=False, default=MAPPING_ACTIVE)

    # Auditability.
    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    tombstoned_at = Column(DateTime, nullable=True)
    superseded_by_id = Column(Integer, ForeignKey("identifier_mappings.id"), nullable=True)

    entity = relationship("Entity")

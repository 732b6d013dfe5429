from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from models import Base
from utils.time_utils import utcnow_sa_default

CHANGE_KINDS = ("created", "updated", "remapped", "tombstoned")


class ChangeEvent(Base):
    """Append-only change log row.

    `sequence_number` is strictly increasing and gapless per `partition`; it is
    assigned in the same transaction as the entity mutation it describes.
    """

    __tablename__ = "change_events"
    __table_args__ = (
        UniqueConstraint(
            "partition",
            "sequence_number",
            name="uq_change_events_partition_sequence",
        ),
        Index("ix_change_events_created_at", "created_at"),
    )

    # Append order; used to interleave partitions deterministically on read.
    id = Column(Integer, primary_key=True, autoincrement=True)

    partition = Column(Integer, nullable=False)
    sequence_number = Column(Integer, nullable=False)

    # Canonical id (not the integer FK) so events stay meaningful to consumers.
    entity_id = Column(String, nullable=False, index=True)

    change_kind = Column(String, nullable=False)
    version = Column(Integer, nullable=False)

    # Mapping changes carry namespace/external_id/previous_entity_id here.
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


class ChangeFeedPartition(Base):
    """Per-partition sequence counter and retention horizon."""

    __tablename__ = "change_feed_partitions"

    partition = Column(Integer, primary_key=True, autoincrement=False)

    last_sequence = Column(Integer, nullable=False, default=0)

    # Highest pruned sequence number; cursors below it are expired.
    retention_floor = Column(Integer, nullable=False, default=0)

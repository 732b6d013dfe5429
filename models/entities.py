from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String

from models import Base
from utils.entity_identity import new_canonical_id
from utils.time_utils import utcnow_sa_default

ENTITY_KINDS = ("asset", "issuer", "platform", "network")

STATUS_LIVE = "live"
STATUS_TOMBSTONED = "tombstoned"


class Entity(Base):
    """Canonical record (asset, issuer, platform or network).

    Entities are never hard-deleted: `status='tombstoned'` keeps historical
    resolution and change-feed references valid.
    """

    __tablename__ = "entities"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Opaque, globally unique, assigned once. This is the system-wide join key
    # exposed to callers; `id` stays internal (FK target only).
    canonical_id = Column(
        String,
        unique=True,
        nullable=False,
        index=True,
        default=new_canonical_id,
    )

    kind = Column(String, nullable=False)
    name = Column(String, nullable=True)
    attributes = Column(JSON, nullable=False, default=dict)

    status = Column(String, nullable=False, default=STATUS_LIVE)

    # Bumped by every mutation; mirrored into ChangeEvent.version.
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    updated_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    tombstoned_at = Column(DateTime, nullable=True)

    @property
    def is_tombstoned(self) -> bool:
        return self.status == STATUS_TOMBSTONED

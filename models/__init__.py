"""SQLAlchemy models package.

Important: This project uses a single declarative Base defined in `db.py`.
Import `Base` from this package in all model modules.

Example:

    Base.metadata.create_all(...)

This keeps `Base.metadata` consistent across the app.
"""

from db import Base  # re-export a single shared Base

# Import models so they are registered with SQLAlchemy metadata on startup.
# This makes `Base.metadata.create_all()` create all tables for a fresh DB.
from models.entities import Entity  # noqa: F401
from models.identifier_mappings import IdentifierMapping  # noqa: F401
from models.change_events import ChangeEvent, ChangeFeedPartition  # noqa: F401
from models.consumer_offsets import ConsumerOffset  # noqa: F401

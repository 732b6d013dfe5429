"""Shared helpers for tests.

Intended usage:
- spin up a temporary SQLite database
- create all SQLAlchemy tables
- point the app's `db` module at it

These utilities keep tests small and consistent.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import db
from models import Base

__all__ = [
    "TEST_CONFIG",
    "make_sqlite_engine",
    "create_empty_sqlite_db",
    "patch_app_db",
]


TEST_CONFIG = {
    "TESTING": True,
    "FEED_PARTITIONS": 4,
    "FEED_PAGE_LIMIT": 100,
    "HOT_CACHE_CAPACITY": 100,
    "EDGE_CACHE_TTL_SECONDS": 60.0,
    "STORE_MAX_ATTEMPTS": 3,
    "INIT_DB_ON_STARTUP": False,
    "START_INVALIDATION_CONSUMER": False,
    "EDGE_PURGE_URL": None,
}


def make_sqlite_engine(db_path: Path | str) -> Engine:
    """Create a SQLite engine suitable for tests (same pragmas as the app)."""

    if isinstance(db_path, Path):
        db_path = str(db_path)
    return db.make_engine(f"sqlite:///{db_path}")


def create_empty_sqlite_db(db_path: Path) -> tuple[Session, Engine]:
    """Create an empty SQLite DB file and initialize all models.

    Returns (session, engine).
    """

    engine = make_sqlite_engine(db_path)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    return SessionLocal(), engine


def patch_app_db(monkeypatch, engine: Engine) -> None:
    """Point `db.engine` / `db.SessionLocal` at a test engine.

    Services resolve `db.SessionLocal` lazily, so anything built after this
    call (including `create_app()`) uses the test database.
    """

    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(
        db,
        "SessionLocal",
        sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False),
    )

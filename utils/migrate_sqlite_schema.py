"""SQLite one-off migration helper.

This project does not use Alembic yet. For local development on SQLite,
changing SQLAlchemy models will *not* update existing tables.

Run this script to bring an existing `data/entities.db` in sync with current models.

It will:
- create the registry and change feed tables when missing
- add new nullable columns when missing
- create the indexes the hot paths rely on (including the partial unique
  index that keeps one active mapping per external identifier)
- seed one sequence counter row per change feed partition

Every step is idempotent; running it twice is a no-op the second time.

Note: SQLite has limited ALTER TABLE support. For complex migrations,
create a new DB or use a table-copy strategy.
"""

from __future__ import annotations

import argparse
import os
import sqlite3

DB_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "entities.db")


def _existing_columns(cur: sqlite3.Cursor, table: str) -> set[str]:
    cur.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}


def add_column_if_missing(cur: sqlite3.Cursor, table: str, col: str, ddl: str) -> bool:
    cols = _existing_columns(cur, table)
    if col in cols:
        return False
    cur.execute(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}")
    return True


def create_index_if_missing(cur: sqlite3.Cursor, *, name: str, ddl: str) -> bool:
    """Create an index if it does not already exist.

    Args:
        name: Index name to check in sqlite_master.
        ddl: Full CREATE INDEX statement.
    """

    cur.execute(
        "SELECT 1 FROM sqlite_master WHERE type='index' AND name=? LIMIT 1", (name,)
    )
    if cur.fetchone():
        return False
    cur.execute(ddl)
    return True


def create_table_if_missing(cur: sqlite3.Cursor, *, table: str, ddl: str) -> bool:
    """Create a table if it does not already exist.

    Args:
        table: Table name.
        ddl: Full CREATE TABLE statement.

    Returns:
        True if created, False if already exists.
    """
    cur.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=? LIMIT 1", (table,)
    )
    if cur.fetchone():
        return False
    cur.execute(ddl)
    return True


def create_entities_table_if_missing(cur: sqlite3.Cursor) -> bool:
    ddl = """
    CREATE TABLE entities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        canonical_id VARCHAR NOT NULL UNIQUE,
        kind VARCHAR NOT NULL,
        name VARCHAR NULL,
        attributes JSON NOT NULL,
        status VARCHAR NOT NULL,
        version INTEGER NOT NULL,
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL,
        tombstoned_at DATETIME NULL
    )
    """
    return create_table_if_missing(cur, table="entities", ddl=ddl)


def create_identifier_mappings_table_if_missing(cur: sqlite3.Cursor) -> bool:
    ddl = """
    CREATE TABLE identifier_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_id INTEGER NOT NULL,
        namespace VARCHAR NOT NULL,
        external_id VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        created_at DATETIME NOT NULL,
        tombstoned_at DATETIME NULL,
        superseded_by_id INTEGER NULL,
        FOREIGN KEY(entity_id) REFERENCES entities(id),
        FOREIGN KEY(superseded_by_id) REFERENCES identifier_mappings(id)
    )
    """
    return create_table_if_missing(cur, table="identifier_mappings", ddl=ddl)


def create_change_feed_tables_if_missing(cur: sqlite3.Cursor) -> bool:
    changed = create_table_if_missing(
        cur,
        table="change_events",
        ddl="""
        CREATE TABLE change_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            "partition" INTEGER NOT NULL,
            sequence_number INTEGER NOT NULL,
            entity_id VARCHAR NOT NULL,
            change_kind VARCHAR NOT NULL,
            version INTEGER NOT NULL,
            details JSON NULL,
            created_at DATETIME NOT NULL,
            CONSTRAINT uq_change_events_partition_seq UNIQUE ("partition", sequence_number)
        )
        """,
    )
    changed |= create_table_if_missing(
        cur,
        table="change_feed_partitions",
        ddl="""
        CREATE TABLE change_feed_partitions (
            "partition" INTEGER PRIMARY KEY,
            last_sequence INTEGER NOT NULL DEFAULT 0,
            retention_floor INTEGER NOT NULL DEFAULT 0
        )
        """,
    )
    changed |= create_table_if_missing(
        cur,
        table="consumer_offsets",
        ddl="""
        CREATE TABLE consumer_offsets (
            consumer_name VARCHAR PRIMARY KEY,
            cursor VARCHAR NOT NULL,
            updated_at DATETIME NOT NULL
        )
        """,
    )
    return changed


def create_hot_path_indexes_if_missing(cur: sqlite3.Cursor) -> bool:
    # /resolve looks up (namespace, external_id); at most one active row each.
    changed = create_index_if_missing(
        cur,
        name="uq_identifier_mappings_active",
        ddl=(
            "CREATE UNIQUE INDEX uq_identifier_mappings_active "
            "ON identifier_mappings(namespace, external_id) WHERE status = 'active'"
        ),
    )
    changed |= create_index_if_missing(
        cur,
        name="ix_identifier_mappings_lookup",
        ddl=(
            "CREATE INDEX ix_identifier_mappings_lookup "
            "ON identifier_mappings(namespace, external_id)"
        ),
    )
    changed |= create_index_if_missing(
        cur,
        name="ix_identifier_mappings_entity_id",
        ddl="CREATE INDEX ix_identifier_mappings_entity_id ON identifier_mappings(entity_id)",
    )
    # Compaction scans by age; consumers filter by entity when debugging.
    changed |= create_index_if_missing(
        cur,
        name="ix_change_events_created_at",
        ddl="CREATE INDEX ix_change_events_created_at ON change_events(created_at)",
    )
    changed |= create_index_if_missing(
        cur,
        name="ix_change_events_entity_id",
        ddl="CREATE INDEX ix_change_events_entity_id ON change_events(entity_id)",
    )
    return changed


def migrate_mapping_supersede_column(cur: sqlite3.Cursor) -> bool:
    """Older registries tombstoned mappings without recording their successor."""

    return add_column_if_missing(
        cur, "identifier_mappings", "superseded_by_id", "INTEGER NULL"
    )


def seed_feed_partitions_if_missing(cur: sqlite3.Cursor, partition_count: int) -> bool:
    """Insert a zeroed sequence counter row for every missing partition."""

    if partition_count < 1:
        raise ValueError("partition_count must be >= 1")

    cur.execute('SELECT "partition" FROM change_feed_partitions')
    existing = {int(r[0]) for r in cur.fetchall()}
    missing = [p for p in range(partition_count) if p not in existing]
    for p in missing:
        cur.execute(
            'INSERT INTO change_feed_partitions ("partition", last_sequence, retention_floor) '
            "VALUES (?, 0, 0)",
            (p,),
        )
    return bool(missing)


def migrate(con: sqlite3.Connection, *, partition_count: int) -> bool:
    """Apply every step on an open connection. Returns True if anything changed."""

    cur = con.cursor()

    changed = False

    # --- new tables ---
    changed |= create_entities_table_if_missing(cur)
    changed |= create_identifier_mappings_table_if_missing(cur)
    changed |= create_change_feed_tables_if_missing(cur)

    # --- column migrations ---
    changed |= migrate_mapping_supersede_column(cur)

    # --- indexes (hot paths) ---
    changed |= create_hot_path_indexes_if_missing(cur)

    # Seed sequence counters.
    changed |= seed_feed_partitions_if_missing(cur, partition_count)

    if changed:
        con.commit()
    return changed


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Bring a SQLite entity registry up to date")
    p.add_argument("--db-path", default=DB_PATH)
    p.add_argument(
        "--partitions",
        type=int,
        default=int(os.getenv("FEED_PARTITIONS", "8") or "8"),
        help="Change feed partition count to seed",
    )
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    if not os.path.exists(args.db_path):
        raise SystemExit(f"DB not found: {args.db_path}")

    con = sqlite3.connect(args.db_path)
    try:
        if migrate(con, partition_count=int(args.partitions)):
            print("Migration applied successfully.")
        else:
            print("No changes needed; schema already up to date.")
    finally:
        con.close()


if __name__ == "__main__":
    main()

from __future__ import annotations

import argparse
from datetime import timedelta
from typing import Any

from sqlalchemy import func

import db
from config import Config
from logging_utils import get_logger
from models.change_events import ChangeEvent
from utils.change_feed import ChangeFeed
from utils.time_utils import utcnow

logger = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Prune change events older than the retention window"
    )
    p.add_argument(
        "--retention-days",
        type=float,
        default=Config.FEED_RETENTION_DAYS,
        help="Keep events newer than this many days",
    )
    p.add_argument("--dry-run", action="store_true", help="Only report what would be pruned")
    return p.parse_args(argv)


def run_compaction(
    *, feed: ChangeFeed, retention_days: float, dry_run: bool = False
) -> dict[str, Any]:
    """Prune the feed. Consumers whose cursors fall below the new retention
    floors get CursorExpired and must re-snapshot.
    """

    if retention_days < 0:
        raise ValueError("retention_days must be >= 0")

    cutoff = utcnow() - timedelta(days=float(retention_days))

    if dry_run:
        with feed.session_factory() as s:
            n = (
                s.query(func.count(ChangeEvent.id))
                .filter(ChangeEvent.created_at < cutoff.replace(tzinfo=None))
                .scalar()
                or 0
            )
        return {"deleted": 0, "would_delete": int(n), "cutoff": cutoff.isoformat()}

    summary = feed.prune(older_than=cutoff)
    summary["cutoff"] = cutoff.isoformat()
    return summary


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    db.Base.metadata.create_all(bind=db.engine)
    feed = ChangeFeed(partition_count=Config.FEED_PARTITIONS)

    try:
        summary = run_compaction(
            feed=feed, retention_days=float(args.retention_days), dry_run=bool(args.dry_run)
        )
    except Exception:
        logger.exception("compact_change_feed crashed")
        raise

    logger.info("compact_change_feed complete | %s", summary)
    print(f"compact_change_feed: {summary}")


if __name__ == "__main__":
    main()

from __future__ import annotations

from datetime import timedelta

import pytest

import db
from jobs.compact_change_feed import _parse_args, run_compaction
from models.change_events import ChangeEvent
from utils.time_utils import utcnow


def _age_all_events(days: float) -> None:
    with db.SessionLocal() as s:
        old = (utcnow() - timedelta(days=days)).replace(tzinfo=None)
        s.query(ChangeEvent).update({ChangeEvent.created_at: old})
        s.commit()


def test_dry_run_reports_without_deleting(store, feed) -> None:
    store.create_entity("asset")
    store.create_entity("asset")
    _age_all_events(10)

    summary = run_compaction(feed=feed, retention_days=7, dry_run=True)
    assert summary["would_delete"] == 2
    assert summary["deleted"] == 0
    assert len(list(feed.read_since(0))) == 2


def test_compaction_prunes_only_events_past_retention(store, feed) -> None:
    old = store.create_entity("asset")
    _age_all_events(10)
    store.update_entity(old.canonical_id, name="recent")

    summary = run_compaction(feed=feed, retention_days=7)
    assert summary["deleted"] == 1
    assert "cutoff" in summary

    p = feed.partition_for(old.canonical_id)
    assert summary["floors"][p] == 1
    remaining = list(feed.read_since(1, partition=p))
    assert [e.change_kind for e in remaining] == ["updated"]


def test_negative_retention_rejected(feed) -> None:
    with pytest.raises(ValueError):
        run_compaction(feed=feed, retention_days=-1)


def test_parse_args_defaults() -> None:
    args = _parse_args([])
    assert args.dry_run is False
    assert args.retention_days > 0

    args = _parse_args(["--retention-days", "2.5", "--dry-run"])
    assert args.retention_days == 2.5
    assert args.dry_run is True

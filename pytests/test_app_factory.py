from __future__ import annotations

import db
from app import create_app, init_db
from api.context import JOBS_EXTENSION_KEY
from models.change_events import ChangeFeedPartition
from pytests.common import TEST_CONFIG, make_sqlite_engine, patch_app_db


def test_init_db_creates_schema_and_seeds_partitions(tmp_path, monkeypatch) -> None:
    engine = make_sqlite_engine(tmp_path / "fresh.sqlite")
    patch_app_db(monkeypatch, engine)
    try:
        init_db(3)
        init_db(3)  # idempotent

        with db.SessionLocal() as s:
            rows = s.query(ChangeFeedPartition).order_by(ChangeFeedPartition.partition).all()
        assert [(r.partition, r.last_sequence, r.retention_floor) for r in rows] == [
            (0, 0, 0),
            (1, 0, 0),
            (2, 0, 0),
        ]
    finally:
        engine.dispose()


def test_overrides_win_over_env_defaults(engine, monkeypatch) -> None:
    app = create_app({**TEST_CONFIG, "HOT_CACHE_CAPACITY": 7})
    assert app.config["HOT_CACHE_CAPACITY"] == 7
    assert app.config["TESTING"] is True


def test_consumer_autostart(engine) -> None:
    app = create_app({**TEST_CONFIG, "START_INVALIDATION_CONSUMER": True})
    jobs = app.extensions[JOBS_EXTENSION_KEY]
    try:
        assert jobs.get("invalidation_consumer").get_state()["running"] is True
    finally:
        jobs.stop_all()


def test_unhandled_error_is_500_envelope(app) -> None:
    @app.get("/boom")
    def _boom():
        raise RuntimeError("kaput")

    resp = app.test_client().get("/boom")
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "internal"
    assert "kaput" not in body["error"]["message"]

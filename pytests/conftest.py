from __future__ import annotations

import os
import socket
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Generator

# Keep test log files out of the project tree (loggers attach handlers at import).
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="entity_sync_logs_"))

import pytest
from werkzeug.serving import make_server

from app import create_app
from pytests.common import TEST_CONFIG, create_empty_sqlite_db, patch_app_db
from utils.service_container import build_services


def _pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


@dataclass(frozen=True)
class LiveServer:
    base_url: str
    app: object


@pytest.fixture()
def engine(tmp_path, monkeypatch):
    """Hermetic temp SQLite DB wired into `db`; never touches data/entities.db."""

    session, eng = create_empty_sqlite_db(tmp_path / "test.sqlite")
    session.close()
    patch_app_db(monkeypatch, eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture()
def services(engine):
    return build_services(TEST_CONFIG)


@pytest.fixture()
def store(services):
    return services.store


@pytest.fixture()
def feed(services):
    return services.feed


@pytest.fixture()
def cache(services):
    return services.cache


@pytest.fixture()
def app(engine):
    return create_app(TEST_CONFIG)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def live_server(app) -> Generator[LiveServer, None, None]:
    """Start a real HTTP server (thread) backed by the temp SQLite DB."""

    port = _pick_free_port()
    server = make_server("127.0.0.1", port, app, threaded=True)

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    # Small wait to ensure the socket is accepting.
    deadline = time.time() + 5
    while time.time() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.2):
                break
        except OSError:
            time.sleep(0.05)

    try:
        yield LiveServer(base_url=f"http://127.0.0.1:{port}", app=app)
    finally:
        server.shutdown()
        thread.join(timeout=5)

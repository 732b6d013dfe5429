import time
from typing import Any, Mapping

from flask import Flask, request
from werkzeug.exceptions import HTTPException

import db
from api.blueprint import create_api_blueprint
from api.context import EXTENSION_KEY, JOBS_EXTENSION_KEY, fail_response
from api.jobs.manager import build_job_manager
from config import Config
from logging_utils import configure_app_logging, get_logger
from utils.change_feed import ChangeFeed
from utils.errors import EntitySyncError
from utils.service_container import build_services


def init_db(partition_count: int | None = None) -> None:
    """Initialize DB schema and seed the change feed partition counters.

    Kept out of default startup path to minimize app spin-up time.
    """

    db.Base.metadata.create_all(bind=db.engine)
    feed = ChangeFeed(partition_count=partition_count or Config.FEED_PARTITIONS)
    with db.SessionLocal() as session:
        feed.ensure_partitions(session)
        session.commit()


def create_app(overrides: Mapping[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # env defaults -> settings.py -> explicit overrides (tests).
    app.config.from_object(Config)
    app.config.from_pyfile("settings.py", silent=True)
    if overrides:
        app.config.update(overrides)

    # Configure unified app logging (UTC timestamps, per-file logs, daily rotation)
    configure_app_logging(app.config.get("LOG_LEVEL", "INFO"))
    logger = get_logger(__name__)

    # --- slow request logging (opt-in by threshold; default 250ms) ---
    # Set to 0 to disable (or keep it low temporarily when investigating perf).
    slow_ms = int(app.config.get("SLOW_REQUEST_MS", 250) or 0)

    @app.before_request
    def _start_timer():
        if slow_ms > 0:
            request.environ["_req_start_ns"] = time.perf_counter_ns()

    @app.after_request
    def _log_slow_requests(resp):
        if slow_ms <= 0:
            return resp

        start_ns = request.environ.get("_req_start_ns")
        if not start_ns:
            return resp

        elapsed_ms = (time.perf_counter_ns() - int(start_ns)) / 1_000_000.0
        if elapsed_ms >= slow_ms:
            # Keep it compact and stable for grepping.
            logger.warning(
                "SLOW_REQUEST ms=%.1f status=%s method=%s path=%s query=%s",
                elapsed_ms,
                getattr(resp, "status_code", "?"),
                request.method,
                request.path,
                request.query_string.decode("utf-8", errors="replace"),
            )
        return resp

    if app.config.get("INIT_DB_ON_STARTUP"):
        logger.info("INIT_DB_ON_STARTUP=1; initializing database schema")
        init_db(int(app.config.get("FEED_PARTITIONS", 8)))

    services = build_services(app.config)
    app.extensions[EXTENSION_KEY] = services
    app.extensions[JOBS_EXTENSION_KEY] = build_job_manager(services, app.config)

    # Register routes/blueprints (respect feature flags)
    app.register_blueprint(
        create_api_blueprint(
            enable_admin=bool(app.config.get("ENABLE_ADMIN", True)),
            enable_curation=bool(app.config.get("ENABLE_CURATION_API", True)),
        )
    )

    # Error handlers: every failure leaves as a JSON envelope.
    @app.errorhandler(EntitySyncError)
    def entity_sync_error(err: EntitySyncError):
        return fail_response(err.message, code=err.code, status=err.http_status, details=err.details)

    @app.errorhandler(ValueError)
    def bad_request(err: ValueError):
        return fail_response(str(err) or "Bad request", code="bad_request", status=400)

    @app.errorhandler(HTTPException)
    def http_error(err: HTTPException):
        code = (err.name or "error").lower().replace(" ", "_")
        return fail_response(err.description or err.name, code=code, status=err.code or 500)

    @app.errorhandler(Exception)
    def server_error(err: Exception):
        logger.exception("Unhandled server error | path=%s", request.path)
        return fail_response("Internal server error", code="internal", status=500)

    if app.config.get("START_INVALIDATION_CONSUMER"):
        logger.info("START_INVALIDATION_CONSUMER=1; starting invalidation consumer")
        app.extensions[JOBS_EXTENSION_KEY].get("invalidation_consumer").start()

    return app


# NOTE: Do not instantiate the Flask app at import time.
# Tests patch the DB engine/sessionmaker before calling create_app().
app: Flask | None = None


if __name__ == "__main__":
    app = create_app()
    get_logger(__name__).info("Starting Flask app")
    app.run(debug=True, use_reloader=False)

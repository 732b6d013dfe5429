from __future__ import annotations

from flask import Blueprint, current_app

from api.context import JOBS_EXTENSION_KEY, get_services, ok_response

admin_v1_bp = Blueprint("admin_v1", __name__, url_prefix="/admin")


def _jobs():
    return current_app.extensions[JOBS_EXTENSION_KEY]


@admin_v1_bp.get("/jobs")
def get_jobs():
    """Return current background job state for operators."""

    return ok_response(_jobs().states())


@admin_v1_bp.post("/jobs/<name>/start")
def start_job(name: str):
    started = _jobs().get(name).start()
    return ok_response({"job": name, "started": started}, status=202 if started else 200)


@admin_v1_bp.post("/jobs/<name>/stop")
def stop_job(name: str):
    _jobs().get(name).request_stop()
    return ok_response({"job": name, "stop_requested": True})


@admin_v1_bp.get("/cache")
def cache_stats():
    services = get_services()
    data = services.cache.stats()
    data["feed_head"] = services.feed.head_cursor().encode()
    return ok_response(data)


@admin_v1_bp.post("/cache/clear")
def cache_clear():
    get_services().cache.clear()
    return ok_response({"cleared": True})

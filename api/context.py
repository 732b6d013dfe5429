from __future__ import annotations

import uuid
from typing import Any

from flask import current_app, g, jsonify, request

from api.schemas.api_responses import ApiMeta, fail, ok
from utils.cache_coherence import CONSISTENCY_MODEL
from utils.service_container import Services

EXTENSION_KEY = "entity_sync"
JOBS_EXTENSION_KEY = "entity_sync_jobs"


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def request_id() -> str:
    rid = getattr(g, "request_id", None)
    if rid is None:
        rid = (request.headers.get("X-Request-ID") or "").strip() or uuid.uuid4().hex
        g.request_id = rid
    return rid


def meta() -> ApiMeta:
    return ApiMeta(request_id=request_id(), consistency=CONSISTENCY_MODEL)


def ok_response(data: Any = None, status: int = 200, headers: dict[str, str] | None = None):
    resp = jsonify(ok(data, meta=meta()))
    resp.status_code = status
    for k, v in (headers or {}).items():
        resp.headers[k] = v
    return resp


def fail_response(
    message: str,
    *,
    code: str,
    status: int,
    details: dict[str, Any] | None = None,
):
    resp = jsonify(fail(message, code=code, details=details, meta=meta()))
    resp.status_code = status
    return resp


def json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("JSON object body required")
    return body


def int_arg(name: str, *, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer") from e

"""Read API: entity lookup and identifier resolution.

Both endpoints are cache-eligible (edge -> hot -> store). Responses carry:
- `X-Cache`: tier that served the read (edge | hot | store)
- `X-Consistency-Model`: read-after-write via the change feed, not linearizable
- `ETag` / `X-Entity-Version` for conditional requests
"""

from __future__ import annotations

from flask import Blueprint, current_app, request

from api.context import get_services, ok_response
from api.schemas.api_responses import EntityOut, ResolveOut
from utils.cache_coherence import CONSISTENCY_MODEL, TIER_STORE
from utils.identifier_registry import normalize_external_id, normalize_namespace
from utils.time_utils import parse_iso_datetime

entities_v1_bp = Blueprint("entities_v1", __name__)


def entity_etag(canonical_id: str, version: int) -> str:
    return f'W/"{canonical_id}:{version}"'


def _cache_control() -> str:
    # Only a CDN that receives purges may hold a copy; everyone else revalidates.
    if get_services().cache.purger is None:
        return "no-cache"
    ttl = int(current_app.config.get("EDGE_CACHE_TTL_SECONDS", 60))
    return f"public, max-age=0, s-maxage={ttl}"


def _cache_headers(tier: str) -> dict[str, str]:
    return {
        "X-Cache": tier,
        "X-Consistency-Model": CONSISTENCY_MODEL,
        "Cache-Control": _cache_control(),
    }


@entities_v1_bp.get("/entities/<canonical_id>")
def get_entity(canonical_id: str):
    """Return one entity; tombstoned entities are returned with status=tombstoned."""

    record, tier = get_services().cache.get_entity(canonical_id)

    etag = entity_etag(record.canonical_id, record.version)
    headers = _cache_headers(tier)
    headers["ETag"] = etag
    headers["X-Entity-Version"] = str(record.version)

    if_none_match = [t.strip() for t in (request.headers.get("If-None-Match") or "").split(",")]
    if etag in if_none_match:
        resp = current_app.response_class(status=304)
        for k, v in headers.items():
            resp.headers[k] = v
        return resp

    return ok_response(EntityOut.from_record(record).model_dump(mode="json"), headers=headers)


@entities_v1_bp.get("/resolve")
def resolve():
    """Resolve (namespace, external_id) to a canonical id.

    Query params:
    - namespace, external_id: required
    - as_of: optional ISO-8601 timestamp for historical resolution (not cached)
    """

    namespace = (request.args.get("namespace") or "").strip()
    external_id = (request.args.get("external_id") or "").strip()
    if not namespace or not external_id:
        raise ValueError("namespace and external_id are required")

    ns = normalize_namespace(namespace)
    ext = normalize_external_id(ns, external_id)

    raw_as_of = (request.args.get("as_of") or "").strip()
    services = get_services()
    if raw_as_of:
        as_of = parse_iso_datetime(raw_as_of)
        entity_id = services.store.resolve(ns, ext, as_of=as_of)
        out = ResolveOut(namespace=ns, external_id=ext, entity_id=entity_id, as_of=as_of)
        headers = {"X-Cache": TIER_STORE, "X-Consistency-Model": CONSISTENCY_MODEL}
        return ok_response(out.model_dump(mode="json"), headers=headers)

    entity_id, tier = services.cache.resolve(ns, ext)
    out = ResolveOut(namespace=ns, external_id=ext, entity_id=entity_id)
    return ok_response(out.model_dump(mode="json"), headers=_cache_headers(tier))

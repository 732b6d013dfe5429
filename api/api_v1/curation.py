"""Curation write API (the authoritative store's write path over HTTP).

Every successful write has already appended its change events and invalidated
this process's cache tiers when the response is sent.
"""

from __future__ import annotations

from flask import Blueprint, request

from api.context import get_services, json_body, ok_response
from api.schemas.api_responses import EntityOut
from utils.entity_identity import derive_canonical_id
from utils.identifier_registry import normalize_external_id, normalize_namespace

curation_v1_bp = Blueprint("curation_v1", __name__)


def _parse_if_match(raw: str | None) -> int | None:
    """Accept `W/"<id>:<version>"`, `"<version>"` or a bare version number."""

    v = (raw or "").strip()
    if not v or v == "*":
        return None
    if v.startswith("W/"):
        v = v[2:]
    v = v.strip('"')
    if ":" in v:
        v = v.rsplit(":", 1)[1]
    try:
        return int(v)
    except ValueError as e:
        raise ValueError("If-Match must carry an entity version") from e


def _identifiers(body: dict) -> list[tuple[str, str]]:
    raw = body.get("identifiers") or []
    if not isinstance(raw, list):
        raise ValueError("identifiers must be a list")
    out = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("identifiers items must be objects")
        out.append((str(item.get("namespace") or ""), str(item.get("external_id") or "")))
    return out


def _optional_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _entity_response(record, status: int = 200):
    return ok_response(
        EntityOut.from_record(record).model_dump(mode="json"),
        status=status,
        headers={"X-Entity-Version": str(record.version)},
    )


@curation_v1_bp.post("/entities")
def create_entity():
    body = json_body()
    identifiers = _identifiers(body)

    canonical_id = _optional_str(body, "id") or None
    if canonical_id is None and body.get("derive_id"):
        # Same seed identifier always yields the same id, so a replayed create is a 409.
        if not identifiers:
            raise ValueError("derive_id requires at least one identifier")
        ns = normalize_namespace(identifiers[0][0])
        canonical_id = derive_canonical_id(
            namespace=ns, external_id=normalize_external_id(ns, identifiers[0][1])
        )

    record = get_services().store.create_entity(
        str(body.get("kind") or ""),
        name=_optional_str(body, "name"),
        attributes=body.get("attributes"),
        canonical_id=canonical_id,
        identifiers=identifiers,
    )
    return _entity_response(record, status=201)


@curation_v1_bp.patch("/entities/<canonical_id>")
def update_entity(canonical_id: str):
    body = json_body()

    expected = body.get("expected_version")
    if expected is None:
        expected = _parse_if_match(request.headers.get("If-Match"))
    elif isinstance(expected, bool) or not isinstance(expected, int):
        raise ValueError("expected_version must be an integer")

    kwargs = {}
    if "name" in body:
        kwargs["name"] = _optional_str(body, "name")

    record = get_services().store.update_entity(
        canonical_id,
        attributes=body.get("attributes"),
        expected_version=expected,
        **kwargs,
    )
    return _entity_response(record)


@curation_v1_bp.delete("/entities/<canonical_id>")
def tombstone_entity(canonical_id: str):
    record = get_services().store.tombstone_entity(canonical_id)
    return _entity_response(record)


@curation_v1_bp.put("/mappings")
def register_mapping():
    """Bind an external identifier to an entity. 409 if held by another live entity."""

    body = json_body()
    result = get_services().store.register_mapping(
        str(body.get("namespace") or ""),
        str(body.get("external_id") or ""),
        str(body.get("entity_id") or ""),
    )
    return ok_response(result, status=201 if result["created"] else 200)


@curation_v1_bp.delete("/mappings")
def tombstone_mapping():
    namespace = (request.args.get("namespace") or "").strip()
    external_id = (request.args.get("external_id") or "").strip()
    result = get_services().store.tombstone_mapping(namespace, external_id)
    return ok_response(result)


@curation_v1_bp.get("/mappings/history")
def mapping_history():
    namespace = (request.args.get("namespace") or "").strip()
    external_id = (request.args.get("external_id") or "").strip()
    rows = get_services().store.mapping_history(namespace, external_id)
    return ok_response({"count": len(rows), "results": rows})

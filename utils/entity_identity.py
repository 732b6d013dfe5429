from __future__ import annotations

import hashlib
import re
import uuid

CANONICAL_ID_PREFIX = "ent_"

_CANONICAL_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,127}$")


def new_canonical_id() -> str:
    """Return a fresh opaque canonical id (`ent_` + 32 hex chars)."""

    return CANONICAL_ID_PREFIX + uuid.uuid4().hex


def validate_canonical_id(value: str) -> str:
    """Return `value` trimmed, or raise ValueError if it is not a usable canonical id.

    Caller-supplied ids are accepted as long as they are short, URL-safe tokens;
    the id is part of `/v1/entities/{id}` paths and edge cache keys.
    """

    v = (value or "").strip()
    if not _CANONICAL_ID_RE.match(v):
        raise ValueError(f"invalid canonical id: {value!r}")
    return v


def derive_canonical_id(*, namespace: str, external_id: str) -> str:
    """Derive a deterministic canonical id from a seed external identifier.

    Lets a curation pipeline create the same entity twice from the same source
    identifier and hit a Conflict instead of minting a duplicate.

        uuid5(NAMESPACE_URL, f"entity:{namespace}:{external_id}")
    """

    if not namespace:
        raise ValueError("namespace is required")
    if not external_id:
        raise ValueError("external_id is required")

    name = f"entity:{namespace}:{external_id}"
    return CANONICAL_ID_PREFIX + uuid.uuid5(uuid.NAMESPACE_URL, name).hex


def partition_for(canonical_id: str, partition_count: int) -> int:
    """Stable partition assignment for a canonical id.

    Must not use the builtin `hash()` (salted per process); every writer and
    reader has to agree on the partition.
    """

    if partition_count <= 0:
        raise ValueError("partition_count must be > 0")
    digest = hashlib.sha1(canonical_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % partition_count

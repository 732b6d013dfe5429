"""Domain errors shared by the registry, store, feed and HTTP layers.

Each error carries a stable `code` (used in the API error envelope) and the
HTTP status the Flask error handler maps it to.
"""

from __future__ import annotations

from typing import Any


class EntitySyncError(RuntimeError):
    code = "error"
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or None


class NotFoundError(EntitySyncError):
    """Unknown canonical id or identifier mapping."""

    code = "not_found"
    http_status = 404


class ConflictError(EntitySyncError):
    """Mapping collision or stale write; the caller must re-fetch state."""

    code = "conflict"
    http_status = 409


class CursorExpiredError(EntitySyncError):
    """Cursor predates the feed retention horizon; the caller must re-snapshot."""

    code = "cursor_expired"
    http_status = 410


class UnavailableError(EntitySyncError):
    """Authoritative store (or edge purge endpoint) unreachable after retries."""

    code = "unavailable"
    http_status = 503

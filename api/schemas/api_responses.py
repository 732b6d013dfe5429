from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from utils.change_feed import FeedEvent, FeedPage
from utils.entity_store import EntityRecord

T = TypeVar("T")


class ApiError(BaseModel):
    """Standard error payload for API responses."""

    code: str = Field(default="error")
    message: str
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")


class ApiMeta(BaseModel):
    """Optional metadata attached to responses."""

    request_id: Optional[str] = None
    consistency: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ApiResponse(BaseModel, Generic[T]):
    """Standard envelope for all API responses."""

    ok: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None
    meta: ApiMeta = Field(default_factory=ApiMeta)

    model_config = ConfigDict(extra="ignore")


class IdentifierOut(BaseModel):
    namespace: str
    external_id: str


class EntityOut(BaseModel):
    id: str
    kind: str
    name: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    status: str
    version: int
    identifiers: List[IdentifierOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    tombstoned_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, r: EntityRecord) -> "EntityOut":
        return cls(
            id=r.canonical_id,
            kind=r.kind,
            name=r.name,
            attributes=dict(r.attributes),
            status=r.status,
            version=r.version,
            identifiers=[IdentifierOut(namespace=ns, external_id=ext) for ns, ext in r.identifiers],
            created_at=r.created_at,
            updated_at=r.updated_at,
            tombstoned_at=r.tombstoned_at,
        )


class ResolveOut(BaseModel):
    namespace: str
    external_id: str
    entity_id: str
    as_of: Optional[datetime] = None


class ChangeEventOut(BaseModel):
    partition: int
    sequence_number: int
    entity_id: str
    change_kind: str
    version: int
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_event(cls, ev: FeedEvent) -> "ChangeEventOut":
        return cls(
            partition=ev.partition,
            sequence_number=ev.sequence_number,
            entity_id=ev.entity_id,
            change_kind=ev.change_kind,
            version=ev.version,
            timestamp=ev.created_at,
            details=ev.details,
        )


class ChangesPageOut(BaseModel):
    events: List[ChangeEventOut]
    next_cursor: str
    count: int

    @classmethod
    def from_page(cls, page: FeedPage) -> "ChangesPageOut":
        return cls(
            events=[ChangeEventOut.from_event(e) for e in page.events],
            next_cursor=page.next_cursor.encode(),
            count=len(page.events),
        )


class SnapshotPageOut(BaseModel):
    entities: List[EntityOut]
    next_after: Optional[str] = None
    cursor: str


def ok(data: Any = None, *, meta: Optional[ApiMeta] = None) -> Dict[str, Any]:
    """Create a success envelope as a JSON-serializable dict."""

    payload = ApiResponse[Any](ok=True, data=data, error=None, meta=meta or ApiMeta())
    return payload.model_dump(mode="json")


def fail(
    message: str,
    *,
    code: str = "error",
    details: Optional[Dict[str, Any]] = None,
    meta: Optional[ApiMeta] = None,
) -> Dict[str, Any]:
    """Create an error envelope as a JSON-serializable dict."""

    payload = ApiResponse[None](
        ok=False,
        data=None,
        error=ApiError(code=code, message=message, details=details),
        meta=meta or ApiMeta(),
    )
    return payload.model_dump(mode="json")

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import requests

from logging_utils import get_logger
from utils.errors import UnavailableError
from utils.http_client import HttpStatusError, SlidingWindowRateLimiter, request

logger = get_logger(__name__)


def entity_path(canonical_id: str) -> str:
    return f"/v1/entities/{canonical_id}"


def resolve_path(namespace: str, external_id: str) -> str:
    return "/v1/resolve?" + urlencode({"namespace": namespace, "external_id": external_id})


class EdgePurger:
    """Purges cached API paths from a CDN edge.

    POSTs `{"paths": [...]}` to `purge_url`. A failed purge raises
    UnavailableError so the triggering change event is not acknowledged and
    gets redelivered.
    """

    def __init__(
        self,
        purge_url: str,
        *,
        token: str | None = None,
        session: requests.Session | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        max_attempts: int = 3,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not purge_url:
            raise ValueError("purge_url is required")
        self.purge_url = purge_url
        self.token = token
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.purged = 0

    def purge(self, paths: list[str]) -> None:
        if not paths:
            return

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        body: dict[str, Any] = {"paths": list(paths)}
        try:
            request(
                url=self.purge_url,
                method="POST",
                session=self.session,
                headers=headers,
                json_body=body,
                rate_limiter=self.rate_limiter,
                max_attempts=self.max_attempts,
                timeout_seconds=self.timeout_seconds,
            )
        except HttpStatusError as e:
            raise UnavailableError(
                f"Edge purge rejected status={e.status_code}",
                details={"paths": list(paths), "status": e.status_code},
            ) from e

        self.purged += len(paths)
        logger.debug("Edge purge ok | paths=%s", paths)

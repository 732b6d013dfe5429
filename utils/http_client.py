"""Outbound HTTP helper shared by the changes client and the edge purger.

Handles User-Agent, client-side throttling, and retry with exponential
backoff (honouring `Retry-After`) on connection errors and 429/5xx.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import requests

from logging_utils import get_logger
from settings import SETTINGS
from utils.errors import UnavailableError

logger = get_logger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class HttpStatusError(RuntimeError):
    """Non-retryable (or final) non-2xx response."""

    def __init__(self, message: str, *, status_code: int, body: bytes = b"") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class HttpResponse:
    url: str
    status_code: int
    content: bytes
    content_type: str | None

    def text(self, encoding: str | None = None) -> str:
        return self.content.decode(encoding or "utf-8", errors="replace")

    def json(self) -> Any:
        return requests.models.complexjson.loads(self.text())


def _safe_preview_bytes(data: bytes | None, *, limit: int = 2000) -> str:
    """Log-safe preview of a response body (truncated, decoded with replacement)."""

    if not data:
        return ""
    return data[:limit].decode("utf-8", errors="replace")


def _headers_for_log(headers: dict[str, str]) -> dict[str, str]:
    """Return a redacted copy of headers for logging."""

    redacted: dict[str, str] = {}
    for k, v in (headers or {}).items():
        lk = str(k).lower()
        if (
            lk in {"authorization", "x-api-key", "api-key"}
            or "token" in lk
            or "secret" in lk
        ):
            redacted[str(k)] = "<redacted>"
        else:
            redacted[str(k)] = str(v)
    return redacted


class SlidingWindowRateLimiter:
    """Thread-safe sliding-window rate limiter.

    Enforces at most `max_requests` in any `window_seconds` wall-clock window.
    """

    def __init__(self, *, max_requests: int = 20, window_seconds: float = 1.0):
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self._max_requests = int(max_requests)
        self._window_seconds = float(window_seconds)
        self._lock = threading.Lock()
        self._events: deque[float] = deque()  # monotonic timestamps

    def acquire(self) -> None:
        """Block until a request token is available."""
        while True:
            now = time.monotonic()

            with self._lock:
                cutoff = now - self._window_seconds
                while self._events and self._events[0] <= cutoff:
                    self._events.popleft()

                if len(self._events) < self._max_requests:
                    self._events.append(now)
                    return

                oldest = self._events[0]
                sleep_for = max((oldest + self._window_seconds) - now, 0.001)

            time.sleep(sleep_for)


_default_rate_limiter = SlidingWindowRateLimiter(max_requests=20, window_seconds=1.0)


def _user_agent() -> str:
    ua = SETTINGS.get("CLIENT_USER_AGENT")
    if isinstance(ua, str) and ua.strip():
        return ua.strip()
    return "entity_sync-client (contact: unset)"


def _parse_retry_after_seconds(value: str | None) -> float | None:
    if not value:
        return None
    v = value.strip()
    if not v:
        return None
    # Integer seconds only; HTTP-date values fall back to backoff.
    try:
        return float(int(v))
    except ValueError:
        return None


def _sleep_backoff(
    attempt_index: int, *, base_seconds: float = 0.5, cap_seconds: float = 8.0
) -> None:
    # Basic exponential backoff: 0.5, 1, 2 ... capped
    delay = min(base_seconds * (2**attempt_index), cap_seconds)
    time.sleep(delay)


def request(
    *,
    url: str,
    method: str = "GET",
    session: requests.Session | None = None,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json_body: Any = None,
    timeout_seconds: float = 30.0,
    rate_limiter: SlidingWindowRateLimiter | None = None,
    max_attempts: int = 3,
) -> HttpResponse:
    """HTTP request with UA, throttling and retry/backoff.

    Raises:
        HttpStatusError: non-retryable status, or retryable status on the last attempt.
        UnavailableError: connection-level failure on every attempt.
    """

    if max_attempts <= 0:
        raise ValueError("max_attempts must be >= 1")

    s = session or requests.Session()
    rl = rate_limiter or _default_rate_limiter

    merged_headers = {"User-Agent": _user_agent(), "Accept": "application/json"}
    if headers:
        merged_headers.update(headers)

    last_exc: Exception | None = None

    for attempt in range(max_attempts):
        rl.acquire()
        try:
            resp = s.request(
                method,
                url,
                headers=merged_headers,
                params=params,
                json=json_body,
                timeout=timeout_seconds,
            )
        except requests.RequestException as e:
            last_exc = e
            logger.warning(
                "HTTP request failed | method=%s url=%s attempt=%s/%s err=%s",
                method,
                url,
                attempt + 1,
                max_attempts,
                e,
            )
            if attempt < max_attempts - 1:
                _sleep_backoff(attempt)
            continue

        if 200 <= resp.status_code < 300:
            return HttpResponse(
                url=url,
                status_code=resp.status_code,
                content=resp.content,
                content_type=resp.headers.get("Content-Type"),
            )

        retry_after_raw = resp.headers.get("Retry-After")
        retry_after = _parse_retry_after_seconds(retry_after_raw)

        logger.warning(
            "HTTP non-2xx response | method=%s status=%s url=%s attempt=%s/%s retry_after=%s headers=%s body_preview=%s",
            method,
            resp.status_code,
            url,
            attempt + 1,
            max_attempts,
            retry_after_raw,
            _headers_for_log(merged_headers),
            _safe_preview_bytes(getattr(resp, "content", b"")),
        )

        if resp.status_code in RETRYABLE_STATUS and attempt < max_attempts - 1:
            if retry_after is not None:
                time.sleep(retry_after)
            else:
                _sleep_backoff(attempt)
            continue

        raise HttpStatusError(
            f"HTTP request failed status={resp.status_code} url={url}",
            status_code=resp.status_code,
            body=getattr(resp, "content", b"") or b"",
        )

    raise UnavailableError(
        f"HTTP endpoint unreachable url={url}", details={"attempts": max_attempts}
    ) from last_exc

import os


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = (os.getenv(name) or "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = (os.getenv(name) or "").strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        return default


class Config:
    """Base configuration loaded from environment variables.

    `settings.py` and `create_app(overrides)` are applied on top of these.
    """

    SECRET_KEY = os.getenv("SECRET_KEY", "dev-not-secret")

    # Feature flags
    ENABLE_ADMIN: bool = _env_bool("ENABLE_ADMIN", True)
    ENABLE_CURATION_API: bool = _env_bool("ENABLE_CURATION_API", True)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    SLOW_REQUEST_MS: int = _env_int("SLOW_REQUEST_MS", 250)

    # Authoritative store
    STORE_MAX_ATTEMPTS: int = _env_int("STORE_MAX_ATTEMPTS", 3)
    INIT_DB_ON_STARTUP: bool = _env_bool("INIT_DB_ON_STARTUP", False)

    # Cache tiers
    HOT_CACHE_CAPACITY: int = _env_int("HOT_CACHE_CAPACITY", 10_000)
    EDGE_CACHE_TTL_SECONDS: float = _env_float("EDGE_CACHE_TTL_SECONDS", 60.0)
    CACHE_LOCK_STRIPES: int = _env_int("CACHE_LOCK_STRIPES", 64)

    # Optional CDN purge endpoint for the edge tier.
    EDGE_PURGE_URL: str | None = os.getenv("EDGE_PURGE_URL") or None
    EDGE_PURGE_TOKEN: str | None = os.getenv("EDGE_PURGE_TOKEN") or None

    # Change feed
    FEED_PARTITIONS: int = _env_int("FEED_PARTITIONS", 8)
    FEED_PAGE_LIMIT: int = _env_int("FEED_PAGE_LIMIT", 500)
    FEED_MAX_PAGE_LIMIT: int = _env_int("FEED_MAX_PAGE_LIMIT", 5000)
    FEED_RETENTION_DAYS: float = _env_float("FEED_RETENTION_DAYS", 7.0)
    SNAPSHOT_PAGE_LIMIT: int = _env_int("SNAPSHOT_PAGE_LIMIT", 500)

    # Invalidation consumer
    START_INVALIDATION_CONSUMER: bool = _env_bool("START_INVALIDATION_CONSUMER", False)
    INVALIDATION_POLL_SECONDS: float = _env_float("INVALIDATION_POLL_SECONDS", 1.0)
    # Offset row name; unset means unique per process. Never share it between
    # processes, each one owns its own cache tiers.
    INVALIDATION_CONSUMER_NAME: str | None = os.getenv("INVALIDATION_CONSUMER_NAME") or None


def config_dict() -> dict[str, object]:
    """Uppercase `Config` attributes as a plain dict (for CLI jobs outside Flask)."""

    return {k: getattr(Config, k) for k in dir(Config) if k.isupper()}

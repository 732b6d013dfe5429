"""App settings.

Flask loads this module on startup via ``app.config.from_pyfile(...)``, after the
environment-derived defaults in ``config.Config``. Only UPPERCASE names are picked
up by Flask, so keep local overrides here and leave this empty for env-driven
deployments.
"""

# Local overrides (empty by default; env vars in config.Config apply).
SETTINGS: dict[str, object] = {
    # "HOT_CACHE_CAPACITY": 50_000,
    # "FEED_PARTITIONS": 16,
}

# Changes-client default User-Agent (partners should set their own).
SETTINGS.setdefault("CLIENT_USER_AGENT", "entity_sync-client/0.1 (contact: unset)")

for _k, _v in SETTINGS.items():
    globals()[_k] = _v

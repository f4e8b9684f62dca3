"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass

VERSION_BACKENDS = ("store", "redis", "hybrid")


@dataclass(frozen=True)
class BackendSettings:
    server_salt: str
    database_url: str | None
    redis_url: str | None
    version_backend: str
    turnstile_secret_key: str | None
    host: str
    port: int
    log_level: str
    log_format: str
    poll_interval_seconds: float


def load_settings() -> BackendSettings:
    port_raw = os.getenv("YEARCHALLENGE_PORT", "8000")
    interval_raw = os.getenv("YEARCHALLENGE_POLL_INTERVAL_SECONDS", "3.0")
    version_backend = os.getenv("YEARCHALLENGE_VERSION_BACKEND", "store").lower()
    if version_backend not in VERSION_BACKENDS:
        raise ValueError(f"YEARCHALLENGE_VERSION_BACKEND must be one of {', '.join(VERSION_BACKENDS)}")
    return BackendSettings(
        server_salt=os.getenv("YEARCHALLENGE_SERVER_SALT", "dev-salt"),
        database_url=os.getenv("YEARCHALLENGE_DATABASE_URL"),
        redis_url=os.getenv("YEARCHALLENGE_REDIS_URL"),
        version_backend=version_backend,
        turnstile_secret_key=os.getenv("YEARCHALLENGE_TURNSTILE_SECRET_KEY") or None,
        host=os.getenv("YEARCHALLENGE_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("YEARCHALLENGE_LOG_LEVEL", "INFO"),
        log_format=os.getenv("YEARCHALLENGE_LOG_FORMAT", "console"),
        poll_interval_seconds=float(interval_raw),
    )

"""Create the room tables in the configured PostgreSQL database."""

from __future__ import annotations

import structlog

from yearchallenge.backend.config import load_settings
from yearchallenge.backend.logs import setup_logging
from yearchallenge.backend.store import SCHEMA_PATH, PostgresRoomStore

logger = structlog.get_logger(__name__)


def main() -> None:
    settings = load_settings()
    if not settings.database_url:
        raise RuntimeError("YEARCHALLENGE_DATABASE_URL is required for migration")
    setup_logging(settings)

    PostgresRoomStore(database_url=settings.database_url, server_salt=settings.server_salt).apply_schema()
    logger.info("schema_applied", schema=SCHEMA_PATH.name)


if __name__ == "__main__":
    main()

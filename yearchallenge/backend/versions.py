"""Per-room version counters used by clients to detect state changes cheaply.

The authoritative counter is the ``version`` column of the room row
(``StoreVersionCounter``), incremented atomically by the database.  Redis can
hold the counter on its own (``RedisVersionCounter``) or mirror the store's
value as a read-through cache (``MirroredVersionCounter``).  A missing entry
always reads as ``0``, which clients treat as "no baseline, fetch everything".
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Protocol

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import TransientStoreError

if TYPE_CHECKING:
    from .config import BackendSettings
    from .store import RoomStore

logger = structlog.get_logger(__name__)

VERSIONS_KEY = "room-versions"


class VersionCounter(Protocol):
    def init(self, code: str) -> None:
        """Set the counter of a freshly created room to 1."""

    def bump(self, code: str) -> int:
        """Add one to the counter and return the new value."""

    def get(self, code: str) -> int:
        """Return the counter, or 0 when it is unknown."""


@dataclass
class StoreVersionCounter:
    store: RoomStore

    def init(self, code: str) -> None:
        self.store.set_version(code, 1)

    def bump(self, code: str) -> int:
        return self.store.increment_version(code)

    def get(self, code: str) -> int:
        return self.store.get_version(code)


@contextmanager
def _redis_errors() -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise TransientStoreError(str(exc)) from exc


@dataclass
class RedisVersionCounter:
    """Counters kept as members of one sorted set, so every update is a single atomic command."""

    client: Any
    key: str = VERSIONS_KEY

    def init(self, code: str) -> None:
        with _redis_errors():
            self.client.zadd(self.key, {code: 1})

    def bump(self, code: str) -> int:
        with _redis_errors():
            return int(self.client.zincrby(self.key, 1, code))

    def get(self, code: str) -> int:
        with _redis_errors():
            score = self.client.zscore(self.key, code)
        return int(score) if score is not None else 0

    def publish(self, code: str, version: int) -> None:
        """Raise the stored value to `version`; never lowers it."""
        with _redis_errors():
            self.client.zadd(self.key, {code: version}, gt=True)


@dataclass
class MirroredVersionCounter:
    primary: VersionCounter
    mirror: RedisVersionCounter

    def init(self, code: str) -> None:
        self.primary.init(code)
        self._publish(code, 1)

    def bump(self, code: str) -> int:
        version = self.primary.bump(code)
        if version:
            self._publish(code, version)
        return version

    def get(self, code: str) -> int:
        try:
            cached = self.mirror.get(code)
        except TransientStoreError as exc:
            logger.warning("version_mirror_failed", room_code=code, operation="get", error=str(exc))
            return self.primary.get(code)
        if cached:
            return cached
        version = self.primary.get(code)
        if version:
            self._publish(code, version)
        return version

    def _publish(self, code: str, version: int) -> None:
        try:
            self.mirror.publish(code, version)
        except TransientStoreError as exc:
            logger.warning("version_mirror_failed", room_code=code, operation="publish", error=str(exc))


def create_version_counter(settings: BackendSettings, store: RoomStore) -> VersionCounter:
    if settings.version_backend == "store":
        return StoreVersionCounter(store=store)
    if not settings.redis_url:
        raise RuntimeError(f"YEARCHALLENGE_REDIS_URL is required for the {settings.version_backend!r} version backend")

    from .redis_client import connect_redis

    redis_counter = RedisVersionCounter(client=connect_redis(settings.redis_url))
    if settings.version_backend == "redis":
        return redis_counter
    return MirroredVersionCounter(primary=StoreVersionCounter(store=store), mirror=redis_counter)

"""Backend package for Year of the Challenge rooms."""

from .config import BackendSettings, load_settings
from .errors import Forbidden, InvalidState, NotAuthenticated, NotFound, RoomError, TransientStoreError
from .gateway import MutationGateway
from .models import Phase
from .security import generate_token, hash_token, verify_token
from .store import InMemoryRoomStore, PostgresRoomStore, RoomStore, create_store
from .versions import (
    MirroredVersionCounter,
    RedisVersionCounter,
    StoreVersionCounter,
    VersionCounter,
    create_version_counter,
)

__all__ = [
    "BackendSettings",
    "create_store",
    "create_version_counter",
    "Forbidden",
    "generate_token",
    "hash_token",
    "InMemoryRoomStore",
    "InvalidState",
    "load_settings",
    "MirroredVersionCounter",
    "MutationGateway",
    "NotAuthenticated",
    "NotFound",
    "Phase",
    "PostgresRoomStore",
    "RedisVersionCounter",
    "RoomError",
    "RoomStore",
    "StoreVersionCounter",
    "TransientStoreError",
    "VersionCounter",
    "verify_token",
]

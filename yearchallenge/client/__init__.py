"""Client-side sync, API access and field encryption for rooms."""

from .api import RoomApi, RoomApiClient
from .crypto import DecryptionError, RoomKeyring, decrypt, encrypt, generate_key
from .sync import SyncClient

__all__ = [
    "decrypt",
    "DecryptionError",
    "encrypt",
    "generate_key",
    "RoomApi",
    "RoomApiClient",
    "RoomKeyring",
    "SyncClient",
]

"""End-to-end encryption of room text fields with AES-256-GCM.

Room keys live only on clients: in the invite link's URL fragment and in the
local keyring.  Ciphertexts are ``base64(iv || ciphertext || tag)`` with a
12-byte random IV.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Any, Iterable
from urllib.parse import parse_qs, quote, urlsplit

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = structlog.get_logger(__name__)

KEY_BITS = 256
IV_LENGTH = 12


class DecryptionError(Exception):
    """Raised when a ciphertext is malformed or was not produced with the given key."""


def generate_key() -> str:
    return base64.b64encode(AESGCM.generate_key(bit_length=KEY_BITS)).decode("ascii")


def _load_key(key: str) -> AESGCM:
    try:
        raw = base64.b64decode(key, validate=True)
    except binascii.Error as exc:
        raise ValueError("Room key is not valid base64") from exc
    if len(raw) * 8 != KEY_BITS:
        raise ValueError(f"Room key must be {KEY_BITS} bits")
    return AESGCM(raw)


def encrypt(plaintext: str, key: str) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = _load_key(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + sealed).decode("ascii")


def decrypt(ciphertext: str, key: str) -> str:
    aead = _load_key(key)
    try:
        combined = base64.b64decode(ciphertext, validate=True)
    except binascii.Error as exc:
        raise DecryptionError("Ciphertext is not valid base64") from exc
    if len(combined) <= IV_LENGTH:
        raise DecryptionError("Ciphertext is too short")
    try:
        plaintext = aead.decrypt(combined[:IV_LENGTH], combined[IV_LENGTH:], None)
    except InvalidTag as exc:
        raise DecryptionError("Ciphertext does not authenticate with this key") from exc
    return plaintext.decode("utf-8")


def encrypt_fields(payload: dict[str, Any], fields: Iterable[str], key: str) -> dict[str, Any]:
    result = dict(payload)
    for name in fields:
        value = result.get(name)
        if isinstance(value, str) and value:
            result[name] = encrypt(value, key)
    return result


def decrypt_fields(payload: dict[str, Any], fields: Iterable[str], key: str) -> dict[str, Any]:
    """Decrypt the named fields; a field that fails stays as stored (pre-encryption rooms)."""
    result = dict(payload)
    for name in fields:
        value = result.get(name)
        if not isinstance(value, str) or not value:
            continue
        try:
            result[name] = decrypt(value, key)
        except DecryptionError:
            logger.warning("field_decrypt_failed", field=name)
    return result


def decrypt_state(state: dict[str, Any], key: str) -> dict[str, Any]:
    """Return a copy of a room snapshot with every human-readable field decrypted."""
    result = decrypt_fields(state, ("name",), key)
    result["participants"] = [decrypt_fields(p, ("name",), key) for p in state.get("participants", [])]
    result["challenges"] = [decrypt_fields(c, ("text",), key) for c in state.get("challenges", [])]
    return result


class RoomKeyring:
    """Room keys held by this client, keyed by canonical join code."""

    def __init__(self) -> None:
        self._keys: dict[str, str] = {}

    def store(self, room_code: str, key: str) -> None:
        self._keys[room_code.strip().upper()] = key

    def get(self, room_code: str) -> str | None:
        return self._keys.get(room_code.strip().upper())

    def clear(self, room_code: str) -> None:
        self._keys.pop(room_code.strip().upper(), None)


def build_invite_url(base_url: str, room_code: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/join/{room_code}#key={quote(key, safe='')}"


def build_magic_link_url(base_url: str, token: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/join/auth/{token}#key={quote(key, safe='')}"


def key_from_url(url: str) -> str | None:
    """Read the room key from a URL fragment; browsers never send fragments to servers."""
    fragment = urlsplit(url).fragment
    if not fragment:
        return None
    values = parse_qs(fragment).get("key")
    return values[0] if values else None

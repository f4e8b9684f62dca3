"""Token, code and identifier helpers for rooms and participants."""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string
import uuid


TOKEN_BYTES = 24
ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
AVATARS = ("🔥", "⚡", "🌟", "🎯", "🚀", "💎", "🎪", "🌈", "🦊", "🐉", "🎸", "🎭")


def generate_token() -> str:
    """Generate a URL-safe magic token for participant recovery."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str, server_salt: str) -> str:
    """Create deterministic token hash via sha256(token + server_salt)."""
    payload = f"{token}{server_salt}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def verify_token(raw_token: str, expected_hash: str, server_salt: str) -> bool:
    """Compare raw token against a stored hash."""
    return hmac.compare_digest(hash_token(raw_token, server_salt), expected_hash)


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_room_code(code: str) -> str:
    """Join codes are case-insensitive; the canonical form is uppercase."""
    return code.strip().upper()


def generate_id() -> str:
    return str(uuid.uuid4())


def pick_avatar() -> str:
    return secrets.choice(AVATARS)

"""Error kinds raised by the room mutation and read paths."""

from __future__ import annotations


class RoomError(Exception):
    kind = "room_error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NotAuthenticated(RoomError):
    kind = "not_authenticated"
    status_code = 401


class NotFound(RoomError):
    kind = "not_found"
    status_code = 404


class Forbidden(RoomError):
    kind = "forbidden"
    status_code = 403


class InvalidState(RoomError):
    kind = "invalid_state"
    status_code = 409


class TransientStoreError(RoomError):
    """The backing database or cache is temporarily unavailable."""

    kind = "transient_store_error"
    status_code = 503


ERROR_KINDS: dict[str, type[RoomError]] = {
    cls.kind: cls for cls in (NotAuthenticated, NotFound, Forbidden, InvalidState, TransientStoreError)
}


def error_from_kind(kind: str, message: str = "") -> RoomError:
    """Rebuild a typed error from its wire kind; unknown kinds fall back to RoomError."""
    error_cls = ERROR_KINDS.get(kind, RoomError)
    return error_cls(message)

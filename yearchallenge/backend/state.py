"""Builders for the full-snapshot payload served to polling clients."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .models import Challenge, Participant, Room, RoomSnapshot


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def participant_payload(participant: Participant) -> dict[str, Any]:
    return {
        "id": participant.participant_id,
        "name": participant.name,
        "avatar": participant.avatar,
        "isHost": participant.is_host,
    }


def challenge_payload(challenge: Challenge) -> dict[str, Any]:
    return {
        "id": challenge.challenge_id,
        "text": challenge.text,
        "forParticipantId": challenge.for_participant_id,
        "suggestedByParticipantId": challenge.suggested_by_participant_id,
        "votes": sorted(challenge.votes),
        "isCompleted": challenge.is_completed,
    }


def build_state(snapshot: RoomSnapshot, version: int | None = None) -> dict[str, Any]:
    """Return the camelCase room state; `version` overrides the row value when given."""
    room: Room = snapshot.room
    return {
        "id": room.room_id,
        "code": room.code,
        "name": room.name,
        "phase": room.phase.value,
        "challengesPerPerson": room.challenges_per_person,
        "deadline": _iso(room.deadline),
        "createdAt": _iso(room.created_at),
        "version": room.version if version is None else version,
        "participants": [participant_payload(p) for p in snapshot.participants],
        "challenges": [challenge_payload(c) for c in snapshot.challenges],
    }

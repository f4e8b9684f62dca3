"""Domain models for room snapshots and persistence contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Phase(str, Enum):
    GATHERING = "gathering"
    SUGGESTING = "suggesting"
    VOTING = "voting"
    FINALIZED = "finalized"
    TRACKING = "tracking"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.GATHERING,
    Phase.SUGGESTING,
    Phase.VOTING,
    Phase.FINALIZED,
    Phase.TRACKING,
)


@dataclass(frozen=True)
class Room:
    room_id: str
    code: str
    name: str
    phase: Phase
    challenges_per_person: int
    created_at: datetime
    deadline: datetime | None = None
    version: int = 1


@dataclass(frozen=True)
class Participant:
    participant_id: str
    room_id: str
    name: str
    avatar: str
    is_host: bool


@dataclass(frozen=True)
class Challenge:
    challenge_id: str
    room_id: str
    text: str
    for_participant_id: str
    suggested_by_participant_id: str
    votes: frozenset[str] = field(default_factory=frozenset)
    is_completed: bool = False


@dataclass(frozen=True)
class RoomSnapshot:
    room: Room
    participants: list[Participant]
    challenges: list[Challenge]


@dataclass(frozen=True)
class ParticipantAccess:
    """A participant resolved from a magic token, together with its room."""

    participant: Participant
    room: Room


@dataclass(frozen=True)
class CreatedRoom:
    room: Room
    host: Participant
    token: str


@dataclass(frozen=True)
class JoinResult:
    participant: Participant
    token: str
    rejoined: bool


@dataclass(frozen=True)
class RecoveredIdentity:
    participant_id: str
    name: str
    avatar: str
    is_host: bool
    room_code: str

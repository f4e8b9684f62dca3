"""Phase progression and authorization rules for room mutations."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import Forbidden, InvalidState, NotFound
from .models import PHASE_ORDER, Challenge, Participant, Phase, Room

COMPLETION_PHASES = frozenset({Phase.FINALIZED, Phase.TRACKING})


@dataclass(frozen=True)
class PhaseTransition:
    previous: Phase
    phase: Phase

    @property
    def changed(self) -> bool:
        return self.previous != self.phase


def advance(phase: Phase) -> PhaseTransition:
    """Move one step forward; the terminal phase is returned unchanged."""
    index = PHASE_ORDER.index(phase)
    next_phase = PHASE_ORDER[min(index + 1, len(PHASE_ORDER) - 1)]
    return PhaseTransition(previous=phase, phase=next_phase)


def require_member(caller: Participant, room: Room) -> None:
    if caller.room_id != room.room_id:
        raise Forbidden("Not a participant of this room")


def require_host(caller: Participant, room: Room) -> None:
    require_member(caller, room)
    if not caller.is_host:
        raise Forbidden("Only the host can do this")


def require_can_add_challenge(caller: Participant, room: Room, target: Participant | None) -> None:
    require_member(caller, room)
    if room.phase != Phase.SUGGESTING:
        raise InvalidState("Challenges can only be added while suggesting")
    if target is None or target.room_id != room.room_id:
        raise NotFound("Target participant not found")
    if target.participant_id == caller.participant_id:
        raise Forbidden("You cannot suggest a challenge for yourself")


def require_can_delete_challenge(caller: Participant, challenge: Challenge) -> None:
    if challenge.suggested_by_participant_id != caller.participant_id:
        raise Forbidden("Only the creator can delete this challenge")


def require_can_toggle_completion(caller: Participant, room: Room, challenge: Challenge) -> None:
    if challenge.for_participant_id != caller.participant_id:
        raise Forbidden("Only the assigned participant can complete this challenge")
    if room.phase not in COMPLETION_PHASES:
        raise InvalidState("Challenges can only be completed once finalized")

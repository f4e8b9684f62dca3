"""Authorized write path for every room mutation, plus the read side clients poll.

Every mutation follows the same order: authorize against the store, write,
then bump the room's version counter once, and only then return.  Mutations
that leave state unchanged (repeat votes, removing an absent vote, rejoining
with a known token, advancing at the terminal phase) never bump.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from . import engine
from .captcha import BotCheck, DisabledBotCheck
from .errors import Forbidden, InvalidState, NotAuthenticated, NotFound, TransientStoreError
from .models import (
    Challenge,
    CreatedRoom,
    JoinResult,
    ParticipantAccess,
    Phase,
    RecoveredIdentity,
    Room,
    RoomSnapshot,
)
from .security import generate_token, normalize_room_code
from .store import RoomStore
from .versions import VersionCounter

logger = structlog.get_logger(__name__)


@dataclass
class MutationGateway:
    store: RoomStore
    versions: VersionCounter
    bot_check: BotCheck = field(default_factory=DisabledBotCheck)

    # -- read side -------------------------------------------------------

    def get_version(self, code: str) -> int:
        return self.versions.get(normalize_room_code(code))

    def get_snapshot(self, code: str) -> tuple[RoomSnapshot, int]:
        """Return the snapshot and the version it is at least as new as."""
        room_code = normalize_room_code(code)
        # Read the version first: rows read afterwards can only be newer.
        version = self.versions.get(room_code)
        snapshot = self.store.get_snapshot(room_code)
        if snapshot is None:
            raise NotFound("Room not found")
        return snapshot, version or snapshot.room.version

    def recover(self, raw_token: str) -> RecoveredIdentity:
        access = self.store.get_participant_access(raw_token)
        if access is None:
            raise NotFound("Invalid token")
        participant = access.participant
        return RecoveredIdentity(
            participant_id=participant.participant_id,
            name=participant.name,
            avatar=participant.avatar,
            is_host=participant.is_host,
            room_code=access.room.code,
        )

    # -- mutations -------------------------------------------------------

    def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int,
        captcha_token: str | None = None,
        deadline: datetime | None = None,
    ) -> CreatedRoom:
        self._require_human(captcha_token)
        created = self.store.create_room(
            name=name,
            host_name=host_name,
            challenges_per_person=challenges_per_person,
            host_token=generate_token(),
            deadline=deadline,
        )
        try:
            self.versions.init(created.room.code)
        except TransientStoreError as exc:
            logger.warning("version_bump_failed", room_code=created.room.code, operation="init", error=str(exc))
        logger.info("room_created", room_code=created.room.code)
        return created

    def join_room(
        self,
        code: str,
        name: str,
        captcha_token: str | None = None,
        existing_token: str | None = None,
    ) -> JoinResult:
        room = self._room(code)
        if existing_token:
            access = self.store.get_participant_access(existing_token)
            if access is not None and access.room.room_id == room.room_id:
                return JoinResult(participant=access.participant, token=existing_token, rejoined=True)

        self._require_human(captcha_token)
        token = generate_token()
        participant = self.store.add_participant(room_id=room.room_id, name=name, token=token)
        self._bump(room.code)
        logger.info("participant_joined", room_code=room.code, participant_id=participant.participant_id)
        return JoinResult(participant=participant, token=token, rejoined=False)

    def add_challenge(self, token: str | None, code: str, text: str, for_participant_id: str) -> Challenge:
        room = self._room(code)
        caller = self._caller(token)
        target = self.store.get_participant(for_participant_id)
        engine.require_can_add_challenge(caller.participant, room, target)
        challenge = self.store.add_challenge(
            room_id=room.room_id,
            text=text,
            for_participant_id=for_participant_id,
            suggested_by_participant_id=caller.participant.participant_id,
        )
        self._bump(room.code)
        return challenge

    def delete_challenge(self, token: str | None, challenge_id: str) -> None:
        caller = self._caller(token)
        challenge = self._challenge(challenge_id)
        engine.require_can_delete_challenge(caller.participant, challenge)
        if self.store.delete_challenge(challenge_id):
            self._bump(self._room_of(challenge).code)

    def vote(self, token: str | None, challenge_id: str) -> list[str]:
        caller = self._caller(token)
        challenge = self._challenge(challenge_id)
        room = self._room_of(challenge)
        engine.require_member(caller.participant, room)
        if self.store.add_vote(challenge_id, caller.participant.participant_id):
            self._bump(room.code)
        return self._votes(challenge_id)

    def remove_vote(self, token: str | None, challenge_id: str) -> list[str]:
        caller = self._caller(token)
        challenge = self._challenge(challenge_id)
        room = self._room_of(challenge)
        engine.require_member(caller.participant, room)
        if self.store.remove_vote(challenge_id, caller.participant.participant_id):
            self._bump(room.code)
        return self._votes(challenge_id)

    def toggle_completion(self, token: str | None, challenge_id: str) -> bool:
        caller = self._caller(token)
        challenge = self._challenge(challenge_id)
        room = self._room_of(challenge)
        engine.require_can_toggle_completion(caller.participant, room, challenge)
        is_completed = self.store.toggle_completion(challenge_id)
        self._bump(room.code)
        return is_completed

    def advance_phase(self, token: str | None, code: str) -> Phase:
        room = self._room(code)
        caller = self._caller(token)
        engine.require_host(caller.participant, room)
        transition = engine.advance(room.phase)
        if not transition.changed:
            return transition.phase
        if not self.store.compare_and_set_phase(room.room_id, transition.previous, transition.phase):
            raise InvalidState("Phase changed concurrently, reload and retry")
        self._bump(room.code)
        return transition.phase

    def set_deadline(self, token: str | None, code: str, deadline: datetime | None) -> datetime | None:
        room = self._room(code)
        caller = self._caller(token)
        engine.require_host(caller.participant, room)
        if self.store.set_deadline(room.room_id, deadline):
            self._bump(room.code)
        return deadline

    # -- helpers ---------------------------------------------------------

    def _require_human(self, captcha_token: str | None) -> None:
        if not self.bot_check.required:
            return
        if not captcha_token:
            raise Forbidden("CAPTCHA verification required")
        if not self.bot_check.verify(captcha_token):
            raise Forbidden("CAPTCHA verification failed")

    def _bump(self, code: str) -> None:
        try:
            self.versions.bump(code)
        except TransientStoreError as exc:
            # The write already committed; clients resync on the next successful bump.
            logger.warning("version_bump_failed", room_code=code, operation="bump", error=str(exc))

    def _room(self, code: str) -> Room:
        room = self.store.get_room(normalize_room_code(code))
        if room is None:
            raise NotFound("Room not found")
        return room

    def _room_of(self, challenge: Challenge) -> Room:
        room = self.store.get_room_by_id(challenge.room_id)
        if room is None:
            raise NotFound("Room not found")
        return room

    def _caller(self, token: str | None) -> ParticipantAccess:
        if not token:
            raise NotAuthenticated("Participant token required")
        access = self.store.get_participant_access(token)
        if access is None:
            raise Forbidden("Unknown participant token")
        return access

    def _challenge(self, challenge_id: str) -> Challenge:
        challenge = self.store.get_challenge(challenge_id)
        if challenge is None:
            raise NotFound("Challenge not found")
        return challenge

    def _votes(self, challenge_id: str) -> list[str]:
        challenge = self.store.get_challenge(challenge_id)
        return sorted(challenge.votes) if challenge is not None else []

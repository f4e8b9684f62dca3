"""Persistence interfaces and implementations for room data."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
import threading
from pathlib import Path
from typing import Any, Iterator, Protocol

from yearchallenge.backend.errors import TransientStoreError
from yearchallenge.backend.models import (
    Challenge,
    CreatedRoom,
    Participant,
    ParticipantAccess,
    Phase,
    Room,
    RoomSnapshot,
)
from yearchallenge.backend.security import generate_id, generate_room_code, hash_token, pick_avatar
from yearchallenge.backend.state import utc_now

ROOM_CODE_ATTEMPTS = 5
SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


class RoomStore(Protocol):
    def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int,
        host_token: str,
        deadline: datetime | None = None,
    ) -> CreatedRoom:
        """Create a room in the gathering phase together with its host participant."""

    def get_room(self, code: str) -> Room | None:
        """Return the room for a canonical join code."""

    def get_room_by_id(self, room_id: str) -> Room | None:
        """Return the room for an internal id."""

    def get_snapshot(self, code: str) -> RoomSnapshot | None:
        """Return room metadata plus every participant and challenge."""

    def get_participant(self, participant_id: str) -> Participant | None:
        """Return a participant by id."""

    def get_participant_access(self, raw_token: str) -> ParticipantAccess | None:
        """Resolve a magic token to its participant and room."""

    def add_participant(self, room_id: str, name: str, token: str) -> Participant:
        """Create a non-host participant."""

    def get_challenge(self, challenge_id: str) -> Challenge | None:
        """Return a challenge with its current vote set."""

    def add_challenge(self, room_id: str, text: str, for_participant_id: str, suggested_by_participant_id: str) -> Challenge:
        """Create a challenge with no votes that is not completed."""

    def delete_challenge(self, challenge_id: str) -> bool:
        """Remove a challenge and its votes; False when it did not exist."""

    def add_vote(self, challenge_id: str, participant_id: str) -> bool:
        """Atomically add a vote; True only when the vote set changed."""

    def remove_vote(self, challenge_id: str, participant_id: str) -> bool:
        """Atomically remove a vote; True only when the vote set changed."""

    def toggle_completion(self, challenge_id: str) -> bool:
        """Flip the completion flag and return its new value."""

    def compare_and_set_phase(self, room_id: str, expected: Phase, phase: Phase) -> bool:
        """Set the phase only if it still equals `expected`."""

    def set_deadline(self, room_id: str, deadline: datetime | None) -> bool:
        """Set or clear the deadline; True when the stored value changed."""

    def get_version(self, code: str) -> int:
        """Return the room version, or 0 for an unknown code."""

    def set_version(self, code: str, version: int) -> None:
        """Overwrite the room version."""

    def increment_version(self, code: str) -> int:
        """Atomically add one to the room version and return the new value."""


@dataclass
class InMemoryRoomStore:
    server_salt: str

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._rooms: dict[str, Room] = {}
        self._room_ids_by_code: dict[str, str] = {}
        self._participants: dict[str, Participant] = {}
        self._participant_order: dict[str, list[str]] = {}
        self._token_hashes: dict[str, str] = {}
        self._challenges: dict[str, Challenge] = {}
        self._challenge_order: dict[str, list[str]] = {}
        self._votes: dict[str, set[str]] = {}

    def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int,
        host_token: str,
        deadline: datetime | None = None,
    ) -> CreatedRoom:
        with self._lock:
            code = self._unused_code()
            room = Room(
                room_id=generate_id(),
                code=code,
                name=name,
                phase=Phase.GATHERING,
                challenges_per_person=challenges_per_person,
                created_at=utc_now(),
                deadline=deadline,
                version=1,
            )
            self._rooms[room.room_id] = room
            self._room_ids_by_code[code] = room.room_id
            self._participant_order[room.room_id] = []
            self._challenge_order[room.room_id] = []
            host = self._insert_participant(room.room_id, host_name, host_token, is_host=True)
        return CreatedRoom(room=room, host=host, token=host_token)

    def get_room(self, code: str) -> Room | None:
        with self._lock:
            room_id = self._room_ids_by_code.get(code)
            return self._rooms.get(room_id) if room_id is not None else None

    def get_room_by_id(self, room_id: str) -> Room | None:
        with self._lock:
            return self._rooms.get(room_id)

    def get_snapshot(self, code: str) -> RoomSnapshot | None:
        with self._lock:
            room_id = self._room_ids_by_code.get(code)
            if room_id is None:
                return None
            participants = [self._participants[pid] for pid in self._participant_order[room_id]]
            challenges = [self._with_votes(self._challenges[cid]) for cid in self._challenge_order[room_id]]
            return RoomSnapshot(room=self._rooms[room_id], participants=participants, challenges=challenges)

    def get_participant(self, participant_id: str) -> Participant | None:
        with self._lock:
            return self._participants.get(participant_id)

    def get_participant_access(self, raw_token: str) -> ParticipantAccess | None:
        with self._lock:
            participant_id = self._token_hashes.get(hash_token(raw_token, self.server_salt))
            if participant_id is None:
                return None
            participant = self._participants[participant_id]
            return ParticipantAccess(participant=participant, room=self._rooms[participant.room_id])

    def add_participant(self, room_id: str, name: str, token: str) -> Participant:
        with self._lock:
            return self._insert_participant(room_id, name, token, is_host=False)

    def get_challenge(self, challenge_id: str) -> Challenge | None:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            return self._with_votes(challenge) if challenge is not None else None

    def add_challenge(self, room_id: str, text: str, for_participant_id: str, suggested_by_participant_id: str) -> Challenge:
        challenge = Challenge(
            challenge_id=generate_id(),
            room_id=room_id,
            text=text,
            for_participant_id=for_participant_id,
            suggested_by_participant_id=suggested_by_participant_id,
        )
        with self._lock:
            self._challenges[challenge.challenge_id] = challenge
            self._challenge_order[room_id].append(challenge.challenge_id)
            self._votes[challenge.challenge_id] = set()
        return challenge

    def delete_challenge(self, challenge_id: str) -> bool:
        with self._lock:
            challenge = self._challenges.pop(challenge_id, None)
            if challenge is None:
                return False
            self._challenge_order[challenge.room_id].remove(challenge_id)
            self._votes.pop(challenge_id, None)
            return True

    def add_vote(self, challenge_id: str, participant_id: str) -> bool:
        with self._lock:
            votes = self._votes.get(challenge_id)
            if votes is None or participant_id in votes:
                return False
            votes.add(participant_id)
            return True

    def remove_vote(self, challenge_id: str, participant_id: str) -> bool:
        with self._lock:
            votes = self._votes.get(challenge_id)
            if votes is None or participant_id not in votes:
                return False
            votes.discard(participant_id)
            return True

    def toggle_completion(self, challenge_id: str) -> bool:
        with self._lock:
            challenge = self._challenges[challenge_id]
            updated = replace(challenge, is_completed=not challenge.is_completed)
            self._challenges[challenge_id] = updated
            return updated.is_completed

    def compare_and_set_phase(self, room_id: str, expected: Phase, phase: Phase) -> bool:
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None or room.phase != expected:
                return False
            self._rooms[room_id] = replace(room, phase=phase)
            return True

    def set_deadline(self, room_id: str, deadline: datetime | None) -> bool:
        with self._lock:
            room = self._rooms[room_id]
            if room.deadline == deadline:
                return False
            self._rooms[room_id] = replace(room, deadline=deadline)
            return True

    def get_version(self, code: str) -> int:
        with self._lock:
            room_id = self._room_ids_by_code.get(code)
            return self._rooms[room_id].version if room_id is not None else 0

    def set_version(self, code: str, version: int) -> None:
        with self._lock:
            room_id = self._room_ids_by_code[code]
            self._rooms[room_id] = replace(self._rooms[room_id], version=version)

    def increment_version(self, code: str) -> int:
        with self._lock:
            room_id = self._room_ids_by_code.get(code)
            if room_id is None:
                return 0
            room = replace(self._rooms[room_id], version=self._rooms[room_id].version + 1)
            self._rooms[room_id] = room
            return room.version

    def _unused_code(self) -> str:
        code = generate_room_code()
        while code in self._room_ids_by_code:
            code = generate_room_code()
        return code

    def _insert_participant(self, room_id: str, name: str, token: str, is_host: bool) -> Participant:
        participant = Participant(
            participant_id=generate_id(),
            room_id=room_id,
            name=name,
            avatar=pick_avatar(),
            is_host=is_host,
        )
        self._participants[participant.participant_id] = participant
        self._participant_order[room_id].append(participant.participant_id)
        self._token_hashes[hash_token(token, self.server_salt)] = participant.participant_id
        return participant

    def _with_votes(self, challenge: Challenge) -> Challenge:
        return replace(challenge, votes=frozenset(self._votes.get(challenge.challenge_id, ())))


_ROOM_COLUMNS = "id, code, name, phase, challenges_per_person, created_at, deadline, version"
_PARTICIPANT_COLUMNS = "id, room_id, name, avatar, is_host"
_CHALLENGE_COLUMNS = "id, room_id, text, for_participant_id, suggested_by_id, is_completed"


def _room_from_row(row: tuple[Any, ...]) -> Room:
    room_id, code, name, phase, challenges_per_person, created_at, deadline, version = row
    return Room(
        room_id=room_id,
        code=code,
        name=name,
        phase=Phase(phase),
        challenges_per_person=int(challenges_per_person),
        created_at=created_at,
        deadline=deadline,
        version=int(version),
    )


def _participant_from_row(row: tuple[Any, ...]) -> Participant:
    participant_id, room_id, name, avatar, is_host = row
    return Participant(
        participant_id=participant_id,
        room_id=room_id,
        name=name,
        avatar=avatar,
        is_host=bool(is_host),
    )


def _challenge_from_row(row: tuple[Any, ...], votes: frozenset[str]) -> Challenge:
    challenge_id, room_id, text, for_participant_id, suggested_by_id, is_completed = row
    return Challenge(
        challenge_id=challenge_id,
        room_id=room_id,
        text=text,
        for_participant_id=for_participant_id,
        suggested_by_participant_id=suggested_by_id,
        votes=votes,
        is_completed=bool(is_completed),
    )


@dataclass
class PostgresRoomStore:
    database_url: str
    server_salt: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        import psycopg

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
        except psycopg.OperationalError as exc:
            raise TransientStoreError(str(exc)) from exc

    def apply_schema(self, schema_path: Path = SCHEMA_PATH) -> None:
        """Create the rooms, participants, challenges and vote tables if missing."""
        schema_sql = schema_path.read_text(encoding="utf-8")
        with self._transaction() as cur:
            cur.execute(schema_sql)

    def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int,
        host_token: str,
        deadline: datetime | None = None,
    ) -> CreatedRoom:
        from psycopg.errors import UniqueViolation

        now = utc_now()
        room_id = generate_id()
        host = Participant(
            participant_id=generate_id(),
            room_id=room_id,
            name=host_name,
            avatar=pick_avatar(),
            is_host=True,
        )

        for attempt in range(ROOM_CODE_ATTEMPTS):
            code = generate_room_code()
            try:
                with self._transaction() as cur:
                    cur.execute(
                        """
                        INSERT INTO rooms (id, code, name, phase, challenges_per_person, created_at, deadline, version)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, 1)
                        """,
                        (room_id, code, name, Phase.GATHERING.value, challenges_per_person, now, deadline),
                    )
                    cur.execute(
                        """
                        INSERT INTO participants (id, room_id, name, avatar, is_host, token_hash, joined_at)
                        VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                        """,
                        (
                            host.participant_id,
                            room_id,
                            host_name,
                            host.avatar,
                            hash_token(host_token, self.server_salt),
                            now,
                        ),
                    )
            except UniqueViolation:
                if attempt == ROOM_CODE_ATTEMPTS - 1:
                    raise
                continue
            break

        room = Room(
            room_id=room_id,
            code=code,
            name=name,
            phase=Phase.GATHERING,
            challenges_per_person=challenges_per_person,
            created_at=now,
            deadline=deadline,
            version=1,
        )
        return CreatedRoom(room=room, host=host, token=host_token)

    def get_room(self, code: str) -> Room | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE code = %s", (code,))
            row = cur.fetchone()
        return _room_from_row(row) if row is not None else None

    def get_room_by_id(self, room_id: str) -> Room | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE id = %s", (room_id,))
            row = cur.fetchone()
        return _room_from_row(row) if row is not None else None

    def get_snapshot(self, code: str) -> RoomSnapshot | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE code = %s", (code,))
            room_row = cur.fetchone()
            if room_row is None:
                return None
            room = _room_from_row(room_row)
            cur.execute(
                f"SELECT {_PARTICIPANT_COLUMNS} FROM participants WHERE room_id = %s ORDER BY joined_at, id",
                (room.room_id,),
            )
            participant_rows = cur.fetchall()
            cur.execute(
                f"SELECT {_CHALLENGE_COLUMNS} FROM challenges WHERE room_id = %s ORDER BY created_at, id",
                (room.room_id,),
            )
            challenge_rows = cur.fetchall()
            cur.execute(
                """
                SELECT v.challenge_id, v.participant_id
                FROM challenge_votes v
                JOIN challenges c ON c.id = v.challenge_id
                WHERE c.room_id = %s
                """,
                (room.room_id,),
            )
            vote_rows = cur.fetchall()

        votes: dict[str, set[str]] = {}
        for challenge_id, participant_id in vote_rows:
            votes.setdefault(challenge_id, set()).add(participant_id)
        return RoomSnapshot(
            room=room,
            participants=[_participant_from_row(row) for row in participant_rows],
            challenges=[_challenge_from_row(row, frozenset(votes.get(row[0], ()))) for row in challenge_rows],
        )

    def get_participant(self, participant_id: str) -> Participant | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_PARTICIPANT_COLUMNS} FROM participants WHERE id = %s", (participant_id,))
            row = cur.fetchone()
        return _participant_from_row(row) if row is not None else None

    def get_participant_access(self, raw_token: str) -> ParticipantAccess | None:
        token_hash = hash_token(raw_token, self.server_salt)
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT p.id, p.room_id, p.name, p.avatar, p.is_host,
                       r.id, r.code, r.name, r.phase, r.challenges_per_person, r.created_at, r.deadline, r.version
                FROM participants p
                JOIN rooms r ON r.id = p.room_id
                WHERE p.token_hash = %s
                """,
                (token_hash,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return ParticipantAccess(participant=_participant_from_row(row[:5]), room=_room_from_row(row[5:]))

    def add_participant(self, room_id: str, name: str, token: str) -> Participant:
        participant = Participant(
            participant_id=generate_id(),
            room_id=room_id,
            name=name,
            avatar=pick_avatar(),
            is_host=False,
        )
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO participants (id, room_id, name, avatar, is_host, token_hash, joined_at)
                VALUES (%s, %s, %s, %s, FALSE, %s, %s)
                """,
                (
                    participant.participant_id,
                    room_id,
                    name,
                    participant.avatar,
                    hash_token(token, self.server_salt),
                    utc_now(),
                ),
            )
        return participant

    def get_challenge(self, challenge_id: str) -> Challenge | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_CHALLENGE_COLUMNS} FROM challenges WHERE id = %s", (challenge_id,))
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute("SELECT participant_id FROM challenge_votes WHERE challenge_id = %s", (challenge_id,))
            vote_rows = cur.fetchall()
        return _challenge_from_row(row, frozenset(vote_row[0] for vote_row in vote_rows))

    def add_challenge(self, room_id: str, text: str, for_participant_id: str, suggested_by_participant_id: str) -> Challenge:
        challenge = Challenge(
            challenge_id=generate_id(),
            room_id=room_id,
            text=text,
            for_participant_id=for_participant_id,
            suggested_by_participant_id=suggested_by_participant_id,
        )
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO challenges (id, room_id, text, for_participant_id, suggested_by_id, is_completed, created_at)
                VALUES (%s, %s, %s, %s, %s, FALSE, %s)
                """,
                (
                    challenge.challenge_id,
                    room_id,
                    text,
                    for_participant_id,
                    suggested_by_participant_id,
                    utc_now(),
                ),
            )
        return challenge

    def delete_challenge(self, challenge_id: str) -> bool:
        # challenge_votes rows go with ON DELETE CASCADE
        with self._transaction() as cur:
            cur.execute("DELETE FROM challenges WHERE id = %s", (challenge_id,))
            return cur.rowcount > 0

    def add_vote(self, challenge_id: str, participant_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO challenge_votes (challenge_id, participant_id, created_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (challenge_id, participant_id) DO NOTHING
                """,
                (challenge_id, participant_id, utc_now()),
            )
            return cur.rowcount > 0

    def remove_vote(self, challenge_id: str, participant_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM challenge_votes WHERE challenge_id = %s AND participant_id = %s",
                (challenge_id, participant_id),
            )
            return cur.rowcount > 0

    def toggle_completion(self, challenge_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE challenges SET is_completed = NOT is_completed WHERE id = %s RETURNING is_completed",
                (challenge_id,),
            )
            row = cur.fetchone()
        return bool(row[0]) if row is not None else False

    def compare_and_set_phase(self, room_id: str, expected: Phase, phase: Phase) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE rooms SET phase = %s WHERE id = %s AND phase = %s",
                (phase.value, room_id, expected.value),
            )
            return cur.rowcount > 0

    def set_deadline(self, room_id: str, deadline: datetime | None) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE rooms SET deadline = %s WHERE id = %s AND deadline IS DISTINCT FROM %s",
                (deadline, room_id, deadline),
            )
            return cur.rowcount > 0

    def get_version(self, code: str) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT version FROM rooms WHERE code = %s", (code,))
            row = cur.fetchone()
        return int(row[0]) if row is not None else 0

    def set_version(self, code: str, version: int) -> None:
        with self._transaction() as cur:
            cur.execute("UPDATE rooms SET version = %s WHERE code = %s", (version, code))

    def increment_version(self, code: str) -> int:
        with self._transaction() as cur:
            cur.execute("UPDATE rooms SET version = version + 1 WHERE code = %s RETURNING version", (code,))
            row = cur.fetchone()
        return int(row[0]) if row is not None else 0


def create_store(database_url: str | None, server_salt: str) -> RoomStore:
    if database_url:
        return PostgresRoomStore(database_url=database_url, server_salt=server_salt)
    return InMemoryRoomStore(server_salt=server_salt)

import random
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from yearchallenge.backend.errors import (
    Forbidden,
    InvalidState,
    NotAuthenticated,
    NotFound,
    RoomError,
    TransientStoreError,
)
from yearchallenge.backend.gateway import MutationGateway
from yearchallenge.backend.models import Phase
from yearchallenge.backend.state import build_state
from yearchallenge.backend.store import InMemoryRoomStore
from yearchallenge.backend.versions import StoreVersionCounter


def _gateway(bot_check=None) -> MutationGateway:
    store = InMemoryRoomStore(server_salt="salt")
    if bot_check is None:
        return MutationGateway(store=store, versions=StoreVersionCounter(store=store))
    return MutationGateway(store=store, versions=StoreVersionCounter(store=store), bot_check=bot_check)


@dataclass
class _StaticBotCheck:
    valid_token: str = "human"
    required: bool = True

    def verify(self, token: str) -> bool:
        return token == self.valid_token


class _FailingBumps:
    def __init__(self, store: InMemoryRoomStore) -> None:
        self.inner = StoreVersionCounter(store=store)

    def init(self, code: str) -> None:
        self.inner.init(code)

    def bump(self, code: str) -> int:
        raise TransientStoreError("version store unavailable")

    def get(self, code: str) -> int:
        return self.inner.get(code)


def test_end_to_end_room_lifecycle_bumps_once_per_real_change() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    code = created.room.code
    alice_token = created.token
    alice_id = created.host.participant_id
    assert gateway.get_version(code) == 1

    bob = gateway.join_room(code, name="Bob")
    assert gateway.get_version(code) == 2

    assert gateway.advance_phase(alice_token, code) == Phase.SUGGESTING
    assert gateway.get_version(code) == 3
    challenge = gateway.add_challenge(bob.token, code, text="Run a 10k", for_participant_id=alice_id)
    assert gateway.get_version(code) == 4

    assert gateway.vote(alice_token, challenge.challenge_id) == [alice_id]
    assert gateway.get_version(code) == 5
    assert gateway.vote(alice_token, challenge.challenge_id) == [alice_id]
    assert gateway.get_version(code) == 5

    assert gateway.advance_phase(alice_token, code) == Phase.VOTING
    assert gateway.advance_phase(alice_token, code) == Phase.FINALIZED
    assert gateway.advance_phase(alice_token, code) == Phase.TRACKING
    assert gateway.get_version(code) == 8

    assert gateway.toggle_completion(alice_token, challenge.challenge_id) is True
    assert gateway.get_version(code) == 9
    with pytest.raises(Forbidden):
        gateway.toggle_completion(bob.token, challenge.challenge_id)
    assert gateway.get_version(code) == 9

    snapshot, version = gateway.get_snapshot(code)
    assert version == 9
    assert snapshot.challenges[0].is_completed is True


def test_removing_a_vote_that_was_never_cast_does_not_bump() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    bob = gateway.join_room(created.room.code, name="Bob")
    gateway.advance_phase(created.token, created.room.code)
    challenge = gateway.add_challenge(bob.token, created.room.code, "Run a 10k", created.host.participant_id)
    before = gateway.get_version(created.room.code)

    assert gateway.remove_vote(created.token, challenge.challenge_id) == []
    assert gateway.get_version(created.room.code) == before


def test_advance_at_tracking_returns_tracking_without_bump() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    for _ in range(4):
        gateway.advance_phase(created.token, created.room.code)
    version = gateway.get_version(created.room.code)

    assert gateway.advance_phase(created.token, created.room.code) == Phase.TRACKING
    assert gateway.get_version(created.room.code) == version


def test_challenge_rules_for_host_and_guest() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    code = created.room.code
    alice_id = created.host.participant_id
    bob = gateway.join_room(code, name="Bob")
    gateway.advance_phase(created.token, code)

    gateway.add_challenge(bob.token, code, "Run a 10k", alice_id)
    with pytest.raises((Forbidden, InvalidState)):
        gateway.add_challenge(created.token, code, "Self-assigned", alice_id)

    gateway.advance_phase(created.token, code)
    with pytest.raises(InvalidState):
        gateway.add_challenge(created.token, code, "Too late", bob.participant.participant_id)


def test_only_host_may_advance_or_set_deadline() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    bob = gateway.join_room(created.room.code, name="Bob")

    with pytest.raises(Forbidden):
        gateway.advance_phase(bob.token, created.room.code)
    with pytest.raises(Forbidden):
        gateway.set_deadline(bob.token, created.room.code, datetime(2026, 12, 31, tzinfo=timezone.utc))
    assert gateway.get_version(created.room.code) == 2


def test_set_deadline_bumps_only_when_value_changes() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    deadline = datetime(2026, 12, 31, tzinfo=timezone.utc)

    gateway.set_deadline(created.token, created.room.code, deadline)
    gateway.set_deadline(created.token, created.room.code, deadline)

    assert gateway.get_version(created.room.code) == 2
    snapshot, _ = gateway.get_snapshot(created.room.code)
    assert snapshot.room.deadline == deadline


def test_participants_cannot_act_in_rooms_they_do_not_belong_to() -> None:
    gateway = _gateway()
    first = gateway.create_room(name="First", host_name="Alice", challenges_per_person=6)
    second = gateway.create_room(name="Second", host_name="Mallory", challenges_per_person=6)
    bob = gateway.join_room(first.room.code, name="Bob")
    gateway.advance_phase(first.token, first.room.code)
    challenge = gateway.add_challenge(bob.token, first.room.code, "Run a 10k", first.host.participant_id)

    with pytest.raises(Forbidden):
        gateway.vote(second.token, challenge.challenge_id)
    with pytest.raises(Forbidden):
        gateway.advance_phase(second.token, first.room.code)


def test_missing_and_unknown_tokens_are_rejected() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)

    with pytest.raises(NotAuthenticated):
        gateway.advance_phase(None, created.room.code)
    with pytest.raises(Forbidden):
        gateway.advance_phase("not-a-token", created.room.code)


def test_unknown_room_and_challenge_raise_not_found() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)

    with pytest.raises(NotFound):
        gateway.get_snapshot("NOPE00")
    with pytest.raises(NotFound):
        gateway.join_room("NOPE00", name="Bob")
    with pytest.raises(NotFound):
        gateway.vote(created.token, "missing-challenge")
    assert gateway.get_version("NOPE00") == 0


def test_only_suggester_may_delete_and_delete_bumps() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    bob = gateway.join_room(created.room.code, name="Bob")
    gateway.advance_phase(created.token, created.room.code)
    challenge = gateway.add_challenge(bob.token, created.room.code, "Run a 10k", created.host.participant_id)
    version = gateway.get_version(created.room.code)

    with pytest.raises(Forbidden):
        gateway.delete_challenge(created.token, challenge.challenge_id)
    gateway.delete_challenge(bob.token, challenge.challenge_id)

    assert gateway.get_version(created.room.code) == version + 1
    assert gateway.get_snapshot(created.room.code)[0].challenges == []


def test_rejoin_with_known_token_returns_same_participant_without_bump() -> None:
    gateway = _gateway(bot_check=_StaticBotCheck())
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6, captcha_token="human")
    bob = gateway.join_room(created.room.code, name="Bob", captcha_token="human")

    again = gateway.join_room(created.room.code.lower(), name="Bob", existing_token=bob.token)

    assert again.rejoined is True
    assert again.participant.participant_id == bob.participant.participant_id
    assert again.token == bob.token
    assert gateway.get_version(created.room.code) == 2


def test_token_from_another_room_is_treated_as_a_fresh_join() -> None:
    gateway = _gateway()
    first = gateway.create_room(name="First", host_name="Alice", challenges_per_person=6)
    second = gateway.create_room(name="Second", host_name="Carol", challenges_per_person=6)

    joined = gateway.join_room(second.room.code, name="Alice", existing_token=first.token)

    assert joined.rejoined is False
    assert joined.token != first.token
    assert gateway.get_version(second.room.code) == 2


def test_bot_check_guards_create_and_first_join() -> None:
    gateway = _gateway(bot_check=_StaticBotCheck())

    with pytest.raises(Forbidden):
        gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    with pytest.raises(Forbidden):
        gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6, captcha_token="robot")

    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6, captcha_token="human")
    with pytest.raises(Forbidden):
        gateway.join_room(created.room.code, name="Bob")
    assert gateway.get_version(created.room.code) == 1


def test_failed_version_bump_does_not_fail_the_mutation() -> None:
    store = InMemoryRoomStore(server_salt="salt")
    gateway = MutationGateway(store=store, versions=_FailingBumps(store))
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)

    bob = gateway.join_room(created.room.code, name="Bob")

    snapshot, version = gateway.get_snapshot(created.room.code)
    assert [p.participant_id for p in snapshot.participants][-1] == bob.participant.participant_id
    assert version == 1


def test_recover_returns_identity_for_token() -> None:
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)

    identity = gateway.recover(created.token)

    assert identity.participant_id == created.host.participant_id
    assert identity.is_host is True
    assert identity.room_code == created.room.code
    with pytest.raises(NotFound):
        gateway.recover("not-a-token")


def _state_without_version(gateway: MutationGateway, code: str) -> dict:
    snapshot, _ = gateway.get_snapshot(code)
    state = build_state(snapshot)
    state.pop("version")
    return state


@pytest.mark.parametrize("seed", range(5))
def test_version_equals_one_plus_number_of_state_changes(seed: int) -> None:
    rng = random.Random(seed)
    gateway = _gateway()
    created = gateway.create_room(name="Friends", host_name="Alice", challenges_per_person=6)
    code = created.room.code
    tokens = {created.host.participant_id: created.token}
    challenge_ids: list[str] = []
    deadlines = [None, datetime(2026, 12, 31, tzinfo=timezone.utc)]
    changes = 0

    for step in range(60):
        before = _state_without_version(gateway, code)
        actor_id = rng.choice(sorted(tokens))
        token = tokens[actor_id]
        operation = rng.choice(["join", "advance", "add", "vote", "unvote", "toggle", "delete", "deadline"])
        try:
            if operation == "join":
                joined = gateway.join_room(code, name=f"Guest {step}")
                tokens[joined.participant.participant_id] = joined.token
            elif operation == "advance":
                gateway.advance_phase(created.token if rng.random() < 0.3 else token, code)
            elif operation == "add":
                target_id = rng.choice(sorted(tokens))
                challenge_ids.append(gateway.add_challenge(token, code, f"Challenge {step}", target_id).challenge_id)
            elif operation in ("vote", "unvote", "toggle", "delete") and challenge_ids:
                challenge_id = rng.choice(challenge_ids)
                if operation == "vote":
                    gateway.vote(token, challenge_id)
                elif operation == "unvote":
                    gateway.remove_vote(token, challenge_id)
                elif operation == "toggle":
                    gateway.toggle_completion(token, challenge_id)
                else:
                    gateway.delete_challenge(token, challenge_id)
            elif operation == "deadline":
                gateway.set_deadline(created.token, code, rng.choice(deadlines))
        except RoomError:
            pass
        if _state_without_version(gateway, code) != before:
            changes += 1

    assert gateway.get_version(code) == 1 + changes

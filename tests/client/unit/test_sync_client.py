import asyncio
from typing import Any

import httpx

from yearchallenge.backend.api import create_app
from yearchallenge.backend.errors import NotAuthenticated, TransientStoreError
from yearchallenge.backend.store import InMemoryRoomStore
from yearchallenge.client.api import RoomApiClient
from yearchallenge.client.crypto import encrypt, generate_key
from yearchallenge.client.sync import SyncClient


class _FakeApi:
    def __init__(self, version: int = 1) -> None:
        self.version = version
        self.snapshot_version: int | None = None
        self.version_calls = 0
        self.state_calls = 0
        self.fail_next = False
        self.on_get_state = None
        self.votes: list[tuple[str, str]] = []

    async def get_version(self, code: str) -> int:
        self.version_calls += 1
        if self.fail_next:
            self.fail_next = False
            raise httpx.ConnectError("offline")
        return self.version

    async def get_state(self, code: str) -> dict[str, Any]:
        self.state_calls += 1
        if self.on_get_state is not None:
            self.on_get_state()
        version = self.snapshot_version if self.snapshot_version is not None else self.version
        return {"code": code, "name": "Friends", "version": version, "participants": [], "challenges": []}

    async def vote(self, token: str, challenge_id: str) -> list[str]:
        self.votes.append((token, challenge_id))
        self.version += 1
        return ["alice"]


def test_fresh_subscription_fetches_even_when_server_reports_zero() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=0)
        client = SyncClient(api, interval=60)
        await client.subscribe("abc123")

        assert client.room_code == "ABC123"
        assert api.state_calls == 1
        assert client.state["name"] == "Friends"
        await client.unsubscribe()

    asyncio.run(scenario())


def test_unchanged_version_skips_snapshot_fetch() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=3)
        changes = []
        client = SyncClient(api, interval=60, on_change=changes.append)
        await client.subscribe("ABC123")

        assert await client.check_version() is False
        assert api.state_calls == 1

        api.version = 4
        assert await client.check_version() is True
        assert client.local_version == 4
        assert [state["version"] for state in changes] == [3, 4]
        await client.unsubscribe()

    asyncio.run(scenario())


def test_hidden_client_does_not_poll_and_checks_on_becoming_visible() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=1)
        client = SyncClient(api, interval=60)
        await client.subscribe("ABC123")
        calls = api.version_calls

        assert client.set_visible(False) is None
        api.version = 2
        assert await client.check_version() is False
        assert api.version_calls == calls

        task = client.set_visible(True)
        assert task is not None
        assert await task is True
        assert client.local_version == 2
        await client.unsubscribe()

    asyncio.run(scenario())


def test_older_snapshot_never_replaces_newer_state() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=5)
        client = SyncClient(api, interval=60)
        await client.subscribe("ABC123")

        api.version = 6
        api.snapshot_version = 4
        assert await client.check_version() is False
        assert client.local_version == 5
        await client.unsubscribe()

    asyncio.run(scenario())


def test_response_arriving_after_unsubscribe_is_dropped() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=1)
        client = SyncClient(api, interval=60)
        await client.subscribe("ABC123")
        api.version = 2
        api.on_get_state = lambda: setattr(client, "_generation", client._generation + 1)

        assert await client.check_version() is False
        assert client.local_version == 1
        await client.unsubscribe()

    asyncio.run(scenario())


def test_poll_errors_are_retried_on_next_tick() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=1)
        client = SyncClient(api, interval=60)
        await client.subscribe("ABC123")

        api.version = 2
        api.fail_next = True
        assert await client.check_version() is False
        assert await client.check_version() is True
        await client.unsubscribe()

    asyncio.run(scenario())


def test_timer_polls_at_interval_until_unsubscribed() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=1)
        client = SyncClient(api, interval=0.01)
        await client.subscribe("ABC123")
        api.version = 2

        for _ in range(100):
            if client.local_version == 2:
                break
            await asyncio.sleep(0.01)
        assert client.local_version == 2

        await client.unsubscribe()
        calls = api.version_calls
        await asyncio.sleep(0.05)
        assert api.version_calls == calls
        assert client.state is None
        assert client.local_version == 0

    asyncio.run(scenario())


def test_mutation_refreshes_state_immediately() -> None:
    async def scenario() -> None:
        api = _FakeApi(version=1)
        client = SyncClient(api, interval=60)
        await client.subscribe("ABC123", token="tok-1", participant_id="alice")

        assert await client.vote("ch-1") == ["alice"]
        assert api.votes == [("tok-1", "ch-1")]
        assert client.local_version == 2
        await client.unsubscribe()

    asyncio.run(scenario())


def test_mutations_without_session_raise_not_authenticated() -> None:
    async def scenario() -> None:
        client = SyncClient(_FakeApi(), interval=60)
        try:
            await client.vote("ch-1")
        except NotAuthenticated:
            return
        raise AssertionError("vote without a session should fail")

    asyncio.run(scenario())


def _asgi_api(app) -> RoomApiClient:
    return RoomApiClient(httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver"))


def test_two_clients_converge_on_encrypted_room_state() -> None:
    app = create_app(store=InMemoryRoomStore(server_salt="test-salt"))

    async def scenario() -> None:
        alice_api, bob_api = _asgi_api(app), _asgi_api(app)
        alice = SyncClient(alice_api, interval=60)
        bob = SyncClient(bob_api, interval=60)
        try:
            created = await alice.create_room("Friends", "Alice")
            key = created["room_key"]
            assert alice.state["name"] == "Friends"
            assert alice.local_version == 1

            joined = await bob.join_room(created["code"], "Bob", room_key=key)
            assert bob.state["participants"][1]["name"] == "Bob"

            assert await alice.check_version() is True
            assert [p["name"] for p in alice.state["participants"]] == ["Alice", "Bob"]

            await alice.advance_phase()
            await bob.check_version()
            challenge = await bob.add_challenge(created["participant_id"], "Run a 10k")
            assert challenge["text"] == "Run a 10k"

            await alice.check_version()
            assert alice.state["challenges"][0]["text"] == "Run a 10k"
            assert alice.state["challenges"][0]["suggestedByParticipantId"] == joined["participant_id"]
            assert alice.local_version == bob.local_version == 4

            raw = await alice_api.get_state(created["code"])
            assert raw["challenges"][0]["text"] != "Run a 10k"
        finally:
            await alice.unsubscribe()
            await bob.unsubscribe()
            await alice_api.aclose()
            await bob_api.aclose()

    asyncio.run(scenario())


def test_recover_decrypts_identity_and_subscribes() -> None:
    app = create_app(store=InMemoryRoomStore(server_salt="test-salt"))
    key = generate_key()

    async def scenario() -> None:
        api = _asgi_api(app)
        host = SyncClient(api, interval=60)
        returning = SyncClient(api, interval=60)
        try:
            created = await host.create_room("Friends", "Alice", room_key=key)
            identity = await returning.recover(created["token"], room_key=key)

            assert identity["name"] == "Alice"
            assert identity["is_host"] is True
            assert returning.room_code == created["code"]
            assert returning.participant_token == created["token"]
            assert returning.state["name"] == "Friends"
        finally:
            await host.unsubscribe()
            await returning.unsubscribe()
            await api.aclose()

    asyncio.run(scenario())


def test_plaintext_room_state_passes_through_without_key() -> None:
    app = create_app(store=InMemoryRoomStore(server_salt="test-salt"))

    async def scenario() -> None:
        api = _asgi_api(app)
        client = SyncClient(api, interval=60)
        try:
            await client.create_room("Friends", "Alice", encrypted=False)
            assert client.state["name"] == "Friends"
            assert client.keyring.get(client.room_code) is None
        finally:
            await client.unsubscribe()
            await api.aclose()

    asyncio.run(scenario())


def test_foreign_ciphertext_is_left_as_stored() -> None:
    app = create_app(store=InMemoryRoomStore(server_salt="test-salt"))
    other_key = generate_key()

    async def scenario() -> None:
        api = _asgi_api(app)
        client = SyncClient(api, interval=60)
        try:
            stored_name = encrypt("Friends", other_key)
            created = await api.create_room(stored_name, "Alice", 6)
            await client.subscribe(created["code"], room_key=generate_key())
            assert client.state["name"] == stored_name
        finally:
            await client.unsubscribe()
            await api.aclose()

    asyncio.run(scenario())


def test_transient_errors_are_poll_errors() -> None:
    class _DownApi(_FakeApi):
        async def get_version(self, code: str) -> int:
            raise TransientStoreError("db down")

    async def scenario() -> None:
        client = SyncClient(_DownApi(), interval=60)
        await client.subscribe("ABC123")
        assert client.state is None
        await client.unsubscribe()

    asyncio.run(scenario())


def test_timer_keeps_polling_after_internal_server_error() -> None:
    version_calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/version"):
            version_calls.append(request.url.path)
            if len(version_calls) == 2:
                return httpx.Response(500, json={"error": "internal", "detail": "Internal server error"})
            return httpx.Response(200, json={"version": 1 if len(version_calls) == 1 else 2})
        version = 1 if len(version_calls) == 1 else 2
        state = {"code": "ABC123", "name": "Friends", "version": version, "participants": [], "challenges": []}
        return httpx.Response(200, json={"state": state})

    async def scenario() -> None:
        api = RoomApiClient(httpx.AsyncClient(base_url="http://testserver", transport=httpx.MockTransport(handler)))
        client = SyncClient(api, interval=0.01)
        try:
            await client.subscribe("ABC123")
            assert client.local_version == 1

            for _ in range(100):
                if client.local_version == 2:
                    break
                await asyncio.sleep(0.01)

            assert client.local_version == 2
            assert len(version_calls) >= 3
            assert client._timer is not None and not client._timer.done()
        finally:
            await client.unsubscribe()
            await api.aclose()

    asyncio.run(scenario())


def test_timer_survives_unexpected_failure_inside_a_tick() -> None:
    class _FlakyApi(_FakeApi):
        async def get_state(self, code: str) -> dict[str, Any]:
            if self.state_calls == 1:
                self.state_calls += 1
                raise KeyError("state")
            return await super().get_state(code)

    async def scenario() -> None:
        api = _FlakyApi(version=1)
        client = SyncClient(api, interval=0.01)
        await client.subscribe("ABC123")
        api.version = 2

        for _ in range(100):
            if client.local_version == 2:
                break
            await asyncio.sleep(0.01)

        assert client.local_version == 2
        assert api.state_calls >= 3
        await client.unsubscribe()

    asyncio.run(scenario())


def test_failed_first_check_leaves_no_timer_running() -> None:
    class _BrokenApi(_FakeApi):
        async def get_state(self, code: str) -> dict[str, Any]:
            raise ValueError("Room key must be 256 bits")

    async def scenario() -> None:
        client = SyncClient(_BrokenApi(), interval=0.01)
        try:
            await client.subscribe("ABC123")
        except ValueError:
            pass
        else:
            raise AssertionError("subscribe should surface the first failure")

        assert client.subscribed is False
        assert client._timer is None

    asyncio.run(scenario())

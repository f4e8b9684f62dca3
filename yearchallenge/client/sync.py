"""Polling sync client that keeps one room's full state current.

Each tick asks the server for the room's version number and fetches the full
snapshot only when that number differs from the one already applied.  Ticks
are skipped while the view is hidden.  Snapshots carry the version they were
read at, and a snapshot older than the applied one is dropped, so a slow
response can never roll the local state back.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from yearchallenge.backend.errors import NotAuthenticated, NotFound, TransientStoreError
from yearchallenge.backend.security import normalize_room_code

from .api import RoomApi
from .crypto import DecryptionError, RoomKeyring, decrypt, decrypt_state, encrypt, generate_key

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 3.0

# A failed poll is retried on the next tick instead of being surfaced.
POLL_ERRORS = (httpx.HTTPError, TransientStoreError, NotFound)


class SyncClient:
    def __init__(
        self,
        api: RoomApi,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_change: Callable[[dict[str, Any]], None] | None = None,
        keyring: RoomKeyring | None = None,
    ) -> None:
        self.api = api
        self.interval = interval
        self.on_change = on_change
        self.keyring = keyring if keyring is not None else RoomKeyring()
        self.room_code: str | None = None
        self.participant_id: str | None = None
        self.participant_token: str | None = None
        self.local_version = 0
        self.state: dict[str, Any] | None = None
        self.visible = True
        self._timer: asyncio.Task[None] | None = None
        self._generation = 0

    @property
    def subscribed(self) -> bool:
        return self.room_code is not None

    # -- subscription lifecycle -----------------------------------------

    async def subscribe(
        self,
        code: str,
        room_key: str | None = None,
        token: str | None = None,
        participant_id: str | None = None,
    ) -> None:
        if self.subscribed:
            await self.unsubscribe()
        room_code = normalize_room_code(code)
        if room_key:
            self.keyring.store(room_code, room_key)
        self._generation += 1
        self.room_code = room_code
        self.participant_token = token
        self.participant_id = participant_id
        self.local_version = 0
        self.state = None
        self._timer = asyncio.create_task(self._run_timer(self._generation))
        try:
            await self.check_version()
        except Exception:
            await self.unsubscribe()
            raise

    async def unsubscribe(self) -> None:
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            if timer is not asyncio.current_task():
                with suppress(asyncio.CancelledError):
                    await timer
        self.room_code = None
        self.participant_id = None
        self.participant_token = None
        self.state = None
        self.local_version = 0

    def set_visible(self, visible: bool) -> asyncio.Task[bool] | None:
        """Visibility listener: regaining visibility triggers an immediate check."""
        was_visible = self.visible
        self.visible = visible
        if visible and not was_visible and self.subscribed:
            return asyncio.create_task(self.check_version())
        return None

    async def _run_timer(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.interval)
            if generation != self._generation:
                return
            try:
                await self.check_version()
            except Exception as exc:
                # Nobody awaits this task, so a tick must never end it.
                logger.warning("poll_failed", room_code=self.room_code, stage="tick", error=repr(exc))

    # -- polling ---------------------------------------------------------

    async def check_version(self) -> bool:
        """Run one poll step; True when a new snapshot was applied."""
        if not self.subscribed or not self.visible:
            return False
        code, generation = self.room_code, self._generation
        try:
            server_version = await self.api.get_version(code)
        except POLL_ERRORS as exc:
            logger.debug("poll_failed", room_code=code, stage="version", error=str(exc))
            return False
        if generation != self._generation:
            return False
        # 0 means the server has no baseline for this room: always refetch.
        if server_version != 0 and server_version == self.local_version:
            return False
        return await self._fetch(code, generation)

    async def refresh(self) -> bool:
        """Fetch the full snapshot now, regardless of the version."""
        if not self.subscribed:
            return False
        return await self._fetch(self.room_code, self._generation)

    async def _fetch(self, code: str, generation: int) -> bool:
        try:
            state = await self.api.get_state(code)
        except POLL_ERRORS as exc:
            logger.debug("poll_failed", room_code=code, stage="snapshot", error=str(exc))
            return False
        if generation != self._generation:
            return False
        version = int(state.get("version", 0))
        if version < self.local_version:
            return False
        room_key = self.keyring.get(code)
        if room_key:
            state = decrypt_state(state, room_key)
        self.state = state
        self.local_version = version
        if self.on_change is not None:
            self.on_change(state)
        return True

    # -- mutations -------------------------------------------------------

    async def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int = 6,
        room_key: str | None = None,
        encrypted: bool = True,
        captcha_token: str | None = None,
        deadline: datetime | None = None,
    ) -> dict[str, Any]:
        """Create a room, subscribe to it and return the creation result plus the room key."""
        key = room_key or (generate_key() if encrypted else None)
        created = await self.api.create_room(
            name=encrypt(name, key) if key else name,
            host_name=encrypt(host_name, key) if key else host_name,
            challenges_per_person=challenges_per_person,
            captcha_token=captcha_token,
            deadline=deadline,
        )
        await self.subscribe(
            created["code"],
            room_key=key,
            token=created["token"],
            participant_id=created["participant_id"],
        )
        return {**created, "room_key": key}

    async def join_room(
        self,
        code: str,
        name: str,
        room_key: str | None = None,
        captcha_token: str | None = None,
        existing_token: str | None = None,
    ) -> dict[str, Any]:
        room_code = normalize_room_code(code)
        key = room_key or self.keyring.get(room_code)
        joined = await self.api.join_room(
            room_code,
            name=encrypt(name, key) if key else name,
            captcha_token=captcha_token,
            existing_token=existing_token,
        )
        await self.subscribe(room_code, room_key=key, token=joined["token"], participant_id=joined["participant_id"])
        return joined

    async def recover(self, token: str, room_key: str | None = None) -> dict[str, Any]:
        """Re-authenticate from a magic link and subscribe to the participant's room."""
        identity = await self.api.recover(token)
        room_code = identity["room_code"]
        key = room_key or self.keyring.get(room_code)
        if key:
            with suppress(DecryptionError):
                identity = {**identity, "name": decrypt(identity["name"], key)}
        await self.subscribe(room_code, room_key=key, token=token, participant_id=identity["participant_id"])
        return identity

    async def add_challenge(self, for_participant_id: str, text: str) -> dict[str, Any]:
        code, token = self._session()
        key = self.keyring.get(code)
        challenge = await self.api.add_challenge(
            token,
            code,
            text=encrypt(text, key) if key else text,
            for_participant_id=for_participant_id,
        )
        await self.refresh()
        return {**challenge, "text": text}

    async def delete_challenge(self, challenge_id: str) -> None:
        _, token = self._session()
        await self.api.delete_challenge(token, challenge_id)
        await self.refresh()

    async def vote(self, challenge_id: str) -> list[str]:
        _, token = self._session()
        votes = await self.api.vote(token, challenge_id)
        await self.refresh()
        return votes

    async def remove_vote(self, challenge_id: str) -> list[str]:
        _, token = self._session()
        votes = await self.api.remove_vote(token, challenge_id)
        await self.refresh()
        return votes

    async def toggle_completion(self, challenge_id: str) -> bool:
        _, token = self._session()
        is_completed = await self.api.toggle_completion(token, challenge_id)
        await self.refresh()
        return is_completed

    async def advance_phase(self) -> str:
        code, token = self._session()
        phase = await self.api.advance_phase(token, code)
        await self.refresh()
        return phase

    async def set_deadline(self, deadline: datetime | None) -> str | None:
        code, token = self._session()
        stored = await self.api.set_deadline(token, code, deadline)
        await self.refresh()
        return stored

    def _session(self) -> tuple[str, str]:
        if self.room_code is None or not self.participant_token:
            raise NotAuthenticated("Join or create a room first")
        return self.room_code, self.participant_token

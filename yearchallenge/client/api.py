"""Async HTTP client for the room endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx

from yearchallenge.backend.errors import ERROR_KINDS, RoomError, TransientStoreError, error_from_kind

PARTICIPANT_TOKEN_HEADER = "X-Participant-Token"


class RoomApi(Protocol):
    async def get_version(self, code: str) -> int: ...

    async def get_state(self, code: str) -> dict[str, Any]: ...

    async def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int,
        captcha_token: str | None = None,
        deadline: datetime | None = None,
    ) -> dict[str, Any]: ...

    async def join_room(
        self,
        code: str,
        name: str,
        captcha_token: str | None = None,
        existing_token: str | None = None,
    ) -> dict[str, Any]: ...

    async def add_challenge(self, token: str, code: str, text: str, for_participant_id: str) -> dict[str, Any]: ...

    async def delete_challenge(self, token: str, challenge_id: str) -> None: ...

    async def vote(self, token: str, challenge_id: str) -> list[str]: ...

    async def remove_vote(self, token: str, challenge_id: str) -> list[str]: ...

    async def toggle_completion(self, token: str, challenge_id: str) -> bool: ...

    async def advance_phase(self, token: str, code: str) -> str: ...

    async def set_deadline(self, token: str, code: str, deadline: datetime | None) -> str | None: ...

    async def recover(self, token: str) -> dict[str, Any]: ...


class RoomApiClient:
    """Thin wrapper over ``httpx.AsyncClient`` that raises typed room errors."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def for_server(cls, base_url: str, timeout: float = 10.0) -> RoomApiClient:
        return cls(httpx.AsyncClient(base_url=base_url, timeout=timeout))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_version(self, code: str) -> int:
        data = await self._request("GET", f"/api/rooms/{code}/version")
        return int(data["version"])

    async def get_state(self, code: str) -> dict[str, Any]:
        data = await self._request("GET", f"/api/rooms/{code}")
        return data["state"]

    async def create_room(
        self,
        name: str,
        host_name: str,
        challenges_per_person: int,
        captcha_token: str | None = None,
        deadline: datetime | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/api/rooms",
            json={
                "name": name,
                "host_name": host_name,
                "challenges_per_person": challenges_per_person,
                "captcha_token": captcha_token,
                "deadline": deadline.isoformat() if deadline is not None else None,
            },
        )

    async def join_room(
        self,
        code: str,
        name: str,
        captcha_token: str | None = None,
        existing_token: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/rooms/{code}/join",
            json={"name": name, "captcha_token": captcha_token, "existing_token": existing_token},
        )

    async def add_challenge(self, token: str, code: str, text: str, for_participant_id: str) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/api/rooms/{code}/challenges",
            token=token,
            json={"text": text, "for_participant_id": for_participant_id},
        )
        return data["challenge"]

    async def delete_challenge(self, token: str, challenge_id: str) -> None:
        await self._request("DELETE", f"/api/challenges/{challenge_id}", token=token)

    async def vote(self, token: str, challenge_id: str) -> list[str]:
        data = await self._request("POST", f"/api/challenges/{challenge_id}/vote", token=token)
        return list(data["votes"])

    async def remove_vote(self, token: str, challenge_id: str) -> list[str]:
        data = await self._request("DELETE", f"/api/challenges/{challenge_id}/vote", token=token)
        return list(data["votes"])

    async def toggle_completion(self, token: str, challenge_id: str) -> bool:
        data = await self._request("POST", f"/api/challenges/{challenge_id}/toggle", token=token)
        return bool(data["is_completed"])

    async def advance_phase(self, token: str, code: str) -> str:
        data = await self._request("POST", f"/api/rooms/{code}/advance", token=token)
        return str(data["phase"])

    async def set_deadline(self, token: str, code: str, deadline: datetime | None) -> str | None:
        data = await self._request(
            "PUT",
            f"/api/rooms/{code}/deadline",
            token=token,
            json={"deadline": deadline.isoformat() if deadline is not None else None},
        )
        return data["deadline"]

    async def recover(self, token: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/auth/{token}")

    async def _request(
        self,
        method: str,
        path: str,
        token: str | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {PARTICIPANT_TOKEN_HEADER: token} if token else None
        response = await self._client.request(method, path, headers=headers, json=json)
        if response.is_success:
            return response.json()
        raise _error_from_response(response)


def _error_from_response(response: httpx.Response) -> RoomError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    kind = body.get("error") if isinstance(body, dict) else None
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(kind, str) and kind in ERROR_KINDS:
        return error_from_kind(kind, str(detail or ""))
    # Unknown server failures, including the catch-all "internal" kind, are retryable.
    if response.status_code >= 500:
        return TransientStoreError(str(detail or f"Server error {response.status_code}"))
    return RoomError(str(detail or f"Unexpected response {response.status_code}"))

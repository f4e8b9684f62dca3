"""FastAPI endpoints for rooms, challenges, version polling and token recovery."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .captcha import BotCheck, create_bot_check
from .config import load_settings
from .errors import RoomError
from .gateway import MutationGateway
from .state import build_state, challenge_payload
from .store import RoomStore, create_store
from .versions import VersionCounter, StoreVersionCounter, create_version_counter

logger = structlog.get_logger(__name__)

PARTICIPANT_TOKEN_HEADER = "X-Participant-Token"

# Text fields may arrive as base64 AES-GCM ciphertext, which is longer than the plaintext.
MAX_TEXT_LENGTH = 2000


class CreateRoomRequest(BaseModel):
    name: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    host_name: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    challenges_per_person: int = Field(default=6, ge=1, le=52)
    deadline: datetime | None = None
    captcha_token: str | None = None


class CreateRoomResponse(BaseModel):
    code: str
    participant_id: str
    token: str
    state: dict[str, Any]


class RoomStateResponse(BaseModel):
    state: dict[str, Any]


class VersionResponse(BaseModel):
    version: int


class JoinRoomRequest(BaseModel):
    name: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    captcha_token: str | None = None
    existing_token: str | None = None


class JoinRoomResponse(BaseModel):
    participant_id: str
    token: str
    name: str
    rejoined: bool


class AddChallengeRequest(BaseModel):
    text: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    for_participant_id: str = Field(min_length=1)


class ChallengeResponse(BaseModel):
    challenge: dict[str, Any]


class VotesResponse(BaseModel):
    votes: list[str]


class ToggleResponse(BaseModel):
    is_completed: bool


class PhaseResponse(BaseModel):
    phase: str


class DeadlineRequest(BaseModel):
    deadline: datetime | None = None


class DeadlineResponse(BaseModel):
    deadline: datetime | None


class DeleteResponse(BaseModel):
    success: bool


class IdentityResponse(BaseModel):
    participant_id: str
    name: str
    avatar: str
    is_host: bool
    room_code: str


def _default_gateway() -> MutationGateway:
    settings = load_settings()
    store = create_store(database_url=settings.database_url, server_salt=settings.server_salt)
    return MutationGateway(
        store=store,
        versions=create_version_counter(settings, store),
        bot_check=create_bot_check(settings.turnstile_secret_key),
    )


def create_app(
    store: RoomStore | None = None,
    versions: VersionCounter | None = None,
    bot_check: BotCheck | None = None,
) -> FastAPI:
    app = FastAPI(title="Year of the Challenge API", version="0.3.0")
    if store is None:
        gateway = _default_gateway()
    else:
        gateway = MutationGateway(
            store=store,
            versions=versions if versions is not None else StoreVersionCounter(store=store),
            bot_check=bot_check if bot_check is not None else create_bot_check(None),
        )
    app.state.gateway = gateway

    def get_gateway() -> MutationGateway:
        return gateway

    @app.exception_handler(RoomError)
    async def room_error_handler(_request: Request, exc: RoomError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"error": "internal", "detail": "Internal server error"})

    @app.post("/api/rooms", response_model=CreateRoomResponse)
    def create_room(
        payload: CreateRoomRequest,
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> CreateRoomResponse:
        created = local_gateway.create_room(
            name=payload.name,
            host_name=payload.host_name,
            challenges_per_person=payload.challenges_per_person,
            captcha_token=payload.captcha_token,
            deadline=payload.deadline,
        )
        snapshot, version = local_gateway.get_snapshot(created.room.code)
        return CreateRoomResponse(
            code=created.room.code,
            participant_id=created.host.participant_id,
            token=created.token,
            state=build_state(snapshot, version=version),
        )

    @app.get("/api/rooms/{code}", response_model=RoomStateResponse)
    def get_room(
        code: str,
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> RoomStateResponse:
        snapshot, version = local_gateway.get_snapshot(code)
        return RoomStateResponse(state=build_state(snapshot, version=version))

    @app.get("/api/rooms/{code}/version", response_model=VersionResponse)
    def get_version(
        code: str,
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> VersionResponse:
        return VersionResponse(version=local_gateway.get_version(code))

    @app.post("/api/rooms/{code}/join", response_model=JoinRoomResponse)
    def join_room(
        code: str,
        payload: JoinRoomRequest,
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> JoinRoomResponse:
        joined = local_gateway.join_room(
            code=code,
            name=payload.name,
            captcha_token=payload.captcha_token,
            existing_token=payload.existing_token,
        )
        return JoinRoomResponse(
            participant_id=joined.participant.participant_id,
            token=joined.token,
            name=joined.participant.name,
            rejoined=joined.rejoined,
        )

    @app.post("/api/rooms/{code}/challenges", response_model=ChallengeResponse)
    def add_challenge(
        code: str,
        payload: AddChallengeRequest,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> ChallengeResponse:
        challenge = local_gateway.add_challenge(
            token=token,
            code=code,
            text=payload.text,
            for_participant_id=payload.for_participant_id,
        )
        return ChallengeResponse(challenge=challenge_payload(challenge))

    @app.post("/api/rooms/{code}/advance", response_model=PhaseResponse)
    def advance_phase(
        code: str,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> PhaseResponse:
        return PhaseResponse(phase=local_gateway.advance_phase(token=token, code=code).value)

    @app.put("/api/rooms/{code}/deadline", response_model=DeadlineResponse)
    def set_deadline(
        code: str,
        payload: DeadlineRequest,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> DeadlineResponse:
        return DeadlineResponse(deadline=local_gateway.set_deadline(token=token, code=code, deadline=payload.deadline))

    @app.delete("/api/challenges/{challenge_id}", response_model=DeleteResponse)
    def delete_challenge(
        challenge_id: str,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> DeleteResponse:
        local_gateway.delete_challenge(token=token, challenge_id=challenge_id)
        return DeleteResponse(success=True)

    @app.post("/api/challenges/{challenge_id}/vote", response_model=VotesResponse)
    def vote(
        challenge_id: str,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> VotesResponse:
        return VotesResponse(votes=local_gateway.vote(token=token, challenge_id=challenge_id))

    @app.delete("/api/challenges/{challenge_id}/vote", response_model=VotesResponse)
    def remove_vote(
        challenge_id: str,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> VotesResponse:
        return VotesResponse(votes=local_gateway.remove_vote(token=token, challenge_id=challenge_id))

    @app.post("/api/challenges/{challenge_id}/toggle", response_model=ToggleResponse)
    def toggle_completion(
        challenge_id: str,
        token: str | None = Header(default=None, alias=PARTICIPANT_TOKEN_HEADER),
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> ToggleResponse:
        return ToggleResponse(is_completed=local_gateway.toggle_completion(token=token, challenge_id=challenge_id))

    @app.get("/api/auth/{token}", response_model=IdentityResponse)
    def recover_identity(
        token: str,
        local_gateway: MutationGateway = Depends(get_gateway),
    ) -> IdentityResponse:
        identity = local_gateway.recover(token)
        return IdentityResponse(
            participant_id=identity.participant_id,
            name=identity.name,
            avatar=identity.avatar,
            is_host=identity.is_host,
            room_code=identity.room_code,
        )

    return app


app = create_app()

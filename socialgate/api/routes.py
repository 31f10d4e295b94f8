from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Header, Path

from socialgate.api.schemas import (
    Envelope,
    FanoutReportResponse,
    FriendEntry,
    FriendListResponse,
    PasswordRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    PushStatusRequest,
    SessionResponse,
    TokenResponse,
    normalize_path_segment,
)
from socialgate.logging import get_logger
from socialgate.service.errors import BadRequestError, NotFoundError
from socialgate.service.fanout import FanoutReport
from socialgate.service.friends import FriendList, decode, encode
from socialgate.service.runtime import get_runtime
from socialgate.storage.models import ProfileRecord, ResourceLocator, TokenScope

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_SEGMENT = {"min_length": 1, "max_length": 1024}


def _segment(value: str, field: str) -> str:
    try:
        return normalize_path_segment(value)
    except ValueError as exc:
        raise BadRequestError(str(exc), detail={"field": field}) from exc


def _friend_list_payload(friends: FriendList) -> dict:
    return FriendListResponse(
        Friends=encode(friends),
        entries=[FriendEntry(country=f.country, name=f.name) for f in friends],
    ).model_dump(by_alias=True)


def _report_payload(report: FanoutReport) -> dict:
    return FanoutReportResponse(**report.to_dict()).model_dump()


def _profile_payload(record: ProfileRecord) -> dict:
    return ProfileResponse(
        table=record.table,
        partition=record.partition,
        row=record.row,
        properties=record.properties,
        etag=record.etag,
    ).model_dump()


# users


@router.post("/users/SignOn/{user_id}", response_model=Envelope, tags=["users"])
async def sign_on(body: PasswordRequest, user_id: str = Path(..., **_SEGMENT)):
    """Authenticate and open (or refresh) the user's session.

    Raises:
        404: unknown user, wrong password, or the bound profile does not resolve
    """
    runtime = get_runtime()
    user_id = _segment(user_id, "user_id")
    session = await asyncio.to_thread(runtime.sessions.sign_on, user_id, body.password)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=session.user_id,
            partition=session.partition,
            row=session.row,
            scope=session.scope.value,
            expires_at=session.expires_at.isoformat(),
        ).model_dump(),
    )


@router.post("/users/SignOff/{user_id}", response_model=Envelope, tags=["users"])
async def sign_off(user_id: str = Path(..., **_SEGMENT)):
    runtime = get_runtime()
    user_id = _segment(user_id, "user_id")
    await asyncio.to_thread(runtime.sessions.sign_off, user_id)
    return Envelope(status="ok", data={"user_id": user_id})


@router.put(
    "/users/AddFriend/{user_id}/{country}/{name}", response_model=Envelope, tags=["users"]
)
async def add_friend(
    user_id: str = Path(..., **_SEGMENT),
    country: str = Path(..., **_SEGMENT),
    name: str = Path(..., **_SEGMENT),
):
    runtime = get_runtime()
    friends = await asyncio.to_thread(
        runtime.social.add_friend,
        _segment(user_id, "user_id"),
        _segment(country, "country"),
        _segment(name, "name"),
    )
    return Envelope(status="ok", data=_friend_list_payload(friends))


@router.put(
    "/users/UnFriend/{user_id}/{country}/{name}", response_model=Envelope, tags=["users"]
)
async def unfriend(
    user_id: str = Path(..., **_SEGMENT),
    country: str = Path(..., **_SEGMENT),
    name: str = Path(..., **_SEGMENT),
):
    runtime = get_runtime()
    friends = await asyncio.to_thread(
        runtime.social.unfriend,
        _segment(user_id, "user_id"),
        _segment(country, "country"),
        _segment(name, "name"),
    )
    return Envelope(status="ok", data=_friend_list_payload(friends))


@router.put(
    "/users/UpdateStatus/{user_id}/{status}", response_model=Envelope, tags=["users"]
)
async def update_status(
    user_id: str = Path(..., **_SEGMENT),
    status: str = Path(..., **_SEGMENT),
):
    """Set the caller's status and broadcast it to every friend.

    Raises:
        403: no active session
        503: the push channel cannot be reached
    """
    runtime = get_runtime()
    # status is broadcast exactly as sent
    report = await runtime.social.update_status(_segment(user_id, "user_id"), status)
    return Envelope(status="ok", data=_report_payload(report))


@router.get("/users/ReadFriendList/{user_id}", response_model=Envelope, tags=["users"])
async def read_friend_list(user_id: str = Path(..., **_SEGMENT)):
    runtime = get_runtime()
    friends = await asyncio.to_thread(
        runtime.social.read_friend_list, _segment(user_id, "user_id")
    )
    return Envelope(status="ok", data=_friend_list_payload(friends))


# auth


async def _issue_token(user_id: str, password: str, scope: TokenScope) -> Envelope:
    runtime = get_runtime()
    token, locator = await asyncio.to_thread(
        runtime.gate.request_token, _segment(user_id, "user_id"), password, scope
    )
    return Envelope(
        status="ok",
        data=TokenResponse(
            token=token,
            partition=locator.partition,
            row=locator.row,
            scope=scope.value,
        ).model_dump(),
    )


@router.post("/auth/GetReadToken/{user_id}", response_model=Envelope, tags=["auth"])
async def get_read_token(body: PasswordRequest, user_id: str = Path(..., **_SEGMENT)):
    return await _issue_token(user_id, body.password, TokenScope.READ)


@router.post("/auth/GetUpdateToken/{user_id}", response_model=Envelope, tags=["auth"])
async def get_update_token(body: PasswordRequest, user_id: str = Path(..., **_SEGMENT)):
    return await _issue_token(user_id, body.password, TokenScope.READ_UPDATE)


# profiles


def _resolve_bearer(table: str, authorization: Optional[str]):
    runtime = get_runtime()
    token = runtime.gate.extract_bearer(authorization)
    scope = runtime.gate.scope_of(token)
    if scope is None or table != runtime.gate.table:
        # indistinguishable from an absent record
        raise NotFoundError("resource not found")
    return runtime, token, scope


@router.get(
    "/profiles/{table}/{partition}/{row}", response_model=Envelope, tags=["profiles"]
)
async def read_profile(
    table: str = Path(..., **_SEGMENT),
    partition: str = Path(..., **_SEGMENT),
    row: str = Path(..., **_SEGMENT),
    authorization: Optional[str] = Header(default=None),
):
    runtime, token, scope = _resolve_bearer(table, authorization)
    record = await asyncio.to_thread(
        runtime.gate.read_profile, token, scope, ResourceLocator(partition, row)
    )
    return Envelope(status="ok", data=_profile_payload(record))


@router.put(
    "/profiles/{table}/{partition}/{row}", response_model=Envelope, tags=["profiles"]
)
async def update_profile(
    body: ProfileUpdateRequest,
    table: str = Path(..., **_SEGMENT),
    partition: str = Path(..., **_SEGMENT),
    row: str = Path(..., **_SEGMENT),
    authorization: Optional[str] = Header(default=None),
):
    """Merge properties into a profile under a bearer token.

    Raises:
        403: the token is read-only
        404: token invalid, expired or bound elsewhere, or record absent
        409: ``IfMatch`` no longer matches the record's ETag
    """
    runtime, token, scope = _resolve_bearer(table, authorization)
    record = await asyncio.to_thread(
        runtime.gate.merge_profile,
        token,
        scope,
        ResourceLocator(partition, row),
        body.properties,
        if_match=body.if_match,
    )
    return Envelope(status="ok", data=_profile_payload(record))


# push


@router.post(
    "/push/PushStatus/{country}/{name}/{status}", response_model=Envelope, tags=["push"]
)
async def push_status(
    country: str = Path(..., **_SEGMENT),
    name: str = Path(..., **_SEGMENT),
    status: str = Path(..., **_SEGMENT),
    body: Optional[PushStatusRequest] = None,
):
    """Append ``status`` to the ``Updates`` log of every listed friend.

    An absent body is a broadcast to nobody.
    """
    runtime = get_runtime()
    friends = decode(body.friends if body else "")
    logger.info(
        "push_status_received", country=country, name=name, friends=len(friends)
    )
    report = await runtime.fanout.fan_out(status, friends)
    return Envelope(status="ok", data=_report_payload(report))

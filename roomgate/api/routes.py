from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from roomgate.api.schemas import (
    Envelope,
    LogoutAllResponse,
    PasswordLoginRequest,
    PasswordStatusResponse,
    PresenceResponse,
    PresenceUser,
    ReconcileResponse,
    RegisterRequest,
    ReplyQuotaResponse,
    RoomUsersResponse,
    SetPasswordRequest,
    SuccessResponse,
    TokenInfoResponse,
    TokenListResponse,
    TokenRefreshRequest,
    TokenRequest,
    TokenResponse,
    VerifyTokenResponse,
)
from roomgate.logging import get_logger
from roomgate.service.gateway import Admission, Credentials
from roomgate.service.runtime import get_runtime
from roomgate.service.validation import normalize_client_address

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ROOM_ID = Path(..., min_length=1, max_length=64, description="Room identifier")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _apply_rate_headers(response: Response, admission: Admission) -> None:
    if admission.rate is None or not get_runtime().settings.rate_limit_headers_enabled:
        return
    RateLimitInfo(
        admission.rate.limit, admission.rate.remaining, admission.rate.reset_seconds
    ).apply_headers(response)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_credentials(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_username: Optional[str] = Header(None, alias="X-Username"),
) -> Credentials:
    peer = request.client.host if request.client else None
    return Credentials(
        token=_extract_bearer(authorization),
        username=x_username,
        client_address=normalize_client_address(request.headers, peer),
    )


# -- auth -----------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    response: Response,
    credentials: Credentials = Depends(get_credentials),
):
    """Create a user, store the password, and issue the first token.

    Raises:
        400: If the username or password is malformed
        409: If the username is taken
        429: If the caller is rate limited or blocked
    """
    runtime = get_runtime()
    admission, username, token = await runtime.gateway.register(
        credentials, body.username, body.password
    )
    _apply_rate_headers(response, admission)
    return Envelope(status="ok", data=TokenResponse(token=token, username=username))


@router.post("/auth/token", response_model=Envelope, status_code=201, tags=["auth"])
async def generate_token(
    body: TokenRequest,
    response: Response,
    credentials: Credentials = Depends(get_credentials),
):
    runtime = get_runtime()
    admission, token = await runtime.gateway.generate_token(credentials, body.username)
    _apply_rate_headers(response, admission)
    return Envelope(status="ok", data=TokenResponse(token=token, username=body.username))


@router.post("/auth/token/refresh", response_model=Envelope, status_code=201, tags=["auth"])
async def refresh_token(
    body: TokenRefreshRequest,
    response: Response,
    credentials: Credentials = Depends(get_credentials),
):
    """Rotate ``old_token``; it stays honored as expired for the grace window."""
    runtime = get_runtime()
    admission, token = await runtime.gateway.refresh_token(
        credentials, body.username, body.old_token
    )
    _apply_rate_headers(response, admission)
    return Envelope(status="ok", data=TokenResponse(token=token, username=body.username))


@router.get("/auth/token/verify", response_model=Envelope, tags=["auth"])
async def verify_token(credentials: Credentials = Depends(get_credentials)):
    runtime = get_runtime()
    result = await runtime.gateway.verify_token(credentials.token, credentials.username)
    return Envelope(
        status="ok",
        data=VerifyTokenResponse(
            valid=result.valid,
            username=result.username,
            expired=result.expired,
            expired_at=result.expired_at,
            grace_until=result.grace_until,
        ),
    )


@router.post("/auth/password/login", response_model=Envelope, tags=["auth"])
async def authenticate_with_password(
    body: PasswordLoginRequest,
    response: Response,
    credentials: Credentials = Depends(get_credentials),
):
    runtime = get_runtime()
    admission, username, token = await runtime.gateway.authenticate_with_password(
        credentials, body.username, body.password, body.old_token
    )
    _apply_rate_headers(response, admission)
    return Envelope(status="ok", data=TokenResponse(token=token, username=username))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def set_password(
    body: SetPasswordRequest, credentials: Credentials = Depends(get_credentials)
):
    runtime = get_runtime()
    await runtime.gateway.set_password(credentials, body.password)
    return Envelope(status="ok", data=SuccessResponse())


@router.get("/auth/password", response_model=Envelope, tags=["auth"])
async def check_password(credentials: Credentials = Depends(get_credentials)):
    runtime = get_runtime()
    admission, has_password = await runtime.gateway.check_password(credentials)
    return Envelope(
        status="ok",
        data=PasswordStatusResponse(has_password=has_password, username=admission.username or ""),
    )


@router.get("/auth/tokens", response_model=Envelope, tags=["auth"])
async def list_tokens(credentials: Credentials = Depends(get_credentials)):
    runtime = get_runtime()
    _, tokens = await runtime.gateway.list_tokens(credentials)
    items = [
        TokenInfoResponse(
            masked_token=info.masked_token, issued_at=info.issued_at, is_current=info.is_current
        )
        for info in tokens
    ]
    return Envelope(status="ok", data=TokenListResponse(tokens=items, count=len(items)))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all_devices(credentials: Credentials = Depends(get_credentials)):
    runtime = get_runtime()
    _, deleted = await runtime.gateway.logout_all(credentials)
    return Envelope(status="ok", data=LogoutAllResponse(deleted_count=deleted))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout_current(credentials: Credentials = Depends(get_credentials)):
    runtime = get_runtime()
    await runtime.gateway.logout_current(credentials)
    return Envelope(status="ok", data=SuccessResponse())


# -- rooms ------------------------------------------------------------------


@router.post("/rooms/{room_id}/join", response_model=Envelope, tags=["rooms"])
async def join_room(
    room_id: str = _ROOM_ID, credentials: Credentials = Depends(get_credentials)
):
    runtime = get_runtime()
    admission = await runtime.gateway.join_room(credentials, room_id)
    return Envelope(
        status="ok",
        data=PresenceResponse(room_id=room_id.lower(), username=admission.username or ""),
    )


@router.post("/rooms/{room_id}/leave", response_model=Envelope, tags=["rooms"])
async def leave_room(
    room_id: str = _ROOM_ID, credentials: Credentials = Depends(get_credentials)
):
    runtime = get_runtime()
    admission = await runtime.gateway.leave_room(credentials, room_id)
    return Envelope(
        status="ok",
        data=PresenceResponse(room_id=room_id.lower(), username=admission.username or ""),
    )


@router.post("/rooms/{room_id}/heartbeat", response_model=Envelope, tags=["rooms"])
async def heartbeat(
    room_id: str = _ROOM_ID, credentials: Credentials = Depends(get_credentials)
):
    """Best-effort presence refresh; ``recorded`` is false when the write was dropped."""
    runtime = get_runtime()
    admission, recorded = await runtime.gateway.heartbeat(credentials, room_id)
    return Envelope(
        status="ok",
        data=PresenceResponse(
            room_id=room_id.lower(), username=admission.username or "", recorded=recorded
        ),
    )


@router.get("/rooms/{room_id}/users", response_model=Envelope, tags=["rooms"])
async def room_users(room_id: str = _ROOM_ID):
    runtime = get_runtime()
    snapshot = await runtime.gateway.room_users(room_id)
    return Envelope(
        status="ok",
        data=RoomUsersResponse(
            room_id=snapshot.room_id,
            users=[
                PresenceUser(username=entry.username, last_seen_at=entry.last_seen_at)
                for entry in snapshot.users
            ],
            count=snapshot.count,
        ),
    )


# -- replies and admin ------------------------------------------------------


@router.post("/replies/admit", response_model=Envelope, tags=["replies"])
async def admit_reply(
    response: Response, credentials: Credentials = Depends(get_credentials)
):
    """Charge one AI-authored reply against the caller's budget."""
    runtime = get_runtime()
    admission = await runtime.gateway.admit_reply(credentials)
    _apply_rate_headers(response, admission)
    rate = admission.rate
    return Envelope(
        status="ok",
        data=ReplyQuotaResponse(
            identifier=admission.identifier,
            authenticated=admission.username is not None,
            limit=rate.limit if rate else 0,
            remaining=rate.remaining if rate else 0,
            reset_seconds=rate.reset_seconds if rate else 0,
        ),
    )


@router.post("/admin/presence/reconcile", response_model=Envelope, tags=["admin"])
async def reconcile_presence(credentials: Credentials = Depends(get_credentials)):
    runtime = get_runtime()
    _, report = await runtime.gateway.reconcile_presence(credentials)
    return Envelope(
        status="ok",
        data=ReconcileResponse(scanned=report.scanned, removed=report.removed, rooms=report.rooms),
    )

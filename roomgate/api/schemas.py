from __future__ import annotations

import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from roomgate.logging import get_correlation_id
from roomgate.service.validation import is_valid_username, normalize_username

MAX_PASSWORD_INPUT = 1024

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "blocked",
    "store_unavailable",
    "server_error",
})


def _strip_invisible(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_username(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    username = normalize_username(_strip_invisible(value))
    if not is_valid_username(username):
        raise ValueError(
            "username must be 3-30 characters, start with a letter, and use only letters, digits, '-' or '_'"
        )
    return username


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable reason")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RegisterRequest(BaseModel):
    username: str
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class TokenRequest(BaseModel):
    username: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class TokenRefreshRequest(BaseModel):
    username: str
    old_token: str = Field(..., min_length=1, max_length=256)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class PasswordLoginRequest(BaseModel):
    username: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    old_token: Optional[str] = Field(default=None, max_length=256)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class SetPasswordRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class TokenResponse(BaseModel):
    token: str
    username: str


class VerifyTokenResponse(BaseModel):
    valid: bool
    username: Optional[str] = None
    expired: bool = False
    expired_at: Optional[float] = None
    grace_until: Optional[float] = None


class PasswordStatusResponse(BaseModel):
    has_password: bool
    username: str


class TokenInfoResponse(BaseModel):
    masked_token: str
    issued_at: float
    is_current: bool


class TokenListResponse(BaseModel):
    tokens: List[TokenInfoResponse]
    count: int


class SuccessResponse(BaseModel):
    success: bool = True


class LogoutAllResponse(BaseModel):
    success: bool = True
    deleted_count: int


class PresenceResponse(BaseModel):
    room_id: str
    username: str
    recorded: bool = True


class PresenceUser(BaseModel):
    username: str
    last_seen_at: float


class RoomUsersResponse(BaseModel):
    room_id: str
    users: List[PresenceUser]
    count: int


class ReconcileResponse(BaseModel):
    scanned: int
    removed: int
    rooms: int


class ReplyQuotaResponse(BaseModel):
    identifier: str
    authenticated: bool
    limit: int
    remaining: int
    reset_seconds: int

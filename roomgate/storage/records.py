"""Typed records read back from the shared store.

Every ``decode`` returns ``None`` for malformed input so callers treat a
corrupted record exactly like a missing one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional


def _load_object(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _as_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return float(value)


@dataclass(frozen=True)
class ActiveToken:
    username: str
    token: str
    issued_at: float

    def encode(self) -> str:
        return json.dumps({"issued_at": self.issued_at})

    @classmethod
    def decode(cls, username: str, token: str, raw: Optional[str]) -> Optional["ActiveToken"]:
        payload = _load_object(raw)
        if payload is None:
            return None
        issued_at = _as_timestamp(payload.get("issued_at"))
        if issued_at is None:
            return None
        return cls(username=username, token=token, issued_at=issued_at)


@dataclass(frozen=True)
class GraceToken:
    """The single most recently retired token kept for a user."""

    username: str
    token: str
    expired_at: float

    def grace_until(self, grace_seconds: int) -> float:
        return self.expired_at + grace_seconds

    def encode(self) -> str:
        return json.dumps({"token": self.token, "expired_at": self.expired_at})

    @classmethod
    def decode(cls, username: str, raw: Optional[str]) -> Optional["GraceToken"]:
        payload = _load_object(raw)
        if payload is None:
            return None
        token = payload.get("token")
        expired_at = _as_timestamp(payload.get("expired_at"))
        if not isinstance(token, str) or not token or expired_at is None:
            return None
        return cls(username=username, token=token, expired_at=expired_at)


@dataclass(frozen=True)
class RateCounter:
    key: str
    count: int
    reset_seconds: int

    @classmethod
    def decode(cls, key: str, raw: Optional[str], ttl: int) -> Optional["RateCounter"]:
        """Counters are plain integers; anything else, or a missing key, is absent."""
        if raw is None or ttl == -2:
            return None
        try:
            count = int(raw)
        except ValueError:
            return None
        if count < 0:
            return None
        return cls(key=key, count=count, reset_seconds=max(0, ttl))


@dataclass(frozen=True)
class PresenceEntry:
    room_id: str
    username: str
    last_seen_at: float


@dataclass(frozen=True)
class UserRecord:
    username: str
    created_at: float

    def encode(self) -> str:
        return json.dumps({"username": self.username, "created_at": self.created_at})

    @classmethod
    def decode(cls, raw: Optional[str]) -> Optional["UserRecord"]:
        payload = _load_object(raw)
        if payload is None:
            return None
        username = payload.get("username")
        created_at = _as_timestamp(payload.get("created_at"))
        if not isinstance(username, str) or not username or created_at is None:
            return None
        return cls(username=username, created_at=created_at)

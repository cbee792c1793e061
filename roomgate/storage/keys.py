"""Key shapes for every record this layer keeps in the shared store."""

from __future__ import annotations

ACTIVE_TOKEN_PREFIX = "token:active:"
GRACE_TOKEN_PREFIX = "token:last:"
PRESENCE_PREFIX = "presence:"
PRESENCE_TTL_PREFIX = "presence:ttl:"
RECONCILE_LEASE_KEY = "lock:presence-reconcile"


def active_token(username: str, token: str) -> str:
    return f"{ACTIVE_TOKEN_PREFIX}{username}:{token}"


def active_tokens_for_user(username: str) -> str:
    return f"{ACTIVE_TOKEN_PREFIX}{username}:*"


def active_tokens_matching(token: str) -> str:
    return f"{ACTIVE_TOKEN_PREFIX}*:{token}"


def grace_token(username: str) -> str:
    return f"{GRACE_TOKEN_PREFIX}{username}"


def all_grace_tokens() -> str:
    return f"{GRACE_TOKEN_PREFIX}*"


def password(username: str) -> str:
    return f"password:{username}"


def rate_counter(action: str, scope: str, identifier: str) -> str:
    return f"ratelimit:{action}:{scope}:{identifier}"


def block(action: str, identifier: str) -> str:
    return f"block:{action}:{identifier}"


def presence(room_id: str) -> str:
    return f"{PRESENCE_PREFIX}{room_id}"


def presence_ttl(room_id: str, username: str) -> str:
    return f"{PRESENCE_TTL_PREFIX}{room_id}:{username}"


def all_presence() -> str:
    return f"{PRESENCE_PREFIX}*"


def room_count(room_id: str) -> str:
    return f"room:count:{room_id}"


def user(username: str) -> str:
    return f"user:{username}"


def split_active_token(key: str) -> tuple[str, str] | None:
    """Return ``(username, token)`` from an active-token key, or None."""
    if not key.startswith(ACTIVE_TOKEN_PREFIX):
        return None
    username, sep, token = key[len(ACTIVE_TOKEN_PREFIX):].partition(":")
    if not sep or not username or not token:
        return None
    return username, token


def room_from_presence_key(key: str) -> str | None:
    """Return the room id for a room live-set key; None for companion TTL keys."""
    if not key.startswith(PRESENCE_PREFIX) or key.startswith(PRESENCE_TTL_PREFIX):
        return None
    room_id = key[len(PRESENCE_PREFIX):]
    if not room_id or ":" in room_id:
        return None
    return room_id

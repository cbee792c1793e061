from __future__ import annotations

import ipaddress
import re
import unicodedata
from typing import Iterable, Mapping, Optional, Protocol

from roomgate.service.errors import ValidationError

USERNAME_PATTERN = re.compile(r"^[a-z](?:[a-z0-9]|[-_](?=[a-z0-9])){2,29}$")
ROOM_ID_PATTERN = re.compile(r"^[a-z0-9]+$")

LOCAL_CLIENT = "localhost-dev"
UNKNOWN_CLIENT = "unknown-ip"

_SEPARATORS = re.compile(r"[\s_\-.]+")
_LEET = str.maketrans({"$": "s", "@": "a", "0": "o", "1": "i", "!": "i", "3": "e", "4": "a", "5": "s", "7": "t"})
_FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


class ContentFilter(Protocol):
    def is_blocked(self, text: str) -> bool: ...


class TermListFilter:
    """Substring match against a configured term list.

    Input is folded before matching: separators are collapsed and common
    leetspeak digits and symbols are mapped back to letters.
    """

    MIN_TERM_LENGTH = 3

    def __init__(self, terms: Iterable[str] = ()) -> None:
        self.terms = sorted(
            {fold_for_filter(term) for term in terms if len(term.strip()) >= self.MIN_TERM_LENGTH}
        )

    def is_blocked(self, text: str) -> bool:
        folded = fold_for_filter(text)
        return any(term and term in folded for term in self.terms)


def fold_for_filter(text: str) -> str:
    lowered = unicodedata.normalize("NFKC", text).lower()
    return _SEPARATORS.sub("", lowered).translate(_LEET)


def normalize_username(value: str) -> str:
    return unicodedata.normalize("NFKC", value).strip().lower()


def is_valid_username(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(USERNAME_PATTERN.fullmatch(value))


def is_allowed_username(value: Optional[str], content_filter: Optional[ContentFilter] = None) -> bool:
    """Format check plus the content filter; used on every grace-path lookup."""
    if not is_valid_username(value):
        return False
    if content_filter is not None and content_filter.is_blocked(value or ""):
        return False
    return True


def require_username(value: Optional[str], content_filter: Optional[ContentFilter] = None) -> str:
    """Normalize and validate a username, raising ValidationError otherwise."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("username is required", detail={"field": "username"})
    username = normalize_username(value)
    if not is_valid_username(username):
        raise ValidationError(
            "username must be 3-30 characters, start with a letter, and use only letters, digits, '-' or '_'",
            detail={"field": "username"},
        )
    if content_filter is not None and content_filter.is_blocked(username):
        raise ValidationError("username is not allowed", detail={"field": "username"})
    return username


def require_room_id(value: Optional[str]) -> str:
    room_id = (value or "").strip().lower()
    if not ROOM_ID_PATTERN.fullmatch(room_id):
        raise ValidationError("invalid room id", detail={"field": "room_id"})
    return room_id


def require_password_length(password: Optional[str], *, min_length: int, max_length: int) -> str:
    if not isinstance(password, str):
        raise ValidationError("password is required", detail={"field": "password"})
    if len(password) < min_length:
        raise ValidationError(
            f"password must be at least {min_length} characters",
            detail={"field": "password", "min_length": min_length},
        )
    if len(password) > max_length:
        raise ValidationError(
            f"password must be at most {max_length} characters",
            detail={"field": "password", "max_length": max_length},
        )
    return password


def normalize_client_address(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Best-effort client address for anonymous rate-limit identifiers."""
    raw = ""
    for header in _FORWARDING_HEADERS:
        value = headers.get(header)
        if value and value.strip():
            raw = value
            break
    if not raw:
        raw = peer or ""
    address = raw.split(",")[0].strip()
    if not address:
        return UNKNOWN_CLIENT
    if address.lower().startswith("::ffff:"):
        address = address[len("::ffff:"):]
    try:
        if ipaddress.ip_address(address).is_loopback:
            return LOCAL_CLIENT
    except ValueError:
        if address.lower() == "localhost":
            return LOCAL_CLIENT
    return address.lower()

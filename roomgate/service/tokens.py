"""Session token lifecycle: Active -> Grace -> Invalid.

A user may hold many Active tokens at once, one per device. Each user also
has at most one Grace record: the most recently retired token, honored with
``expired=True`` until ``expired_at + grace_seconds``.
"""

from __future__ import annotations

import hmac
import re
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional

from roomgate.logging import get_logger, mask_token
from roomgate.service.errors import AuthenticationError
from roomgate.service.passwords import PasswordVault
from roomgate.service.validation import ContentFilter, is_allowed_username
from roomgate.storage import keys
from roomgate.storage.cursors import collect_keys, iter_key_batches
from roomgate.storage.records import ActiveToken, GraceToken
from roomgate.storage.shared_store import Clock, SharedStore

logger = get_logger(__name__)

TOKEN_BYTES = 32
_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def is_token_shaped(value: Optional[str]) -> bool:
    return bool(value) and bool(_TOKEN_PATTERN.fullmatch(value or ""))


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    expired: bool = False
    username: Optional[str] = None
    expired_at: Optional[float] = None
    grace_until: Optional[float] = None


INVALID = TokenValidation(valid=False)


@dataclass(frozen=True)
class TokenInfo:
    masked_token: str
    issued_at: float
    is_current: bool


class TokenLifecycleManager:
    def __init__(
        self,
        store: SharedStore,
        *,
        ttl_seconds: int,
        grace_seconds: int,
        vault: Optional[PasswordVault] = None,
        content_filter: Optional[ContentFilter] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self.vault = vault
        self.content_filter = content_filter
        self._clock: Clock = clock or time.time

    async def issue(self, username: str) -> str:
        """Store a fresh Active token; other tokens of the user are untouched."""
        token = secrets.token_hex(TOKEN_BYTES)
        record = ActiveToken(username=username, token=token, issued_at=self._clock())
        await self.store.set(
            keys.active_token(username, token), record.encode(), ex=self.ttl_seconds
        )
        logger.info("token_issued", username=username, masked_token=mask_token(token))
        return token

    async def validate(
        self, username: str, token: str, *, allow_expired: bool = False
    ) -> TokenValidation:
        if not username or not is_token_shaped(token):
            return INVALID
        key = keys.active_token(username, token)
        record = ActiveToken.decode(username, token, await self.store.get(key))
        if record is not None:
            await self.store.expire(key, self.ttl_seconds)
            return TokenValidation(valid=True, expired=False, username=username)
        if not allow_expired:
            return INVALID
        grace = GraceToken.decode(username, await self.store.get(keys.grace_token(username)))
        return self._check_grace(grace, token)

    async def lookup(self, token: str, *, allow_expired: bool = False) -> TokenValidation:
        """Resolve a bearer token whose owner was not supplied."""
        if not is_token_shaped(token):
            return INVALID
        async for batch in iter_key_batches(self.store, keys.active_tokens_matching(token)):
            for key in batch:
                parts = keys.split_active_token(key)
                if parts is None or parts[1] != token:
                    continue
                result = await self.validate(parts[0], token)
                if result.valid:
                    return result
        if not allow_expired:
            return INVALID
        async for batch in iter_key_batches(self.store, keys.all_grace_tokens()):
            raw_values = await self.store.mget(batch)
            for key, raw in zip(batch, raw_values):
                username = key[len(keys.GRACE_TOKEN_PREFIX):]
                result = self._check_grace(GraceToken.decode(username, raw), token)
                if result.valid:
                    return result
        return INVALID

    def _check_grace(self, grace: Optional[GraceToken], token: str) -> TokenValidation:
        if grace is None or not hmac.compare_digest(grace.token, token):
            return INVALID
        grace_until = grace.grace_until(self.grace_seconds)
        if self._clock() >= grace_until:
            return INVALID
        if not is_allowed_username(grace.username, self.content_filter):
            logger.warning("token_grace_username_rejected", username=grace.username)
            return INVALID
        return TokenValidation(
            valid=True,
            expired=True,
            username=grace.username,
            expired_at=grace.expired_at,
            grace_until=grace_until,
        )

    async def refresh(self, username: str, old_token: str) -> str:
        check = await self.validate(username, old_token, allow_expired=True)
        if not check.valid:
            raise AuthenticationError("invalid or expired token", detail={"reason": "invalid_token"})
        return await self._rotate(username, old_token)

    async def _rotate(self, username: str, old_token: str) -> str:
        # Order matters: grace record, then new token, then delete the old one.
        # For a token already in grace the delete is a no-op and its window restarts.
        retired = GraceToken(username=username, token=old_token, expired_at=self._clock())
        await self.store.set(
            keys.grace_token(username), retired.encode(), ex=self.grace_seconds
        )
        new_token = await self.issue(username)
        await self.store.delete(keys.active_token(username, old_token))
        logger.info(
            "token_rotated",
            username=username,
            retired_token=mask_token(old_token),
            masked_token=mask_token(new_token),
        )
        return new_token

    async def authenticate_with_password(
        self, username: str, password: str, *, old_token: Optional[str] = None
    ) -> str:
        """Issue a token on a correct password, retiring ``old_token`` if it is active."""
        if self.vault is None:
            raise RuntimeError("password authentication requires a PasswordVault")
        if not await self.vault.verify_password(username, password):
            logger.info("password_auth_failed", username=username)
            raise AuthenticationError(
                "invalid username or password", detail={"reason": "invalid_credentials"}
            )
        if is_token_shaped(old_token) and await self.store.exists(
            keys.active_token(username, old_token or "")
        ):
            return await self._rotate(username, old_token or "")
        return await self.issue(username)

    async def revoke(self, token: str, *, username: Optional[str] = None) -> bool:
        """Delete exactly one Active record. Returns False when none matched."""
        if not is_token_shaped(token):
            return False
        if username:
            targets = [keys.active_token(username, token)]
        else:
            targets = [
                key
                for key in await collect_keys(self.store, keys.active_tokens_matching(token))
                if (keys.split_active_token(key) or ("", ""))[1] == token
            ][:1]
        if not targets:
            return False
        removed = await self.store.delete(*targets)
        logger.info("token_revoked", masked_token=mask_token(token), removed=removed)
        return removed > 0

    async def revoke_all(self, username: str) -> int:
        """Delete every Active token of the user. The Grace record is kept."""
        active_keys = await collect_keys(self.store, keys.active_tokens_for_user(username))
        if not active_keys:
            return 0
        removed = await self.store.delete(*active_keys)
        logger.info("tokens_revoked_all", username=username, removed=removed)
        return removed

    async def list_active(
        self, username: str, *, current_token: Optional[str] = None
    ) -> List[TokenInfo]:
        active_keys = await collect_keys(self.store, keys.active_tokens_for_user(username))
        if not active_keys:
            return []
        raw_values = await self.store.mget(active_keys)
        tokens: List[TokenInfo] = []
        for key, raw in zip(active_keys, raw_values):
            parts = keys.split_active_token(key)
            if parts is None or parts[0] != username:
                continue
            record = ActiveToken.decode(parts[0], parts[1], raw)
            if record is None:
                continue
            is_current = bool(current_token) and hmac.compare_digest(
                record.token, current_token or ""
            )
            tokens.append(
                TokenInfo(
                    masked_token=mask_token(record.token),
                    issued_at=record.issued_at,
                    is_current=is_current,
                )
            )
        tokens.sort(key=lambda info: info.issued_at, reverse=True)
        return tokens

from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from roomgate.logging import get_logger
from roomgate.service.validation import require_password_length
from roomgate.storage import keys
from roomgate.storage.shared_store import SharedStore

logger = get_logger(__name__)


class PasswordVault:
    """Argon2id password hashes, one record per username."""

    def __init__(
        self,
        store: SharedStore,
        *,
        min_length: int = 8,
        max_length: int = 128,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.store = store
        self.min_length = min_length
        self.max_length = max_length
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    async def set_password(self, username: str, plaintext: str) -> None:
        require_password_length(
            plaintext, min_length=self.min_length, max_length=self.max_length
        )
        digest = await asyncio.to_thread(self._hasher.hash, plaintext)
        await self.store.set(keys.password(username), digest)
        logger.info("password_set", username=username)

    async def verify_password(self, username: str, plaintext: str) -> bool:
        """Return False for a wrong password, a missing record, or a corrupt hash."""
        if not isinstance(plaintext, str) or not plaintext:
            return False
        digest = await self.store.get(keys.password(username))
        if not digest:
            return False
        try:
            return await asyncio.to_thread(self._hasher.verify, digest, plaintext)
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", username=username)
            return False

    async def has_password(self, username: str) -> bool:
        return bool(await self.store.exists(keys.password(username)))

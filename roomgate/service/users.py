from __future__ import annotations

import time
from typing import Optional

from roomgate.logging import get_logger
from roomgate.service.errors import ConflictError
from roomgate.storage import keys
from roomgate.storage.records import UserRecord
from roomgate.storage.shared_store import Clock, SharedStore

logger = get_logger(__name__)


class UserDirectory:
    """Registry of known usernames. Records are never deleted by this layer."""

    def __init__(self, store: SharedStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock: Clock = clock or time.time

    async def exists(self, username: str) -> bool:
        return bool(await self.store.exists(keys.user(username)))

    async def get(self, username: str) -> Optional[UserRecord]:
        return UserRecord.decode(await self.store.get(keys.user(username)))

    async def create(self, username: str) -> UserRecord:
        record = UserRecord(username=username, created_at=self._clock())
        created = await self.store.set(keys.user(username), record.encode(), nx=True)
        if not created:
            raise ConflictError("username already taken", detail={"username": username})
        logger.info("user_created", username=username)
        return record

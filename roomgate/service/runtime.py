from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from roomgate.config import Settings, get_settings, reset_settings_cache
from roomgate.logging import get_logger
from roomgate.service.gateway import AdmissionGateway, build_policies
from roomgate.service.passwords import PasswordVault
from roomgate.service.presence import PresenceReconciler, PresenceTracker
from roomgate.service.rate_limit import RateLimiter
from roomgate.service.tokens import TokenLifecycleManager
from roomgate.service.users import UserDirectory
from roomgate.service.validation import TermListFilter
from roomgate.storage.memory import MemorySharedStore
from roomgate.storage.redis_store import RedisSharedStore
from roomgate.storage.shared_store import Clock, SharedStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a store URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> SharedStore:
    """Connect to Redis, or fall back to the in-memory store where allowed."""
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemorySharedStore()

    redis_error: Exception | None = None
    if settings.redis_url:
        store = RedisSharedStore(settings.redis_url, timeout=settings.store_timeout_seconds)
        try:
            store.verify_connection()
            logger.info(
                "runtime_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return store
        except RedisError as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for tokens, rate limits and presence; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a single-instance fallback."
        ) from redis_error

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message="Running on the in-memory store; state is not shared between instances.",
    )
    return MemorySharedStore()


class Runtime:
    """Wires each component to one injected store."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[SharedStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: SharedStore = store if store is not None else build_store(self.settings)
        self.content_filter = TermListFilter(self.settings.blocked_username_terms)
        self.passwords = PasswordVault(
            self.store,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        self.limiter = RateLimiter(self.store)
        self.tokens = TokenLifecycleManager(
            self.store,
            ttl_seconds=self.settings.token_ttl_seconds,
            grace_seconds=self.settings.token_grace_seconds,
            vault=self.passwords,
            content_filter=self.content_filter,
            clock=clock,
        )
        self.presence = PresenceTracker(
            self.store, ttl_seconds=self.settings.presence_ttl_seconds, clock=clock
        )
        self.users = UserDirectory(self.store, clock=clock)
        self.gateway = AdmissionGateway(
            tokens=self.tokens,
            limiter=self.limiter,
            passwords=self.passwords,
            presence=self.presence,
            users=self.users,
            policies=build_policies(self.settings),
            block_seconds=self.settings.block_seconds,
            admin_usernames=self.settings.admin_usernames,
            content_filter=self.content_filter,
        )
        self.reconciler = PresenceReconciler(
            self.presence, interval_seconds=self.settings.presence_reconcile_interval_seconds
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            token_ttl_seconds=self.settings.token_ttl_seconds,
            token_grace_seconds=self.settings.token_grace_seconds,
            presence_ttl_seconds=self.settings.presence_ttl_seconds,
        )

    async def close(self) -> None:
        await self.reconciler.stop()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisSharedStore):
            try:
                asyncio.run(runtime.store.close())
            except (RuntimeError, RedisError) as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

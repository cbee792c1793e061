"""Admission policy facade in front of tokens, passwords, limits and presence.

Every HTTP action passes through :meth:`AdmissionGateway.admit`, which applies
the static policy table in this order:

1. resolve the caller's principal from a bearer token, without rejecting yet
2. for sensitive actions: reject blocked identifiers, count the hit, and
   escalate to a block where the action is configured to
3. reject protected actions without a valid principal
4. reject admin actions for non-admin principals

Request validation always runs before ``admit`` so malformed input never
consumes a rate-limit slot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from roomgate.config import Settings
from roomgate.logging import get_logger, mask_token
from roomgate.service.errors import (
    AuthenticationError,
    AuthorizationError,
    BlockedError,
    NotFoundError,
    RateLimitedError,
)
from roomgate.service.passwords import PasswordVault
from roomgate.service.presence import PresenceTracker, ReconcileReport
from roomgate.service.rate_limit import RateLimiter, RateLimitResult, RateLimitRule
from roomgate.service.tokens import TokenInfo, TokenLifecycleManager, TokenValidation
from roomgate.service.users import UserDirectory
from roomgate.service.validation import (
    UNKNOWN_CLIENT,
    ContentFilter,
    is_valid_username,
    normalize_username,
    require_password_length,
    require_room_id,
    require_username,
)
from roomgate.storage.errors import StoreUnavailableError
from roomgate.storage.records import PresenceEntry

logger = get_logger(__name__)

IDENTITY_PRINCIPAL = "principal"
IDENTITY_SUBJECT = "subject"
IDENTITY_CLIENT = "client"


@dataclass(frozen=True)
class ActionPolicy:
    name: str
    requires_auth: bool = False
    sensitive: bool = False
    escalate: bool = False
    admin_only: bool = False
    fail_open: bool = False
    identity: str = IDENTITY_CLIENT
    rule: Optional[RateLimitRule] = None
    anonymous_rule: Optional[RateLimitRule] = None

    def rule_for(self, authenticated: bool) -> Optional[RateLimitRule]:
        if not authenticated and self.anonymous_rule is not None:
            return self.anonymous_rule
        return self.rule


@dataclass(frozen=True)
class Credentials:
    token: Optional[str] = None
    username: Optional[str] = None
    client_address: str = UNKNOWN_CLIENT


@dataclass(frozen=True)
class Admission:
    action: str
    identifier: str
    username: Optional[str] = None
    rate: Optional[RateLimitResult] = None


@dataclass(frozen=True)
class RoomSnapshot:
    room_id: str
    users: List[PresenceEntry] = field(default_factory=list)
    count: int = 0


def _rule(settings: Settings, action: str, window: int, limit: int, scope: str) -> RateLimitRule:
    window_seconds, resolved_limit = settings.rate_limit(action, (window, limit))
    return RateLimitRule(window_seconds, resolved_limit, scope)


def build_policies(settings: Settings) -> Dict[str, ActionPolicy]:
    """Static action table with limits resolved from settings."""

    def token_rule(action: str) -> RateLimitRule:
        return _rule(
            settings, action, settings.token_rate_window_seconds, settings.token_rate_limit, "burst"
        )

    policies = [
        ActionPolicy(
            "createUser",
            sensitive=True,
            escalate=True,
            identity=IDENTITY_CLIENT,
            rule=_rule(
                settings,
                "createUser",
                settings.register_rate_window_seconds,
                settings.register_rate_limit,
                "burst",
            ),
        ),
        ActionPolicy(
            "generateToken", sensitive=True, identity=IDENTITY_SUBJECT, rule=token_rule("generateToken")
        ),
        ActionPolicy(
            "refreshToken", sensitive=True, identity=IDENTITY_SUBJECT, rule=token_rule("refreshToken")
        ),
        ActionPolicy(
            "authenticateWithPassword",
            sensitive=True,
            identity=IDENTITY_SUBJECT,
            rule=_rule(
                settings,
                "authenticateWithPassword",
                settings.password_auth_rate_window_seconds,
                settings.password_auth_rate_limit,
                "burst",
            ),
        ),
        ActionPolicy(
            "generateReply",
            sensitive=True,
            identity=IDENTITY_PRINCIPAL,
            rule=_rule(
                settings,
                "generateReply",
                settings.reply_rate_window_seconds,
                settings.reply_rate_limit,
                "5h",
            ),
            anonymous_rule=_rule(
                settings,
                "generateReplyAnonymous",
                settings.anonymous_reply_rate_window_seconds,
                settings.anonymous_reply_rate_limit,
                "day",
            ),
        ),
        ActionPolicy("verifyToken"),
        ActionPolicy("roomUsers"),
        ActionPolicy("setPassword", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("checkPassword", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("listTokens", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("logoutAllDevices", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("logoutCurrent", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("joinRoom", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("leaveRoom", requires_auth=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy("heartbeat", requires_auth=True, fail_open=True, identity=IDENTITY_PRINCIPAL),
        ActionPolicy(
            "reconcilePresence", requires_auth=True, admin_only=True, identity=IDENTITY_PRINCIPAL
        ),
    ]
    return {policy.name: policy for policy in policies}


class AdmissionGateway:
    def __init__(
        self,
        *,
        tokens: TokenLifecycleManager,
        limiter: RateLimiter,
        passwords: PasswordVault,
        presence: PresenceTracker,
        users: UserDirectory,
        policies: Dict[str, ActionPolicy],
        block_seconds: int,
        admin_usernames: Iterable[str] = (),
        content_filter: Optional[ContentFilter] = None,
    ) -> None:
        self.tokens = tokens
        self.limiter = limiter
        self.passwords = passwords
        self.presence = presence
        self.users = users
        self.policies = policies
        self.block_seconds = block_seconds
        self.admin_usernames: Set[str] = {name.lower() for name in admin_usernames}
        self.content_filter = content_filter

    # -- admission ----------------------------------------------------------

    async def admit(
        self, action: str, credentials: Credentials, *, subject: Optional[str] = None
    ) -> Admission:
        policy = self.policies.get(action)
        if policy is None:
            raise KeyError(f"no admission policy for action {action!r}")

        principal: Optional[str] = None
        if policy.requires_auth or policy.identity == IDENTITY_PRINCIPAL:
            principal = await self._resolve_principal(credentials)

        if policy.identity == IDENTITY_SUBJECT and subject:
            identifier = subject
        elif policy.identity == IDENTITY_PRINCIPAL and principal:
            identifier = principal
        else:
            identifier = credentials.client_address or UNKNOWN_CLIENT

        rate = None
        if policy.sensitive:
            rate = await self._enforce_limits(policy, identifier, authenticated=principal is not None)

        if policy.requires_auth and principal is None:
            raise AuthenticationError(
                "authentication required", detail={"reason": "invalid_token"}
            )
        if policy.admin_only and principal not in self.admin_usernames:
            logger.warning("admission_forbidden", action=action, username=principal)
            raise AuthorizationError("admin access required")
        return Admission(action=action, identifier=identifier, username=principal, rate=rate)

    async def _resolve_principal(self, credentials: Credentials) -> Optional[str]:
        if not credentials.token or not credentials.username:
            return None
        username = normalize_username(credentials.username)
        if not is_valid_username(username):
            return None
        result = await self.tokens.validate(username, credentials.token, allow_expired=False)
        return username if result.valid else None

    async def _enforce_limits(
        self, policy: ActionPolicy, identifier: str, *, authenticated: bool
    ) -> Optional[RateLimitResult]:
        rule = policy.rule_for(authenticated)
        if await self.limiter.is_blocked(policy.name, identifier):
            retry_after = await self.limiter.block_remaining(policy.name, identifier)
            counter = await self.limiter.peek(policy.name, identifier, rule) if rule else None
            logger.warning(
                "admission_blocked",
                action=policy.name,
                identifier=identifier,
                window_count=counter.count if counter else 0,
            )
            raise BlockedError(
                "too many attempts; try again later",
                limit=rule.limit if rule else 0,
                retry_after=retry_after or self.block_seconds,
            )
        if rule is None:
            return None
        result = await self.limiter.check_rule(policy.name, identifier, rule)
        if result.allowed:
            return result
        if policy.escalate:
            await self.limiter.set_block(policy.name, identifier, self.block_seconds)
            raise BlockedError(
                "too many attempts; blocked for an extended period",
                limit=result.limit,
                retry_after=self.block_seconds,
            )
        raise RateLimitedError(
            "too many requests", limit=result.limit, retry_after=result.reset_seconds
        )

    # -- token actions ------------------------------------------------------

    async def register(
        self, credentials: Credentials, username: str, password: str
    ) -> Tuple[Admission, str, str]:
        username = require_username(username, self.content_filter)
        require_password_length(
            password,
            min_length=self.passwords.min_length,
            max_length=self.passwords.max_length,
        )
        admission = await self.admit("createUser", credentials)
        await self.users.create(username)
        await self.passwords.set_password(username, password)
        token = await self.tokens.issue(username)
        return admission, username, token

    async def generate_token(self, credentials: Credentials, username: str) -> Tuple[Admission, str]:
        username = require_username(username)
        admission = await self.admit("generateToken", credentials, subject=username)
        if not await self.users.exists(username):
            raise NotFoundError("user not found", detail={"username": username})
        return admission, await self.tokens.issue(username)

    async def refresh_token(
        self, credentials: Credentials, username: str, old_token: str
    ) -> Tuple[Admission, str]:
        username = require_username(username)
        admission = await self.admit("refreshToken", credentials, subject=username)
        if not await self.users.exists(username):
            raise NotFoundError("user not found", detail={"username": username})
        return admission, await self.tokens.refresh(username, old_token)

    async def verify_token(self, token: Optional[str], username: Optional[str]) -> TokenValidation:
        await self.admit("verifyToken", Credentials())
        if not token:
            raise AuthenticationError("token required", detail={"reason": "missing_token"})
        if username:
            result = await self.tokens.validate(
                normalize_username(username), token, allow_expired=True
            )
        else:
            result = await self.tokens.lookup(token, allow_expired=True)
        if not result.valid:
            raise AuthenticationError("invalid token", detail={"reason": "invalid_token"})
        return result

    async def authenticate_with_password(
        self,
        credentials: Credentials,
        username: str,
        password: str,
        old_token: Optional[str] = None,
    ) -> Tuple[Admission, str, str]:
        username = require_username(username)
        admission = await self.admit("authenticateWithPassword", credentials, subject=username)
        token = await self.tokens.authenticate_with_password(
            username, password, old_token=old_token
        )
        return admission, username, token

    async def set_password(self, credentials: Credentials, password: str) -> Admission:
        require_password_length(
            password,
            min_length=self.passwords.min_length,
            max_length=self.passwords.max_length,
        )
        admission = await self.admit("setPassword", credentials)
        await self.passwords.set_password(admission.username or "", password)
        return admission

    async def check_password(self, credentials: Credentials) -> Tuple[Admission, bool]:
        admission = await self.admit("checkPassword", credentials)
        return admission, await self.passwords.has_password(admission.username or "")

    async def list_tokens(self, credentials: Credentials) -> Tuple[Admission, List[TokenInfo]]:
        admission = await self.admit("listTokens", credentials)
        tokens = await self.tokens.list_active(
            admission.username or "", current_token=credentials.token
        )
        return admission, tokens

    async def logout_all(self, credentials: Credentials) -> Tuple[Admission, int]:
        admission = await self.admit("logoutAllDevices", credentials)
        return admission, await self.tokens.revoke_all(admission.username or "")

    async def logout_current(self, credentials: Credentials) -> Admission:
        admission = await self.admit("logoutCurrent", credentials)
        await self.tokens.revoke(credentials.token or "", username=admission.username)
        logger.info(
            "logout_current", username=admission.username, masked_token=mask_token(credentials.token)
        )
        return admission

    # -- presence actions ---------------------------------------------------

    async def join_room(self, credentials: Credentials, room_id: str) -> Admission:
        room_id = require_room_id(room_id)
        admission = await self.admit("joinRoom", credentials)
        await self.presence.mark_present(room_id, admission.username or "")
        logger.info("presence_joined", room_id=room_id, username=admission.username)
        return admission

    async def leave_room(self, credentials: Credentials, room_id: str) -> Admission:
        room_id = require_room_id(room_id)
        admission = await self.admit("leaveRoom", credentials)
        await self.presence.mark_absent(room_id, admission.username or "")
        return admission

    async def heartbeat(self, credentials: Credentials, room_id: str) -> Tuple[Admission, bool]:
        """Refresh presence; a store failure on the write is logged and tolerated."""
        room_id = require_room_id(room_id)
        admission = await self.admit("heartbeat", credentials)
        try:
            await self.presence.mark_present(room_id, admission.username or "")
        except StoreUnavailableError as exc:
            if not self.policies["heartbeat"].fail_open:
                raise
            logger.warning(
                "presence_heartbeat_dropped",
                room_id=room_id,
                username=admission.username,
                error=exc.message,
            )
            return admission, False
        return admission, True

    async def room_users(self, room_id: str) -> RoomSnapshot:
        room_id = require_room_id(room_id)
        await self.admit("roomUsers", Credentials())
        entries = await self.presence.entries(room_id)
        count = await self.presence.room_count(room_id)
        if count != len(entries):
            logger.info("presence_count_resynced", room_id=room_id, cached=count, live=len(entries))
            count = await self.presence.refresh_count(room_id)
        return RoomSnapshot(room_id=room_id, users=entries, count=count)

    async def reconcile_presence(self, credentials: Credentials) -> Tuple[Admission, ReconcileReport]:
        admission = await self.admit("reconcilePresence", credentials)
        return admission, await self.presence.reconcile()

    async def admit_reply(self, credentials: Credentials) -> Admission:
        """Charge one AI-authored reply against the caller's budget."""
        return await self.admit("generateReply", credentials)

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from lockbox.config import Settings
from lockbox.logging import get_logger
from lockbox.service.audit import AuditTrail, SecurityEvent
from lockbox.service.errors import ErrorKind, Outcome, transient_as_outcome
from lockbox.service.lockout import LockoutTracker, LockState
from lockbox.service.passwords import PasswordService
from lockbox.service.tokens import TokenIssuer, TokenPair
from lockbox.service.two_factor import CodeKind, TwoFactorEngine
from lockbox.storage.crypto import hash_token
from lockbox.storage.local_cache import LocalTTLCache
from lockbox.storage.models import User
from lockbox.storage.redis_cache import challenge_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    user_id: str
    tokens: Optional[TokenPair] = None
    requires_2fa: bool = False
    temp_token: Optional[str] = None
    expires_in: Optional[int] = None


class AuthService:
    """Password login with lockout, the optional second factor step, and user creation."""

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        passwords: PasswordService,
        lockout: LockoutTracker,
        two_factor: TwoFactorEngine,
        tokens: TokenIssuer,
        audit: AuditTrail,
        fallback: Optional[LocalTTLCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.passwords = passwords
        self.lockout = lockout
        self.two_factor = two_factor
        self.tokens = tokens
        self.audit = audit
        self.fallback = fallback or LocalTTLCache()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # two-factor challenges

    async def _store_challenge(self, digest: str, payload: dict, ttl: int) -> None:
        if self.cache is not None:
            try:
                await self.cache.set_two_factor_challenge(digest, payload, ttl)
                return
            except Exception as exc:
                self.logger.warning("challenge_cache_write_failed", error=str(exc))
        self.fallback.set(challenge_key(digest), payload, ttl)

    async def _read_challenge(self, digest: str) -> Optional[dict]:
        if self.cache is not None:
            try:
                payload = await self.cache.get_two_factor_challenge(digest)
            except Exception as exc:
                self.logger.warning("challenge_cache_read_failed", error=str(exc))
            else:
                if payload is not None:
                    return payload
        return self.fallback.get(challenge_key(digest))

    async def _consume_challenge(self, digest: str) -> Optional[dict]:
        payload = None
        if self.cache is not None:
            try:
                payload = await self.cache.pop_two_factor_challenge(digest)
            except Exception as exc:
                self.logger.warning("challenge_cache_pop_failed", error=str(exc))
        local = self.fallback.pop(challenge_key(digest))
        return payload or local

    # login

    async def _blocked(self, user: User, lock: LockState) -> Outcome[LoginResult]:
        await self.audit.record(
            SecurityEvent.LOGIN_BLOCKED,
            user_id=user.id,
            tenant_id=user.tenant_id,
            retry_after_seconds=lock.retry_after_seconds,
        )
        return Outcome.fail(
            ErrorKind.ACCOUNT_LOCKED,
            "account temporarily locked",
            retry_after_seconds=lock.retry_after_seconds,
        )

    @transient_as_outcome
    async def login(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        scope: Optional[str | Sequence[str]] = None,
    ) -> Outcome[LoginResult]:
        email = (email or "").strip().lower()
        tenant = tenant_id or self.settings.default_tenant_id
        client = client_id or self.settings.default_client_id
        user = await asyncio.to_thread(self.store.get_user_by_email, email, tenant_id=tenant)
        if user is None or not user.is_active:
            await self.audit.record(
                SecurityEvent.LOGIN_FAILED,
                user_id=user.id if user else None,
                tenant_id=tenant,
                reason="inactive_user" if user else "unknown_user",
            )
            return Outcome.fail(ErrorKind.INVALID_CREDENTIALS, "invalid email or password")

        lock = await self.lockout.reserve_attempt(user.id)
        if lock.refused:
            return await self._blocked(user, lock)

        password_ok = await asyncio.to_thread(self.passwords.verify_password, user.id, password)
        if not password_ok:
            state = self.lockout.confirm_failure(user.id, lock)
            await self.audit.record(
                SecurityEvent.LOGIN_FAILED,
                user_id=user.id,
                tenant_id=user.tenant_id,
                reason="bad_password",
                failed_attempts=state.failed_attempts,
            )
            if state.just_locked:
                await self.audit.record(
                    SecurityEvent.ACCOUNT_LOCKED,
                    user_id=user.id,
                    tenant_id=user.tenant_id,
                    locked_until=state.locked_until.isoformat() if state.locked_until else None,
                )
            return Outcome.fail(ErrorKind.INVALID_CREDENTIALS, "invalid email or password")

        # a lock set by a concurrent failure while we compared still applies
        after = await self.lockout.record_success(user.id, lock)
        if after.locked:
            return await self._blocked(user, after)

        if await self.two_factor.is_enabled(user.id):
            temp_token = secrets.token_urlsafe(32)
            ttl = self.settings.two_factor_challenge_ttl_seconds
            await self._store_challenge(
                hash_token(temp_token),
                {
                    "user_id": user.id,
                    "tenant_id": user.tenant_id,
                    "client_id": client,
                    "scope": list(scope) if scope and not isinstance(scope, str) else scope,
                },
                ttl,
            )
            self.logger.info("login_two_factor_required", user_id=user.id)
            return Outcome.success(
                LoginResult(user_id=user.id, requires_2fa=True, temp_token=temp_token, expires_in=ttl)
            )

        return await self._finish_login(user.id, user.tenant_id, client, scope, method="password")

    async def _finish_login(
        self,
        user_id: str,
        tenant_id: str,
        client_id: str,
        scope: Optional[str | Sequence[str]],
        *,
        method: str,
    ) -> Outcome[LoginResult]:
        issued = await self.tokens.issue(client_id, user_id, scope, tenant_id)
        if not issued.ok:
            return Outcome(failure=issued.failure)
        await self.audit.record(
            SecurityEvent.LOGIN_SUCCESS,
            user_id=user_id,
            tenant_id=tenant_id,
            client_id=client_id,
            method=method,
        )
        self.logger.info("login_success", user_id=user_id, method=method)
        return Outcome.success(LoginResult(user_id=user_id, tokens=issued.value))

    @transient_as_outcome
    async def complete_two_factor_login(
        self, temp_token: str, code: str, kind: CodeKind | str = CodeKind.TOTP
    ) -> Outcome[LoginResult]:
        digest = hash_token(temp_token or "")
        challenge = await self._read_challenge(digest)
        if not challenge or not challenge.get("user_id"):
            return Outcome.fail(ErrorKind.INVALID_2FA_TOKEN, "two-factor token is invalid or expired")
        user_id = challenge["user_id"]
        tenant_id = challenge.get("tenant_id") or self.settings.default_tenant_id
        verified = await self.two_factor.verify_login(user_id, code, kind, tenant_id=tenant_id)
        if not verified.ok:
            failure = verified.failure
            if failure.kind in (ErrorKind.TWO_FACTOR_LOCKED, ErrorKind.UNAVAILABLE):
                return Outcome(failure=failure)
            if failure.kind is ErrorKind.TWO_FACTOR_NOT_ENABLED:
                await self._consume_challenge(digest)
            return Outcome.fail(
                ErrorKind.INVALID_2FA_TOKEN, "invalid two-factor code", **failure.detail
            )
        if await self._consume_challenge(digest) is None:
            return Outcome.fail(ErrorKind.INVALID_2FA_TOKEN, "two-factor token is invalid or expired")
        return await self._finish_login(
            user_id,
            tenant_id,
            challenge.get("client_id") or self.settings.default_client_id,
            challenge.get("scope"),
            method=f"2fa_{verified.value.method.value}",
        )

    async def create_user(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user = await asyncio.to_thread(
            self.store.create_user,
            email.strip().lower(),
            tenant_id=tenant_id or self.settings.default_tenant_id,
            role=role,
        )
        await asyncio.to_thread(self.passwords.save_password, user.id, password)
        self.logger.info("user_created", user_id=user.id, tenant_id=user.tenant_id)
        return user

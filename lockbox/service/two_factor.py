from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from lockbox.config import Settings
from lockbox.logging import get_logger
from lockbox.service import totp
from lockbox.service.audit import AuditTrail, SecurityEvent
from lockbox.service.errors import ErrorKind, Outcome, transient_as_outcome
from lockbox.service.lockout import LockoutTracker
from lockbox.service.passwords import PasswordService
from lockbox.storage.models import AccountSecurity, TwoFactorState

logger = get_logger(__name__)


class CodeKind(str, Enum):
    TOTP = "totp"
    BACKUP = "backup"


@dataclass(frozen=True)
class SetupResult:
    secret: str
    enrollment_uri: str
    backup_codes: List[str]
    expires_at: datetime


@dataclass(frozen=True)
class VerificationResult:
    method: CodeKind
    remaining_backup_codes: int


@dataclass(frozen=True)
class TwoFactorStatus:
    state: TwoFactorState
    remaining_backup_codes: int
    setup_expires_at: Optional[datetime]
    last_verified_at: Optional[datetime]


class TwoFactorEngine:
    """TOTP enrollment and verification with single-use backup codes.

    State lives on the account security record and moves
    DISABLED -> PENDING -> ENABLED. Every transition runs inside
    ``store.update_account_security`` so concurrent requests for the same
    account see a consistent record; audit events are written after commit.
    """

    def __init__(
        self,
        store,
        audit: AuditTrail,
        passwords: PasswordService,
        settings: Settings,
        *,
        lockout: Optional[LockoutTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.passwords = passwords
        self.settings = settings
        self.lockout = lockout
        self.setup_window = timedelta(minutes=settings.two_factor_setup_window_minutes)
        self.lock_duration = timedelta(minutes=settings.two_factor_lock_minutes)
        self.backup_codes = totp.BackupCodeHasher(
            time_cost=settings.backup_code_hash_time_cost,
            memory_cost=settings.backup_code_hash_memory_kib,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _setup_expired(self, record: AccountSecurity, now: datetime) -> bool:
        started = record.two_factor_setup_started_at
        return started is None or now - started > self.setup_window

    def _check_totp(self, secret: Optional[str], code: str, now: datetime) -> bool:
        if not secret:
            return False
        return totp.verify_code(
            secret,
            code,
            now.timestamp(),
            drift_steps=self.settings.totp_drift_steps,
            interval=self.settings.totp_interval_seconds,
            digits=self.settings.totp_digits,
        )

    @transient_as_outcome
    async def begin_setup(self, user_id: str, account_name: str, *, tenant_id: str = "public") -> Outcome[SetupResult]:
        now = self._now()
        secret = totp.generate_secret()
        codes = self.backup_codes.generate(self.settings.backup_code_count)
        # argon2 is slow; hash before entering the locked section
        hashes = await asyncio.to_thread(self.backup_codes.hash_all, codes)

        def mutate(record: AccountSecurity) -> Outcome[SetupResult]:
            if record.two_factor_enabled:
                return Outcome.fail(ErrorKind.CONFLICT, "two-factor authentication is already enabled")
            if record.two_factor_pending_verification and not self._setup_expired(record, now):
                return Outcome.fail(ErrorKind.CONFLICT, "two-factor setup is already in progress")
            record.clear_two_factor()
            record.two_factor_secret = secret
            record.two_factor_pending_verification = True
            record.two_factor_setup_started_at = now
            record.two_factor_backup_codes = list(hashes)
            return Outcome.success(
                SetupResult(
                    secret=secret,
                    enrollment_uri=totp.provisioning_uri(secret, account_name, self.settings.totp_issuer),
                    backup_codes=codes,
                    expires_at=now + self.setup_window,
                )
            )

        outcome = await asyncio.to_thread(self.store.update_account_security, user_id, mutate)
        if outcome.ok:
            logger.info("two_factor_setup_started", user_id=user_id)
            await self.audit.record(SecurityEvent.TWO_FACTOR_SETUP_STARTED, user_id=user_id, tenant_id=tenant_id)
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_BACKUP_CODES_GENERATED,
                user_id=user_id,
                tenant_id=tenant_id,
                count=len(codes),
            )
        return outcome

    @transient_as_outcome
    async def verify_setup(self, user_id: str, code: str, *, tenant_id: str = "public") -> Outcome[None]:
        now = self._now()
        max_attempts = self.settings.two_factor_setup_max_attempts

        def mutate(record: AccountSecurity) -> Outcome[None]:
            if record.two_factor_enabled or not record.two_factor_pending_verification:
                return Outcome.fail(ErrorKind.SETUP_NOT_STARTED, "no two-factor setup in progress")
            if self._setup_expired(record, now):
                record.clear_two_factor()
                return Outcome.fail(ErrorKind.SETUP_EXPIRED, "two-factor setup expired; start again")
            if record.two_factor_verification_attempts >= max_attempts:
                return Outcome.fail(ErrorKind.TOO_MANY_ATTEMPTS, "too many invalid codes; cancel and start again")
            if self._check_totp(record.two_factor_secret, code, now):
                record.two_factor_enabled = True
                record.two_factor_pending_verification = False
                record.two_factor_setup_started_at = None
                record.two_factor_verification_attempts = 0
                record.two_factor_last_failed_attempt = None
                record.two_factor_last_verified_at = now
                return Outcome.success(None)
            record.two_factor_verification_attempts += 1
            record.two_factor_last_failed_attempt = now
            remaining = max(0, max_attempts - record.two_factor_verification_attempts)
            return Outcome.fail(ErrorKind.INVALID_CODE, "invalid verification code", attempts_remaining=remaining)

        outcome = await asyncio.to_thread(self.store.update_account_security, user_id, mutate)
        if outcome.ok:
            logger.info("two_factor_enabled", user_id=user_id)
            await self.audit.record(SecurityEvent.TWO_FACTOR_ENABLED, user_id=user_id, tenant_id=tenant_id)
        elif outcome.failure.kind is ErrorKind.SETUP_EXPIRED:
            await self.audit.record(SecurityEvent.TWO_FACTOR_SETUP_EXPIRED, user_id=user_id, tenant_id=tenant_id)
        elif outcome.failure.kind is ErrorKind.INVALID_CODE:
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_SETUP_FAILED,
                user_id=user_id,
                tenant_id=tenant_id,
                attempts_remaining=outcome.failure.detail.get("attempts_remaining"),
            )
            if outcome.failure.detail.get("attempts_remaining") == 0:
                await self.audit.record(SecurityEvent.TWO_FACTOR_SETUP_LOCKED, user_id=user_id, tenant_id=tenant_id)
        return outcome

    @transient_as_outcome
    async def verify_login(
        self,
        user_id: str,
        code: str,
        kind: CodeKind | str = CodeKind.TOTP,
        *,
        tenant_id: str = "public",
    ) -> Outcome[VerificationResult]:
        now = self._now()
        method = CodeKind(kind)
        max_failures = self.settings.two_factor_max_failures
        matched_hash = None
        if method is CodeKind.BACKUP:
            # argon2 runs against a snapshot; the mutator only confirms and removes the hash
            snapshot = await asyncio.to_thread(self.store.get_account_security, user_id)
            index = await asyncio.to_thread(
                self.backup_codes.find, snapshot.two_factor_backup_codes, code
            )
            if index is not None:
                matched_hash = snapshot.two_factor_backup_codes[index]

        def mutate(record: AccountSecurity) -> Outcome[VerificationResult]:
            if not record.two_factor_enabled:
                return Outcome.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor authentication is not enabled")
            if record.two_factor_verification_attempts >= max_failures:
                last = record.two_factor_last_failed_attempt
                if last is not None and now - last < self.lock_duration:
                    retry_after = max(1, int((last + self.lock_duration - now).total_seconds() + 0.999))
                    return Outcome.fail(
                        ErrorKind.TWO_FACTOR_LOCKED,
                        "too many failed verification attempts",
                        retry_after_seconds=retry_after,
                    )
                record.two_factor_verification_attempts = 0
            if method is CodeKind.BACKUP:
                verified = matched_hash is not None and matched_hash in record.two_factor_backup_codes
                if verified:
                    record.two_factor_backup_codes.remove(matched_hash)
            else:
                verified = self._check_totp(record.two_factor_secret, code, now)
            if verified:
                record.two_factor_verification_attempts = 0
                record.two_factor_last_failed_attempt = None
                record.two_factor_last_verified_at = now
                return Outcome.success(VerificationResult(method, len(record.two_factor_backup_codes)))
            record.two_factor_verification_attempts += 1
            record.two_factor_last_failed_attempt = now
            remaining = max(0, max_failures - record.two_factor_verification_attempts)
            return Outcome.fail(ErrorKind.INVALID_CODE, "invalid verification code", attempts_remaining=remaining)

        outcome = await asyncio.to_thread(self.store.update_account_security, user_id, mutate)
        await self._audit_login(outcome, user_id, tenant_id, method)
        return outcome

    async def _audit_login(
        self, outcome: Outcome[VerificationResult], user_id: str, tenant_id: str, method: CodeKind
    ) -> None:
        if outcome.ok:
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_VERIFICATION_SUCCESS,
                user_id=user_id,
                tenant_id=tenant_id,
                method=method.value,
            )
            if method is CodeKind.BACKUP:
                remaining = outcome.value.remaining_backup_codes
                if remaining <= 2:
                    logger.warning("backup_codes_low", user_id=user_id, remaining=remaining)
                await self.audit.record(
                    SecurityEvent.TWO_FACTOR_BACKUP_CODE_USED,
                    user_id=user_id,
                    tenant_id=tenant_id,
                    remaining=remaining,
                )
            return
        kind = outcome.failure.kind
        if kind is ErrorKind.INVALID_CODE:
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_VERIFICATION_FAILED,
                user_id=user_id,
                tenant_id=tenant_id,
                method=method.value,
                attempts_remaining=outcome.failure.detail.get("attempts_remaining"),
            )
            if outcome.failure.detail.get("attempts_remaining") == 0:
                await self.audit.record(
                    SecurityEvent.TWO_FACTOR_VERIFICATION_LOCKED,
                    user_id=user_id,
                    tenant_id=tenant_id,
                    lock_minutes=self.settings.two_factor_lock_minutes,
                )
        elif kind is ErrorKind.TWO_FACTOR_LOCKED:
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_VERIFICATION_FAILED,
                user_id=user_id,
                tenant_id=tenant_id,
                method=method.value,
                reason="locked",
            )

    @transient_as_outcome
    async def regenerate_backup_codes(self, user_id: str, *, tenant_id: str = "public") -> Outcome[List[str]]:
        codes = self.backup_codes.generate(self.settings.backup_code_count)
        hashes = await asyncio.to_thread(self.backup_codes.hash_all, codes)

        def mutate(record: AccountSecurity) -> Outcome[List[str]]:
            if not record.two_factor_enabled:
                return Outcome.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor authentication is not enabled")
            record.two_factor_backup_codes = list(hashes)
            return Outcome.success(codes)

        outcome = await asyncio.to_thread(self.store.update_account_security, user_id, mutate)
        if outcome.ok:
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_BACKUP_CODES_REGENERATED,
                user_id=user_id,
                tenant_id=tenant_id,
                count=len(codes),
            )
        return outcome

    @transient_as_outcome
    async def disable(self, user_id: str, current_password: str, *, tenant_id: str = "public") -> Outcome[None]:
        # wrong passwords here count against the same lockout as login
        reservation = None
        if self.lockout is not None:
            reservation = await self.lockout.reserve_attempt(user_id)
            if reservation.refused:
                return Outcome.fail(
                    ErrorKind.ACCOUNT_LOCKED,
                    "account temporarily locked",
                    retry_after_seconds=reservation.retry_after_seconds,
                )
        password_ok = await asyncio.to_thread(self.passwords.verify_password, user_id, current_password)
        if not password_ok:
            if reservation is not None:
                self.lockout.confirm_failure(user_id, reservation)
            await self.audit.record(
                SecurityEvent.LOGIN_FAILED,
                user_id=user_id,
                tenant_id=tenant_id,
                reason="two_factor_disable_bad_password",
            )
            if reservation is not None and reservation.just_locked:
                await self.audit.record(
                    SecurityEvent.ACCOUNT_LOCKED,
                    user_id=user_id,
                    tenant_id=tenant_id,
                    locked_until=reservation.locked_until.isoformat() if reservation.locked_until else None,
                )
            return Outcome.fail(ErrorKind.INVALID_CREDENTIALS, "current password is incorrect")
        if reservation is not None:
            after = await self.lockout.record_success(user_id, reservation)
            if after.locked:
                return Outcome.fail(
                    ErrorKind.ACCOUNT_LOCKED,
                    "account temporarily locked",
                    retry_after_seconds=after.retry_after_seconds,
                )

        def mutate(record: AccountSecurity) -> Outcome[None]:
            if not record.two_factor_enabled:
                return Outcome.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor authentication is not enabled")
            record.clear_two_factor()
            record.two_factor_last_verified_at = None
            return Outcome.success(None)

        outcome = await asyncio.to_thread(self.store.update_account_security, user_id, mutate)
        if outcome.ok:
            logger.info("two_factor_disabled", user_id=user_id)
            await self.audit.record(SecurityEvent.TWO_FACTOR_DISABLED, user_id=user_id, tenant_id=tenant_id)
        return outcome

    @transient_as_outcome
    async def cancel_setup(self, user_id: str, *, tenant_id: str = "public") -> Outcome[None]:
        def mutate(record: AccountSecurity) -> Outcome[None]:
            if record.two_factor_enabled or not record.two_factor_pending_verification:
                return Outcome.fail(ErrorKind.SETUP_NOT_STARTED, "no two-factor setup in progress")
            record.clear_two_factor()
            return Outcome.success(None)

        outcome = await asyncio.to_thread(self.store.update_account_security, user_id, mutate)
        if outcome.ok:
            await self.audit.record(SecurityEvent.TWO_FACTOR_SETUP_CANCELLED, user_id=user_id, tenant_id=tenant_id)
        return outcome

    @transient_as_outcome
    async def status(self, user_id: str) -> Outcome[TwoFactorStatus]:
        now = self._now()
        record = await asyncio.to_thread(self.store.get_account_security, user_id)
        state = record.two_factor_state
        expires_at = None
        if state is TwoFactorState.PENDING:
            if self._setup_expired(record, now):
                state = TwoFactorState.DISABLED
            else:
                expires_at = record.two_factor_setup_started_at + self.setup_window
        remaining = len(record.two_factor_backup_codes) if state is TwoFactorState.ENABLED else 0
        return Outcome.success(
            TwoFactorStatus(
                state=state,
                remaining_backup_codes=remaining,
                setup_expires_at=expires_at,
                last_verified_at=record.two_factor_last_verified_at,
            )
        )

    async def is_enabled(self, user_id: str) -> bool:
        record = await asyncio.to_thread(self.store.get_account_security, user_id)
        return record.two_factor_enabled

    async def sweep_expired_setups(self) -> int:
        """Clear pending setups older than the setup window. Safe to repeat."""
        cutoff = self._now() - self.setup_window
        expired = await asyncio.to_thread(self.store.expire_pending_two_factor, cutoff)
        for user_id in expired:
            user = await asyncio.to_thread(self.store.get_user, user_id)
            await self.audit.record(
                SecurityEvent.TWO_FACTOR_SETUP_EXPIRED,
                user_id=user_id,
                tenant_id=user.tenant_id if user else "public",
                source="sweep",
            )
        if expired:
            logger.info("two_factor_setups_expired", count=len(expired))
        return len(expired)

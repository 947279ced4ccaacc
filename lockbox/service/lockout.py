from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from lockbox.logging import get_logger
from lockbox.storage.models import AccountSecurity

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    max_failures: int = 5
    lock_duration: timedelta = timedelta(minutes=30)
    decay_window: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_failures=settings.lockout_max_failures,
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
            decay_window=timedelta(minutes=settings.lockout_failure_decay_minutes),
        )


@dataclass(frozen=True)
class LockState:
    locked: bool
    retry_after_seconds: int = 0
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    # True only for the failure that set the lock
    just_locked: bool = False

    @property
    def refused(self) -> bool:
        return self.locked and not self.just_locked


def _lock_state(record: AccountSecurity, now: datetime, *, just_locked: bool = False) -> LockState:
    until = record.account_locked_until
    if until and until > now:
        remaining = max(1, int((until - now).total_seconds() + 0.999))
        return LockState(True, remaining, record.failed_login_attempts, until, just_locked)
    return LockState(False, 0, record.failed_login_attempts, None)


def apply_failure(record: AccountSecurity, now: datetime, policy: LockoutPolicy) -> LockState:
    """Count one failed password attempt against ``record`` in place."""
    current = _lock_state(record, now)
    if current.locked:
        return current
    lock_elapsed = record.account_locked_until is not None
    stale = (
        record.last_failed_login_at is not None
        and now - record.last_failed_login_at > policy.decay_window
    )
    if lock_elapsed or stale:
        record.failed_login_attempts = 0
        record.account_locked_until = None
    record.failed_login_attempts += 1
    record.last_failed_login_at = now
    if record.failed_login_attempts >= policy.max_failures:
        record.account_locked_until = now + policy.lock_duration
        return _lock_state(record, now, just_locked=True)
    return _lock_state(record, now)


def apply_success(
    record: AccountSecurity, now: datetime, reservation: Optional[LockState] = None
) -> LockState:
    """Clear failure tracking unless a lock set by someone else is still running.

    ``reservation`` is the state returned when this attempt was reserved. A lock
    that the reservation itself set is lifted, since the password turned out to
    be correct; any other active lock stands.
    """
    current = _lock_state(record, now)
    own_lock = (
        reservation is not None
        and reservation.just_locked
        and record.account_locked_until == reservation.locked_until
    )
    if current.locked and not own_lock:
        return current
    record.failed_login_attempts = 0
    record.last_failed_login_at = None
    record.account_locked_until = None
    return LockState(False)


class LockoutTracker:
    """Per-account password failure counter with a time-boxed lock.

    Password checks reserve their attempt before comparing: the failure is
    counted up front under the record lock and withdrawn by
    ``record_success`` if the password matches. Concurrent guesses therefore
    share the same budget as sequential ones.
    """

    def __init__(
        self,
        store,
        policy: Optional[LockoutPolicy] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy or LockoutPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    async def check_lock(self, user_id: str) -> LockState:
        record = await asyncio.to_thread(self.store.get_account_security, user_id)
        return _lock_state(record, self._now())

    async def reserve_attempt(self, user_id: str) -> LockState:
        """Count an attempt before the password is compared.

        A ``refused`` result means the account was already locked and no
        comparison should run.
        """
        now = self._now()
        return await asyncio.to_thread(
            self.store.update_account_security,
            user_id,
            lambda record: apply_failure(record, now, self.policy),
        )

    def confirm_failure(self, user_id: str, state: LockState) -> LockState:
        if state.just_locked:
            logger.warning(
                "account_locked",
                user_id=user_id,
                failed_attempts=state.failed_attempts,
                locked_until=state.locked_until.isoformat() if state.locked_until else None,
            )
        return state

    async def record_failure(self, user_id: str) -> LockState:
        state = await self.reserve_attempt(user_id)
        return self.confirm_failure(user_id, state)

    async def record_success(self, user_id: str, reservation: Optional[LockState] = None) -> LockState:
        """Reset the counter; returns a locked state if a lock is still in force."""
        now = self._now()
        return await asyncio.to_thread(
            self.store.update_account_security,
            user_id,
            lambda record: apply_success(record, now, reservation),
        )

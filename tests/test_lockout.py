"""Unit tests for password failure counting and account lockout."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from lockbox.service.errors import ErrorKind
from lockbox.service.lockout import (
    LockoutPolicy,
    LockoutTracker,
    apply_failure,
    apply_success,
)
from lockbox.storage.errors import ConstraintViolation
from lockbox.storage.models import AccountSecurity

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return LockoutPolicy()


@pytest.fixture
def tracker(memory_store, clock):
    return LockoutTracker(memory_store, LockoutPolicy(), clock=clock)


@pytest.fixture
def account(memory_store):
    return memory_store.create_user("locked@example.com")


class TestApplyFailure:
    def test_counts_below_threshold_without_locking(self, policy):
        record = AccountSecurity(user_id="u1")
        for expected in range(1, 5):
            state = apply_failure(record, NOW, policy)
            assert state.failed_attempts == expected
            assert not state.locked
        assert record.account_locked_until is None

    def test_fifth_failure_locks_for_thirty_minutes(self, policy):
        record = AccountSecurity(user_id="u1", failed_login_attempts=4, last_failed_login_at=NOW)
        state = apply_failure(record, NOW, policy)
        assert state.locked
        assert state.just_locked
        assert record.account_locked_until == NOW + timedelta(minutes=30)
        assert state.retry_after_seconds == 1800

    def test_failure_while_locked_does_not_extend_lock(self, policy):
        until = NOW + timedelta(minutes=10)
        record = AccountSecurity(
            user_id="u1", failed_login_attempts=5, account_locked_until=until, last_failed_login_at=NOW
        )
        state = apply_failure(record, NOW + timedelta(minutes=1), policy)
        assert state.locked
        assert not state.just_locked
        assert record.failed_login_attempts == 5
        assert record.account_locked_until == until

    def test_stale_failures_decay_before_counting(self, policy):
        record = AccountSecurity(
            user_id="u1",
            failed_login_attempts=4,
            last_failed_login_at=NOW - timedelta(minutes=31),
        )
        state = apply_failure(record, NOW, policy)
        assert state.failed_attempts == 1
        assert not state.locked

    def test_elapsed_lock_resets_counter(self, policy):
        record = AccountSecurity(
            user_id="u1",
            failed_login_attempts=5,
            account_locked_until=NOW - timedelta(seconds=1),
            last_failed_login_at=NOW - timedelta(minutes=30, seconds=1),
        )
        state = apply_failure(record, NOW, policy)
        assert state.failed_attempts == 1
        assert record.account_locked_until is None

    def test_success_clears_counters(self):
        record = AccountSecurity(user_id="u1", failed_login_attempts=3, last_failed_login_at=NOW)
        state = apply_success(record, NOW)
        assert not state.locked
        assert record.failed_login_attempts == 0
        assert record.last_failed_login_at is None

    def test_success_does_not_lift_someone_elses_lock(self, policy):
        until = NOW + timedelta(minutes=5)
        record = AccountSecurity(
            user_id="u1", failed_login_attempts=5, last_failed_login_at=NOW, account_locked_until=until
        )
        state = apply_success(record, NOW)
        assert state.locked
        assert state.retry_after_seconds == 300
        assert record.account_locked_until == until
        assert record.failed_login_attempts == 5

    def test_success_lifts_the_lock_its_own_reservation_set(self, policy):
        record = AccountSecurity(user_id="u1", failed_login_attempts=4, last_failed_login_at=NOW)
        reservation = apply_failure(record, NOW, policy)
        assert reservation.just_locked
        state = apply_success(record, NOW, reservation)
        assert not state.locked
        assert record.account_locked_until is None
        assert record.failed_login_attempts == 0


class TestLockoutTracker:
    async def test_locks_after_five_failures(self, tracker, account):
        for _ in range(4):
            state = await tracker.record_failure(account.id)
            assert not state.locked
        state = await tracker.record_failure(account.id)
        assert state.locked and state.just_locked
        lock = await tracker.check_lock(account.id)
        assert lock.locked
        assert lock.retry_after_seconds == 1800

    async def test_lock_expires_with_clock(self, tracker, account, clock):
        for _ in range(5):
            await tracker.record_failure(account.id)
        clock.advance(minutes=30, seconds=1)
        lock = await tracker.check_lock(account.id)
        assert not lock.locked

    async def test_retry_after_counts_down(self, tracker, account, clock):
        for _ in range(5):
            await tracker.record_failure(account.id)
        clock.advance(minutes=20)
        lock = await tracker.check_lock(account.id)
        assert lock.retry_after_seconds == 600

    async def test_success_resets_counter(self, tracker, account, memory_store):
        for _ in range(3):
            await tracker.record_failure(account.id)
        await tracker.record_success(account.id)
        assert memory_store.get_account_security(account.id).failed_login_attempts == 0

    async def test_unknown_user_is_rejected(self, tracker):
        with pytest.raises(ConstraintViolation):
            await tracker.record_failure("missing-user")

    def test_policy_from_settings(self, settings):
        policy = LockoutPolicy.from_settings(settings.model_copy(update={"lockout_max_failures": 3}))
        assert policy.max_failures == 3
        assert policy.lock_duration == timedelta(minutes=30)

    async def test_reservation_is_refused_while_locked(self, tracker, account):
        for _ in range(5):
            await tracker.record_failure(account.id)
        state = await tracker.reserve_attempt(account.id)
        assert state.refused
        assert state.failed_attempts == 5


class TestLoginLockout:
    async def test_lock_and_release_through_login(self, runtime, user, password, clock, memory_store):
        """Four failures, a locking fifth, refusal during the lock, success once it lapses."""
        for _ in range(4):
            outcome = await runtime.auth.login(user.email, "wrong-password")
            assert outcome.failure.kind is ErrorKind.INVALID_CREDENTIALS

        fifth = await runtime.auth.login(user.email, "wrong-password")
        assert fifth.failure.kind is ErrorKind.INVALID_CREDENTIALS
        record = memory_store.get_account_security(user.id)
        assert record.account_locked_until == clock() + timedelta(minutes=30)

        during = await runtime.auth.login(user.email, password)
        assert during.failure.kind is ErrorKind.ACCOUNT_LOCKED
        assert during.failure.detail["retry_after_seconds"] == 1800

        clock.advance(minutes=30, seconds=1)
        after = await runtime.auth.login(user.email, password)
        assert after.ok
        assert after.value.tokens.access_token
        record = memory_store.get_account_security(user.id)
        assert record.failed_login_attempts == 0
        assert record.account_locked_until is None

    async def test_correct_password_on_fifth_attempt_succeeds(self, runtime, user, password, memory_store):
        for _ in range(4):
            await runtime.auth.login(user.email, "wrong-password")
        assert (await runtime.auth.login(user.email, password)).ok
        assert memory_store.get_account_security(user.id).account_locked_until is None

    async def test_concurrent_guesses_share_one_budget(self, runtime, user, monkeypatch):
        compared = []
        verify = runtime.passwords.verify_password

        def counting_verify(user_id, candidate):
            compared.append(candidate)
            return verify(user_id, candidate)

        monkeypatch.setattr(runtime.passwords, "verify_password", counting_verify)
        outcomes = await asyncio.gather(
            *(runtime.auth.login(user.email, f"guess-{i}") for i in range(9))
        )

        kinds = sorted(o.failure.kind.value for o in outcomes)
        assert len(compared) == 5
        assert kinds.count(ErrorKind.INVALID_CREDENTIALS.value) == 5
        assert kinds.count(ErrorKind.ACCOUNT_LOCKED.value) == 4

    async def test_lock_set_during_comparison_blocks_correct_password(
        self, runtime, user, password, clock, memory_store, monkeypatch
    ):
        """Failures that land while the right password is being checked still lock it out."""
        verify = runtime.passwords.verify_password
        policy = runtime.lockout.policy

        def verify_with_racing_failures(user_id, candidate):
            for _ in range(5):
                memory_store.update_account_security(
                    user_id, lambda record: apply_failure(record, clock(), policy)
                )
            return verify(user_id, candidate)

        monkeypatch.setattr(runtime.passwords, "verify_password", verify_with_racing_failures)
        outcome = await runtime.auth.login(user.email, password)

        assert outcome.failure.kind is ErrorKind.ACCOUNT_LOCKED
        record = memory_store.get_account_security(user.id)
        assert record.account_locked_until == clock() + timedelta(minutes=30)
        events = [e.event for e in memory_store.list_audit_events(user_id=user.id, limit=20)]
        assert "LOGIN_SUCCESS" not in events
        assert "LOGIN_BLOCKED" in events

"""Tests for the dual-keyed lockout guard."""

import threading
from datetime import timedelta

import pytest

from adminguard.service.errors import AccountLocked
from adminguard.service.lockout import Allowed, Locked, LockoutGuard
from adminguard.storage.models import LOCKOUT_KEY_IDENTITY, LOCKOUT_KEY_ORIGIN


@pytest.fixture
def guard(store, clock):
    return LockoutGuard(store, threshold=5, duration=timedelta(minutes=15), clock=clock)


class TestLockoutGuard:
    def test_allows_without_records(self, guard):
        """No failure history means the attempt is allowed."""
        assert isinstance(guard.check_allowed("root@example.com", "10.0.0.1"), Allowed)

    def test_locks_after_threshold(self, guard):
        """The attempt after the fifth failure is locked with a positive retry time."""
        for _ in range(4):
            guard.record_failure("root@example.com", "10.0.0.1")
            assert isinstance(guard.check_allowed("root@example.com", "10.0.0.1"), Allowed)
        guard.record_failure("root@example.com", "10.0.0.1")
        decision = guard.check_allowed("root@example.com", "10.0.0.1")
        assert isinstance(decision, Locked)
        assert decision.key_kind == LOCKOUT_KEY_IDENTITY
        assert decision.retry_after_minutes == 15

    def test_retry_minutes_round_up(self, guard, clock):
        """Remaining lock time is surfaced in whole minutes, rounded up."""
        for _ in range(5):
            guard.record_failure("root@example.com", "10.0.0.1")
        clock.advance(minutes=14, seconds=1)
        decision = guard.check_allowed("root@example.com", "10.0.0.1")
        assert isinstance(decision, Locked)
        assert decision.retry_after_minutes == 1

    def test_ensure_allowed_raises_account_locked(self, guard):
        """ensure_allowed turns a lock into AccountLocked with a Retry-After header."""
        for _ in range(5):
            guard.record_failure("root@example.com", "10.0.0.1")
        with pytest.raises(AccountLocked) as excinfo:
            guard.ensure_allowed("root@example.com", "10.0.0.1")
        assert excinfo.value.status_code == 423
        assert int(excinfo.value.headers["Retry-After"]) > 0

    def test_expired_lock_is_cleared_not_decremented(self, guard, store, clock):
        """After the window passes the record is deleted and counting starts fresh."""
        for _ in range(5):
            guard.record_failure("root@example.com", "10.0.0.1")
        clock.advance(minutes=15, seconds=1)
        assert isinstance(guard.check_allowed("root@example.com", "10.0.0.1"), Allowed)
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "root@example.com") is None
        identity_record, _ = guard.record_failure("root@example.com", "10.0.0.1")
        assert identity_record.failure_count == 1
        assert identity_record.locked_until is None

    def test_origin_fallback_locks_new_identity(self, guard):
        """Probing many identities from one origin locks that origin."""
        for i in range(5):
            guard.record_failure(f"user{i}@example.com", "10.0.0.9")
        decision = guard.check_allowed("fresh@example.com", "10.0.0.9")
        assert isinstance(decision, Locked)
        assert decision.key_kind == LOCKOUT_KEY_ORIGIN

    def test_identity_locked_from_any_origin(self, guard):
        """One identity probed from many origins is locked everywhere."""
        for i in range(5):
            guard.record_failure("root@example.com", f"10.0.1.{i}")
        assert isinstance(guard.check_allowed("root@example.com", "192.168.1.1"), Locked)

    def test_identity_is_case_insensitive(self, guard):
        """Identity keys are compared lowercased."""
        for _ in range(5):
            guard.record_failure("Root@Example.com", "10.0.0.1")
        assert isinstance(guard.check_allowed("root@example.com", "10.0.0.2"), Locked)

    def test_success_clears_both_records(self, guard, store):
        """A successful login removes the identity and origin records."""
        for _ in range(3):
            guard.record_failure("root@example.com", "10.0.0.1")
        guard.record_success("root@example.com", "10.0.0.1", aliases=["root"])
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "root@example.com") is None
        assert store.get_lockout(LOCKOUT_KEY_ORIGIN, "10.0.0.1") is None

    def test_success_clears_aliases(self, guard, store):
        """Failures recorded under another name of the same principal are cleared too."""
        guard.record_failure("root", "10.0.0.1")
        guard.record_success("root@example.com", "10.0.0.1", aliases=["root"])
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "root") is None

    def test_aliases_share_one_budget(self, guard, store):
        """Failures against a known principal count under each of its names."""
        for index in range(5):
            name = "root" if index % 2 else "root@example.com"
            guard.record_failure(name, f"10.0.0.{index}", aliases=["root@example.com", "root"])
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "root").failure_count == 5
        assert isinstance(guard.check_allowed("root", "10.9.9.9"), Locked)
        assert isinstance(guard.check_allowed("ROOT@example.com", "10.9.9.9"), Locked)

    def test_unknown_identity_charges_only_typed_key(self, guard, store):
        """Without aliases only the typed identity and the origin are counted."""
        identity_record, origin_record = guard.record_failure("ghost", "10.0.0.1")
        assert (identity_record.identity_key, origin_record.identity_key) == ("ghost", "10.0.0.1")
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "ghost@example.com") is None

    def test_concurrent_failures_do_not_lose_increments(self, store, clock):
        """Parallel failures for the same key are all counted."""
        guard = LockoutGuard(store, threshold=1000, clock=clock)
        threads = [
            threading.Thread(target=guard.record_failure, args=("root@example.com", "10.0.0.1"))
            for _ in range(20)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        record = store.get_lockout(LOCKOUT_KEY_IDENTITY, "root@example.com")
        assert record.failure_count == 20

"""Tests for the Authenticator: login, registration and principal administration."""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from adminguard.service.auth import AuthContext, Authenticator
from adminguard.service.errors import (
    AccountLocked,
    DuplicateEmail,
    DuplicateIdentity,
    ForbiddenError,
    InvalidCredentials,
    NotFoundError,
    RegistrationClosed,
    ValidationError,
    WeakSecret,
)
from adminguard.service.lockout import LockoutGuard
from adminguard.service.passwords import SecretHasher
from adminguard.service.sessions import SessionRegistry
from adminguard.service.tokens import TokenCodec
from adminguard.storage.models import LOCKOUT_KEY_IDENTITY, LOCKOUT_KEY_ORIGIN

from tests.conftest import STRONG_SECRET


@pytest.fixture
def auth(store, clock):
    codec = TokenCodec(
        "unit-test-secret", issuer="adminguard", audience="adminguard-panel", clock=clock
    )
    registry = SessionRegistry(store, clock=clock)
    lockout = LockoutGuard(store, threshold=5, duration=timedelta(minutes=15), clock=clock)
    return Authenticator(store, codec, registry, lockout, hasher=SecretHasher(), clock=clock)


@pytest.fixture
def root(auth):
    return auth.register("root", "Root@Example.com", STRONG_SECRET, "super_admin").principal


def _ctx(principal, session_id="s-actor"):
    return AuthContext(
        principal_id=principal.id,
        role=principal.role,
        session_id=session_id,
        identity_name=principal.identity_name,
        email=principal.email,
    )


class TestRegistration:
    def test_bootstrap_registration_defaults_to_admin(self, auth):
        """The first principal may register anonymously and defaults to admin."""
        issued = auth.register("first", "first@example.com", STRONG_SECRET)
        assert issued.principal.role == "admin"
        assert issued.tokens.access_token
        assert auth.registry.get(issued.session.id) is not None

    def test_email_is_normalized(self, root):
        """Emails are stored lowercased."""
        assert root.email == "root@example.com"

    def test_closed_after_bootstrap(self, auth, root):
        """Anonymous registration is refused once any principal exists."""
        with pytest.raises(RegistrationClosed) as excinfo:
            auth.register("second", "second@example.com", STRONG_SECRET)
        assert excinfo.value.status_code == 403

    def test_privileged_actor_may_register(self, auth, root):
        """A privileged caller can register further principals."""
        issued = auth.register(
            "second", "second@example.com", STRONG_SECRET, "editor", actor=_ctx(root)
        )
        assert issued.principal.role == "editor"

    def test_viewer_cannot_register(self, auth, root):
        """Non-privileged callers are refused."""
        viewer = auth.create_principal(_ctx(root), "viewer", "v@example.com", STRONG_SECRET)
        with pytest.raises(RegistrationClosed):
            auth.register("x", "x@example.com", STRONG_SECRET, actor=_ctx(viewer))

    def test_weak_secret_lists_rules(self, auth):
        """A weak secret is rejected with its unmet rules."""
        with pytest.raises(WeakSecret) as excinfo:
            auth.register("first", "first@example.com", "weak")
        assert "Password must be at least 12 characters long" in excinfo.value.detail["errors"]
        assert auth.store.count_principals() == 0

    def test_duplicate_identity_and_email(self, auth, root):
        """Uniqueness failures name the clashing field."""
        with pytest.raises(DuplicateEmail):
            auth.register("other", "ROOT@example.com", STRONG_SECRET, actor=_ctx(root))
        with pytest.raises(DuplicateIdentity):
            auth.register("ROOT", "other@example.com", STRONG_SECRET, actor=_ctx(root))

    def test_concurrent_bootstrap_creates_one_principal(self, auth, store, monkeypatch):
        """Two anonymous registrations racing on an empty store yield one principal."""
        barrier = threading.Barrier(2, timeout=10)
        real_count = store.count_principals

        def _count_then_wait():
            count = real_count()
            barrier.wait()
            return count

        monkeypatch.setattr(store, "count_principals", _count_then_wait)
        results = {}

        def _register(index):
            try:
                auth.register(f"user{index}", f"user{index}@example.com", STRONG_SECRET)
                results[index] = "registered"
            except RegistrationClosed:
                results[index] = "closed"

        threads = [threading.Thread(target=_register, args=(i,)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results.values()) == ["closed", "registered"]
        monkeypatch.setattr(store, "count_principals", real_count)
        assert store.count_principals() == 1

    def test_invalid_role(self, auth):
        """Unknown roles are a validation error."""
        with pytest.raises(ValidationError):
            auth.register("first", "first@example.com", STRONG_SECRET, "owner")


class TestLogin:
    def test_login_by_email_and_identity(self, auth, root):
        """Either the email or the identity name logs in."""
        by_email = auth.login("ROOT@example.com", STRONG_SECRET, origin="10.0.0.1")
        by_name = auth.login("root", STRONG_SECRET, origin="10.0.0.1")
        assert by_email.principal.id == by_name.principal.id == root.id
        assert by_email.session.id != by_name.session.id

    def test_unknown_identity_and_wrong_secret_are_identical(self, auth, root):
        """Both failure modes raise the same error with the same message."""
        with pytest.raises(InvalidCredentials) as unknown:
            auth.login("nobody@example.com", STRONG_SECRET, origin="10.0.0.1")
        with pytest.raises(InvalidCredentials) as wrong:
            auth.login("root@example.com", "Wr0ng-Secret!!", origin="10.0.0.2")
        assert unknown.value.message == wrong.value.message == "Invalid credentials"
        assert unknown.value.detail == wrong.value.detail

    def test_unknown_identity_still_hashes(self, auth):
        """An unknown identity spends a dummy verification."""
        auth.hasher = MagicMock(wraps=auth.hasher)
        with pytest.raises(InvalidCredentials):
            auth.login("ghost", STRONG_SECRET, origin="10.0.0.1")
        auth.hasher.burn.assert_called_once_with(STRONG_SECRET)

    def test_lockout_short_circuits_store(self, auth, root):
        """A locked identity is rejected without consulting the credential store."""
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                auth.login("root", "Wr0ng-Secret!!", origin="10.0.0.1")
        auth.store = MagicMock(wraps=auth.store)
        with pytest.raises(AccountLocked):
            auth.login("root", STRONG_SECRET, origin="10.0.0.1")
        auth.store.get_principal_by_email.assert_not_called()
        auth.store.get_principal_by_identity.assert_not_called()

    def test_email_and_identity_share_failure_budget(self, auth, root):
        """Alternating email and identity name from rotating origins still locks."""
        for index in range(5):
            name = "root" if index % 2 else "root@example.com"
            with pytest.raises(InvalidCredentials):
                auth.login(name, "Wr0ng-Secret!!", origin=f"10.0.1.{index}")
        with pytest.raises(AccountLocked):
            auth.login("root", STRONG_SECRET, origin="10.0.2.1")
        with pytest.raises(AccountLocked):
            auth.login("root@example.com", STRONG_SECRET, origin="10.0.2.2")

    def test_success_clears_lockout_records(self, auth, root, store):
        """A successful login clears identity, alias and origin records."""
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                auth.login("root", "Wr0ng-Secret!!", origin="10.0.0.1")
        auth.login("root@example.com", STRONG_SECRET, origin="10.0.0.1")
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "root") is None
        assert store.get_lockout(LOCKOUT_KEY_IDENTITY, "root@example.com") is None
        assert store.get_lockout(LOCKOUT_KEY_ORIGIN, "10.0.0.1") is None

    def test_logout_revokes_session(self, auth, root):
        """Logout deletes the current session row."""
        issued = auth.login("root", STRONG_SECRET)
        auth.logout(_ctx(root, issued.session.id))
        assert auth.registry.get(issued.session.id) is None


class TestPrincipalAdministration:
    def test_create_defaults_to_viewer(self, auth, root):
        """Principals created by administrators default to viewer."""
        created = auth.create_principal(_ctx(root), "ed", "ed@example.com", STRONG_SECRET)
        assert created.role == "viewer"

    def test_only_super_admin_grants_super_admin(self, auth, root):
        """An admin cannot hand out super_admin."""
        admin = auth.create_principal(
            _ctx(root), "adm", "adm@example.com", STRONG_SECRET, "admin"
        )
        with pytest.raises(ForbiddenError):
            auth.create_principal(
                _ctx(admin), "boss", "boss@example.com", STRONG_SECRET, "super_admin"
            )

    def test_list_is_paginated_with_total(self, auth, root):
        """Listing returns a page and the overall count."""
        for i in range(3):
            auth.create_principal(_ctx(root), f"u{i}", f"u{i}@example.com", STRONG_SECRET)
        items, total = auth.list_principals(page=2, limit=3)
        assert total == 4
        assert len(items) == 1

    def test_role_change_revokes_sessions(self, auth, root):
        """Changing a principal's role revokes its sessions."""
        editor = auth.create_principal(
            _ctx(root), "ed", "ed@example.com", STRONG_SECRET, "editor"
        )
        issued = auth.login("ed", STRONG_SECRET)
        updated = auth.update_principal(_ctx(root), editor.id, role="viewer")
        assert updated.role == "viewer"
        assert auth.registry.get(issued.session.id) is None

    def test_secret_change_keeps_actor_session(self, auth, root):
        """Changing one's own secret keeps the session making the change."""
        current = auth.login("root", STRONG_SECRET)
        other = auth.login("root", STRONG_SECRET)
        auth.update_principal(
            _ctx(root, current.session.id), root.id, secret="N3w-Secret-Value!"
        )
        assert auth.registry.get(current.session.id) is not None
        assert auth.registry.get(other.session.id) is None
        assert auth.login("root", "N3w-Secret-Value!").principal.id == root.id

    def test_update_rejects_duplicate_email(self, auth, root):
        """Updating to another principal's email fails."""
        ed = auth.create_principal(_ctx(root), "ed", "ed@example.com", STRONG_SECRET)
        with pytest.raises(DuplicateEmail):
            auth.update_principal(_ctx(root), ed.id, email="root@example.com")

    def test_cannot_delete_self(self, auth, root):
        """A principal may never delete itself."""
        with pytest.raises(ValidationError) as excinfo:
            auth.delete_principal(_ctx(root), root.id)
        assert excinfo.value.message == "You cannot delete your own account"

    def test_delete_removes_principal_and_sessions(self, auth, root):
        """Deleting a principal also deletes its sessions."""
        ed = auth.create_principal(_ctx(root), "ed", "ed@example.com", STRONG_SECRET)
        issued = auth.login("ed", STRONG_SECRET)
        auth.delete_principal(_ctx(root), ed.id)
        assert auth.store.get_principal(ed.id) is None
        assert auth.registry.get(issued.session.id) is None

    def test_delete_missing_is_not_found(self, auth, root):
        """Deleting an unknown id is a 404."""
        with pytest.raises(NotFoundError):
            auth.delete_principal(_ctx(root), "missing")

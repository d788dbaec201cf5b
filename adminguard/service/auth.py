from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from adminguard.logging import get_logger
from adminguard.service import permissions
from adminguard.service.errors import (
    DuplicateEmail,
    DuplicateIdentity,
    ForbiddenError,
    InvalidCredentials,
    NotFoundError,
    RegistrationClosed,
    ValidationError,
)
from adminguard.service.lockout import LockoutGuard
from adminguard.service.passwords import SecretHasher, ensure_strong_secret
from adminguard.service.sessions import SessionRegistry
from adminguard.service.tokens import TokenCodec, TokenPair
from adminguard.storage.errors import ConstraintViolation
from adminguard.storage.models import AdminPrincipal, Session

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def count_principals(self) -> int: ...

    def create_principal(
        self,
        identity_name: str,
        email: str,
        password_hash: str,
        role: str = "admin",
        *,
        only_if_empty: bool = False,
    ) -> Optional[AdminPrincipal]: ...

    def get_principal(self, principal_id: str) -> Optional[AdminPrincipal]: ...

    def get_principal_by_email(self, email: str) -> Optional[AdminPrincipal]: ...

    def get_principal_by_identity(self, identity_name: str) -> Optional[AdminPrincipal]: ...

    def list_principals(self, *, offset: int = 0, limit: int = 20) -> List[AdminPrincipal]: ...

    def update_principal(
        self,
        principal_id: str,
        *,
        identity_name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AdminPrincipal]: ...

    def delete_principal(self, principal_id: str) -> bool: ...


@dataclass
class AuthContext:
    """The principal resolved for the current request."""

    principal_id: str
    role: str
    session_id: str
    identity_name: str
    email: str

    def can(self, permission: str) -> bool:
        return permissions.has_permission(self.role, permission)


@dataclass
class IssuedSession:
    principal: AdminPrincipal
    session: Session
    tokens: TokenPair


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _duplicate_error(exc: ConstraintViolation) -> ValidationError:
    if exc.field == "email":
        return DuplicateEmail()
    return DuplicateIdentity()


class Authenticator:
    """Login, registration and principal administration.

    Login consults the lockout guard before touching the credential store
    and answers unknown identities and wrong secrets with the same error
    after the same amount of hashing work.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        registry: SessionRegistry,
        lockout: LockoutGuard,
        *,
        hasher: Optional[SecretHasher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.registry = registry
        self.lockout = lockout
        self.hasher = hasher or SecretHasher()
        self._clock = clock

    def _lookup(self, identity: str) -> Optional[AdminPrincipal]:
        candidate = identity.strip()
        return self.store.get_principal_by_email(
            candidate.lower()
        ) or self.store.get_principal_by_identity(candidate)

    def _open_session(
        self,
        principal: AdminPrincipal,
        *,
        origin: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedSession:
        session_id = self.registry.new_session_id()
        tokens = self.codec.issue_pair(
            principal.id, session_id=session_id, role=principal.role
        )
        session = self.registry.register(
            principal.id,
            tokens,
            session_id=session_id,
            origin=origin,
            user_agent=user_agent,
        )
        return IssuedSession(principal=principal, session=session, tokens=tokens)

    def login(
        self,
        identity: str,
        secret: str,
        *,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """Authenticate ``identity`` (email or identity name) and open a session.

        Raises:
            AccountLocked: the identity or origin is inside a lockout window
            InvalidCredentials: unknown identity or wrong secret
        """
        self.lockout.ensure_allowed(identity, origin)

        principal = self._lookup(identity)
        if principal is None:
            self.hasher.burn(secret)
            verified = False
        else:
            verified = self.hasher.verify(principal.password_hash, secret)

        if not verified:
            aliases = (principal.email, principal.identity_name) if principal else ()
            self.lockout.record_failure(identity, origin, aliases=aliases)
            logger.warning(
                "login_failed",
                identity=identity,
                origin=origin,
                known_identity=principal is not None,
            )
            raise InvalidCredentials()

        self.lockout.record_success(
            identity, origin, aliases=(principal.email, principal.identity_name)
        )
        if self.hasher.needs_rehash(principal.password_hash):
            self.store.update_principal(
                principal.id, password_hash=self.hasher.hash(secret), now=self._clock()
            )
        issued = self._open_session(principal, origin=origin, user_agent=user_agent)
        logger.info(
            "login_succeeded",
            principal_id=principal.id,
            session_id=issued.session.id,
            origin=origin,
        )
        return issued

    def register(
        self,
        identity: str,
        email: str,
        secret: str,
        role: Optional[str] = None,
        *,
        actor: Optional[AuthContext] = None,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """Create a principal and open a session for it.

        Open to anonymous callers only while no principal exists; afterwards
        the caller must hold a privileged role.

        Raises:
            RegistrationClosed: principals exist and the caller is not privileged
            ForbiddenError: the caller may not grant the requested role
            WeakSecret: the secret fails the strength policy
            DuplicateIdentity / DuplicateEmail: uniqueness violated
        """
        requested_role = role or permissions.ROLE_ADMIN
        bootstrap = self.store.count_principals() == 0
        if not bootstrap:
            if actor is None or actor.role not in permissions.PRIVILEGED_ROLES:
                logger.warning("registration_rejected_closed", origin=origin)
                raise RegistrationClosed()
            if not permissions.is_valid_role(requested_role):
                raise ValidationError("Invalid role", detail={"role": requested_role})
            if not permissions.can_grant(actor.role, requested_role):
                raise ForbiddenError("Insufficient permissions to assign this role")
        elif not permissions.is_valid_role(requested_role):
            raise ValidationError("Invalid role", detail={"role": requested_role})

        principal = self._create(
            identity, email, secret, requested_role, only_if_empty=bootstrap
        )
        if principal is None:
            logger.warning("registration_rejected_bootstrap_race", origin=origin)
            raise RegistrationClosed()
        issued = self._open_session(principal, origin=origin, user_agent=user_agent)
        logger.info(
            "principal_registered",
            principal_id=principal.id,
            role=principal.role,
            bootstrap=bootstrap,
            actor_id=actor.principal_id if actor else None,
            origin=origin,
        )
        return issued

    def _create(
        self,
        identity: str,
        email: str,
        secret: str,
        role: str,
        *,
        only_if_empty: bool = False,
    ) -> Optional[AdminPrincipal]:
        ensure_strong_secret(secret)
        identity_name = identity.strip()
        normalized_email = email.strip().lower()
        if self.store.get_principal_by_email(normalized_email):
            raise DuplicateEmail()
        if self.store.get_principal_by_identity(identity_name):
            raise DuplicateIdentity()
        try:
            return self.store.create_principal(
                identity_name,
                normalized_email,
                self.hasher.hash(secret),
                role,
                only_if_empty=only_if_empty,
            )
        except ConstraintViolation as exc:
            raise _duplicate_error(exc) from exc

    def logout(self, ctx: AuthContext) -> None:
        self.registry.revoke(ctx.session_id)
        logger.info("logout", principal_id=ctx.principal_id, session_id=ctx.session_id)

    # -- principal administration ----------------------------------------

    def list_principals(self, *, page: int = 1, limit: int = 20) -> Tuple[List[AdminPrincipal], int]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        items = self.store.list_principals(offset=(page - 1) * limit, limit=limit)
        return items, self.store.count_principals()

    def get_principal(self, principal_id: str) -> AdminPrincipal:
        principal = self.store.get_principal(principal_id)
        if not principal:
            raise NotFoundError("Admin user not found", detail={"id": principal_id})
        return principal

    def create_principal(
        self,
        actor: AuthContext,
        identity: str,
        email: str,
        secret: str,
        role: Optional[str] = None,
    ) -> AdminPrincipal:
        target_role = role or permissions.default_role()
        if not permissions.is_valid_role(target_role):
            raise ValidationError("Invalid role", detail={"role": target_role})
        if not permissions.can_grant(actor.role, target_role):
            raise ForbiddenError("Insufficient permissions to assign this role")
        principal = self._create(identity, email, secret, target_role)
        logger.info(
            "principal_created",
            principal_id=principal.id,
            role=principal.role,
            actor_id=actor.principal_id,
        )
        return principal

    def update_principal(
        self,
        actor: AuthContext,
        principal_id: str,
        *,
        identity: Optional[str] = None,
        email: Optional[str] = None,
        secret: Optional[str] = None,
        role: Optional[str] = None,
    ) -> AdminPrincipal:
        """Apply a partial update; a new role or secret revokes the target's sessions."""
        current = self.get_principal(principal_id)
        if role is not None:
            if not permissions.is_valid_role(role):
                raise ValidationError("Invalid role", detail={"role": role})
            if role != current.role and not permissions.can_grant(actor.role, role):
                raise ForbiddenError("Insufficient permissions to assign this role")
        if current.role == permissions.ROLE_SUPER_ADMIN and actor.role != permissions.ROLE_SUPER_ADMIN:
            raise ForbiddenError("Insufficient permissions to modify this account")

        identity_name = identity.strip() if identity else None
        normalized_email = email.strip().lower() if email else None
        if identity_name and identity_name.lower() != current.identity_name.lower():
            if self.store.get_principal_by_identity(identity_name):
                raise DuplicateIdentity()
        if normalized_email and normalized_email != current.email:
            if self.store.get_principal_by_email(normalized_email):
                raise DuplicateEmail()
        password_hash = None
        if secret:
            ensure_strong_secret(secret)
            password_hash = self.hasher.hash(secret)

        try:
            updated = self.store.update_principal(
                principal_id,
                identity_name=identity_name,
                email=normalized_email,
                password_hash=password_hash,
                role=role,
                now=self._clock(),
            )
        except ConstraintViolation as exc:
            raise _duplicate_error(exc) from exc
        if updated is None:
            raise NotFoundError("Admin user not found", detail={"id": principal_id})

        credentials_changed = password_hash is not None or (
            role is not None and role != current.role
        )
        if credentials_changed:
            # The actor keeps the session they are using to make the change
            keep = actor.session_id if actor.principal_id == principal_id else None
            self.registry.revoke_all(principal_id, except_session_id=keep)
        logger.info(
            "principal_updated",
            principal_id=principal_id,
            actor_id=actor.principal_id,
            role_changed=role is not None and role != current.role,
            secret_changed=password_hash is not None,
        )
        return updated

    def delete_principal(self, actor: AuthContext, principal_id: str) -> None:
        if actor.principal_id == principal_id:
            raise ValidationError("You cannot delete your own account")
        target = self.get_principal(principal_id)
        if target.role == permissions.ROLE_SUPER_ADMIN and actor.role != permissions.ROLE_SUPER_ADMIN:
            raise ForbiddenError("Insufficient permissions to delete this account")
        self.registry.revoke_all(principal_id)
        self.store.delete_principal(principal_id)
        logger.info(
            "principal_deleted", principal_id=principal_id, actor_id=actor.principal_id
        )

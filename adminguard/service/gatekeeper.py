from __future__ import annotations

from typing import Optional, Protocol

from adminguard.logging import get_logger
from adminguard.service.auth import AuthContext
from adminguard.service.errors import TokenError, TokenExpired, TokenMalformed, TokenRevoked
from adminguard.service.sessions import SessionRegistry
from adminguard.service.tokens import PURPOSE_ACCESS, TokenCodec
from adminguard.storage.models import AdminPrincipal

logger = get_logger(__name__)

BEARER_PREFIX = "bearer "


class PrincipalLookup(Protocol):
    def get_principal(self, principal_id: str) -> Optional[AdminPrincipal]: ...


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


class Gatekeeper:
    """Resolve an access token to a principal.

    A token authorizes a request only when a live session row carries its
    digest and its signature verifies. The registry is consulted first so a
    revoked token is reported as revoked even while its signature is good.
    """

    def __init__(
        self,
        codec: TokenCodec,
        registry: SessionRegistry,
        principals: PrincipalLookup,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.principals = principals

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Return the ``AuthContext`` for an ``Authorization`` header value.

        Raises:
            TokenMalformed: no bearer token, garbled token, or bad signature
            TokenRevoked: well-formed token with no session row
            TokenExpired: the session row or the token itself has expired
        """
        token = extract_bearer(authorization)
        if token is None:
            raise TokenMalformed()

        session = self.registry.find_by_access_token(token)
        if session is None:
            if not self.codec.is_well_formed(token):
                raise TokenMalformed()
            logger.info("access_token_revoked_presented")
            raise TokenRevoked()
        if not self.registry.is_live(session):
            raise TokenExpired()

        try:
            claims = self.codec.verify(token, PURPOSE_ACCESS)
        except TokenError as exc:
            logger.warning(
                "access_token_rejected",
                session_id=session.id,
                reason=type(exc).__name__,
            )
            raise
        if claims.subject != session.owner_id:
            logger.warning(
                "access_token_owner_mismatch",
                session_id=session.id,
                subject=claims.subject,
            )
            raise TokenMalformed()

        principal = self.principals.get_principal(session.owner_id)
        if principal is None:
            self.registry.revoke(session.id)
            raise TokenRevoked()

        self.registry.touch(session.id)
        return AuthContext(
            principal_id=principal.id,
            role=principal.role,
            session_id=session.id,
            identity_name=principal.identity_name,
            email=principal.email,
        )

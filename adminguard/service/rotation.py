from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from adminguard.logging import get_logger
from adminguard.service.errors import (
    ACTION_LOGIN,
    RefreshReplayed,
    TokenError,
    TokenMalformed,
)
from adminguard.service.sessions import SessionRegistry
from adminguard.service.tokens import PURPOSE_REFRESH, TokenCodec, TokenPair
from adminguard.storage.models import AdminPrincipal, Session

logger = get_logger(__name__)


class PrincipalLookup(Protocol):
    def get_principal(self, principal_id: str) -> Optional[AdminPrincipal]: ...


@dataclass
class RotationResult:
    principal: AdminPrincipal
    session: Session
    tokens: TokenPair


class RotationProtocol:
    """Exchange a refresh token for a fresh pair on the same session row.

    The swap is a compare-and-swap on the stored refresh digest: of two
    rotations presenting the same token only one finds the row. Every
    failure tells the client to log in again.
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

    def refresh(self, refresh_token: str, claimed_subject_id: str) -> RotationResult:
        """Rotate ``refresh_token`` and return the new pair.

        Raises:
            TokenMalformed: bad signature, wrong purpose or subject mismatch
            TokenExpired: refresh token past its expiry
            RefreshReplayed: no session row holds this refresh token any more
        """
        try:
            claims = self.codec.verify(refresh_token, PURPOSE_REFRESH)
        except TokenError as exc:
            raise exc.with_action(ACTION_LOGIN) from None

        if claims.subject != claimed_subject_id:
            logger.warning(
                "refresh_subject_mismatch",
                claimed_subject_id=claimed_subject_id,
                session_id=claims.session_id,
            )
            raise TokenMalformed(action=ACTION_LOGIN)

        current = self.registry.find_by_refresh_token(refresh_token)
        if current is None or current.owner_id != claims.subject:
            logger.warning(
                "refresh_replay_rejected",
                principal_id=claims.subject,
                session_id=claims.session_id,
                stage="lookup",
            )
            raise RefreshReplayed(action=ACTION_LOGIN)

        principal = self.principals.get_principal(claims.subject)
        if principal is None:
            self.registry.revoke(current.id)
            raise RefreshReplayed(action=ACTION_LOGIN)

        pair = self.codec.issue_pair(
            principal.id, session_id=current.id, role=principal.role
        )
        rotated = self.registry.rotate(refresh_token, pair)
        if rotated is None:
            # Another rotation won the swap between lookup and update
            logger.warning(
                "refresh_replay_rejected",
                principal_id=principal.id,
                session_id=current.id,
                stage="swap",
            )
            raise RefreshReplayed(action=ACTION_LOGIN)

        logger.info("tokens_refreshed", principal_id=principal.id, session_id=rotated.id)
        return RotationResult(principal=principal, session=rotated, tokens=pair)

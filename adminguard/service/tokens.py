from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from adminguard.logging import get_logger
from adminguard.service.errors import TokenExpired, TokenMalformed

logger = get_logger(__name__)

PURPOSE_ACCESS = "access"
PURPOSE_REFRESH = "refresh"
_PURPOSES = frozenset({PURPOSE_ACCESS, PURPOSE_REFRESH})
_SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]+")


def hash_token(token: str) -> str:
    """Digest stored in the session registry in place of the bearer secret."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    session_id: Optional[str]
    purpose: str
    role: Optional[str]
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenCodec:
    """HS256 JWTs carrying subject, session id, purpose and expiry.

    Authenticity is checked without a database round trip; whether the token
    still authorizes anything is the session registry's call.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _mint(
        self,
        subject: str,
        purpose: str,
        expires_at: datetime,
        *,
        session_id: Optional[str],
        role: Optional[str],
    ) -> str:
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "sid": session_id,
            "role": role,
            "token_type": purpose,
            "jti": str(uuid.uuid4()),
            "exp": int(expires_at.timestamp()),
        }
        return self.encode(payload)

    def issue_pair(
        self, subject: str, *, session_id: Optional[str] = None, role: Optional[str] = None
    ) -> TokenPair:
        now = self._clock()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        return TokenPair(
            access_token=self._mint(
                subject, PURPOSE_ACCESS, access_exp, session_id=session_id, role=role
            ),
            refresh_token=self._mint(
                subject, PURPOSE_REFRESH, refresh_exp, session_id=session_id, role=role
            ),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def _split(self, token: str) -> tuple[str, str, str]:
        if not isinstance(token, str):
            raise TokenMalformed()
        parts = token.split(".")
        if len(parts) != 3 or not all(_SEGMENT_RE.fullmatch(part) for part in parts):
            raise TokenMalformed()
        return parts[0], parts[1], parts[2]

    def is_well_formed(self, token: Optional[str]) -> bool:
        """Structural check only: three base64url segments, JSON header and payload, HS256."""
        if not token:
            return False
        try:
            header_b64, payload_b64, _ = self._split(token)
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (TokenMalformed, ValueError, TypeError):
            return False
        return (
            isinstance(header, dict)
            and header.get("alg") == "HS256"
            and isinstance(payload, dict)
        )

    def verify(self, token: str, expected_purpose: str) -> TokenClaims:
        """Check signature, issuer, audience, purpose and expiry.

        Raises:
            TokenMalformed: bad structure, signature, issuer/audience or purpose
            TokenExpired: authentic token whose expiry (plus leeway) has passed
        """
        if expected_purpose not in _PURPOSES:
            raise ValueError(f"unknown token purpose: {expected_purpose}")
        header_b64, payload_b64, sig_b64 = self._split(token)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformed()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformed()

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), sig_b64.encode("ascii")):
            raise TokenMalformed()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed()
        if not isinstance(payload, dict):
            raise TokenMalformed()
        if payload.get("iss") != self.issuer:
            raise TokenMalformed()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformed()
        if payload.get("token_type") != expected_purpose:
            raise TokenMalformed()
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise TokenMalformed()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformed()

        expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
        if expires_at <= self._clock() - self.leeway:
            raise TokenExpired()

        return TokenClaims(
            subject=subject,
            session_id=payload.get("sid"),
            purpose=expected_purpose,
            role=payload.get("role"),
            jti=str(payload.get("jti") or ""),
            expires_at=expires_at,
        )

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_IDENTITY_LENGTH = 254
MAX_SECRET_LENGTH = 1024
MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "locked",
    "rate_limited",
    "payload_too_large",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_identity(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("identity must not be empty")
    if any(ch.isspace() for ch in normalized):
        raise ValueError("identity must not contain whitespace")
    return normalized


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- auth ---------------------------------------------------------------------


class LoginRequest(_WireModel):
    identity: str = Field(..., min_length=1, max_length=MAX_IDENTITY_LENGTH)
    secret: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)

    @field_validator("identity")
    @classmethod
    def _normalize_login_identity(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RegisterRequest(_WireModel):
    identity: str = Field(..., min_length=1, max_length=MAX_IDENTITY_LENGTH)
    email: str
    secret: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("identity")
    @classmethod
    def _validate_register_identity(cls, value: str) -> str:
        return _validate_identity(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_WireModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    principal_id: str = Field(..., min_length=1, max_length=128)


class PrincipalResponse(_WireModel):
    id: str
    identity_name: str
    email: str
    role: str
    created_at: datetime
    updated_at: datetime


class LoginResponse(_WireModel):
    principal: PrincipalResponse
    access_token: str
    refresh_token: str
    csrf_token: str
    token_type: str = "Bearer"
    access_expires_at: datetime


class RegisterResponse(_WireModel):
    principal: PrincipalResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    access_expires_at: datetime


class RefreshResponse(_WireModel):
    access_token: str
    refresh_token: str
    csrf_token: str
    token_type: str = "Bearer"
    access_expires_at: datetime


class MeResponse(_WireModel):
    principal: PrincipalResponse
    permissions: List[str]


# -- sessions -----------------------------------------------------------------


class SessionResponse(_WireModel):
    """A session row as shown to its owner; token digests are never exposed."""

    id: str
    owner_id: str
    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(_WireModel):
    sessions: List[SessionResponse]
    total: int


class RevokeAllResponse(_WireModel):
    revoked: int


class CleanupResponse(_WireModel):
    removed: int


# -- principal administration ---------------------------------------------------


class AdminCreateUserRequest(RegisterRequest):
    pass


class AdminUpdateUserRequest(_WireModel):
    identity: Optional[str] = Field(default=None, min_length=1, max_length=MAX_IDENTITY_LENGTH)
    email: Optional[str] = None
    secret: Optional[str] = Field(default=None, min_length=1, max_length=MAX_SECRET_LENGTH)
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("identity")
    @classmethod
    def _validate_update_identity(cls, value: Optional[str]) -> Optional[str]:
        return _validate_identity(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class Pagination(_WireModel):
    page: int
    limit: int
    total_pages: int


class UserListResponse(_WireModel):
    users: List[PrincipalResponse]
    total: int
    pagination: Pagination


class RoleResponse(_WireModel):
    name: str
    label: str
    permissions: List[str]


class RoleListResponse(_WireModel):
    roles: List[RoleResponse]

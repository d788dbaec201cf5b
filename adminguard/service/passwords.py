from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from adminguard.logging import get_logger
from adminguard.service.errors import WeakSecret

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 12

COMMON_SECRETS = (
    "password",
    "password123",
    "admin",
    "admin123",
    "12345678",
    "qwerty",
    "abc123",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "password1",
    "admin1234",
    "root",
    "toor",
)

REQUIREMENTS = (
    "At least 12 characters long, One uppercase letter, One lowercase letter, "
    "One number, One special character"
)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SYMBOL = re.compile(r"[^a-zA-Z0-9]")


def secret_policy_violations(secret: str) -> List[str]:
    """Return every unmet strength rule for ``secret``; empty when it passes."""
    errors: List[str] = []
    if len(secret) < MIN_SECRET_LENGTH:
        errors.append(f"Password must be at least {MIN_SECRET_LENGTH} characters long")
    if not _UPPER.search(secret):
        errors.append("Password must contain at least one uppercase letter")
    if not _LOWER.search(secret):
        errors.append("Password must contain at least one lowercase letter")
    if not _DIGIT.search(secret):
        errors.append("Password must contain at least one number")
    if not _SYMBOL.search(secret):
        errors.append("Password must contain at least one special character")
    lowered = secret.lower()
    if any(lowered == common or common in lowered for common in COMMON_SECRETS):
        errors.append("Password is too common or contains common password patterns")
    return errors


def ensure_strong_secret(secret: str) -> None:
    errors = secret_policy_violations(secret)
    if errors:
        raise WeakSecret(errors, REQUIREMENTS)


class SecretHasher:
    """argon2id hashing with a dummy verification path for unknown identities."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash("adminguard-unknown-identity")

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn(self, secret: str) -> None:
        """Spend the same hashing work as a real verification and discard it."""
        self.verify(self._dummy_hash, secret)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

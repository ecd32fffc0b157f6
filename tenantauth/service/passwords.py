from __future__ import annotations

import secrets
import string
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.config import Settings
from tenantauth.logging import get_logger

logger = get_logger(__name__)

_SYMBOLS = "!@#$%^&*()-_=+[]{}"
_CHARACTER_CLASSES = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    _SYMBOLS,
)


class PasswordService:
    """Argon2id hashing and verification for user passwords and client secrets."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            type=Type.ID,
            memory_cost=settings.argon2_memory_cost,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
        )
        self._dummy_hash: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, password_hash: Optional[str], plaintext: str) -> bool:
        """Return True only on a match; never raises for bad or missing hashes."""
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def burn_time(self, plaintext: str) -> None:
        """Spend one verification worth of work for accounts that do not exist."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(self._dummy_hash, plaintext)


def generate_secure_password(length: int = 16) -> str:
    """Random password with at least one upper, lower, digit and symbol."""
    if length < len(_CHARACTER_CLASSES):
        raise ValueError(f"length must be at least {len(_CHARACTER_CLASSES)}")
    rng = secrets.SystemRandom()
    alphabet = "".join(_CHARACTER_CLASSES)
    chars = [rng.choice(charset) for charset in _CHARACTER_CLASSES]
    chars.extend(rng.choice(alphabet) for _ in range(length - len(chars)))
    rng.shuffle(chars)
    return "".join(chars)

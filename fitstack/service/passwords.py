from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fitstack.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """One-way salted password hashing (argon2id)."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("fitstack-timing-equalizer")

    @classmethod
    def for_tests(cls) -> "CredentialVerifier":
        return cls(PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID))

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        # OAuth-only accounts have no hash and can never pass password login
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            logger.warning("password_verification_error")
            return False

    def dummy_verify(self, plaintext: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, plaintext)
        except (InvalidHash, VerificationError):
            pass

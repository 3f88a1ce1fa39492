from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from junicore.logging import get_logger

logger = get_logger(__name__)

ALGO = "argon2id"


class CredentialStore:
    """Slow, salted one-way hashing for principal passwords."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against unknown-email logins so they cost the same as real ones
        self._dummy_hash = self._hasher.hash("junicore-dummy-credential")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        """Return True only when ``plaintext`` matches ``stored_hash``.

        Mismatches and malformed or foreign hashes both return False.
        """
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=type(exc).__name__)
            return False

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_hash)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

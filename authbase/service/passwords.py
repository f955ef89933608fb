from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authbase.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Argon2id hashing with a constant-cost decoy for unknown principals."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        # Verified against when the principal does not exist so the response
        # costs the same as a real mismatch.
        self._decoy_hash = self._hasher.hash("authbase-decoy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    def verify_decoy(self, password: str) -> bool:
        self.verify(self._decoy_hash, password)
        return False


from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger

logger = get_logger(__name__)

ARGON2_ALGO = "argon2id"


class PasswordHasher:
    """One-way password hashing backed by argon2id."""

    algo = ARGON2_ALGO

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), self.algo

    def matches(self, password: str, stored_hash: str, algo: str = ARGON2_ALGO) -> bool:
        """Return True when ``password`` verifies against ``stored_hash``."""

        if algo != self.algo:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

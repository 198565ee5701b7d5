from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from jwtpizza.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Salted one-way password hashing backed by argon2id.

    The work factor is fixed at construction; hashes written with another
    cost still verify because argon2 encodes its parameters in the hash.
    """

    def __init__(self, time_cost: int = 10) -> None:
        self._hasher = _Argon2Hasher(time_cost=time_cost, type=Type.ID)
        # Verified against when the account does not exist
        self._dummy_hash = self._hasher.hash("dummy-password-for-timing")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        """True only when ``plaintext`` matches ``hashed``; never raises on bad input."""
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn(self, plaintext: str) -> None:
        """Spend one verification on a throwaway hash."""
        self.verify(plaintext, self._dummy_hash)

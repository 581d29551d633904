from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accountkit.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id password hashing; the salt travels inside the encoded digest."""

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        """Return True only when ``password`` matches ``digest``.

        Empty or malformed digests are a plain mismatch rather than an error.
        """
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_invalid")
            return False

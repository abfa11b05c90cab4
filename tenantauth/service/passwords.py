from __future__ import annotations

import hashlib
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def hash_refresh_token(token: str) -> str:
    """Hex SHA-256 of a refresh token; the raw token is never stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PasswordService:
    """argon2id hashing. Both calls are CPU-bound and belong on the crypto pool."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def verify(self, record: Optional[tuple[str, str]], password: str) -> bool:
        if not record:
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

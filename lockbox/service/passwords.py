from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from lockbox.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id password hashing and verification against the credential store."""

    algo = "argon2id"

    def __init__(self, store) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), self.algo

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != self.algo:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def hash_secret(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def verify_secret(self, secret_hash: str, secret: str) -> bool:
        """Check a client secret against its stored argon2 hash."""
        try:
            return self._pwd_hasher.verify(secret_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

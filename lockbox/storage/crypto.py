from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from lockbox.logging import get_logger
from lockbox.storage.errors import SecretDecryptionError

logger = get_logger(__name__)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet envelope for two-factor secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret key material is required to store two-factor secrets")
        try:
            self._fernet = Fernet(derive_cipher_key(key_material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize two-factor secret cipher") from exc

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str], *, user_id: Optional[str] = None) -> Optional[str]:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except (InvalidToken, UnicodeDecodeError) as exc:
            logger.error("two_factor_secret_decrypt_failed", user_id=user_id)
            raise SecretDecryptionError(user_id) from exc


def hash_token(token: str) -> str:
    """SHA-256 hex digest; the only form in which bearer tokens are stored or used as keys."""
    return hashlib.sha256(token.encode()).hexdigest()

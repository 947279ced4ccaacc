"""RFC 6238 time-based one-time passwords and argon2-hashed backup codes."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from typing import List, Optional, Sequence
from urllib.parse import quote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from lockbox.logging import get_logger
from lockbox.storage.errors import SecretDecryptionError

logger = get_logger(__name__)

SECRET_BYTES = 20


def generate_secret() -> str:
    """Random 160-bit key, base32 encoded without padding."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")


def _decode_secret(secret: str) -> bytes:
    normalized = secret.strip().replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError) as exc:
        logger.warning("totp_secret_invalid")
        raise SecretDecryptionError() from exc


def generate_code(secret: str, timestamp: float, *, interval: int = 30, digits: int = 6) -> str:
    key = _decode_secret(secret)
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_code(
    secret: str,
    code: str,
    timestamp: float,
    *,
    drift_steps: int = 2,
    interval: int = 30,
    digits: int = 6,
) -> bool:
    """Accept ``code`` if it matches any step within ``drift_steps`` of ``timestamp``."""
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != digits or not candidate.isdigit():
        return False
    matched = False
    for step in range(-drift_steps, drift_steps + 1):
        generated = generate_code(
            secret, timestamp + step * interval, interval=interval, digits=digits
        )
        # compare every step so timing does not reveal which one matched
        if hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}", safe=":@")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer, safe='')}"


def canonical_backup_code(code: str) -> str:
    return (code or "").strip().replace("-", "").replace(" ", "").upper()


class BackupCodeHasher:
    """Generates XXXX-XXXX backup codes and stores only argon2id hashes of them."""

    def __init__(self, *, time_cost: int = 2, memory_cost: int = 19456) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    @staticmethod
    def generate(count: int) -> List[str]:
        codes = []
        for _ in range(count):
            raw = secrets.token_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    def hash(self, code: str) -> str:
        return self._hasher.hash(canonical_backup_code(code))

    def hash_all(self, codes: Sequence[str]) -> List[str]:
        return [self.hash(code) for code in codes]

    def find(self, hashes: Sequence[str], code: str) -> Optional[int]:
        """Index of the stored hash matching ``code``, or None."""
        candidate = canonical_backup_code(code)
        if not candidate:
            return None
        for index, stored in enumerate(hashes):
            try:
                if self._hasher.verify(stored, candidate):
                    return index
            except (VerifyMismatchError, VerificationError):
                continue
            except InvalidHash:
                logger.warning("backup_code_hash_invalid", index=index)
                continue
        return None

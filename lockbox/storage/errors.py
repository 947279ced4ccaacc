from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not be reached; the operation was not applied."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SecretDecryptionError(Exception):
    """A stored two-factor secret could not be decrypted or decoded."""

    def __init__(self, user_id: Optional[str] = None):
        super().__init__("stored two-factor secret is unreadable")
        self.user_id = user_id


__all__ = ["ConstraintViolation", "StoreUnavailable", "SecretDecryptionError"]

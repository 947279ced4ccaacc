from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorState(str, Enum):
    DISABLED = "disabled"
    PENDING = "pending"
    ENABLED = "enabled"


@dataclass
class User:
    id: str
    email: str
    tenant_id: str = "public"
    role: str = "user"
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class AccountSecurity:
    """Per-user lockout and two-factor state.

    ``two_factor_secret`` is plaintext base32 while the record is in service
    code; stores encrypt it before it is written anywhere.
    """

    user_id: str
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_pending_verification: bool = False
    two_factor_setup_started_at: Optional[datetime] = None
    two_factor_backup_codes: List[str] = field(default_factory=list)
    two_factor_verification_attempts: int = 0
    two_factor_last_failed_attempt: Optional[datetime] = None
    two_factor_last_verified_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def two_factor_state(self) -> TwoFactorState:
        if self.two_factor_enabled:
            return TwoFactorState.ENABLED
        if self.two_factor_pending_verification:
            return TwoFactorState.PENDING
        return TwoFactorState.DISABLED

    def clear_two_factor(self) -> None:
        """Return to DISABLED, dropping the secret and all backup material."""
        self.two_factor_enabled = False
        self.two_factor_secret = None
        self.two_factor_pending_verification = False
        self.two_factor_setup_started_at = None
        self.two_factor_backup_codes = []
        self.two_factor_verification_attempts = 0
        self.two_factor_last_failed_attempt = None

    def copy(self) -> "AccountSecurity":
        clone = AccountSecurity(**self.__dict__)
        clone.two_factor_backup_codes = list(self.two_factor_backup_codes)
        return clone


@dataclass
class OAuthClient:
    id: str
    name: str
    client_type: str = "confidential"
    tenant_id: str = "public"
    allowed_scopes: List[str] = field(default_factory=list)
    secret_hash: Optional[str] = None
    refresh_token_ttl_days: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class TokenRecord:
    """Server-side state for one access/refresh pair. Tokens are stored as digests."""

    id: str
    access_token_hash: str
    access_token_expires_at: datetime
    client_id: str
    tenant_id: str = "public"
    user_id: Optional[str] = None
    refresh_token_hash: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None
    scope: List[str] = field(default_factory=list)
    revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    rotated_from: Optional[str] = None

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())


class RotationStatus(str, Enum):
    ROTATED = "rotated"
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    REUSED = "reused"


@dataclass
class RotationResult:
    status: RotationStatus
    previous: Optional[TokenRecord] = None
    issued: Optional[TokenRecord] = None


@dataclass
class AuditEvent:
    id: str
    event: str
    severity: str
    tenant_id: str = "public"
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

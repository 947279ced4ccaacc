from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from lockbox.service.errors import ErrorKind

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "service_unavailable",
        *(kind.value for kind in ErrorKind),
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or any(len(l) > 63 or not _EMAIL_DOMAIN_LABEL.match(l) for l in labels):
        raise ValueError("invalid email address format")
    return normalized


# auth


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    client_id: Optional[str] = Field(default=None, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    scope: Optional[str] = Field(default=None, max_length=512)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None
    scope: str = ""


class TwoFactorChallengeResponse(BaseModel):
    requires_2fa: bool = True
    temp_token: str
    expires_in: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    enrollment_uri: str
    backup_codes: List[str]
    expires_at: datetime


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TwoFactorLoginRequest(BaseModel):
    temp_token: str = Field(..., max_length=256)
    code: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, max_length=16)

    @model_validator(mode="after")
    def _exactly_one_code(self) -> "TwoFactorLoginRequest":
        if bool(self.code) == bool(self.backup_code):
            raise ValueError("provide exactly one of code or backup_code")
        return self


class TwoFactorDisableRequest(BaseModel):
    current_password: str = Field(..., max_length=128)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    state: Literal["disabled", "pending", "enabled"]
    enabled: bool
    remaining_backup_codes: int
    setup_expires_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None


# tokens


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=256)
    client_id: Optional[str] = Field(default=None, max_length=128)


class TokenRevokeRequest(BaseModel):
    token: str = Field(..., max_length=256)
    all_sessions: bool = False
    client_id: Optional[str] = Field(default=None, max_length=128)


class RevokeResponse(BaseModel):
    revoked: int


class IntrospectRequest(BaseModel):
    token: str = Field(..., max_length=256)


class IntrospectionResponse(BaseModel):
    active: bool
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    scope: str = ""
    exp: Optional[int] = None
    iat: Optional[int] = None


class ClientCredentialsRequest(BaseModel):
    client_id: str = Field(..., max_length=128)
    client_secret: str = Field(..., max_length=256)
    scope: Optional[str] = Field(default=None, max_length=512)


# audit


class AuditEventResponse(BaseModel):
    id: str
    event: str
    severity: str
    tenant_id: str
    user_id: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: datetime


class AuditEventList(BaseModel):
    items: List[AuditEventResponse]
    page: int
    limit: int

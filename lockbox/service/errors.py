from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from lockbox.logging import get_logger
from lockbox.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for exceptions raised at the HTTP edge.

    Engines return Outcome values; these cover request-level refusals
    (missing credentials, rate limits) that never reach an engine.
    A ``retry_after_seconds`` detail becomes a Retry-After header.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ErrorCategory(str, Enum):
    CREDENTIAL = "credential"
    SECOND_FACTOR = "second_factor"
    TOKEN = "token"
    TRANSIENT = "transient"


class ErrorKind(str, Enum):
    """Typed failure outcomes returned by the security engines."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    CONFLICT = "CONFLICT"
    SETUP_NOT_STARTED = "SETUP_NOT_STARTED"
    SETUP_EXPIRED = "SETUP_EXPIRED"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    INVALID_CODE = "INVALID_CODE"
    TWO_FACTOR_LOCKED = "TWO_FACTOR_LOCKED"
    TWO_FACTOR_NOT_ENABLED = "TWO_FACTOR_NOT_ENABLED"
    INVALID_2FA_TOKEN = "INVALID_2FA_TOKEN"
    INVALID_GRANT = "INVALID_GRANT"
    INVALID_CLIENT = "INVALID_CLIENT"
    INVALID_SCOPE = "INVALID_SCOPE"
    UNAVAILABLE = "UNAVAILABLE"

    @property
    def status_code(self) -> int:
        return _KIND_STATUS[self]

    @property
    def category(self) -> ErrorCategory:
        return _KIND_CATEGORY[self]


_KIND_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.CONFLICT: 409,
    ErrorKind.SETUP_NOT_STARTED: 400,
    ErrorKind.SETUP_EXPIRED: 400,
    ErrorKind.TOO_MANY_ATTEMPTS: 429,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.TWO_FACTOR_LOCKED: 429,
    ErrorKind.TWO_FACTOR_NOT_ENABLED: 400,
    ErrorKind.INVALID_2FA_TOKEN: 401,
    ErrorKind.INVALID_GRANT: 400,
    ErrorKind.INVALID_CLIENT: 401,
    ErrorKind.INVALID_SCOPE: 400,
    ErrorKind.UNAVAILABLE: 503,
}

_KIND_CATEGORY: Dict[ErrorKind, ErrorCategory] = {
    ErrorKind.INVALID_CREDENTIALS: ErrorCategory.CREDENTIAL,
    ErrorKind.ACCOUNT_LOCKED: ErrorCategory.CREDENTIAL,
    ErrorKind.CONFLICT: ErrorCategory.SECOND_FACTOR,
    ErrorKind.SETUP_NOT_STARTED: ErrorCategory.SECOND_FACTOR,
    ErrorKind.SETUP_EXPIRED: ErrorCategory.SECOND_FACTOR,
    ErrorKind.TOO_MANY_ATTEMPTS: ErrorCategory.SECOND_FACTOR,
    ErrorKind.INVALID_CODE: ErrorCategory.SECOND_FACTOR,
    ErrorKind.TWO_FACTOR_LOCKED: ErrorCategory.SECOND_FACTOR,
    ErrorKind.TWO_FACTOR_NOT_ENABLED: ErrorCategory.SECOND_FACTOR,
    ErrorKind.INVALID_2FA_TOKEN: ErrorCategory.SECOND_FACTOR,
    ErrorKind.INVALID_GRANT: ErrorCategory.TOKEN,
    ErrorKind.INVALID_CLIENT: ErrorCategory.TOKEN,
    ErrorKind.INVALID_SCOPE: ErrorCategory.TOKEN,
    ErrorKind.UNAVAILABLE: ErrorCategory.TRANSIENT,
}


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def retryable(self) -> bool:
        return self.kind.category is ErrorCategory.TRANSIENT


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or a typed Failure; expected failures never raise."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls, kind: ErrorKind, message: str, **detail: Any
    ) -> "Outcome[T]":
        return cls(failure=Failure(kind, message, detail))


def transient_as_outcome(
    func: Callable[..., Awaitable[Outcome[T]]]
) -> Callable[..., Awaitable[Outcome[T]]]:
    """Turn a StoreUnavailable raised inside an engine call into an UNAVAILABLE outcome."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Outcome[T]:
        try:
            return await func(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.warning("store_unavailable", operation=func.__name__, error=exc.message)
            return Outcome.fail(ErrorKind.UNAVAILABLE, "storage temporarily unavailable")

    return wrapper


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "RateLimitedError",
    "ErrorCategory",
    "ErrorKind",
    "Failure",
    "Outcome",
    "transient_as_outcome",
]

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, List, Optional

from lockbox.logging import get_logger
from lockbox.storage.models import AuditEvent

logger = get_logger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEvent(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_BLOCKED = "LOGIN_BLOCKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    TWO_FACTOR_SETUP_STARTED = "2FA_SETUP_STARTED"
    TWO_FACTOR_SETUP_EXPIRED = "2FA_SETUP_EXPIRED"
    TWO_FACTOR_SETUP_FAILED = "2FA_SETUP_FAILED"
    TWO_FACTOR_SETUP_LOCKED = "2FA_SETUP_LOCKED"
    TWO_FACTOR_SETUP_CANCELLED = "2FA_SETUP_CANCELLED"
    TWO_FACTOR_ENABLED = "2FA_ENABLED"
    TWO_FACTOR_BACKUP_CODES_GENERATED = "2FA_BACKUP_CODES_GENERATED"
    TWO_FACTOR_VERIFICATION_SUCCESS = "2FA_VERIFICATION_SUCCESS"
    TWO_FACTOR_VERIFICATION_FAILED = "2FA_VERIFICATION_FAILED"
    TWO_FACTOR_VERIFICATION_LOCKED = "2FA_VERIFICATION_LOCKED"
    TWO_FACTOR_BACKUP_CODE_USED = "2FA_BACKUP_CODE_USED"
    TWO_FACTOR_BACKUP_CODES_REGENERATED = "TWO_FACTOR_BACKUP_CODES_REGENERATED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    TOKEN_ROTATED = "TOKEN_ROTATED"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    TOKEN_REVOKED = "TOKEN_REVOKED"


DEFAULT_SEVERITY = {
    SecurityEvent.LOGIN_SUCCESS: Severity.LOW,
    SecurityEvent.LOGIN_FAILED: Severity.MEDIUM,
    SecurityEvent.LOGIN_BLOCKED: Severity.MEDIUM,
    SecurityEvent.ACCOUNT_LOCKED: Severity.HIGH,
    SecurityEvent.TWO_FACTOR_SETUP_STARTED: Severity.LOW,
    SecurityEvent.TWO_FACTOR_SETUP_EXPIRED: Severity.LOW,
    SecurityEvent.TWO_FACTOR_SETUP_FAILED: Severity.MEDIUM,
    SecurityEvent.TWO_FACTOR_SETUP_LOCKED: Severity.HIGH,
    SecurityEvent.TWO_FACTOR_SETUP_CANCELLED: Severity.LOW,
    SecurityEvent.TWO_FACTOR_ENABLED: Severity.MEDIUM,
    SecurityEvent.TWO_FACTOR_BACKUP_CODES_GENERATED: Severity.MEDIUM,
    SecurityEvent.TWO_FACTOR_VERIFICATION_SUCCESS: Severity.LOW,
    SecurityEvent.TWO_FACTOR_VERIFICATION_FAILED: Severity.MEDIUM,
    SecurityEvent.TWO_FACTOR_VERIFICATION_LOCKED: Severity.HIGH,
    SecurityEvent.TWO_FACTOR_BACKUP_CODE_USED: Severity.MEDIUM,
    SecurityEvent.TWO_FACTOR_BACKUP_CODES_REGENERATED: Severity.HIGH,
    SecurityEvent.TWO_FACTOR_DISABLED: Severity.HIGH,
    SecurityEvent.TOKEN_ISSUED: Severity.LOW,
    SecurityEvent.TOKEN_ROTATED: Severity.LOW,
    SecurityEvent.TOKEN_REUSE_DETECTED: Severity.CRITICAL,
    SecurityEvent.TOKEN_REVOKED: Severity.LOW,
}


class AuditTrail:
    """Best-effort security audit log written after the state change commits.

    Writes are retried with exponential backoff; events that still cannot be
    written are escalated and parked until ``flush_pending`` succeeds.
    """

    def __init__(
        self,
        sink,
        *,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.2,
        max_pending: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sink = sink
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_seconds = backoff_seconds
        self._pending: Deque[AuditEvent] = deque(maxlen=max_pending)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def record(
        self,
        event: SecurityEvent | str,
        *,
        user_id: Optional[str] = None,
        tenant_id: str = "public",
        severity: Optional[Severity] = None,
        **details: Any,
    ) -> AuditEvent:
        event_name = event.value if isinstance(event, SecurityEvent) else str(event)
        if severity is None:
            try:
                severity = DEFAULT_SEVERITY[SecurityEvent(event_name)]
            except ValueError:
                severity = Severity.LOW
        entry = AuditEvent(
            id=str(uuid.uuid4()),
            event=event_name,
            severity=Severity(severity).value,
            tenant_id=tenant_id,
            user_id=user_id,
            details=details,
            created_at=self._clock(),
        )
        try:
            written = await self._write(entry)
        except asyncio.CancelledError:
            self._park(entry, reason="cancelled")
            raise
        if not written:
            self._park(entry, reason="retries_exhausted")
        return entry

    async def _write(self, entry: AuditEvent) -> bool:
        delay = self.backoff_seconds
        for attempt in range(1, self.retry_attempts + 1):
            try:
                await asyncio.to_thread(self.sink.append_audit_event, entry)
                return True
            except Exception as exc:
                logger.warning(
                    "audit_write_failed",
                    audit_event=entry.event,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < self.retry_attempts and delay > 0:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False

    def _park(self, entry: AuditEvent, *, reason: str) -> None:
        if self._pending.maxlen is not None and len(self._pending) == self._pending.maxlen:
            dropped = self._pending[0]
            logger.error("audit_pending_overflow", dropped_event=dropped.event, alert=True)
        self._pending.append(entry)
        logger.error(
            "audit_write_escalated",
            audit_event=entry.event,
            severity=entry.severity,
            user_id=entry.user_id,
            reason=reason,
            alert=True,
        )

    async def flush_pending(self) -> int:
        """Retry parked events once each; returns how many were written."""
        written = 0
        for _ in range(len(self._pending)):
            entry = self._pending.popleft()
            try:
                await asyncio.to_thread(self.sink.append_audit_event, entry)
            except Exception as exc:
                logger.warning("audit_flush_failed", audit_event=entry.event, error=str(exc))
                self._pending.appendleft(entry)
                break
            written += 1
        if written:
            logger.info("audit_pending_flushed", count=written, remaining=len(self._pending))
        return written

    async def history(
        self,
        user_id: str,
        *,
        event: Optional[str] = None,
        severity: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[AuditEvent]:
        limit = max(1, min(limit, 100))
        offset = (max(1, page) - 1) * limit
        return await asyncio.to_thread(
            self.sink.list_audit_events,
            user_id=user_id,
            event=event,
            severity=severity,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )

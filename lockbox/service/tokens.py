from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from lockbox.config import ClientType, Settings
from lockbox.logging import get_logger
from lockbox.service.audit import AuditTrail, SecurityEvent
from lockbox.service.errors import ErrorKind, Outcome, transient_as_outcome
from lockbox.service.introspection import IntrospectionCache
from lockbox.service.passwords import PasswordService
from lockbox.storage.crypto import hash_token
from lockbox.storage.models import OAuthClient, RotationStatus, TokenRecord

logger = get_logger(__name__)


class RevocationScope(str, Enum):
    SINGLE = "single"
    ALL_FOR_USER = "all_for_user"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    expires_in: int
    scope: List[str] = field(default_factory=list)
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None
    token_type: str = "bearer"


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def _parse_scope(scope: Optional[str | Sequence[str]]) -> List[str]:
    if not scope:
        return []
    items = scope.split() if isinstance(scope, str) else list(scope)
    seen: List[str] = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


class TokenIssuer:
    """Issues opaque access/refresh pairs, rotates refresh tokens and revokes.

    Only SHA-256 digests of tokens reach the store or the cache. Rotation
    revokes the presented row and inserts its successor in one store
    transaction; replaying an already-rotated refresh token revokes the whole
    user/client family when reuse detection is on.
    """

    def __init__(
        self,
        store,
        audit: AuditTrail,
        introspection: IntrospectionCache,
        passwords: PasswordService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.introspection = introspection
        self.passwords = passwords
        self.settings = settings
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _refresh_ttl(self, client: OAuthClient) -> Optional[timedelta]:
        if ClientType(client.client_type) is ClientType.MACHINE:
            return None
        days = client.refresh_token_ttl_days or self.settings.refresh_token_ttl_days(client.client_type)
        return timedelta(days=days) if days else None

    @staticmethod
    def _resolve_scope(client: OAuthClient, requested: Optional[str | Sequence[str]]) -> Optional[List[str]]:
        scopes = _parse_scope(requested)
        if not scopes:
            return list(client.allowed_scopes)
        if any(s not in client.allowed_scopes for s in scopes):
            return None
        return scopes

    def _build_record(
        self,
        client: OAuthClient,
        *,
        user_id: Optional[str],
        tenant_id: str,
        scope: List[str],
        now: datetime,
        rotated_from: Optional[str] = None,
    ) -> Tuple[TokenRecord, TokenPair]:
        access_token = generate_token()
        refresh_ttl = self._refresh_ttl(client) if user_id else None
        refresh_token = generate_token() if refresh_ttl else None
        record = TokenRecord(
            id=TokenRecord.new_id(),
            access_token_hash=hash_token(access_token),
            access_token_expires_at=now + self.access_ttl,
            client_id=client.id,
            tenant_id=tenant_id,
            user_id=user_id,
            refresh_token_hash=hash_token(refresh_token) if refresh_token else None,
            refresh_token_expires_at=now + refresh_ttl if refresh_ttl else None,
            scope=list(scope),
            created_at=now,
            rotated_from=rotated_from,
        )
        pair = TokenPair(
            access_token=access_token,
            expires_in=int(self.access_ttl.total_seconds()),
            scope=list(scope),
            refresh_token=refresh_token,
            refresh_expires_in=int(refresh_ttl.total_seconds()) if refresh_ttl else None,
        )
        return record, pair

    @transient_as_outcome
    async def issue(
        self,
        client_id: str,
        user_id: Optional[str],
        scope: Optional[str | Sequence[str]] = None,
        tenant_id: Optional[str] = None,
    ) -> Outcome[TokenPair]:
        client = await asyncio.to_thread(self.store.get_client, client_id)
        if client is None:
            logger.warning("token_issue_unknown_client", client_id=client_id)
            return Outcome.fail(ErrorKind.INVALID_CLIENT, "unknown client")
        scopes = self._resolve_scope(client, scope)
        if scopes is None:
            return Outcome.fail(
                ErrorKind.INVALID_SCOPE,
                "requested scope exceeds the client's allowed scopes",
                allowed_scopes=list(client.allowed_scopes),
            )
        tenant = tenant_id or client.tenant_id
        record, pair = self._build_record(
            client, user_id=user_id, tenant_id=tenant, scope=scopes, now=self._now()
        )
        await asyncio.to_thread(self.store.create_token, record)
        await self.audit.record(
            SecurityEvent.TOKEN_ISSUED,
            user_id=user_id,
            tenant_id=tenant,
            client_id=client.id,
            token_id=record.id,
            scope=scopes,
        )
        return Outcome.success(pair)

    @transient_as_outcome
    async def rotate(self, refresh_token: str, client_id: Optional[str] = None) -> Outcome[TokenPair]:
        digest = hash_token(refresh_token or "")
        existing = await asyncio.to_thread(self.store.get_token_by_refresh, digest)
        if existing is None:
            return Outcome.fail(ErrorKind.INVALID_GRANT, "refresh token is invalid")
        if client_id and existing.client_id != client_id:
            logger.warning(
                "refresh_client_mismatch",
                token_client_id=existing.client_id,
                presented_client_id=client_id,
            )
            return Outcome.fail(ErrorKind.INVALID_GRANT, "refresh token is invalid")
        client = await asyncio.to_thread(self.store.get_client, existing.client_id)
        if client is None:
            return Outcome.fail(ErrorKind.INVALID_GRANT, "refresh token is invalid")

        now = self._now()
        issued: dict = {}

        def build(current: TokenRecord) -> TokenRecord:
            record, pair = self._build_record(
                client,
                user_id=current.user_id,
                tenant_id=current.tenant_id,
                scope=current.scope,
                now=now,
                rotated_from=current.id,
            )
            issued["pair"] = pair
            return record

        result = await asyncio.to_thread(self.store.rotate_refresh_token, digest, build, now=now)
        if result.status is RotationStatus.ROTATED:
            previous = result.previous
            await self.introspection.invalidate_hashes([previous.access_token_hash])
            await self.audit.record(
                SecurityEvent.TOKEN_ROTATED,
                user_id=previous.user_id,
                tenant_id=previous.tenant_id,
                client_id=previous.client_id,
                previous_token_id=previous.id,
                token_id=result.issued.id,
            )
            return Outcome.success(issued["pair"])
        if result.status is RotationStatus.REUSED:
            await self._handle_reuse(result.previous)
        return Outcome.fail(ErrorKind.INVALID_GRANT, "refresh token is invalid")

    async def _handle_reuse(self, previous: TokenRecord) -> None:
        if not self.settings.refresh_reuse_detection or not previous.user_id:
            return
        revoked = await asyncio.to_thread(
            self.store.revoke_user_tokens, previous.user_id, client_id=previous.client_id
        )
        await self.introspection.invalidate_hashes(
            [previous.access_token_hash, *(r.access_token_hash for r in revoked)]
        )
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=previous.user_id,
            client_id=previous.client_id,
            revoked=len(revoked),
        )
        await self.audit.record(
            SecurityEvent.TOKEN_REUSE_DETECTED,
            user_id=previous.user_id,
            tenant_id=previous.tenant_id,
            client_id=previous.client_id,
            token_id=previous.id,
            revoked_count=len(revoked),
        )

    async def _find(self, digest: str) -> Optional[TokenRecord]:
        record = await asyncio.to_thread(self.store.get_token_by_access, digest)
        if record is None:
            record = await asyncio.to_thread(self.store.get_token_by_refresh, digest)
        return record

    @transient_as_outcome
    async def revoke(
        self,
        token: str,
        scope: RevocationScope | str = RevocationScope.SINGLE,
        client_id: Optional[str] = None,
    ) -> Outcome[int]:
        """Revoke a token or its user's whole session set. Unknown tokens revoke nothing."""
        digest = hash_token(token or "")
        found = await self._find(digest)
        if found is None:
            return Outcome.success(0)
        mode = RevocationScope(scope)
        if mode is RevocationScope.ALL_FOR_USER and found.user_id:
            revoked = await asyncio.to_thread(
                self.store.revoke_user_tokens, found.user_id, client_id=client_id
            )
        else:
            if client_id and found.client_id != client_id:
                logger.warning("revoke_client_mismatch", token_client_id=found.client_id)
                return Outcome.success(0)
            record = await asyncio.to_thread(self.store.revoke_token, digest)
            revoked = [record] if record is not None and not found.revoked else []
        await self._after_revoke(revoked, found.user_id, found.tenant_id, mode.value)
        return Outcome.success(len(revoked))

    @transient_as_outcome
    async def revoke_all_for_user(
        self, user_id: str, client_id: Optional[str] = None, *, tenant_id: str = "public"
    ) -> Outcome[int]:
        revoked = await asyncio.to_thread(self.store.revoke_user_tokens, user_id, client_id=client_id)
        await self._after_revoke(revoked, user_id, tenant_id, "forced")
        return Outcome.success(len(revoked))

    async def _after_revoke(
        self, revoked: Iterable[TokenRecord], user_id: Optional[str], tenant_id: str, reason: str
    ) -> None:
        revoked = list(revoked)
        if not revoked:
            return
        await self.introspection.invalidate_hashes([r.access_token_hash for r in revoked])
        await self.audit.record(
            SecurityEvent.TOKEN_REVOKED,
            user_id=user_id,
            tenant_id=tenant_id,
            count=len(revoked),
            scope=reason,
        )

    @transient_as_outcome
    async def issue_client_credentials(
        self,
        client_id: str,
        client_secret: str,
        scope: Optional[str | Sequence[str]] = None,
    ) -> Outcome[TokenPair]:
        client = await asyncio.to_thread(self.store.get_client, client_id)
        if (
            client is None
            or ClientType(client.client_type) is not ClientType.MACHINE
            or not client.secret_hash
        ):
            return Outcome.fail(ErrorKind.INVALID_CLIENT, "client authentication failed")
        valid = await asyncio.to_thread(self.passwords.verify_secret, client.secret_hash, client_secret or "")
        if not valid:
            logger.warning("client_secret_mismatch", client_id=client_id)
            return Outcome.fail(ErrorKind.INVALID_CLIENT, "client authentication failed")
        return await self.issue(client.id, None, scope, client.tenant_id)

    async def register_client(
        self,
        client_id: str,
        *,
        name: Optional[str] = None,
        client_type: ClientType | str = ClientType.CONFIDENTIAL,
        allowed_scopes: Optional[Sequence[str]] = None,
        tenant_id: str = "public",
        client_secret: Optional[str] = None,
        refresh_token_ttl_days: Optional[int] = None,
    ) -> Tuple[OAuthClient, Optional[str]]:
        """Create a client; machine clients get a generated secret unless one is given."""
        kind = ClientType(client_type)
        if kind is ClientType.MACHINE and not client_secret:
            client_secret = secrets.token_urlsafe(32)
        secret_hash = None
        if client_secret:
            secret_hash = await asyncio.to_thread(self.passwords.hash_secret, client_secret)
        client = OAuthClient(
            id=client_id,
            name=name or client_id,
            client_type=kind.value,
            tenant_id=tenant_id,
            allowed_scopes=_parse_scope(allowed_scopes),
            secret_hash=secret_hash,
            refresh_token_ttl_days=refresh_token_ttl_days,
        )
        await asyncio.to_thread(self.store.create_client, client)
        logger.info("client_registered", client_id=client_id, client_type=kind.value)
        return client, client_secret

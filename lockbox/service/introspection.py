from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from lockbox.logging import get_logger
from lockbox.storage.crypto import hash_token
from lockbox.storage.local_cache import LocalTTLCache
from lockbox.storage.models import TokenRecord
from lockbox.storage.redis_cache import introspection_key

logger = get_logger(__name__)


def _tombstone_key(token_hash: str) -> str:
    return f"tombstone:{token_hash}"


@dataclass(frozen=True)
class IntrospectionResult:
    active: bool
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    scope: List[str] = field(default_factory=list)
    exp: Optional[int] = None
    iat: Optional[int] = None

    @classmethod
    def from_record(cls, record: TokenRecord, now: datetime) -> "IntrospectionResult":
        return cls(
            active=not record.revoked and record.access_token_expires_at > now,
            client_id=record.client_id,
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            scope=list(record.scope),
            exp=int(record.access_token_expires_at.timestamp()),
            iat=int(record.created_at.timestamp()),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["IntrospectionResult"]:
        try:
            return cls(
                active=bool(data["active"]),
                client_id=data.get("client_id"),
                user_id=data.get("user_id"),
                tenant_id=data.get("tenant_id"),
                scope=list(data.get("scope") or []),
                exp=int(data["exp"]) if data.get("exp") is not None else None,
                iat=int(data["iat"]) if data.get("iat") is not None else None,
            )
        except (KeyError, TypeError, ValueError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "scope": list(self.scope),
            "exp": self.exp,
            "iat": self.iat,
        }


class IntrospectionCache:
    """Read-through cache of access token state keyed by token digest.

    Redis is the primary tier. Any Redis error drops the instance into a
    degraded mode served by an in-process ``LocalTTLCache`` until a primary
    call succeeds again. The store stays authoritative; a cached entry is
    only trusted while it is active and unexpired.
    """

    def __init__(
        self,
        store,
        primary=None,
        *,
        fallback: Optional[LocalTTLCache] = None,
        ttl_ceiling_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.primary = primary
        self.fallback = fallback or LocalTTLCache()
        self.ttl_ceiling_seconds = ttl_ceiling_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.degraded = primary is None

    def _now(self) -> datetime:
        return self._clock()

    def _mark_degraded(self, operation: str, exc: Exception) -> None:
        if not self.degraded:
            logger.warning("introspection_cache_degraded", operation=operation, error=str(exc))
        self.degraded = True

    def _mark_healthy(self) -> None:
        if self.degraded and self.primary is not None:
            logger.info("introspection_cache_recovered")
        self.degraded = self.primary is None

    async def _read(self, token_hash: str) -> Optional[Dict[str, Any]]:
        if self.primary is not None and self.fallback.get(_tombstone_key(token_hash)) is None:
            try:
                cached = await self.primary.get_introspection(token_hash)
            except Exception as exc:
                self._mark_degraded("get", exc)
            else:
                self._mark_healthy()
                return cached
        return self.fallback.get(introspection_key(token_hash))

    async def _write(self, token_hash: str, result: IntrospectionResult, ttl: int) -> None:
        payload = result.to_dict()
        if self.primary is not None:
            try:
                await self.primary.set_introspection(token_hash, payload, ttl)
            except Exception as exc:
                self._mark_degraded("set", exc)
            else:
                self._mark_healthy()
                return
        self.fallback.set(introspection_key(token_hash), payload, ttl)

    async def lookup(self, access_token: str) -> Optional[IntrospectionResult]:
        """Return the token's projection, or None for a token the store never issued."""
        if not access_token:
            return None
        token_hash = hash_token(access_token)
        now = self._now()
        cached = await self._read(token_hash)
        if cached is not None:
            result = IntrospectionResult.from_dict(cached)
            if result and result.active and result.exp and result.exp > now.timestamp():
                return result
        record = await asyncio.to_thread(self.store.get_token_by_access, token_hash)
        if record is None:
            return None
        result = IntrospectionResult.from_record(record, now)
        if result.active:
            remaining = int((record.access_token_expires_at - now).total_seconds())
            ttl = min(remaining, self.ttl_ceiling_seconds)
            if ttl > 0:
                await self._write(token_hash, result, ttl)
                # a revoke that committed after the read above may have already
                # invalidated; confirm before leaving an active entry behind
                current = await asyncio.to_thread(self.store.get_token_by_access, token_hash)
                if current is None or current.revoked:
                    await self.invalidate_hashes([token_hash])
                    return IntrospectionResult.from_record(current, now) if current else None
        return result

    async def invalidate(self, access_token: str) -> None:
        await self.invalidate_hashes([hash_token(access_token)])

    async def invalidate_hashes(self, token_hashes: Iterable[str]) -> None:
        hashes = [h for h in token_hashes if h]
        if not hashes:
            return
        for token_hash in hashes:
            self.fallback.delete(introspection_key(token_hash))
        if self.primary is None:
            return
        try:
            await self.primary.delete_introspection(*hashes)
        except Exception as exc:
            self._mark_degraded("delete", exc)
            # Bypass primary hits for these digests until any stale entry has expired
            for token_hash in hashes:
                self.fallback.set(_tombstone_key(token_hash), True, self.ttl_ceiling_seconds)
            logger.warning("introspection_invalidate_deferred", count=len(hashes))
        else:
            self._mark_healthy()

    def purge_local(self) -> int:
        return self.fallback.purge_expired()

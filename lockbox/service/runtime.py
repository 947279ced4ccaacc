from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from lockbox.config import Settings, get_settings
from lockbox.logging import get_logger
from lockbox.service.audit import AuditTrail
from lockbox.service.auth import AuthService
from lockbox.service.introspection import IntrospectionCache
from lockbox.service.lockout import LockoutPolicy, LockoutTracker
from lockbox.service.passwords import PasswordService
from lockbox.service.tokens import TokenIssuer
from lockbox.service.two_factor import TwoFactorEngine
from lockbox.storage.errors import ConstraintViolation
from lockbox.storage.local_cache import LocalTTLCache
from lockbox.storage.memory import MemoryStore
from lockbox.storage.models import OAuthClient
from lockbox.storage.postgres import PostgresStore
from lockbox.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

DEFAULT_CLIENT_SCOPES = ["profile", "email"]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds and owns the store, caches and security services for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        cache=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        s = self.settings
        self.local_cache = LocalTTLCache(max_entries=s.local_cache_max_entries)
        self.audit = AuditTrail(
            self.store,
            retry_attempts=s.audit_retry_attempts,
            backoff_seconds=s.audit_retry_backoff_seconds,
            max_pending=s.audit_pending_max,
            clock=self.clock,
        )
        self.passwords = PasswordService(self.store)
        self.lockout = LockoutTracker(self.store, LockoutPolicy.from_settings(s), clock=self.clock)
        self.introspection = IntrospectionCache(
            self.store,
            self.cache,
            fallback=self.local_cache,
            ttl_ceiling_seconds=s.introspection_cache_ttl_seconds,
            clock=self.clock,
        )
        self.tokens = TokenIssuer(
            self.store, self.audit, self.introspection, self.passwords, s, clock=self.clock
        )
        self.two_factor = TwoFactorEngine(
            self.store, self.audit, self.passwords, s, lockout=self.lockout, clock=self.clock
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            s,
            passwords=self.passwords,
            lockout=self.lockout,
            two_factor=self.two_factor,
            tokens=self.tokens,
            audit=self.audit,
            fallback=self.local_cache,
            clock=self.clock,
        )
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._ensure_default_client()
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def _build_store(self):
        s = self.settings
        store_type = "memory" if s.use_memory_store else "postgres"
        try:
            if s.use_memory_store:
                store = MemoryStore(fs_root=s.shared_fs_root, secret_key=s.secret_key)
            else:
                store = PostgresStore(s.database_url, fs_root=s.shared_fs_root, secret_key=s.secret_key)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self):
        s = self.settings
        cache = None
        redis_error: Exception | None = None
        if s.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if s.test_mode:
                    cache = SyncRedisCache(s.redis_url, socket_timeout=s.redis_socket_timeout_seconds)
                else:
                    cache = RedisCache(s.redis_url, socket_timeout=s.redis_socket_timeout_seconds)
                cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                cache = None

        if cache is None:
            if not s.test_mode and not s.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for introspection caching, 2FA challenges and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if s.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(s.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; introspection entries, 2FA "
                    "challenges and rate limits are per-process only."
                ),
                mode=fallback_mode,
            )
        return cache

    def _ensure_default_client(self) -> None:
        s = self.settings
        if self.store.get_client(s.default_client_id) is not None:
            return
        try:
            self.store.create_client(
                OAuthClient(
                    id=s.default_client_id,
                    name=s.default_client_id,
                    client_type=s.default_client_type.value,
                    tenant_id=s.default_tenant_id,
                    allowed_scopes=list(DEFAULT_CLIENT_SCOPES),
                )
            )
            logger.info("default_client_created", client_id=s.default_client_id)
        except ConstraintViolation:
            # another worker created it first
            pass

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket rate limit; Redis when available, otherwise per process."""
        if limit <= 0:
            return (True, limit, 0) if return_remaining else True
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        if self.cache is not None:
            try:
                return await self.cache.check_rate_limit(
                    key, limit, window_seconds, return_remaining=return_remaining, cost=cost
                )
            except Exception as exc:
                logger.warning("rate_limit_cache_failed", error=str(exc))
        now = time.monotonic()
        refill_rate = float(limit) / float(window_seconds)
        async with self._local_rate_limit_lock:
            tokens, last_ts = self._local_rate_limits.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local_rate_limits[key] = (tokens, now)
            reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
            remaining = int(tokens)
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    async def run_housekeeping(self) -> Dict[str, int]:
        expired = await self.two_factor.sweep_expired_setups()
        flushed = await self.audit.flush_pending()
        purged = self.introspection.purge_local()
        return {"expired_setups": expired, "audit_flushed": flushed, "cache_purged": purged}

    async def close(self) -> None:
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")

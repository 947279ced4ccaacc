from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from lockbox.api.schemas import (
    AuditEventList,
    AuditEventResponse,
    BackupCodesResponse,
    ClientCredentialsRequest,
    Envelope,
    IntrospectionResponse,
    IntrospectRequest,
    LoginRequest,
    RevokeResponse,
    TokenRefreshRequest,
    TokenResponse,
    TokenRevokeRequest,
    TwoFactorChallengeResponse,
    TwoFactorDisableRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from lockbox.logging import get_logger
from lockbox.service.errors import AuthenticationError, Failure, Outcome, RateLimitedError
from lockbox.service.runtime import Runtime
from lockbox.service.tokens import RevocationScope, TokenPair
from lockbox.service.two_factor import CodeKind
from lockbox.storage.crypto import hash_token

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_runtime_lock = threading.Lock()


def runtime_for_app(app) -> Runtime:
    """Return the app's Runtime, building it on first use."""
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        with _runtime_lock:
            runtime = getattr(app.state, "runtime", None)
            if runtime is None:
                runtime = Runtime(getattr(app.state, "settings", None))
                app.state.runtime = runtime
    return runtime


def get_runtime(request: Request) -> Runtime:
    return runtime_for_app(request.app)


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _raise_for(failure: Failure) -> None:
    headers = None
    retry_after = failure.detail.get("retry_after_seconds")
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    elif failure.retryable:
        headers = {"Retry-After": "5"}
    raise _http_error(
        failure.kind.value,
        failure.message,
        status_code=failure.status_code,
        details=dict(failure.detail) or None,
        headers=headers,
    )


def _unwrap(outcome: Outcome):
    if not outcome.ok:
        _raise_for(outcome.failure)
    return outcome.value


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_token=pair.refresh_token,
        refresh_expires_in=pair.refresh_expires_in,
        scope=" ".join(pair.scope),
    )


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, _remaining, reset_seconds = await runtime.check_rate_limit(
        key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": max(1, reset_seconds)}
        )


@dataclass(frozen=True)
class Principal:
    user_id: str
    tenant_id: str
    client_id: str
    scope: List[str] = field(default_factory=list)


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Principal:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("bearer token required")
    result = await runtime.introspection.lookup(token.strip())
    if result is None or not result.active or not result.user_id:
        raise AuthenticationError("invalid or expired token")
    return Principal(
        user_id=result.user_id,
        tenant_id=result.tenant_id or runtime.settings.default_tenant_id,
        client_id=result.client_id or runtime.settings.default_client_id,
        scope=list(result.scope),
    )


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email and password.

    Returns a token pair, or a temporary token when the account has two-factor
    authentication enabled.
    """
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    result = _unwrap(
        await runtime.auth.login(
            body.email,
            body.password,
            tenant_id=body.tenant_id,
            client_id=body.client_id,
            scope=body.scope,
        )
    )
    if result.requires_2fa:
        data = TwoFactorChallengeResponse(temp_token=result.temp_token, expires_in=result.expires_in)
    else:
        data = _token_response(result.tokens)
    return Envelope(status="ok", data=data)


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["two-factor"])
async def two_factor_setup(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = await _current_user(runtime, principal)
    setup = _unwrap(
        await runtime.two_factor.begin_setup(principal.user_id, user.email, tenant_id=principal.tenant_id)
    )
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            enrollment_uri=setup.enrollment_uri,
            backup_codes=setup.backup_codes,
            expires_at=setup.expires_at,
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def two_factor_verify(
    body: TwoFactorVerifyRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _unwrap(await runtime.two_factor.verify_setup(principal.user_id, body.code, tenant_id=principal.tenant_id))
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/cancel", response_model=Envelope, tags=["two-factor"])
async def two_factor_cancel(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _unwrap(await runtime.two_factor.cancel_setup(principal.user_id, tenant_id=principal.tenant_id))
    return Envelope(status="ok", data={"cancelled": True})


@router.post("/auth/2fa/login", response_model=Envelope, tags=["two-factor"])
async def two_factor_login(body: TwoFactorLoginRequest, runtime: Runtime = Depends(get_runtime)):
    await _enforce_rate_limit(
        runtime,
        f"2fa_login:{hash_token(body.temp_token)}",
        runtime.settings.two_factor_rate_limit_per_minute,
    )
    if body.backup_code:
        code, kind = body.backup_code, CodeKind.BACKUP
    else:
        code, kind = body.code, CodeKind.TOTP
    result = _unwrap(await runtime.auth.complete_two_factor_login(body.temp_token, code, kind))
    return Envelope(status="ok", data=_token_response(result.tokens))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def two_factor_disable(
    body: TwoFactorDisableRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa_disable:{principal.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
    )
    _unwrap(
        await runtime.two_factor.disable(
            principal.user_id, body.current_password, tenant_id=principal.tenant_id
        )
    )
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["two-factor"])
async def two_factor_backup_codes(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    codes = _unwrap(
        await runtime.two_factor.regenerate_backup_codes(principal.user_id, tenant_id=principal.tenant_id)
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/auth/2fa/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    status = _unwrap(await runtime.two_factor.status(principal.user_id))
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            state=status.state.value,
            enabled=status.state.value == "enabled",
            remaining_backup_codes=status.remaining_backup_codes,
            setup_expires_at=status.setup_expires_at,
            last_verified_at=status.last_verified_at,
        ),
    )


async def _current_user(runtime: Runtime, principal: Principal):
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("account is not active")
    return user


# tokens


@router.post("/token/refresh", response_model=Envelope, tags=["tokens"])
async def token_refresh(body: TokenRefreshRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    await _enforce_rate_limit(
        runtime, f"token:{_client_key(request)}", runtime.settings.token_rate_limit_per_minute
    )
    pair = _unwrap(await runtime.tokens.rotate(body.refresh_token, body.client_id))
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/token/revoke", response_model=Envelope, tags=["tokens"])
async def token_revoke(body: TokenRevokeRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """Revoke a token; ``all_sessions`` revokes every live token of its user."""
    await _enforce_rate_limit(
        runtime, f"token:{_client_key(request)}", runtime.settings.token_rate_limit_per_minute
    )
    scope = RevocationScope.ALL_FOR_USER if body.all_sessions else RevocationScope.SINGLE
    count = _unwrap(await runtime.tokens.revoke(body.token, scope, body.client_id))
    return Envelope(status="ok", data=RevokeResponse(revoked=count))


@router.post("/token/client", response_model=Envelope, tags=["tokens"])
async def token_client_credentials(
    body: ClientCredentialsRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await _enforce_rate_limit(
        runtime, f"token:{_client_key(request)}", runtime.settings.token_rate_limit_per_minute
    )
    pair = _unwrap(
        await runtime.tokens.issue_client_credentials(body.client_id, body.client_secret, body.scope)
    )
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/token/introspect", response_model=Envelope, tags=["tokens"])
async def token_introspect(body: IntrospectRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    await _enforce_rate_limit(
        runtime, f"token:{_client_key(request)}", runtime.settings.token_rate_limit_per_minute
    )
    result = await runtime.introspection.lookup(body.token)
    if result is None or not result.active:
        return Envelope(status="ok", data=IntrospectionResponse(active=False))
    return Envelope(
        status="ok",
        data=IntrospectionResponse(
            active=True,
            client_id=result.client_id,
            user_id=result.user_id,
            tenant_id=result.tenant_id,
            scope=" ".join(result.scope),
            exp=result.exp,
            iat=result.iat,
        ),
    )


# audit


@router.get("/audit/events", response_model=Envelope, tags=["audit"])
async def audit_events(
    event: Optional[str] = Query(None, max_length=64),
    severity: Optional[str] = Query(None, pattern="^(low|medium|high|critical)$"),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    events = await runtime.audit.history(
        principal.user_id,
        event=event,
        severity=severity,
        since=since,
        until=until,
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=AuditEventList(
            items=[
                AuditEventResponse(
                    id=e.id,
                    event=e.event,
                    severity=e.severity,
                    tenant_id=e.tenant_id,
                    user_id=e.user_id,
                    details=e.details,
                    created_at=e.created_at,
                )
                for e in events
            ],
            page=page,
            limit=limit,
        ),
    )

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lockbox.api.error_handling import register_exception_handlers
from lockbox.api.routes import router, runtime_for_app
from lockbox.config import Settings
from lockbox.logging import get_logger, set_correlation_id
from lockbox.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


async def _run_housekeeping(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop: expire stale 2FA setups, flush parked audit events, purge local caches."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            try:
                result = await runtime.run_housekeeping()
                if any(result.values()):
                    logger.info("housekeeping_completed", **result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort loop
                logger.warning("housekeeping_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("housekeeping_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the housekeeping loop on startup; stop it and release resources on shutdown."""
    task: asyncio.Task | None = None
    try:
        runtime = await asyncio.to_thread(runtime_for_app, app)
        task = asyncio.create_task(
            _run_housekeeping(runtime, runtime.settings.housekeeping_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    try:
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(title="Lockbox", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = settings if settings is not None else (runtime.settings if runtime else None)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
            response.headers.setdefault("Pragma", "no-cache")
        response.headers.setdefault("API-Version", __version__)
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Reuse the client's X-Request-ID or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> JSONResponse:
        """Check the store, Redis and the shared filesystem with bounded timeouts."""
        runtime = runtime_for_app(app)
        timeout = runtime.settings.health_check_timeout_seconds
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), timeout)
                return True
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component=label, timeout=timeout)
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        if hasattr(runtime.store, "verify_connection"):
            db_ok = await _run_bounded("database", runtime.store.verify_connection)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        else:
            # Local tier only; not a failure
            redis_ok = True
            checks["redis"] = {"status": "not_configured"}
        checks["introspection_cache"] = {"degraded": runtime.introspection.degraded}

        fs_ok = True
        fs_root = getattr(runtime.store, "fs_root", None)
        if fs_root:
            fs_path = Path(fs_root)

            def _fs_probe() -> None:
                if not fs_path.is_dir():
                    raise FileNotFoundError(fs_path)
                probe = fs_path / ".health_check"
                probe.write_text(datetime.now(timezone.utc).isoformat())
                probe.read_text()
                probe.unlink(missing_ok=True)

            fs_ok = await _run_bounded("filesystem", _fs_probe)
            checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

        healthy = db_ok and redis_ok and fs_ok
        checks["audit"] = {"pending": runtime.audit.pending_count}
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    return app


app = create_app()

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router, well_known_router
from authcore.config import get_settings
from authcore.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the signing key before serving and run the expired-session sweep."""
    global _sweep_task
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    # Fail fast: a missing or unreadable key must stop startup
    runtime.keys.init()
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(interval))

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(well_known_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks: store, session cache, signing key, issuer discovery.

    A failing store or signing key makes the service unhealthy. A missing
    cache or an unreachable discovery document only degrades it.
    """
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    if hasattr(runtime.store, "ping"):
        db_ok = await _run_bounded("database", runtime.store.ping)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        try:
            redis_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            redis_ok = False
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        redis_ok = False
        checks["redis"] = {"status": "not_configured", "degraded": True}

    keys_ok = await _run_bounded("signing_key", runtime.keys.init)
    checks["signing_key"] = {
        "status": "healthy" if keys_ok else "unhealthy",
        "kid": runtime.keys.key_id,
    }

    discovery_error = await _probe_discovery(
        runtime.settings.oidc_issuer, runtime.settings.external_http_timeout_seconds
    )
    discovery_ok = discovery_error is None
    checks["discovery"] = {"status": "healthy" if discovery_ok else "unreachable"}
    if discovery_error:
        checks["discovery"]["error"] = sanitize_error_message(discovery_error)

    if not (db_ok and keys_ok):
        status = "unhealthy"
    elif not (redis_ok and discovery_ok):
        status = "degraded"
    else:
        status = "healthy"
    return {
        "status": status,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _probe_discovery(issuer: str, timeout: float) -> Optional[str]:
    """Fetch the issuer's discovery document; return an error string or None."""
    url = f"{issuer}/.well-known/openid-configuration"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
        response.raise_for_status()
        advertised = response.json().get("issuer")
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("health_check_discovery_failed", url=url, error=str(exc))
        return str(exc) or type(exc).__name__
    if advertised != issuer:
        return f"issuer mismatch: {advertised}"
    return None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Background loop deleting expired sessions, codes and OIDC records."""
    from authcore.service.runtime import get_runtime

    try:
        while True:
            try:
                runtime = get_runtime()
                await asyncio.to_thread(runtime.sessions.sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


def create_app() -> FastAPI:
    return app

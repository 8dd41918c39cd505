from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.credentials import CredentialStore
from authcore.service.email import EmailService
from authcore.service.gate import AuthenticationGate
from authcore.service.interactions import (
    InteractionConfig,
    InteractionCookieConfig,
    InteractionOrchestrator,
)
from authcore.service.keys import KeyManager
from authcore.service.oauth import AuthorizationCodeBroker
from authcore.service.sessions import SessionService
from authcore.service.tokens import TokenService
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

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
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        ttl_seconds=self.settings.session_cache_ttl_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        ttl_seconds=self.settings.session_cache_ttl_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the session cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; every session "
                    "check goes to the durable store."
                ),
                mode=fallback_mode,
            )

        self.keys = KeyManager(self.settings.key_dir, key_id=self.settings.signing_key_id)
        self.tokens = TokenService(self.keys, self.settings)
        self.credentials = CredentialStore(self.store, self.settings)
        self.sessions = SessionService(self.store, self.cache, self.settings)
        self.gate = AuthenticationGate(self.tokens, self.sessions.resolver, self.store)
        self.broker = AuthorizationCodeBroker(self.store, self.tokens, self.settings)
        self.interactions = InteractionOrchestrator(
            self.store,
            self.credentials,
            self.broker,
            InteractionConfig(
                frontend_url=self.settings.frontend_url,
                cookies=InteractionCookieConfig(secure=self.settings.cookie_secure),
            ),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.frontend_url,
        )
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.sessions,
            self.tokens,
            self.settings,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            issuer=self.settings.oidc_issuer,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            google_configured=bool(self.settings.google_client_id),
            apple_configured=bool(self.settings.apple_client_id),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

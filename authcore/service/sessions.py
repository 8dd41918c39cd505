from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import DEFAULT_ROLE, DeviceInfo, Session, User

logger = get_logger(__name__)


class SessionBackend(Protocol):
    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        location: str | None = None,
        client_id: str | None = None,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, last_used_at: datetime) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def delete_expired_auth_codes(self, now: datetime) -> int: ...

    def delete_expired_oidc_payloads(self, now: datetime) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class SessionCache(Protocol):
    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]: ...

    async def set_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        *,
        only_if_absent: bool = False,
    ) -> None: ...

    async def invalidate_session(
        self, session_id: str, user_id: Optional[str] = None
    ) -> None: ...

    async def invalidate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def set_user(self, user_id: str, projection: Dict[str, Any]) -> None: ...


class SessionState(str, enum.Enum):
    VALID = "valid"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MISSING = "missing"


@dataclass
class SessionIdentity:
    """Projection of a session and its owner, as cached."""

    session_id: str
    user_id: str
    email: Optional[str]
    role: str


@dataclass
class SessionResolution:
    state: SessionState
    identity: Optional[SessionIdentity] = None
    from_cache: bool = False


def user_projection(user: User) -> Dict[str, Any]:
    return {"id": user.id, "email": user.email, "role": user.role or DEFAULT_ROLE}


class SessionResolver:
    """Two-tier read-through lookup of session validity.

    Cache entries marked invalid are authoritative rejections. Misses and
    cache errors fall through to the durable store, whose answer is then
    written back to the cache. The write-back never replaces an existing
    entry, so a revocation marker written while the store read was in flight
    survives.
    """

    def __init__(self, store: SessionBackend, cache: Optional[SessionCache]) -> None:
        self.store = store
        self.cache = cache

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _cached_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_session(session_id)
        except Exception as exc:
            logger.warning("session_cache_read_failed", session_id=session_id, error=str(exc))
            return None

    async def _cached_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_user(user_id)
        except Exception as exc:
            logger.warning("user_cache_read_failed", user_id=user_id, error=str(exc))
            return None

    async def populate(
        self, session: Session, user: User, *, only_if_absent: bool = False
    ) -> None:
        if not self.cache:
            return
        try:
            await self.cache.set_session(
                session.id,
                session.user_id,
                session.expires_at,
                only_if_absent=only_if_absent,
            )
            await self.cache.set_user(user.id, user_projection(user))
        except Exception as exc:
            logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))

    async def resolve(self, session_id: str) -> SessionResolution:
        cached = await self._cached_session(session_id)
        if cached is not None:
            if not cached.get("is_valid", False):
                return SessionResolution(SessionState.REVOKED, from_cache=True)
            user_id = cached.get("user_id")
            cached_user = await self._cached_user(user_id) if user_id else None
            if cached_user is not None:
                return SessionResolution(
                    SessionState.VALID,
                    SessionIdentity(
                        session_id=session_id,
                        user_id=cached_user["id"],
                        email=cached_user.get("email"),
                        role=cached_user.get("role") or DEFAULT_ROLE,
                    ),
                    from_cache=True,
                )

        session = self.store.get_session(session_id)
        if session is None:
            return SessionResolution(SessionState.MISSING)
        if session.is_expired(self._now()):
            return SessionResolution(SessionState.EXPIRED)
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            return SessionResolution(SessionState.MISSING)
        await self.populate(session, user, only_if_absent=True)
        return SessionResolution(
            SessionState.VALID,
            SessionIdentity(
                session_id=session.id,
                user_id=user.id,
                email=user.email,
                role=user.role or DEFAULT_ROLE,
            ),
        )


class SessionService:
    """Session lifecycle: create, list, revoke and sweep."""

    def __init__(
        self,
        store: SessionBackend,
        cache: Optional[SessionCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.resolver = SessionResolver(store, cache)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def default_expiry(self) -> datetime:
        return self._now() + timedelta(minutes=self.settings.session_ttl_minutes)

    async def create(
        self,
        user: User,
        expires_at: Optional[datetime] = None,
        device: Optional[DeviceInfo] = None,
        *,
        client_id: Optional[str] = None,
    ) -> Session:
        device = device or DeviceInfo()
        session = self.store.create_session(
            user.id,
            expires_at or self.default_expiry(),
            user_agent=device.user_agent,
            ip_addr=device.ip_addr,
            location=device.location,
            client_id=client_id,
        )
        await self.resolver.populate(session, user)
        self.logger.info("session_created", session_id=session.id, user_id=user.id)
        return session

    def find_by_id(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def get_owned(self, session_id: str, user_id: str) -> Optional[Session]:
        """Return the session only if it exists, is live, and belongs to ``user_id``."""
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id or session.is_expired(self._now()):
            return None
        return session

    def list_active_for_user(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id, self._now())

    def count_active_for_user(self, user_id: str) -> int:
        return len(self.list_active_for_user(user_id))

    def touch(self, session_id: str) -> None:
        try:
            self.store.touch_session(session_id, self._now())
        except Exception as exc:
            self.logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    async def delete(self, session_id: str, *, user_id: Optional[str] = None) -> bool:
        """Revoke one session: drop the row, then mark the cache entry invalid.

        A read that misses the cache after the row is gone has nothing to write
        back, and the marker overwrites whatever an earlier read cached.
        """
        removed = self.store.delete_session(session_id)
        if self.cache:
            try:
                await self.cache.invalidate_session(session_id, user_id)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_invalidate_failed", session_id=session_id, error=str(exc)
                )
        self.logger.info("session_revoked", session_id=session_id, removed=removed)
        return removed

    async def delete_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke every session of ``user_id`` except (optionally) the caller's own."""
        removed_ids = self.store.delete_user_sessions(
            user_id, except_session_id=except_session_id, now=self._now()
        )
        if self.cache:
            for session_id in removed_ids:
                try:
                    await self.cache.invalidate_session(session_id, user_id)
                except Exception as exc:
                    self.logger.warning(
                        "session_cache_invalidate_failed",
                        session_id=session_id,
                        error=str(exc),
                    )
            try:
                await self.cache.invalidate_user_sessions(user_id, except_session_id)
            except Exception as exc:
                self.logger.warning(
                    "user_sessions_cache_invalidate_failed", user_id=user_id, error=str(exc)
                )
        self.logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            count=len(removed_ids),
            kept_session_id=except_session_id,
        )
        return len(removed_ids)

    def cleanup_expired_sessions(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            self.logger.info("expired_sessions_swept", count=removed)
        return removed

    def sweep(self) -> Dict[str, int]:
        """Purge expired sessions, spent authorization codes and dead OIDC records."""
        now = self._now()
        counts = {
            "sessions": self.cleanup_expired_sessions(),
            "auth_codes": self.store.delete_expired_auth_codes(now),
            "oidc_payloads": self.store.delete_expired_oidc_payloads(now),
        }
        if counts["auth_codes"] or counts["oidc_payloads"]:
            self.logger.info(
                "expired_grants_swept",
                auth_codes=counts["auth_codes"],
                oidc_payloads=counts["oidc_payloads"],
            )
        return counts

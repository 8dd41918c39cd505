from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


def _session_key(session_id: str) -> str:
    return f"auth:session:{session_id}"


def _user_key(user_id: str) -> str:
    return f"auth:user:{user_id}"


def _user_sessions_key(user_id: str) -> str:
    return f"auth:user_sessions:{user_id}"


def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted entry - treat as a miss so the store stays authoritative
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Read-through accelerator for session and user projections.

    Entries are never authoritative for a *positive* answer beyond their TTL,
    but an entry with ``is_valid`` set to false is a revocation marker that
    callers must honour.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        ttl_seconds: int = 3600,
    ):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _ttl_seconds(self, expires_at: Optional[datetime]) -> int:
        """Bound the cache TTL by the session's own expiry.

        Normalize to UTC and clamp to at least 1 second to avoid Redis
        rejecting negative or zero TTL values.
        """

        if expires_at is None:
            return self.ttl_seconds
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        remaining = int((expires_at - datetime.now(timezone.utc)).total_seconds())
        return max(1, min(self.ttl_seconds, remaining))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return _decode(await self.client.get(_session_key(session_id)))

    async def set_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        *,
        only_if_absent: bool = False,
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        entry = {
            "id": session_id,
            "user_id": user_id,
            "expires_at": expires_at.isoformat(),
            "is_valid": True,
        }
        pipe = self.client.pipeline()
        pipe.set(_session_key(session_id), json.dumps(entry), ex=ttl, nx=only_if_absent)
        # Track the session in the user's set for bulk revocation
        pipe.sadd(_user_sessions_key(user_id), session_id)
        pipe.expire(_user_sessions_key(user_id), self.ttl_seconds)
        await pipe.execute()

    async def invalidate_session(
        self, session_id: str, user_id: Optional[str] = None
    ) -> None:
        """Overwrite the entry with a revocation marker."""
        entry = {"id": session_id, "user_id": user_id, "is_valid": False}
        pipe = self.client.pipeline()
        pipe.set(_session_key(session_id), json.dumps(entry), ex=self.ttl_seconds)
        if user_id:
            pipe.srem(_user_sessions_key(user_id), session_id)
        await pipe.execute()

    async def invalidate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Mark every tracked session of a user as revoked.

        Args:
            user_id: User whose sessions to revoke
            except_session_id: Optional session ID to keep active

        Returns:
            Number of cache entries marked invalid
        """
        user_sessions_key = _user_sessions_key(user_id)
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            entry = {"id": session_id, "user_id": user_id, "is_valid": False}
            pipe.set(_session_key(session_id), json.dumps(entry), ex=self.ttl_seconds)
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        await pipe.execute()
        return revoked

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return _decode(await self.client.get(_user_key(user_id)))

    async def set_user(self, user_id: str, projection: Dict[str, Any]) -> None:
        await self.client.set(_user_key(user_id), json.dumps(projection), ex=self.ttl_seconds)

    async def delete_user(self, user_id: str) -> None:
        await self.client.delete(_user_key(user_id))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache(RedisCache):
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
        ttl_seconds: int = 3600,
    ):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return _decode(self._sync_client.get(_session_key(session_id)))

    async def set_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        *,
        only_if_absent: bool = False,
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        entry = {
            "id": session_id,
            "user_id": user_id,
            "expires_at": expires_at.isoformat(),
            "is_valid": True,
        }
        pipe = self._sync_client.pipeline()
        pipe.set(_session_key(session_id), json.dumps(entry), ex=ttl, nx=only_if_absent)
        pipe.sadd(_user_sessions_key(user_id), session_id)
        pipe.expire(_user_sessions_key(user_id), self.ttl_seconds)
        pipe.execute()

    async def invalidate_session(
        self, session_id: str, user_id: Optional[str] = None
    ) -> None:
        entry = {"id": session_id, "user_id": user_id, "is_valid": False}
        pipe = self._sync_client.pipeline()
        pipe.set(_session_key(session_id), json.dumps(entry), ex=self.ttl_seconds)
        if user_id:
            pipe.srem(_user_sessions_key(user_id), session_id)
        pipe.execute()

    async def invalidate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        user_sessions_key = _user_sessions_key(user_id)
        session_ids = self._sync_client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        revoked = 0
        pipe = self._sync_client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            entry = {"id": session_id, "user_id": user_id, "is_valid": False}
            pipe.set(_session_key(session_id), json.dumps(entry), ex=self.ttl_seconds)
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        pipe.execute()
        return revoked

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return _decode(self._sync_client.get(_user_key(user_id)))

    async def set_user(self, user_id: str, projection: Dict[str, Any]) -> None:
        self._sync_client.set(_user_key(user_id), json.dumps(projection), ex=self.ttl_seconds)

    async def delete_user(self, user_id: str) -> None:
        self._sync_client.delete(_user_key(user_id))

    async def close(self) -> None:
        self._sync_client.close()

"""Cache-aside session resolution and revocation.

Uses an in-process async double for the Redis cache so tests can observe
cache writes and inject cache failures.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from authcore.service.gate import AuthenticationGate
from authcore.service.sessions import SessionService, SessionState
from authcore.storage.models import AuthorizationCode, DeviceInfo, OidcPayload


class FakeCache:
    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.fail = False
        self.reads = 0

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        self._check()
        self.reads += 1
        return self.sessions.get(session_id)

    async def set_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        *,
        only_if_absent: bool = False,
    ) -> None:
        self._check()
        if only_if_absent and session_id in self.sessions:
            return
        self.sessions[session_id] = {
            "id": session_id,
            "user_id": user_id,
            "expires_at": expires_at.isoformat(),
            "is_valid": True,
        }

    async def invalidate_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        self._check()
        entry = self.sessions.setdefault(session_id, {"id": session_id, "user_id": user_id})
        entry["is_valid"] = False

    async def invalidate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        self._check()
        count = 0
        for sid, entry in self.sessions.items():
            if entry.get("user_id") == user_id and sid != except_session_id:
                entry["is_valid"] = False
                count += 1
        return count

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        self._check()
        return self.users.get(user_id)

    async def set_user(self, user_id: str, projection: Dict[str, Any]) -> None:
        self._check()
        self.users[user_id] = dict(projection)


class StalledCache(FakeCache):
    """Holds resolver reads and write-backs until ``release`` is set."""

    def __init__(self, *, stall_reads: bool = False, stall_writes: bool = False) -> None:
        super().__init__()
        self.stall_reads = stall_reads
        self.stall_writes = stall_writes
        self.release = asyncio.Event()

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        entry = await super().get_session(session_id)
        if self.stall_reads:
            await self.release.wait()
        return entry

    async def set_session(self, session_id, user_id, expires_at, *, only_if_absent=False):
        if self.stall_writes and only_if_absent:
            await self.release.wait()
        await super().set_session(
            session_id, user_id, expires_at, only_if_absent=only_if_absent
        )


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def sessions(store, cache, settings):
    return SessionService(store, cache, settings)


@pytest.fixture
def gate(tokens, sessions, store):
    return AuthenticationGate(tokens, sessions.resolver, store)


@pytest.fixture
def user(store):
    return store.create_user("ada@example.com", display_name="Ada")


class TestCacheAside:
    async def test_create_populates_cache(self, sessions, cache, user):
        session = await sessions.create(user)

        assert cache.sessions[session.id]["is_valid"] is True
        assert cache.users[user.id]["email"] == user.email

    async def test_cache_hit_skips_store(self, sessions, cache, store, user, monkeypatch):
        session = await sessions.create(user)

        def _boom(session_id):
            raise AssertionError("store should not be read on a cache hit")

        monkeypatch.setattr(store, "get_session", _boom)
        resolution = await sessions.resolver.resolve(session.id)

        assert resolution.state == SessionState.VALID
        assert resolution.from_cache is True
        assert resolution.identity.user_id == user.id

    async def test_cache_miss_falls_back_and_writes_back(self, sessions, cache, user):
        session = await sessions.create(user)
        cache.sessions.clear()
        cache.users.clear()

        resolution = await sessions.resolver.resolve(session.id)

        assert resolution.state == SessionState.VALID
        assert resolution.from_cache is False
        assert session.id in cache.sessions
        assert user.id in cache.users

    async def test_cache_failure_is_a_miss(self, sessions, cache, user):
        session = await sessions.create(user)
        cache.fail = True

        resolution = await sessions.resolver.resolve(session.id)

        assert resolution.state == SessionState.VALID
        assert resolution.from_cache is False

    async def test_expired_session_in_store(self, sessions, cache, user):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        session = await sessions.create(user, expires_at=past)
        cache.sessions.clear()

        resolution = await sessions.resolver.resolve(session.id)
        assert resolution.state == SessionState.EXPIRED


class TestRevocation:
    async def test_cache_hit_invalid_rejects_even_if_row_exists(
        self, sessions, cache, gate, tokens, store, user
    ):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        cache.sessions[session.id]["is_valid"] = False

        assert store.get_session(session.id) is not None
        assert await gate.authenticate(token) is None

    async def test_cache_miss_then_store_miss_rejects(
        self, sessions, cache, gate, tokens, store, user
    ):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        cache.sessions.clear()
        store.delete_session(session.id)

        assert await gate.authenticate(token) is None

    async def test_delete_removes_row_and_marks_cache(self, sessions, cache, gate, tokens, user):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        assert (await gate.authenticate(token)).jti == session.id

        assert await sessions.delete(session.id, user_id=user.id) is True

        assert cache.sessions[session.id]["is_valid"] is False
        assert sessions.find_by_id(session.id) is None
        assert await gate.authenticate(token) is None

    async def test_delete_survives_cache_outage(self, sessions, cache, gate, tokens, user):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        cache.fail = True

        assert await sessions.delete(session.id, user_id=user.id) is True
        assert await gate.authenticate(token) is None

    async def test_delete_all_keeps_current(self, sessions, cache, user):
        keep = await sessions.create(user, device=DeviceInfo(user_agent="laptop"))
        drop_a = await sessions.create(user, device=DeviceInfo(user_agent="phone"))
        drop_b = await sessions.create(user, device=DeviceInfo(user_agent="tablet"))

        removed = await sessions.delete_all_for_user(user.id, except_session_id=keep.id)

        assert removed == 2
        assert cache.sessions[keep.id]["is_valid"] is True
        assert cache.sessions[drop_a.id]["is_valid"] is False
        assert cache.sessions[drop_b.id]["is_valid"] is False
        assert [s.id for s in sessions.list_active_for_user(user.id)] == [keep.id]

    async def test_delete_all_counts_only_live_sessions(self, sessions, user):
        await sessions.create(user)
        await sessions.create(user, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))

        assert await sessions.delete_all_for_user(user.id) == 1
        assert sessions.list_active_for_user(user.id) == []


class TestConcurrentRevocation:
    async def _race(self, store, settings, tokens, user, cache):
        sessions = SessionService(store, cache, settings)
        gate = AuthenticationGate(tokens, sessions.resolver, store)
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        cache.sessions.clear()

        async def _revoke():
            await sessions.delete(session.id, user_id=user.id)
            cache.release.set()

        await asyncio.gather(gate.authenticate(token), _revoke())
        cache.stall_reads = cache.stall_writes = False
        return gate, session, token

    async def test_revoke_during_cache_read(self, store, settings, tokens, user):
        cache = StalledCache(stall_reads=True)
        gate, session, token = await self._race(store, settings, tokens, user, cache)

        assert cache.sessions[session.id]["is_valid"] is False
        assert await gate.authenticate(token) is None

    async def test_revoke_during_write_back_keeps_marker(self, store, settings, tokens, user):
        cache = StalledCache(stall_writes=True)
        gate, session, token = await self._race(store, settings, tokens, user, cache)

        assert cache.sessions[session.id]["is_valid"] is False
        assert await gate.authenticate(token) is None

    async def test_write_back_does_not_replace_existing_entry(self, sessions, cache, user):
        session = await sessions.create(user)
        cache.sessions[session.id]["is_valid"] = False

        await sessions.resolver.populate(session, user, only_if_absent=True)

        assert cache.sessions[session.id]["is_valid"] is False


class TestSessionLifecycle:
    async def test_list_excludes_expired_and_others(self, sessions, store, user):
        other = store.create_user("other@example.com")
        live = await sessions.create(user)
        await sessions.create(user, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        await sessions.create(other)

        assert [s.id for s in sessions.list_active_for_user(user.id)] == [live.id]
        assert sessions.count_active_for_user(user.id) == 1

    async def test_get_owned_hides_foreign_sessions(self, sessions, store, user):
        other = store.create_user("other@example.com")
        theirs = await sessions.create(other)

        assert sessions.get_owned(theirs.id, user.id) is None
        assert sessions.get_owned(theirs.id, other.id).id == theirs.id

    async def test_touch_updates_last_used(self, sessions, user, monkeypatch):
        session = await sessions.create(user)
        later = datetime.now(timezone.utc) + timedelta(minutes=5)
        monkeypatch.setattr(sessions, "_now", lambda: later)

        sessions.touch(session.id)

        assert sessions.find_by_id(session.id).last_used_at == later

    async def test_cleanup_expired_sessions(self, sessions, user):
        await sessions.create(user, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        live = await sessions.create(user)

        assert sessions.cleanup_expired_sessions() == 1
        assert sessions.find_by_id(live.id) is not None

    async def test_sweep_purges_sessions_codes_and_oidc_records(self, sessions, store, user):
        now = datetime.now(timezone.utc)
        await sessions.create(user, expires_at=now - timedelta(seconds=1))
        code = store.create_auth_code(
            AuthorizationCode.new(
                "a" * 64,
                client_id="web",
                user_id=user.id,
                redirect_uri="https://a.example/cb",
                code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
                code_challenge_method="S256",
                ttl_seconds=600,
            )
        )
        store.consume_auth_code(code.code)
        store.upsert_oidc_payload(
            OidcPayload(
                id="Session:old", type="Session", payload={},
                expires_at=now - timedelta(seconds=1),
            )
        )

        assert sessions.sweep() == {"sessions": 1, "auth_codes": 1, "oidc_payloads": 1}
        assert store.get_auth_code(code.code) is None
        assert store.find_oidc_payload("Session:old") is None

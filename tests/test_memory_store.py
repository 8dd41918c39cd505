from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import AuthorizationCode, OAuthClient, OidcPayload


def _now():
    return datetime.now(timezone.utc)


def test_memory_store_persists_users_sessions_and_clients(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("Persist@Example.com", role="admin", display_name="P")
    store.save_password(user.id, "hash", "argon2id")
    store.link_user_auth_provider(user.id, "google", "g-123")
    session = store.create_session(
        user.id, _now() + timedelta(days=1), user_agent="pytest", ip_addr="10.0.0.1"
    )
    store.set_session_refresh_hash(session.id, "refresh-hash")
    store.upsert_client(
        OAuthClient(client_id="web", name="Web", redirect_uris=["https://a.example/cb"])
    )
    store.upsert_consent(user.id, "web", ["openid"])

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.email == "persist@example.com"
    assert reloaded_user.role == "admin"
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_auth_provider("google", "g-123").user_id == user.id
    reloaded_session = reloaded.get_session(session.id)
    assert reloaded_session.user_agent == "pytest"
    assert reloaded_session.refresh_token_hash == "refresh-hash"
    assert reloaded_session.expires_at == session.expires_at
    assert reloaded.get_client("web").redirect_uris == ["https://a.example/cb"]
    assert reloaded.get_consent(user.id, "web").scopes == ["openid"]


def test_non_persistent_store_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_user("ghost@example.com")
    assert not (tmp_path / "state" / "memory_store.json").exists()


class TestUsers:
    def test_duplicate_email_violates_constraint(self, store):
        store.create_user("ada@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("ADA@example.com")

    def test_duplicate_phone_violates_constraint(self, store):
        store.create_user("a@example.com", phone="+15550001")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("b@example.com", phone="+15550001")
        assert excinfo.value.field == "phone"

    def test_lookup_by_email_and_phone(self, store):
        user = store.create_user("ada@example.com", phone="+15550001")
        assert store.get_user_by_email(" Ada@Example.com ").id == user.id
        assert store.get_user_by_phone("+15550001").id == user.id

    def test_role_and_verification_updates(self, store):
        user = store.create_user("ada@example.com")
        assert store.update_user_role(user.id, "admin").role == "admin"
        assert store.mark_email_verified(user.id).email_verified is True
        assert store.update_user_role("ghost", "admin") is None

    def test_password_for_unknown_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("ghost", "hash", "argon2id")


class TestProviderLinks:
    def test_link_is_idempotent(self, store):
        first = store.create_user("a@example.com")
        second = store.create_user("b@example.com")

        linked = store.link_user_auth_provider(first.id, "apple", "apple-sub")
        again = store.link_user_auth_provider(second.id, "apple", "apple-sub")

        assert again.id == linked.id
        assert again.user_id == first.id


class TestSessions:
    def test_list_active_orders_by_recent_use(self, store):
        user = store.create_user("ada@example.com")
        later = _now() + timedelta(days=1)
        older = store.create_session(user.id, later)
        newer = store.create_session(user.id, later)
        store.touch_session(older.id, _now() + timedelta(minutes=5))
        store.create_session(user.id, _now() - timedelta(seconds=1))

        active = store.list_active_sessions(user.id, _now())

        assert [s.id for s in active] == [older.id, newer.id]

    def test_delete_user_sessions_spares_current(self, store):
        user = store.create_user("ada@example.com")
        keep = store.create_session(user.id, _now() + timedelta(days=1))
        drop = store.create_session(user.id, _now() + timedelta(days=1))

        removed = store.delete_user_sessions(user.id, except_session_id=keep.id)

        assert removed == [drop.id]
        assert store.get_session(keep.id) is not None

    def test_delete_expired(self, store):
        user = store.create_user("ada@example.com")
        store.create_session(user.id, _now() - timedelta(minutes=1))
        live = store.create_session(user.id, _now() + timedelta(minutes=1))

        assert store.delete_expired_sessions(_now()) == 1
        assert store.get_session(live.id) is not None

    def test_delete_user_sessions_reports_only_live(self, store):
        user = store.create_user("ada.com")
        live = store.create_session(user.id, _now() + timedelta(days=1))
        dead = store.create_session(user.id, _now() - timedelta(minutes=1))

        removed = store.delete_user_sessions(user.id, now=_now())

        assert removed == [live.id]
        assert store.get_session(dead.id) is None

    def test_refresh_hash_rotation_requires_current_value(self, store):
        user = store.create_user("ada.com")
        session = store.create_session(user.id, _now() + timedelta(days=1))
        store.set_session_refresh_hash(session.id, "first")

        assert store.rotate_session_refresh_hash(session.id, "first", "second") is True
        assert store.rotate_session_refresh_hash(session.id, "first", "third") is False
        assert store.get_session(session.id).refresh_token_hash == "second"
        assert store.rotate_session_refresh_hash("ghost", "second", "x") is False

    def test_session_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session("ghost", _now() + timedelta(days=1))


class TestAuthCodes:
    def _code(self, store, value="c" * 64):
        user = store.create_user(f"{value[:6]}@example.com")
        record = AuthorizationCode.new(
            value,
            client_id="web",
            user_id=user.id,
            redirect_uri="https://a.example/cb",
            code_challenge="challenge",
            code_challenge_method="S256",
            ttl_seconds=600,
        )
        return store.create_auth_code(record)

    def test_consume_only_once(self, store):
        record = self._code(store)

        assert store.consume_auth_code(record.code) is True
        assert store.consume_auth_code(record.code) is False
        assert store.get_auth_code(record.code).used is True

    def test_consume_unknown_code(self, store):
        assert store.consume_auth_code("nope") is False

    def test_code_collision(self, store):
        record = self._code(store)
        with pytest.raises(ConstraintViolation):
            store.create_auth_code(record)

    def test_sweep_drops_used_and_expired_codes(self, store):
        used = self._code(store, "u" * 64)
        store.consume_auth_code(used.code)
        stale = self._code(store, "s" * 64)
        stale.expires_at = _now() - timedelta(seconds=1)
        fresh = self._code(store, "f" * 64)

        assert store.delete_expired_auth_codes(_now()) == 2
        assert store.get_auth_code(used.code) is None
        assert store.get_auth_code(stale.code) is None
        assert store.get_auth_code(fresh.code) is not None


class TestOidcPayloads:
    def test_consume_marks_record_dead(self, store):
        store.upsert_oidc_payload(
            OidcPayload(id="Interaction:u1", type="Interaction", payload={}, uid="u1")
        )
        store.consume_oidc_payload("Interaction:u1", _now())

        assert store.find_oidc_payload("Interaction:u1").is_live() is False

    def test_revoke_grant_removes_every_record(self, store):
        for kind in ("AccessToken", "Grant"):
            store.upsert_oidc_payload(
                OidcPayload(id=f"{kind}:x", type=kind, payload={}, grant_id="g-1")
            )
        store.upsert_oidc_payload(OidcPayload(id="Grant:y", type="Grant", payload={}, grant_id="g-2"))

        assert store.revoke_oidc_grant("g-1") == 2
        assert store.find_oidc_payload("Grant:y") is not None

    def test_delete_access_tokens_scoped_to_user_and_client(self, store):
        def _token(jti, account, client):
            store.upsert_oidc_payload(
                OidcPayload(
                    id=f"AccessToken:{jti}",
                    type="AccessToken",
                    payload={"accountId": account, "clientId": client},
                )
            )

        _token("a", "u1", "web")
        _token("b", "u1", "partner")
        _token("c", "u2", "web")

        assert store.delete_access_tokens("u1", "web") == 1
        assert store.find_oidc_payload("AccessToken:a") is None
        assert store.find_oidc_payload("AccessToken:b") is not None
        assert store.find_oidc_payload("AccessToken:c") is not None

    def test_sweep_drops_consumed_and_expired_records(self, store):
        store.upsert_oidc_payload(
            OidcPayload(id="Interaction:done", type="Interaction", payload={}, uid="done")
        )
        store.consume_oidc_payload("Interaction:done", _now())
        store.upsert_oidc_payload(
            OidcPayload(
                id="AccessToken:old", type="AccessToken", payload={},
                expires_at=_now() - timedelta(seconds=1),
            )
        )
        store.upsert_oidc_payload(
            OidcPayload(
                id="AccessToken:live", type="AccessToken", payload={},
                expires_at=_now() + timedelta(hours=1),
            )
        )

        assert store.delete_expired_oidc_payloads(_now()) == 2
        assert store.find_oidc_payload("AccessToken:live") is not None
        assert store.find_oidc_payload("Interaction:done") is None

    def test_expired_record_is_not_live(self):
        record = OidcPayload(
            id="AccessToken:z", type="AccessToken", payload={},
            expires_at=_now() - timedelta(seconds=1),
        )
        assert record.is_live() is False

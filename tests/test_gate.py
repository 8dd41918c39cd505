"""Tests for the per-request authentication gate."""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.gate import (
    ACCESS_TOKEN_PREFIX,
    LEGACY_JTI,
    AuthenticationGate,
    OpaqueToken,
    SignedSession,
    classify_token,
    extract_bearer,
)
from authcore.service.sessions import SessionService
from authcore.storage.models import OidcPayload


@pytest.fixture
def sessions(store, settings):
    return SessionService(store, None, settings)


@pytest.fixture
def gate(tokens, sessions, store):
    return AuthenticationGate(tokens, sessions.resolver, store)


@pytest.fixture
def user(store):
    return store.create_user("ada@example.com")


def _access_record(jti: str, account_id: str, *, expires_in: int = 300) -> OidcPayload:
    return OidcPayload(
        id=f"{ACCESS_TOKEN_PREFIX}{jti}",
        type="AccessToken",
        payload={"accountId": account_id, "clientId": "web", "scope": "openid"},
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


class TestSignedSessions:
    async def test_valid_session_token(self, gate, sessions, tokens, user):
        session = await sessions.create(user)
        principal = await gate.authenticate(tokens.mint_for_session(session, user))

        assert principal.id == user.id
        assert principal.sub == user.id
        assert principal.jti == session.id
        assert principal.email == user.email
        assert principal.role == "user"

    async def test_missing_token_rejected(self, gate):
        assert await gate.authenticate(None) is None
        assert await gate.authenticate("") is None

    async def test_public_operation_has_no_principal(self, gate, sessions, tokens, user):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        assert await gate.authenticate(token, public=True) is None

    async def test_tampered_token_rejected(self, gate, sessions, tokens, user):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        header, payload, signature = token.split(".")
        swap = "A" if signature[10] != "A" else "B"
        flipped = signature[:10] + swap + signature[11:]
        assert await gate.authenticate(f"{header}.{payload}.{flipped}") is None

    async def test_expired_session_rejected(self, gate, sessions, tokens, user):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        session = await sessions.create(user, expires_at=past)
        assert await gate.authenticate(tokens.mint_for_session(session, user)) is None

    async def test_subject_must_match_session_owner(self, gate, sessions, tokens, store, user):
        other = store.create_user("mallory@example.com")
        session = await sessions.create(user)
        forged = tokens.mint(
            subject=other.id, session_id=session.id, ttl=timedelta(minutes=5)
        )
        assert await gate.authenticate(forged) is None

    async def test_inactive_user_rejected(self, gate, sessions, tokens, store, user):
        session = await sessions.create(user)
        token = tokens.mint_for_session(session, user)
        store.users[user.id].is_active = False
        assert await gate.authenticate(token) is None


class TestLegacyTokens:
    async def test_token_without_jti_resolves_subject(self, gate, tokens, user):
        token = tokens.mint(subject=user.id, ttl=timedelta(minutes=5))
        principal = await gate.authenticate(token)

        assert principal.id == user.id
        assert principal.jti == LEGACY_JTI

    async def test_unknown_legacy_subject_rejected(self, gate, tokens):
        token = tokens.mint(subject="ghost", ttl=timedelta(minutes=5))
        assert await gate.authenticate(token) is None


class TestExternalTokens:
    async def test_signed_token_falls_back_to_access_token_record(
        self, gate, tokens, store, user
    ):
        store.upsert_oidc_payload(_access_record("at-1", user.id))
        token = tokens.mint(
            subject=user.id, session_id="at-1", audience="web", ttl=timedelta(minutes=5)
        )

        principal = await gate.authenticate(token)

        assert principal.id == user.id
        assert principal.jti == "at-1"

    async def test_opaque_token_resolved_from_store(self, gate, store, user):
        store.upsert_oidc_payload(_access_record("opaque-ref-123", user.id))

        principal = await gate.authenticate("opaque-ref-123")

        assert principal.id == user.id
        assert principal.jti == "opaque-ref-123"

    async def test_expired_access_token_record_rejected(self, gate, store, user):
        store.upsert_oidc_payload(_access_record("opaque-old", user.id, expires_in=-1))
        assert await gate.authenticate("opaque-old") is None

    async def test_unknown_opaque_token_rejected(self, gate):
        assert await gate.authenticate("never-issued") is None

    async def test_jwt_shaped_token_never_takes_opaque_path(self, gate, tokens, store, user):
        token = tokens.mint(subject=user.id, session_id="x", ttl=timedelta(minutes=5))
        # A record keyed by the whole JWT string must not authenticate it
        store.upsert_oidc_payload(_access_record(token, user.id))
        assert await gate.authenticate(token) is None


class TestHelpers:
    def test_classify_token(self, tokens):
        assert isinstance(classify_token(tokens.mint(subject="u", ttl=timedelta(minutes=1))), SignedSession)
        assert isinstance(classify_token("opaque"), OpaqueToken)

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer ", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected

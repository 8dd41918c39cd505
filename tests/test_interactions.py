"""Tests for the login/consent interaction orchestrator."""

import secrets
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from authcore.service.credentials import CredentialStore
from authcore.service.errors import AuthenticationError, BadRequestError, NotFoundError
from authcore.service.interactions import (
    ABORT_DESCRIPTION,
    GRANT_PREFIX,
    PROMPT_CONSENT,
    PROMPT_LOGIN,
    InteractionConfig,
    InteractionOrchestrator,
)
from authcore.service.oauth import AuthorizationCodeBroker, pkce_challenge
from authcore.storage.models import OAuthClient

PARTNER_CB = "https://partner.example.com/cb"
WEB_CB = "https://app.example.com/cb"


@pytest.fixture
def credentials(store, settings):
    return CredentialStore(store, settings)


@pytest.fixture
def broker(store, tokens, settings):
    return AuthorizationCodeBroker(store, tokens, settings)


@pytest.fixture
def orchestrator(store, credentials, broker):
    return InteractionOrchestrator(
        store, credentials, broker, InteractionConfig(frontend_url="https://app.example.com")
    )


@pytest.fixture
def user(store, credentials):
    user = store.create_user("ada@example.com", display_name="Ada")
    credentials.set_password(user.id, "CorrectHorse1!")
    return user


@pytest.fixture(autouse=True)
def clients(store):
    store.upsert_client(
        OAuthClient(client_id="web", name="Web", redirect_uris=[WEB_CB], is_first_party=True)
    )
    store.upsert_client(OAuthClient(client_id="partner", name="Partner", redirect_uris=[PARTNER_CB]))


@pytest.fixture
def verifier():
    return secrets.token_urlsafe(32)


def _params(client_id: str, redirect_uri: str, verifier: str) -> dict:
    return {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "code_challenge": pkce_challenge(verifier),
        "code_challenge_method": "S256",
        "state": "xyz",
        "scope": "openid email",
        "nonce": None,
    }


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class TestStartAndRoute:
    def test_login_prompt_routes_to_sign_in(self, orchestrator, verifier):
        interaction = orchestrator.start(_params("web", WEB_CB, verifier))

        outcome = orchestrator.route(interaction.uid, browser_uid=interaction.uid)

        assert outcome.prompt == PROMPT_LOGIN
        assert outcome.redirect_to == f"https://app.example.com/auth/sign-in?uid={interaction.uid}"
        assert interaction.details.missing_oidc_scope == ["openid", "email"]

    def test_consent_prompt_routes_to_consent_page(self, orchestrator, user, verifier):
        interaction = orchestrator.start(
            _params("partner", PARTNER_CB, verifier), prompt=PROMPT_CONSENT, account_id=user.id
        )
        outcome = orchestrator.route(interaction.uid, browser_uid=interaction.uid)
        assert outcome.redirect_to.startswith("https://app.example.com/auth/consent?uid=")

    def test_first_party_consent_is_automatic(self, orchestrator, user, verifier, store):
        interaction = orchestrator.start(
            _params("web", WEB_CB, verifier), prompt=PROMPT_CONSENT, account_id=user.id
        )
        outcome = orchestrator.route(interaction.uid, browser_uid=interaction.uid)

        query = _query(outcome.redirect_to)
        assert outcome.redirect_to.startswith(WEB_CB)
        assert len(query["code"]) == 64
        assert query["state"] == "xyz"
        assert outcome.grant_id
        assert store.find_oidc_payload(f"{GRANT_PREFIX}{outcome.grant_id}") is not None

    def test_unknown_interaction(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.route("missing", browser_uid="missing")

    def test_expired_interaction(self, orchestrator, verifier, monkeypatch):
        interaction = orchestrator.start(_params("web", WEB_CB, verifier))
        later = orchestrator._now() + timedelta(hours=2)
        monkeypatch.setattr(orchestrator, "_now", lambda: later)

        with pytest.raises(NotFoundError):
            orchestrator.route(interaction.uid, browser_uid=interaction.uid)

    def test_bound_to_browser(self, orchestrator, verifier):
        interaction = orchestrator.start(_params("web", WEB_CB, verifier))
        with pytest.raises(BadRequestError):
            orchestrator.route(interaction.uid, browser_uid="someone-else")


class TestLogin:
    def test_first_party_login_completes_with_code(
        self, orchestrator, broker, user, verifier, store
    ):
        interaction = orchestrator.start(_params("web", WEB_CB, verifier))

        outcome = orchestrator.submit_login(
            interaction.uid, "ada@example.com", "CorrectHorse1!", browser_uid=interaction.uid
        )

        code = _query(outcome.redirect_to)["code"]
        tokens = broker.token(
            code=code, code_verifier=verifier, client_id="web", redirect_uri=WEB_CB
        )
        assert tokens["access_token"]
        # Finished interactions cannot be resumed
        with pytest.raises(NotFoundError):
            orchestrator.route(interaction.uid, browser_uid=interaction.uid)

    def test_third_party_login_moves_to_consent(self, orchestrator, user, verifier):
        interaction = orchestrator.start(_params("partner", PARTNER_CB, verifier))

        outcome = orchestrator.submit_login(
            interaction.uid, "ada@example.com", "CorrectHorse1!", browser_uid=interaction.uid
        )

        assert outcome.prompt == PROMPT_CONSENT
        reloaded = orchestrator.load(interaction.uid, browser_uid=interaction.uid)
        assert reloaded.prompt == PROMPT_CONSENT
        assert reloaded.account_id == user.id

    def test_wrong_password(self, orchestrator, user, verifier):
        interaction = orchestrator.start(_params("web", WEB_CB, verifier))
        with pytest.raises(AuthenticationError) as excinfo:
            orchestrator.submit_login(
                interaction.uid, "ada@example.com", "nope", browser_uid=interaction.uid
            )
        assert excinfo.value.message == "Invalid credentials"

    @pytest.mark.parametrize("email,password", [("", "x"), ("not-an-email", "x"), ("a@b.co", "")])
    def test_malformed_input(self, orchestrator, verifier, email, password):
        interaction = orchestrator.start(_params("web", WEB_CB, verifier))
        with pytest.raises(BadRequestError) as excinfo:
            orchestrator.submit_login(interaction.uid, email, password, browser_uid=interaction.uid)
        assert excinfo.value.message == "Invalid input"


class TestConsent:
    def test_confirm_grants_consent_and_issues_code(
        self, orchestrator, broker, user, verifier, store
    ):
        interaction = orchestrator.start(_params("partner", PARTNER_CB, verifier))
        orchestrator.submit_login(
            interaction.uid, "ada@example.com", "CorrectHorse1!", browser_uid=interaction.uid
        )

        outcome = orchestrator.confirm_consent(
            interaction.uid, account_id=user.id, browser_uid=interaction.uid
        )

        assert outcome.redirect_to.startswith(PARTNER_CB)
        assert store.get_consent(user.id, "partner").scopes == ["openid", "email"]
        grant = store.find_oidc_payload(f"{GRANT_PREFIX}{outcome.grant_id}")
        assert grant.payload["openid"]["scope"] == "openid email"

    def test_confirm_requires_logged_in_account(self, orchestrator, verifier):
        interaction = orchestrator.start(_params("partner", PARTNER_CB, verifier))
        with pytest.raises(BadRequestError):
            orchestrator.confirm_consent(interaction.uid, browser_uid=interaction.uid)

    def test_confirm_by_other_account_rejected(self, orchestrator, user, store, verifier):
        interaction = orchestrator.start(
            _params("partner", PARTNER_CB, verifier), prompt=PROMPT_CONSENT, account_id=user.id
        )
        with pytest.raises(AuthenticationError):
            orchestrator.confirm_consent(
                interaction.uid, account_id="someone-else", browser_uid=interaction.uid
            )


class TestAbort:
    def test_abort_redirects_with_access_denied(self, orchestrator, verifier):
        interaction = orchestrator.start(_params("partner", PARTNER_CB, verifier))

        outcome = orchestrator.abort(interaction.uid, browser_uid=interaction.uid)

        query = _query(outcome.redirect_to)
        assert query == {
            "error": "access_denied",
            "error_description": ABORT_DESCRIPTION,
            "state": "xyz",
        }


class TestAccountClaims:
    def test_base_claims(self, orchestrator, user):
        claims = orchestrator.find_account(user.id)
        assert claims == {
            "sub": user.id,
            "email": "ada@example.com",
            "email_verified": False,
            "name": "Ada",
        }

    def test_enricher_failure_falls_back(self, orchestrator, user):
        def _broken(_user):
            raise RuntimeError("profile service down")

        orchestrator.config.claim_enrichers.append(lambda u: {"locale": "en"})
        orchestrator.config.claim_enrichers.append(_broken)

        claims = orchestrator.find_account(user.id)
        assert "locale" not in claims
        assert claims["sub"] == user.id

    def test_enrichers_add_claims(self, orchestrator, user):
        orchestrator.config.claim_enrichers.append(lambda u: {"locale": "en", "sub": "spoof"})
        claims = orchestrator.find_account(user.id)
        assert claims["locale"] == "en"
        assert claims["sub"] == user.id

    def test_unknown_account(self, orchestrator):
        assert orchestrator.find_account("ghost") is None

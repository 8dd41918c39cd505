from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import quote

from authcore.logging import get_logger
from authcore.service.credentials import CredentialStore
from authcore.service.errors import AuthenticationError, BadRequestError, NotFoundError
from authcore.service.gate import Principal
from authcore.service.oauth import AuthorizationCodeBroker, build_redirect
from authcore.storage.models import DEFAULT_ROLE, OidcPayload, User

logger = get_logger(__name__)

INTERACTION_PREFIX = "Interaction:"
GRANT_PREFIX = "Grant:"

PROMPT_LOGIN = "login"
PROMPT_CONSENT = "consent"

ACCESS_DENIED = "access_denied"
ABORT_DESCRIPTION = "User canceled the interaction"


class InteractionBackend(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def upsert_oidc_payload(self, record: OidcPayload) -> OidcPayload: ...

    def find_oidc_payload(self, payload_id: str) -> Optional[OidcPayload]: ...

    def consume_oidc_payload(self, payload_id: str, consumed_at: datetime) -> None: ...

    def revoke_oidc_grant(self, grant_id: str) -> int: ...


ClaimEnricher = Callable[[User], Dict[str, Any]]


@dataclass
class InteractionCookieConfig:
    """Browser binding for an in-flight interaction."""

    name: str = "authcore_interaction"
    path: str = "/v1/interaction"
    secure: bool = True
    max_age_seconds: int = 3600
    bind_to_browser: bool = True


def _default_render_error(error: str, description: str) -> Dict[str, Any]:
    return {"error": error, "error_description": description}


@dataclass
class InteractionConfig:
    """Callback slots the orchestrator consults.

    ``interaction_url(uid, prompt)`` builds the hosted page URL for a prompt.
    ``render_error(error, description)`` builds the body returned when an
    interaction cannot be continued. ``claim_enrichers`` add claims for an
    account; any that raise are skipped and the minimal claim set is used.
    """

    frontend_url: str
    interaction_url: Optional[Callable[[str, str], str]] = None
    render_error: Callable[[str, str], Dict[str, Any]] = _default_render_error
    claim_enrichers: List[ClaimEnricher] = field(default_factory=list)
    cookies: InteractionCookieConfig = field(default_factory=InteractionCookieConfig)
    interaction_ttl_seconds: int = 3600
    grant_ttl_seconds: int = 14 * 24 * 3600

    def url_for(self, uid: str, prompt: str) -> str:
        if self.interaction_url is not None:
            return self.interaction_url(uid, prompt)
        page = "consent" if prompt == PROMPT_CONSENT else "sign-in"
        return f"{self.frontend_url}/auth/{page}?uid={quote(uid)}"


@dataclass
class PromptDetails:
    missing_oidc_scope: List[str] = field(default_factory=list)
    missing_oidc_claims: List[str] = field(default_factory=list)
    missing_resource_scopes: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class Interaction:
    """Authorization request paused for a login or consent prompt."""

    uid: str
    prompt: str
    params: Dict[str, Optional[str]]
    details: PromptDetails = field(default_factory=PromptDetails)
    account_id: Optional[str] = None
    grant_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def client_id(self) -> Optional[str]:
        return self.params.get("client_id")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "params": dict(self.params),
            "details": {
                "missingOIDCScope": list(self.details.missing_oidc_scope),
                "missingOIDCClaims": list(self.details.missing_oidc_claims),
                "missingResourceScopes": dict(self.details.missing_resource_scopes),
            },
            "accountId": self.account_id,
            "grantId": self.grant_id,
        }

    @classmethod
    def from_record(cls, record: OidcPayload) -> "Interaction":
        data = record.payload or {}
        details = data.get("details") or {}
        return cls(
            uid=record.uid or record.id[len(INTERACTION_PREFIX):],
            prompt=data.get("prompt") or PROMPT_LOGIN,
            params=dict(data.get("params") or {}),
            details=PromptDetails(
                missing_oidc_scope=list(details.get("missingOIDCScope") or []),
                missing_oidc_claims=list(details.get("missingOIDCClaims") or []),
                missing_resource_scopes=dict(details.get("missingResourceScopes") or {}),
            ),
            account_id=data.get("accountId"),
            grant_id=data.get("grantId"),
            expires_at=record.expires_at,
        )


@dataclass
class Grant:
    id: str
    account_id: str
    client_id: str
    oidc_scopes: List[str] = field(default_factory=list)
    oidc_claims: List[str] = field(default_factory=list)
    resource_scopes: Dict[str, List[str]] = field(default_factory=dict)

    def add_oidc_scope(self, scopes: List[str]) -> None:
        for scope in scopes:
            if scope not in self.oidc_scopes:
                self.oidc_scopes.append(scope)

    def add_oidc_claims(self, claims: List[str]) -> None:
        for claim in claims:
            if claim not in self.oidc_claims:
                self.oidc_claims.append(claim)

    def add_resource_scope(self, indicator: str, scopes: List[str]) -> None:
        current = self.resource_scopes.setdefault(indicator, [])
        current.extend(s for s in scopes if s not in current)


@dataclass
class InteractionOutcome:
    """Where to send the user agent next."""

    redirect_to: str
    prompt: Optional[str] = None
    grant_id: Optional[str] = None


class InteractionOrchestrator:
    """Drives login and consent prompts for paused authorization requests.

    Interactions and grants live in the external-token store next to the
    access tokens the broker records. Finishing an interaction either moves it
    to the next prompt or issues the authorization code and redirects back to
    the client.
    """

    def __init__(
        self,
        store: InteractionBackend,
        credentials: CredentialStore,
        broker: AuthorizationCodeBroker,
        config: InteractionConfig,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.broker = broker
        self.config = config
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # lifecycle
    def start(
        self,
        params: Dict[str, Optional[str]],
        *,
        prompt: str = PROMPT_LOGIN,
        account_id: Optional[str] = None,
    ) -> Interaction:
        requested = [s for s in (params.get("scope") or "openid").split() if s]
        interaction = Interaction(
            uid=secrets.token_urlsafe(16),
            prompt=prompt,
            params=dict(params),
            details=PromptDetails(missing_oidc_scope=requested),
            account_id=account_id,
            expires_at=self._now() + timedelta(seconds=self.config.interaction_ttl_seconds),
        )
        self._save(interaction)
        self.logger.info(
            "interaction_started",
            uid=interaction.uid,
            prompt=prompt,
            client_id=interaction.client_id,
        )
        return interaction

    def _save(self, interaction: Interaction) -> None:
        self.store.upsert_oidc_payload(
            OidcPayload(
                id=f"{INTERACTION_PREFIX}{interaction.uid}",
                type="Interaction",
                payload=interaction.to_payload(),
                expires_at=interaction.expires_at,
                uid=interaction.uid,
                grant_id=interaction.grant_id,
            )
        )

    def load(self, uid: str, *, browser_uid: Optional[str] = None) -> Interaction:
        record = self.store.find_oidc_payload(f"{INTERACTION_PREFIX}{uid}")
        if record is None or not record.is_live(self._now()):
            raise NotFoundError("interaction not found", detail={"uid": uid})
        if self.config.cookies.bind_to_browser and browser_uid != uid:
            self.logger.warning("interaction_cookie_mismatch", uid=uid)
            raise BadRequestError("interaction is bound to another browser session")
        return Interaction.from_record(record)

    def _finish(self, interaction: Interaction) -> None:
        self.store.consume_oidc_payload(f"{INTERACTION_PREFIX}{interaction.uid}", self._now())

    # prompts
    def route(self, uid: str, *, browser_uid: Optional[str] = None) -> InteractionOutcome:
        """Decide which hosted page handles the interaction's current prompt."""
        interaction = self.load(uid, browser_uid=browser_uid)
        if interaction.prompt == PROMPT_CONSENT:
            client = self.broker.get_client(interaction.client_id or "")
            if client is not None and client.is_first_party and interaction.account_id:
                self.logger.info("interaction_auto_consent", uid=uid, client_id=client.client_id)
                return self._grant_and_complete(interaction)
            return InteractionOutcome(
                self.config.url_for(uid, PROMPT_CONSENT), prompt=PROMPT_CONSENT
            )
        # unknown prompts go to sign-in
        return InteractionOutcome(self.config.url_for(uid, PROMPT_LOGIN), prompt=PROMPT_LOGIN)

    def submit_login(
        self,
        uid: str,
        email: Optional[str],
        password: Optional[str],
        *,
        browser_uid: Optional[str] = None,
    ) -> InteractionOutcome:
        if not email or "@" not in email or not password:
            raise BadRequestError("Invalid input")
        interaction = self.load(uid, browser_uid=browser_uid)
        user = self.credentials.verify_password(email, password)
        if user is None:
            self.logger.info("interaction_login_failed", uid=uid)
            raise AuthenticationError("Invalid credentials")

        interaction.account_id = user.id
        client = self.broker.get_client(interaction.client_id or "")
        if client is not None and not self.broker.has_consent(client, user.id):
            interaction.prompt = PROMPT_CONSENT
            self._save(interaction)
            self.logger.info("interaction_login_finished", uid=uid, next_prompt=PROMPT_CONSENT)
            return InteractionOutcome(
                self.config.url_for(uid, PROMPT_CONSENT), prompt=PROMPT_CONSENT
            )
        self.logger.info("interaction_login_finished", uid=uid, next_prompt=None)
        return self._complete(interaction, user)

    def confirm_consent(
        self, uid: str, *, account_id: Optional[str] = None, browser_uid: Optional[str] = None
    ) -> InteractionOutcome:
        interaction = self.load(uid, browser_uid=browser_uid)
        if not interaction.account_id:
            raise BadRequestError("interaction has no authenticated account")
        if account_id is not None and account_id != interaction.account_id:
            raise AuthenticationError("unauthorized")
        return self._grant_and_complete(interaction)

    def abort(self, uid: str, *, browser_uid: Optional[str] = None) -> InteractionOutcome:
        interaction = self.load(uid, browser_uid=browser_uid)
        self._finish(interaction)
        self.logger.info("interaction_aborted", uid=uid, client_id=interaction.client_id)
        redirect_uri = interaction.params.get("redirect_uri")
        if not redirect_uri:
            raise BadRequestError("interaction has no redirect_uri")
        return InteractionOutcome(
            build_redirect(
                redirect_uri,
                {
                    "error": ACCESS_DENIED,
                    "error_description": ABORT_DESCRIPTION,
                    "state": interaction.params.get("state"),
                },
            )
        )

    # grants
    def _grant_and_complete(self, interaction: Interaction) -> InteractionOutcome:
        account_id = interaction.account_id or ""
        user = self.store.get_user(account_id)
        if user is None or not user.is_active:
            raise AuthenticationError("unauthorized")
        if interaction.grant_id:
            self.store.revoke_oidc_grant(interaction.grant_id)

        grant = Grant(
            id=str(uuid.uuid4()),
            account_id=account_id,
            client_id=interaction.client_id or "",
        )
        details = interaction.details
        if details.missing_oidc_scope:
            grant.add_oidc_scope(details.missing_oidc_scope)
        if details.missing_oidc_claims:
            grant.add_oidc_claims(details.missing_oidc_claims)
        for indicator, scopes in details.missing_resource_scopes.items():
            grant.add_resource_scope(indicator, scopes)

        self._save_grant(grant)
        interaction.grant_id = grant.id
        self.broker.grant_consent(account_id, grant.client_id, grant.oidc_scopes)
        outcome = self._complete(interaction, user)
        outcome.grant_id = grant.id
        return outcome

    def _save_grant(self, grant: Grant) -> None:
        self.store.upsert_oidc_payload(
            OidcPayload(
                id=f"{GRANT_PREFIX}{grant.id}",
                type="Grant",
                payload={
                    "accountId": grant.account_id,
                    "clientId": grant.client_id,
                    "openid": {"scope": " ".join(grant.oidc_scopes), "claims": grant.oidc_claims},
                    "resources": {k: " ".join(v) for k, v in grant.resource_scopes.items()},
                },
                expires_at=self._now() + timedelta(seconds=self.config.grant_ttl_seconds),
                grant_id=grant.id,
            )
        )
        self.logger.info("grant_saved", grant_id=grant.id, client_id=grant.client_id)

    def _complete(self, interaction: Interaction, user: User) -> InteractionOutcome:
        params = interaction.params
        principal = Principal(
            id=user.id,
            sub=user.id,
            email=user.email,
            role=user.role or DEFAULT_ROLE,
            jti=interaction.uid,
        )
        code = self.broker.authorize(
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            response_type=params.get("response_type"),
            code_challenge=params.get("code_challenge"),
            code_challenge_method=params.get("code_challenge_method"),
            principal=principal,
            scope=params.get("scope"),
            nonce=params.get("nonce"),
        )
        self._finish(interaction)
        self.logger.info("interaction_completed", uid=interaction.uid, client_id=interaction.client_id)
        return InteractionOutcome(
            build_redirect(
                params.get("redirect_uri") or "",
                {"code": code, "state": params.get("state")},
            ),
            grant_id=interaction.grant_id,
        )

    # claims
    def find_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Claims for ``account_id``; enrichment failures fall back to the base set."""
        user = self.store.get_user(account_id)
        if user is None:
            return None
        claims: Dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "email_verified": user.email_verified,
        }
        if user.display_name:
            claims["name"] = user.display_name
        enriched = dict(claims)
        for enricher in self.config.claim_enrichers:
            try:
                extra = enricher(user) or {}
            except Exception as exc:
                self.logger.warning(
                    "account_claims_enrichment_failed", account_id=account_id, error=str(exc)
                )
                return claims
            for key, value in extra.items():
                enriched.setdefault(key, value)
        return enriched

    def render_error(self, error: str, description: str) -> Dict[str, Any]:
        return self.config.render_error(error, description)

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConsentRequiredError,
    InvalidGrantError,
)
from authcore.service.gate import ACCESS_TOKEN_PREFIX, Principal
from authcore.service.tokens import TokenService
from authcore.storage.models import (
    AuthorizationCode,
    OAuthClient,
    OAuthConsent,
    OidcPayload,
    User,
)

logger = get_logger(__name__)

SUPPORTED_CHALLENGE_METHODS = ("S256",)
# RFC 7636 section 4.1: unreserved characters, 43 to 128 of them
PKCE_VALUE_PATTERN = re.compile(r"[A-Za-z0-9\-._~]{43,128}")
DEFAULT_SCOPES = ["openid", "email", "profile"]


class BrokerBackend(Protocol):
    def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_consent(self, user_id: str, client_id: str) -> Optional[OAuthConsent]: ...

    def upsert_consent(
        self, user_id: str, client_id: str, scopes: List[str]
    ) -> OAuthConsent: ...

    def list_consents(self, user_id: str) -> List[OAuthConsent]: ...

    def delete_consent(self, user_id: str, client_id: str) -> bool: ...

    def create_auth_code(self, code: AuthorizationCode) -> AuthorizationCode: ...

    def get_auth_code(self, code: str) -> Optional[AuthorizationCode]: ...

    def consume_auth_code(self, code: str) -> bool: ...

    def upsert_oidc_payload(self, record: OidcPayload) -> OidcPayload: ...

    def delete_access_tokens(self, user_id: str, client_id: str) -> int: ...


def pkce_challenge(verifier: str) -> str:
    """base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_redirect(redirect_uri: str, params: Dict[str, Optional[str]]) -> str:
    """Append ``params`` to ``redirect_uri`` keeping any query it already has."""
    parts = urlsplit(redirect_uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class AuthorizationCodeBroker:
    """OAuth2 authorization-code grant with mandatory PKCE (S256)."""

    def __init__(
        self,
        store: BrokerBackend,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.code_ttl_seconds = settings.auth_code_ttl_seconds
        self._secret_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        return self.store.get_client(client_id)

    def validate_client(self, client_id: Optional[str], redirect_uri: Optional[str]) -> OAuthClient:
        """Client must exist and ``redirect_uri`` must be one of its URIs, exactly."""
        client = self.store.get_client(client_id) if client_id else None
        if client is None:
            self.logger.warning("oauth_unknown_client", client_id=client_id)
            raise AuthenticationError("unauthorized")
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            self.logger.warning(
                "oauth_redirect_uri_mismatch", client_id=client_id, redirect_uri=redirect_uri
            )
            raise AuthenticationError("unauthorized")
        return client

    def has_consent(self, client: OAuthClient, user_id: str) -> bool:
        if client.is_first_party:
            return True
        return self.store.get_consent(user_id, client.client_id) is not None

    def validate_authorization_request(
        self,
        *,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
    ) -> OAuthClient:
        """Check request shape, then client and redirect URI."""
        if response_type != "code":
            raise BadRequestError(
                "unsupported response_type; only 'code' is allowed",
                detail={"response_type": response_type},
            )
        if not code_challenge:
            raise BadRequestError("code_challenge is required (PKCE)")
        method = code_challenge_method or "S256"
        if method not in SUPPORTED_CHALLENGE_METHODS:
            raise BadRequestError(
                "unsupported code_challenge_method; use S256",
                detail={"code_challenge_method": method},
            )
        if not PKCE_VALUE_PATTERN.fullmatch(code_challenge):
            raise BadRequestError("code_challenge is malformed")
        return self.validate_client(client_id, redirect_uri)

    def authorize(
        self,
        *,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
        principal: Principal,
        scope: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> str:
        """Issue a single-use authorization code for ``principal``."""
        client = self.validate_authorization_request(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        method = code_challenge_method or "S256"
        if not self.has_consent(client, principal.id):
            self.logger.info(
                "oauth_consent_missing", client_id=client.client_id, user_id=principal.id
            )
            raise ConsentRequiredError(detail={"client_id": client.client_id})

        code = secrets.token_hex(32)
        record = AuthorizationCode.new(
            code,
            client_id=client.client_id,
            user_id=principal.id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=method,
            ttl_seconds=self.code_ttl_seconds,
            scope=scope,
            nonce=nonce,
            now=self._now(),
        )
        self.store.create_auth_code(record)
        self.logger.info("oauth_code_issued", client_id=client.client_id, user_id=principal.id)
        return code

    def token(
        self,
        *,
        code: Optional[str],
        code_verifier: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        grant_type: Optional[str] = "authorization_code",
        client_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Redeem a code exactly once for an access token and ID token."""
        if grant_type != "authorization_code":
            raise BadRequestError(
                "unsupported grant_type", detail={"grant_type": grant_type},
                error_code="unsupported_grant_type",
            )
        if not code:
            raise InvalidGrantError("Invalid code")
        record = self.store.get_auth_code(code)
        if record is None:
            raise InvalidGrantError("Invalid code")
        if record.used:
            raise InvalidGrantError("Code already used")
        if record.expires_at <= self._now():
            raise InvalidGrantError("Code expired")
        if record.client_id != client_id:
            raise InvalidGrantError("client_id does not match the code")
        self._authenticate_client(record.client_id, client_secret)
        if redirect_uri is not None and record.redirect_uri != redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the code")
        if not code_verifier:
            raise InvalidGrantError("code_verifier is required")
        if not PKCE_VALUE_PATTERN.fullmatch(code_verifier):
            raise InvalidGrantError("code_verifier is malformed")
        expected = record.code_challenge.encode("ascii")
        actual = pkce_challenge(code_verifier).encode("ascii")
        if not hmac.compare_digest(actual, expected):
            self.logger.warning("oauth_pkce_mismatch", client_id=client_id)
            raise InvalidGrantError("PKCE verification failed")

        # Consume before minting; concurrent redeemers race on this single update
        if not self.store.consume_auth_code(code):
            self.logger.warning("oauth_code_replay", client_id=client_id)
            raise InvalidGrantError("Code already used")

        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("unauthorized")
        return self._issue_tokens(user, record)

    def _authenticate_client(self, client_id: str, client_secret: Optional[str]) -> None:
        client = self.store.get_client(client_id)
        if client is None:
            raise InvalidGrantError("unknown client")
        if client.is_public or not client.client_secret_hash:
            return
        try:
            self._secret_hasher.verify(client.client_secret_hash, client_secret or "")
        except (InvalidHash, VerificationError):
            self.logger.warning("oauth_client_secret_mismatch", client_id=client_id)
            raise AuthenticationError("invalid client credentials")

    def _issue_tokens(self, user: User, record: AuthorizationCode) -> Dict[str, Any]:
        ttl = timedelta(seconds=self.settings.oidc_token_ttl_seconds)
        issued_at = self._now()
        access_jti = str(uuid.uuid4())
        access_token = self.tokens.mint(
            subject=user.id,
            session_id=access_jti,
            email=user.email,
            role=user.role,
            audience=record.client_id,
            ttl=ttl,
            issued_at=issued_at,
            extra_claims={"scope": record.scope or " ".join(DEFAULT_SCOPES)},
        )
        id_claims: Dict[str, Any] = {"email_verified": user.email_verified}
        if user.display_name:
            id_claims["name"] = user.display_name
        if record.nonce:
            id_claims["nonce"] = record.nonce
        id_token = self.tokens.mint(
            subject=user.id,
            email=user.email,
            audience=record.client_id,
            ttl=ttl,
            issued_at=issued_at,
            token_use="id",
            extra_claims=id_claims,
        )
        # Register the access token so the gate and consent revocation can see it
        self.store.upsert_oidc_payload(
            OidcPayload(
                id=f"{ACCESS_TOKEN_PREFIX}{access_jti}",
                type="AccessToken",
                payload={
                    "accountId": user.id,
                    "clientId": record.client_id,
                    "scope": record.scope or " ".join(DEFAULT_SCOPES),
                },
                expires_at=issued_at + ttl,
            )
        )
        self.logger.info("oauth_tokens_issued", client_id=record.client_id, user_id=user.id)
        return {
            "access_token": access_token,
            "id_token": id_token,
            "token_type": "Bearer",
            "expires_in": int(ttl.total_seconds()),
        }

    def grant_consent(
        self, user_id: str, client_id: str, scopes: Optional[List[str]] = None
    ) -> OAuthConsent:
        """Record (or refresh) the user's consent; repeated calls are harmless."""
        if self.store.get_client(client_id) is None:
            raise BadRequestError("unknown client_id", detail={"client_id": client_id})
        consent = self.store.upsert_consent(user_id, client_id, list(scopes or DEFAULT_SCOPES))
        self.logger.info("oauth_consent_granted", client_id=client_id, user_id=user_id)
        return consent

    def revoke_consent(self, user_id: str, client_id: str) -> bool:
        removed = self.store.delete_consent(user_id, client_id)
        revoked_tokens = self.store.delete_access_tokens(user_id, client_id)
        self.logger.info(
            "oauth_consent_revoked",
            client_id=client_id,
            user_id=user_id,
            removed=removed,
            revoked_tokens=revoked_tokens,
        )
        return removed

    def list_authorized_apps(self, user_id: str) -> List[Dict[str, Any]]:
        apps: List[Dict[str, Any]] = []
        for consent in self.store.list_consents(user_id):
            client = self.store.get_client(consent.client_id)
            if client is None:
                continue
            apps.append(
                {
                    "client_id": client.client_id,
                    "name": client.name,
                    "scopes": consent.scopes,
                    "granted_at": consent.updated_at,
                }
            )
        return apps

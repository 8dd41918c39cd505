from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx
import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from jwt import PyJWKClient, PyJWKClientError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, BadRequestError, ConflictError
from authcore.service.tokens import looks_like_jwt
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import User, UserAuthProvider

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

# Social identity providers accepted by verify_social_token
SOCIAL_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "google": {
        "jwks_uri": "https://www.googleapis.com/oauth2/v3/certs",
        "issuers": ["https://accounts.google.com", "accounts.google.com"],
        "tokeninfo_url": "https://oauth2.googleapis.com/tokeninfo",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "algorithms": ["RS256"],
    },
    "apple": {
        "jwks_uri": "https://appleid.apple.com/auth/keys",
        "issuers": ["https://appleid.apple.com"],
        "tokeninfo_url": None,
        "userinfo_url": None,
        "algorithms": ["RS256", "ES256"],
    },
}


class CredentialBackend(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        phone: Optional[str] = None,
        display_name: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_auth_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[UserAuthProvider]: ...

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> UserAuthProvider: ...


@dataclass
class SocialProfile:
    provider: str
    provider_uid: str
    email: Optional[str]
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


class CredentialStore:
    """Password verification and social-identity linking."""

    def __init__(
        self,
        store: CredentialBackend,
        settings: Settings,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.timeout = settings.external_http_timeout_seconds
        self._http_transport = http_transport
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._jwks_clients: Dict[str, PyJWKClient] = {}
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_hash(self, stored_hash: str, plaintext: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _find_by_identifier(self, identifier: str) -> Optional[User]:
        identifier = identifier.strip()
        if "@" in identifier:
            return self.store.get_user_by_email(identifier)
        return self.store.get_user_by_phone(identifier)

    def _burn_hash_time(self, plaintext: str) -> None:
        # Keeps unknown identifiers as slow as wrong passwords
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("authcore-dummy-password")
        self.verify_hash(self._dummy_hash, plaintext)

    def verify_password(self, identifier: str, plaintext: str) -> Optional[User]:
        """Return the user for ``identifier`` (email or phone) if the password matches.

        Every failure mode returns ``None`` so callers cannot tell an unknown
        identifier from a wrong password.
        """
        if not identifier or not plaintext:
            return None
        user = self._find_by_identifier(identifier)
        if not user or not user.is_active:
            self._burn_hash_time(plaintext)
            return None
        record = self.store.get_password_record(user.id)
        if not record:
            # Social-only account
            self._burn_hash_time(plaintext)
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        if not self.verify_hash(stored_hash, plaintext):
            self.logger.info("password_verification_failed", user_id=user.id)
            return None
        return user

    # social identity
    def _provider_client_id(self, provider: str) -> Optional[str]:
        if provider == "google":
            return self.settings.google_client_id
        if provider == "apple":
            return self.settings.apple_client_id
        return None

    def _reject(self, provider: str, reason: str, **fields: Any) -> AuthenticationError:
        self.logger.warning("social_token_rejected", provider=provider, reason=reason, **fields)
        return AuthenticationError(
            f"{provider} token verification failed", detail={"provider": provider}
        )

    def _jwks_client(self, provider: str) -> PyJWKClient:
        client = self._jwks_clients.get(provider)
        if client is None:
            client = PyJWKClient(
                SOCIAL_PROVIDERS[provider]["jwks_uri"],
                cache_keys=True,
                lifespan=3600,
                timeout=int(self.timeout),
            )
            self._jwks_clients[provider] = client
        return client

    async def _resolve_signing_key(self, provider: str, token: str) -> Any:
        """Fetch the provider key matching the token's ``kid``.

        PyJWKClient fetches synchronously, so run it off the event loop and
        bound the wait.
        """
        client = self._jwks_client(provider)
        signing_key = await asyncio.wait_for(
            asyncio.to_thread(client.get_signing_key_from_jwt, token),
            timeout=self.timeout,
        )
        return signing_key.key

    async def verify_social_token(self, provider: str, token: str) -> SocialProfile:
        """Verify a Google/Apple credential and return the asserted profile.

        ID tokens (three dot-separated segments) are verified locally against
        the provider's JWKS; anything else is treated as an opaque access
        token and checked against the provider's tokeninfo endpoint.
        """
        provider = (provider or "").lower()
        if provider not in SOCIAL_PROVIDERS:
            raise BadRequestError("unsupported identity provider", detail={"provider": provider})
        client_id = self._provider_client_id(provider)
        if not client_id:
            self.logger.error("social_client_id_missing", provider=provider)
            raise self._reject(provider, "client_id_not_configured")
        if not token:
            raise self._reject(provider, "empty_token")
        if looks_like_jwt(token):
            return await self._verify_id_token(provider, token, client_id)
        return await self._verify_access_token(provider, token, client_id)

    async def _verify_id_token(
        self, provider: str, token: str, client_id: str
    ) -> SocialProfile:
        config = SOCIAL_PROVIDERS[provider]
        try:
            key = await self._resolve_signing_key(provider, token)
        except asyncio.TimeoutError as exc:
            raise self._reject(provider, "jwks_timeout") from exc
        except (PyJWKClientError, jwt.PyJWTError) as exc:
            raise self._reject(provider, "signing_key_unavailable", error=str(exc)) from exc

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=config["algorithms"],
                audience=client_id,
                leeway=self.settings.clock_skew_seconds,
                options={"require": ["exp", "iat", "sub", "iss", "aud"], "verify_iss": False},
            )
        except jwt.PyJWTError as exc:
            raise self._reject(provider, type(exc).__name__) from exc

        if claims.get("iss") not in config["issuers"]:
            raise self._reject(provider, "issuer_mismatch", issuer=claims.get("iss"))
        return self._profile_from_claims(provider, claims)

    async def _verify_access_token(
        self, provider: str, token: str, client_id: str
    ) -> SocialProfile:
        config = SOCIAL_PROVIDERS[provider]
        if not config.get("tokeninfo_url"):
            raise self._reject(provider, "opaque_tokens_unsupported")
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.timeout),
                transport=self._http_transport,
            ) as client:
                info_response = await client.get(
                    config["tokeninfo_url"], params={"access_token": token}
                )
                info_response.raise_for_status()
                info = info_response.json()
                if not isinstance(info, dict):
                    raise self._reject(provider, "tokeninfo_invalid_format")
                audience = info.get("aud") or info.get("azp")
                if audience != client_id:
                    raise self._reject(provider, "audience_mismatch")

                userinfo_response = await client.get(
                    config["userinfo_url"],
                    headers={"Authorization": f"Bearer {token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.TimeoutException as exc:
            raise self._reject(provider, "timeout") from exc
        except httpx.HTTPStatusError as exc:
            raise self._reject(
                provider, "http_error", status_code=exc.response.status_code
            ) from exc
        except (httpx.RequestError, ValueError) as exc:
            raise self._reject(provider, type(exc).__name__) from exc

        if not isinstance(userinfo, dict):
            raise self._reject(provider, "userinfo_invalid_format")
        merged = {**info, **userinfo}
        if not merged.get("sub"):
            raise self._reject(provider, "missing_subject")
        return self._profile_from_claims(provider, merged)

    @staticmethod
    def _profile_from_claims(provider: str, claims: Dict[str, Any]) -> SocialProfile:
        verified = claims.get("email_verified", False)
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        return SocialProfile(
            provider=provider,
            provider_uid=str(claims["sub"]),
            email=(claims.get("email") or None),
            email_verified=bool(verified),
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
            picture=claims.get("picture"),
        )

    def link_or_create_user(self, profile: SocialProfile) -> User:
        """Resolve the local user for a verified social profile.

        Looks the user up by email, creating a pre-verified password-less
        account when absent, then records the ``(provider, provider_uid)``
        link. A link that already belongs to another local user is a
        conflict; it is never silently moved.
        """
        existing_link = self.store.get_auth_provider(profile.provider, profile.provider_uid)
        user = self.store.get_user_by_email(profile.email) if profile.email else None

        if existing_link is not None:
            if user is None or user.id == existing_link.user_id:
                linked_user = self.store.get_user(existing_link.user_id)
                if linked_user is None:
                    raise ConflictError(
                        "social account is linked to a missing user",
                        detail={"provider": profile.provider},
                    )
                return linked_user
            self.logger.warning(
                "social_link_conflict",
                provider=profile.provider,
                linked_user_id=existing_link.user_id,
                email_user_id=user.id,
            )
            raise ConflictError(
                "social account already linked to another user",
                detail={"provider": profile.provider},
            )

        if user is None:
            if not profile.email:
                raise BadRequestError(
                    "identity provider did not supply an email",
                    detail={"provider": profile.provider},
                )
            try:
                user = self.store.create_user(
                    profile.email,
                    display_name=profile.display_name,
                    email_verified=True,
                    meta={"signup_provider": profile.provider, "picture": profile.picture},
                )
                self.logger.info("social_user_created", user_id=user.id, provider=profile.provider)
            except ConstraintViolation:
                # Concurrent sign-up with the same email won the insert
                user = self.store.get_user_by_email(profile.email)
                if user is None:
                    raise

        mapping = self.store.link_user_auth_provider(
            user.id, profile.provider, profile.provider_uid
        )
        if mapping.user_id != user.id:
            raise ConflictError(
                "social account already linked to another user",
                detail={"provider": profile.provider},
            )
        return user

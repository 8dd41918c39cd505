from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Union

from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError
from authcore.service.sessions import SessionResolver, SessionState
from authcore.service.tokens import TokenService, looks_like_jwt
from authcore.storage.models import DEFAULT_ROLE, OidcPayload, User

logger = get_logger(__name__)

ACCESS_TOKEN_PREFIX = "AccessToken:"
LEGACY_JTI = "legacy"


class GateBackend(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_oidc_payload(self, payload_id: str) -> Optional[OidcPayload]: ...


@dataclass(frozen=True)
class Principal:
    """Authenticated caller attached to the request."""

    id: str
    sub: str
    email: Optional[str]
    role: str
    jti: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sub": self.sub,
            "email": self.email,
            "role": self.role,
            "jti": self.jti,
        }


@dataclass(frozen=True)
class SignedSession:
    """A compact JWS presented as bearer credential."""

    token: str


@dataclass(frozen=True)
class OpaqueToken:
    """A reference token held in the external-token store."""

    token: str


BearerCredential = Union[SignedSession, OpaqueToken]


def classify_token(token: str) -> BearerCredential:
    if looks_like_jwt(token):
        return SignedSession(token)
    return OpaqueToken(token)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthenticationGate:
    """Per-request allow/reject decision.

    Resolution order for a signed token: signature and expiry, then the
    session named by ``jti`` (cache first, then store), then the
    external-token store for tokens the OIDC surface issued. A signed token
    without ``jti`` resolves its subject directly. Opaque tokens are looked up
    in the external-token store only.
    """

    def __init__(
        self,
        tokens: TokenService,
        resolver: SessionResolver,
        store: GateBackend,
    ) -> None:
        self.tokens = tokens
        self.resolver = resolver
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _reject(self, reason: str, **fields: Any) -> None:
        logger.info("auth_gate_reject", reason=reason, **fields)
        return None

    async def authenticate(
        self, token: Optional[str], *, public: bool = False
    ) -> Optional[Principal]:
        """Return the principal for ``token`` or ``None`` to reject.

        Public operations are allowed without looking at the token and yield
        no principal; callers distinguish them by the ``public`` flag.
        """
        if public:
            return None
        if not token:
            return self._reject("missing_token")
        credential = classify_token(token)
        if isinstance(credential, SignedSession):
            return await self._resolve_signed(credential)
        return self._resolve_opaque(credential)

    async def _resolve_signed(self, credential: SignedSession) -> Optional[Principal]:
        try:
            payload = self.tokens.verify(credential.token)
        except InvalidTokenError as exc:
            return self._reject("invalid_signature", error=exc.message)

        subject = payload.get("sub")
        jti = payload.get("jti")
        if not jti:
            return self._resolve_legacy(subject)

        resolution = await self.resolver.resolve(jti)
        if resolution.state == SessionState.VALID and resolution.identity:
            identity = resolution.identity
            if subject and subject != identity.user_id:
                return self._reject("subject_mismatch", jti=jti)
            return Principal(
                id=identity.user_id,
                sub=identity.user_id,
                email=identity.email,
                role=identity.role or DEFAULT_ROLE,
                jti=jti,
            )
        if resolution.state in (SessionState.REVOKED, SessionState.EXPIRED):
            return self._reject(
                f"session_{resolution.state.value}", jti=jti, from_cache=resolution.from_cache
            )

        # Not a session we issued; may be an access token minted by the OIDC surface
        record = self.store.find_oidc_payload(f"{ACCESS_TOKEN_PREFIX}{jti}")
        principal = self._principal_from_record(record, jti)
        if principal is None:
            return self._reject("session_missing", jti=jti)
        if subject and subject != principal.id:
            return self._reject("subject_mismatch", jti=jti)
        return principal

    def _resolve_legacy(self, subject: Optional[str]) -> Optional[Principal]:
        if not subject:
            return self._reject("missing_subject")
        user = self.store.get_user(subject)
        if user is None or not user.is_active:
            return self._reject("legacy_subject_unknown")
        return Principal(
            id=user.id,
            sub=user.id,
            email=user.email,
            role=user.role or DEFAULT_ROLE,
            jti=LEGACY_JTI,
        )

    def _resolve_opaque(self, credential: OpaqueToken) -> Optional[Principal]:
        record = self.store.find_oidc_payload(f"{ACCESS_TOKEN_PREFIX}{credential.token}")
        principal = self._principal_from_record(record, credential.token)
        if principal is None:
            return self._reject("opaque_token_unknown")
        return principal

    def _principal_from_record(
        self, record: Optional[OidcPayload], jti: str
    ) -> Optional[Principal]:
        if record is None or not record.is_live(self._now()):
            return None
        account_id = (record.payload or {}).get("accountId")
        if not account_id:
            return None
        user = self.store.get_user(account_id)
        if user is None or not user.is_active:
            return None
        return Principal(
            id=user.id,
            sub=user.id,
            email=user.email,
            role=user.role or DEFAULT_ROLE,
            jti=jti,
        )

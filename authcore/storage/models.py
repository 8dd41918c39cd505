from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

DEFAULT_ROLE = "user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    phone: Optional[str] = None
    display_name: Optional[str] = None
    role: str = DEFAULT_ROLE
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    """One authenticated device or browser; its id is the token ``jti``."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    client_id: Optional[str] = None
    refresh_token_hash: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    location: Optional[str] = None
    passkey_challenge: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        location: str | None = None,
        client_id: str | None = None,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=expires_at,
            last_used_at=now,
            client_id=client_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            location=location,
            meta=meta,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    location: Optional[str] = None


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthClient:
    client_id: str
    name: str
    redirect_uris: List[str] = field(default_factory=list)
    is_first_party: bool = False
    is_public: bool = True
    grant_types: List[str] = field(default_factory=lambda: ["authorization_code"])
    client_secret_hash: Optional[str] = None
    post_logout_redirect_uris: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthConsent:
    user_id: str
    client_id: str
    scopes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    expires_at: datetime
    scope: Optional[str] = None
    nonce: Optional[str] = None
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        code: str,
        *,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        ttl_seconds: int,
        scope: str | None = None,
        nonce: str | None = None,
        now: datetime | None = None,
    ) -> "AuthorizationCode":
        issued = now or utcnow()
        return cls(
            code=code,
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            scope=scope,
            nonce=nonce,
            created_at=issued,
        )


@dataclass
class OidcPayload:
    """Record in the external-token store shared with the OIDC provider.

    ``id`` is ``"{kind}:{key}"``, e.g. ``AccessToken:<jti>`` or
    ``Interaction:<uid>``.
    """

    id: str
    type: str
    payload: Dict
    expires_at: Optional[datetime] = None
    grant_id: Optional[str] = None
    uid: Optional[str] = None
    consumed_at: Optional[datetime] = None

    def is_live(self, now: datetime | None = None) -> bool:
        if self.consumed_at is not None:
            return False
        return self.expires_at is None or self.expires_at > (now or utcnow())

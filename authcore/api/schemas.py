from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_grant",
    "unsupported_grant_type",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{6,15}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _PHONE_PATTERN.match(value):
            raise ValueError("phone must be digits with an optional leading +")
        return value


class LoginRequest(BaseModel):
    """``identifier`` is an email address or a phone number."""

    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if "@" in value:
            return _validate_email(value)
        return value


class SocialLoginRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int
    role: str = "user"


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    location: Optional[str] = None
    client_id: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SessionCountResponse(BaseModel):
    count: int


class SessionsRevokedResponse(BaseModel):
    revoked: int


class PrincipalResponse(BaseModel):
    id: str
    sub: str
    email: Optional[str] = None
    role: str
    jti: str
    email_verified: Optional[bool] = None
    name: Optional[str] = None


class TokenRequest(BaseModel):
    """Token endpoint body, accepted as a form or as JSON."""

    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = None
    code: Optional[str] = Field(default=None, max_length=256)
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)
    client_id: Optional[str] = Field(default=None, max_length=256)
    code_verifier: Optional[str] = Field(default=None, max_length=256)
    client_secret: Optional[str] = Field(default=None, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    id_token: str
    token_type: str = "Bearer"
    expires_in: int


class ConsentRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=256)
    scopes: List[str] = Field(default_factory=lambda: ["openid", "email", "profile"])

    @field_validator("scopes")
    @classmethod
    def _validate_scopes(cls, value: List[str]) -> List[str]:
        if len(value) > 32:
            raise ValueError("too many scopes")
        return [scope.strip() for scope in value if scope and scope.strip()]


class ConsentResponse(BaseModel):
    client_id: str
    scopes: List[str]
    granted_at: datetime


class AuthorizedAppResponse(BaseModel):
    client_id: str
    name: str
    scopes: List[str]
    granted_at: datetime


class AuthorizedAppListResponse(BaseModel):
    items: List[AuthorizedAppResponse]


class InteractionLoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_interaction_email(cls, value: str) -> str:
        return _validate_email(value)


class InteractionResponse(BaseModel):
    redirect_to: str
    prompt: Optional[str] = None
    grant_id: Optional[str] = None

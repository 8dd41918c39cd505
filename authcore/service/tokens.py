from __future__ import annotations

import base64
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError
from authcore.service.keys import SIGNING_ALGORITHM, KeyManager
from authcore.storage.models import Session, User

logger = get_logger(__name__)

ACCESS_TOKEN_USE = "access"
REFRESH_TOKEN_USE = "refresh"


def looks_like_jwt(token: str) -> bool:
    """True when ``token`` has the compact JWS shape with a JSON header."""
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return False
    header_segment = parts[0]
    padded = header_segment + "=" * (-len(header_segment) % 4)
    try:
        header = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (ValueError, TypeError):
        return False
    return isinstance(header, dict) and "alg" in header


class TokenService:
    """Mints and verifies ES256 bearer tokens.

    Tokens are stateless; the session referenced by ``jti`` is the unit of
    revocation and is checked by the authentication gate, not here.
    """

    def __init__(self, keys: KeyManager, settings: Settings) -> None:
        self.keys = keys
        self.settings = settings
        self.issuer = settings.oidc_issuer
        self.leeway = settings.clock_skew_seconds

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def mint(
        self,
        *,
        subject: str,
        ttl: timedelta,
        session_id: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        audience: Optional[str] = None,
        token_use: str = ACCESS_TOKEN_USE,
        extra_claims: Optional[Dict[str, Any]] = None,
        issued_at: Optional[datetime] = None,
    ) -> str:
        iat = issued_at or self._now()
        payload: Dict[str, Any] = {
            "iss": self.issuer,
            "sub": subject,
            "iat": int(iat.timestamp()),
            "exp": int((iat + ttl).timestamp()),
            "token_use": token_use,
        }
        if session_id:
            payload["jti"] = session_id
        if email:
            payload["email"] = email
        if role:
            payload["role"] = role
        if audience:
            payload["aud"] = audience
        if extra_claims:
            for key, value in extra_claims.items():
                payload.setdefault(key, value)
        return jwt.encode(
            payload,
            self.keys.get_private_key(),
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.keys.key_id},
        )

    def mint_for_session(
        self, session: Session, user: User, *, ttl: Optional[timedelta] = None
    ) -> str:
        """Access token binding ``sub``, ``jti`` (session id), email and role."""
        return self.mint(
            subject=user.id,
            session_id=session.id,
            email=user.email,
            role=user.role,
            ttl=ttl or timedelta(minutes=self.settings.access_token_ttl_minutes),
        )

    def mint_refresh(self, session: Session, *, rotation_id: Optional[str] = None) -> str:
        return self.mint(
            subject=session.user_id,
            session_id=session.id,
            token_use=REFRESH_TOKEN_USE,
            ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            extra_claims={"rid": rotation_id or str(uuid.uuid4())},
        )

    def verify(
        self,
        token: str,
        *,
        audience: Optional[str] = None,
        token_use: Optional[str] = ACCESS_TOKEN_USE,
    ) -> Dict[str, Any]:
        """Return the verified payload or raise :class:`InvalidTokenError`.

        ``exp``, ``nbf`` and ``iat`` are all checked with the configured
        clock-skew leeway. Audience is only enforced when one is given.
        """
        try:
            payload = jwt.decode(
                token,
                self.keys.get_public_key(),
                algorithms=[SIGNING_ALGORITHM],
                issuer=self.issuer,
                audience=audience,
                leeway=self.leeway,
                options={
                    "require": ["exp", "iat", "sub"],
                    "verify_aud": audience is not None,
                },
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token expired") from exc
        except jwt.ImmatureSignatureError as exc:
            raise InvalidTokenError("token not yet valid") from exc
        except jwt.PyJWTError as exc:
            logger.debug("token_verify_failed", error_type=type(exc).__name__)
            raise InvalidTokenError("invalid token") from exc

        # Tokens minted before token_use existed carry no marker and count as access tokens
        actual_use = payload.get("token_use", ACCESS_TOKEN_USE)
        if token_use is not None and actual_use != token_use:
            raise InvalidTokenError("wrong token type")
        return payload

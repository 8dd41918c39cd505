from __future__ import annotations

import hashlib
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.credentials import CredentialStore
from authcore.service.email import EmailService, dispatch_background
from authcore.service.errors import AuthenticationError, ConflictError, InvalidTokenError
from authcore.service.gate import LEGACY_JTI, Principal
from authcore.service.sessions import SessionService
from authcore.service.tokens import REFRESH_TOKEN_USE, TokenService
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import DeviceInfo, Session, User

logger = get_logger(__name__)


class AuthBackend(Protocol):
    def create_user(self, email: str, **kwargs: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_session_refresh_hash(self, session_id: str, refresh_token_hash: str) -> None: ...

    def rotate_session_refresh_hash(
        self, session_id: str, expected_hash: str, refresh_token_hash: str
    ) -> bool: ...


@dataclass
class AuthResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str
    expires_in: int

    def as_payload(self) -> dict:
        return {
            "user_id": self.user.id,
            "session_id": self.session.id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "role": self.user.role,
        }


def _hash_rotation_id(rotation_id: str) -> str:
    return hashlib.sha256(rotation_id.encode("utf-8")).hexdigest()


class AuthService:
    """Direct sign-in surface: register, password and social login, refresh, logout."""

    def __init__(
        self,
        store: AuthBackend,
        credentials: CredentialStore,
        sessions: SessionService,
        tokens: TokenService,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.settings = settings
        self.email = email
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def register(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        phone: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        try:
            user = self.store.create_user(
                email, phone=phone, display_name=display_name
            )
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        self.credentials.set_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return await self._start_session(user, device)

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        user = self.credentials.verify_password(identifier, password)
        if user is None:
            self.logger.info("login_failed")
            raise AuthenticationError("invalid credentials")
        result = await self._start_session(user, device)
        self._notify_login(user, device)
        return result

    async def social_login(
        self,
        provider: str,
        token: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        profile = await self.credentials.verify_social_token(provider, token)
        user = self.credentials.link_or_create_user(profile)
        if not user.is_active:
            raise AuthenticationError("unauthorized")
        result = await self._start_session(
            user,
            device,
            access_ttl=timedelta(minutes=self.settings.social_token_ttl_minutes),
        )
        self.logger.info("social_login", provider=provider, user_id=user.id)
        self._notify_login(user, device)
        return result

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Rotate the refresh token for a live session and mint a new access token."""
        if not refresh_token:
            raise AuthenticationError("unauthorized")
        try:
            payload = self.tokens.verify(refresh_token, token_use=REFRESH_TOKEN_USE)
        except InvalidTokenError:
            raise AuthenticationError("unauthorized")
        session_id = payload.get("jti")
        rotation_id = payload.get("rid")
        session = self.sessions.find_by_id(session_id) if session_id else None
        if session is None or session.is_expired(self._now()):
            raise AuthenticationError("unauthorized")
        if session.user_id != payload.get("sub"):
            raise AuthenticationError("unauthorized")
        presented = _hash_rotation_id(rotation_id) if rotation_id else None
        if not presented or not session.refresh_token_hash or not hmac.compare_digest(
            session.refresh_token_hash, presented
        ):
            await self._reject_reused_refresh(session)
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("unauthorized")
        result = self._issue(user, session, previous_hash=presented)
        if result is None:
            # Another refresh with the same token rotated the chain first
            await self._reject_reused_refresh(session)
        self.sessions.touch(session.id)
        return result

    async def _reject_reused_refresh(self, session: Session) -> None:
        """A stale refresh token means the chain was replayed; drop the session."""
        self.logger.warning("refresh_token_reuse", session_id=session.id)
        await self.sessions.delete(session.id, user_id=session.user_id)
        raise AuthenticationError("unauthorized")

    async def logout(self, principal: Principal) -> bool:
        if not principal.jti or principal.jti == LEGACY_JTI:
            return False
        session = self.sessions.find_by_id(principal.jti)
        if session is None or session.user_id != principal.id:
            return False
        return await self.sessions.delete(session.id, user_id=principal.id)

    async def revoke_other_sessions(self, principal: Principal) -> int:
        count = await self.sessions.delete_all_for_user(
            principal.id, except_session_id=principal.jti
        )
        if count and self.email and principal.email:
            dispatch_background(
                self.email.send_sessions_revoked_notice, principal.email, count=count
            )
        return count

    async def _start_session(
        self,
        user: User,
        device: Optional[DeviceInfo],
        *,
        access_ttl: Optional[timedelta] = None,
    ) -> AuthResult:
        session = await self.sessions.create(user, device=device)
        return self._issue(user, session, access_ttl=access_ttl)

    def _issue(
        self,
        user: User,
        session: Session,
        *,
        access_ttl: Optional[timedelta] = None,
        previous_hash: Optional[str] = None,
    ) -> Optional[AuthResult]:
        """Mint an access and refresh token pair bound to ``session``.

        With ``previous_hash`` the stored refresh hash is swapped only if it
        still equals that value; ``None`` is returned when it does not.
        """
        ttl = access_ttl or timedelta(minutes=self.settings.access_token_ttl_minutes)
        rotation_id = str(uuid.uuid4())
        access_token = self.tokens.mint_for_session(session, user, ttl=ttl)
        refresh_token = self.tokens.mint_refresh(session, rotation_id=rotation_id)
        hashed = _hash_rotation_id(rotation_id)
        if previous_hash is None:
            self.store.set_session_refresh_hash(session.id, hashed)
        elif not self.store.rotate_session_refresh_hash(session.id, previous_hash, hashed):
            return None
        session.refresh_token_hash = hashed
        return AuthResult(
            user=user,
            session=session,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(ttl.total_seconds()),
        )

    def _notify_login(self, user: User, device: Optional[DeviceInfo]) -> None:
        if not self.email or not user.email:
            return
        device = device or DeviceInfo()
        dispatch_background(
            self.email.send_login_alert,
            user.email,
            user_agent=device.user_agent,
            ip_addr=device.ip_addr,
            location=device.location,
        )

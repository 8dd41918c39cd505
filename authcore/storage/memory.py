from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuthorizationCode,
    OAuthClient,
    OAuthConsent,
    OidcPayload,
    Session,
    User,
    UserAuthProvider,
    utcnow,
)


class MemoryStore:
    """In-memory backing store with a JSON snapshot under ``fs_root/state``.

    Used for tests and single-process development. Every mutation runs under
    one re-entrant lock, which gives the same per-row atomicity the Postgres
    store gets from the database (notably for authorization-code consumption).
    """

    def __init__(self, fs_root: str = "/tmp/authcore", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.providers: List[UserAuthProvider] = []
        self.clients: Dict[str, OAuthClient] = {}
        self.consents: Dict[tuple[str, str], OAuthConsent] = {}
        self.auth_codes: Dict[str, AuthorizationCode] = {}
        self.oidc_payloads: Dict[str, OidcPayload] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if persist and not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        *,
        phone: Optional[str] = None,
        display_name: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and any(existing.phone == phone for existing in self.users.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                phone=phone,
                display_name=display_name,
                role=role,
                email_verified=email_verified,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.phone == phone), None)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # social provider links
    def get_auth_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[UserAuthProvider]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return mapping
            return None

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> UserAuthProvider:
        """Insert the mapping unless one exists; always return the stored row."""
        with self._data_lock:
            existing = self.get_auth_provider(provider, provider_uid)
            if existing:
                return existing
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            max_id = max((p.id for p in self.providers), default=0)
            mapping = UserAuthProvider(
                id=max_id + 1, user_id=user_id, provider=provider, provider_uid=provider_uid
            )
            self.providers.append(mapping)
            self._persist_state()
            return mapping

    # sessions
    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        location: str | None = None,
        client_id: str | None = None,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                expires_at,
                user_agent=user_agent,
                ip_addr=ip_addr,
                location=location,
                client_id=client_id,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def touch_session(self, session_id: str, last_used_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_used_at = last_used_at
            self._persist_state()

    def set_session_refresh_hash(self, session_id: str, refresh_token_hash: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.refresh_token_hash = refresh_token_hash
            self._persist_state()

    def rotate_session_refresh_hash(
        self, session_id: str, expected_hash: str, refresh_token_hash: str
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.refresh_token_hash != expected_hash:
                return False
            sess.refresh_token_hash = refresh_token_hash
            self._persist_state()
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Drop the user's sessions; return the ids of those still live at ``now``."""
        with self._data_lock:
            stale = [
                sess
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sess in stale:
                self.sessions.pop(sess.id, None)
            if stale:
                self._persist_state()
            return [sess.id for sess in stale if now is None or not sess.is_expired(now)]

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                sess
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.expires_at > now
            ]
        return sorted(
            active,
            key=lambda s: s.last_used_at or s.created_at,
            reverse=True,
        )

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # oauth clients
    def upsert_client(self, client: OAuthClient) -> OAuthClient:
        with self._data_lock:
            existing = self.clients.get(client.client_id)
            if existing:
                client.created_at = existing.created_at
            self.clients[client.client_id] = client
            self._persist_state()
            return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            return self.clients.get(client_id)

    def list_clients(self) -> List[OAuthClient]:
        with self._data_lock:
            return sorted(self.clients.values(), key=lambda c: c.created_at)

    # consents
    def upsert_consent(
        self, user_id: str, client_id: str, scopes: List[str]
    ) -> OAuthConsent:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if client_id not in self.clients:
                raise ConstraintViolation("client does not exist", {"client_id": client_id})
            key = (user_id, client_id)
            consent = self.consents.get(key)
            if consent:
                consent.scopes = list(scopes)
                consent.updated_at = utcnow()
            else:
                consent = OAuthConsent(user_id=user_id, client_id=client_id, scopes=list(scopes))
                self.consents[key] = consent
            self._persist_state()
            return consent

    def get_consent(self, user_id: str, client_id: str) -> Optional[OAuthConsent]:
        with self._data_lock:
            return self.consents.get((user_id, client_id))

    def list_consents(self, user_id: str) -> List[OAuthConsent]:
        with self._data_lock:
            results = [c for (uid, _), c in self.consents.items() if uid == user_id]
        return sorted(results, key=lambda c: c.updated_at, reverse=True)

    def delete_consent(self, user_id: str, client_id: str) -> bool:
        with self._data_lock:
            removed = self.consents.pop((user_id, client_id), None)
            if removed:
                self._persist_state()
            return removed is not None

    # authorization codes
    def create_auth_code(self, code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            if code.code in self.auth_codes:
                raise ConstraintViolation("authorization code collision", {"field": "code"})
            self.auth_codes[code.code] = code
            self._persist_state()
            return code

    def get_auth_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            return self.auth_codes.get(code)

    def consume_auth_code(self, code: str) -> bool:
        """Flip ``used`` from false to true; only the first caller gets True."""
        with self._data_lock:
            record = self.auth_codes.get(code)
            if record is None or record.used:
                return False
            record.used = True
            self._persist_state()
            return True

    def delete_expired_auth_codes(self, now: datetime) -> int:
        """Drop codes that were redeemed or ran out; either way they are dead."""
        with self._data_lock:
            dead = [c for c, rec in self.auth_codes.items() if rec.used or rec.expires_at <= now]
            for code in dead:
                self.auth_codes.pop(code, None)
            if dead:
                self._persist_state()
            return len(dead)

    # external-token store
    def upsert_oidc_payload(self, record: OidcPayload) -> OidcPayload:
        with self._data_lock:
            self.oidc_payloads[record.id] = record
            self._persist_state()
            return record

    def find_oidc_payload(self, payload_id: str) -> Optional[OidcPayload]:
        with self._data_lock:
            return self.oidc_payloads.get(payload_id)

    def consume_oidc_payload(self, payload_id: str, consumed_at: datetime) -> None:
        with self._data_lock:
            record = self.oidc_payloads.get(payload_id)
            if record:
                record.consumed_at = consumed_at
                self._persist_state()

    def destroy_oidc_payload(self, payload_id: str) -> None:
        with self._data_lock:
            if self.oidc_payloads.pop(payload_id, None):
                self._persist_state()

    def revoke_oidc_grant(self, grant_id: str) -> int:
        with self._data_lock:
            doomed = [
                pid for pid, rec in self.oidc_payloads.items() if rec.grant_id == grant_id
            ]
            for pid in doomed:
                self.oidc_payloads.pop(pid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_oidc_payloads(self, now: datetime) -> int:
        with self._data_lock:
            dead = [pid for pid, rec in self.oidc_payloads.items() if not rec.is_live(now)]
            for pid in dead:
                self.oidc_payloads.pop(pid, None)
            if dead:
                self._persist_state()
            return len(dead)

    def delete_access_tokens(self, user_id: str, client_id: str) -> int:
        with self._data_lock:
            doomed = [
                pid
                for pid, rec in self.oidc_payloads.items()
                if rec.type == "AccessToken"
                and rec.payload.get("accountId") == user_id
                and rec.payload.get("clientId") == client_id
            ]
            for pid in doomed:
                self.oidc_payloads.pop(pid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # snapshot
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "providers": [self._serialize_provider(p) for p in self.providers],
            "clients": [self._serialize_client(c) for c in self.clients.values()],
            "consents": [self._serialize_consent(c) for c in self.consents.values()],
            "auth_codes": [self._serialize_auth_code(c) for c in self.auth_codes.values()],
            "oidc_payloads": [
                self._serialize_oidc_payload(p) for p in self.oidc_payloads.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.providers = [
            self._deserialize_provider(p) for p in data.get("providers", [])
        ]
        self.clients = {
            c["client_id"]: self._deserialize_client(c) for c in data.get("clients", [])
        }
        self.consents = {}
        for entry in data.get("consents", []):
            consent = self._deserialize_consent(entry)
            self.consents[(consent.user_id, consent.client_id)] = consent
        self.auth_codes = {
            c["code"]: self._deserialize_auth_code(c) for c in data.get("auth_codes", [])
        }
        self.oidc_payloads = {
            p["id"]: self._deserialize_oidc_payload(p)
            for p in data.get("oidc_payloads", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "phone": user.phone,
            "display_name": user.display_name,
            "role": user.role,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            phone=data.get("phone"),
            display_name=data.get("display_name"),
            role=data.get("role", "user"),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_provider(self, provider: UserAuthProvider) -> dict:
        return {
            "id": provider.id,
            "user_id": provider.user_id,
            "provider": provider.provider,
            "provider_uid": provider.provider_uid,
            "created_at": self._serialize_datetime(provider.created_at),
        }

    def _deserialize_provider(self, data: dict) -> UserAuthProvider:
        return UserAuthProvider(
            id=int(data["id"]),
            user_id=str(data["user_id"]),
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "client_id": session.client_id,
            "refresh_token_hash": session.refresh_token_hash,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "location": session.location,
            "passkey_challenge": session.passkey_challenge,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            client_id=data.get("client_id"),
            refresh_token_hash=data.get("refresh_token_hash"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            location=data.get("location"),
            passkey_challenge=data.get("passkey_challenge"),
            meta=data.get("meta"),
        )

    def _serialize_client(self, client: OAuthClient) -> dict:
        return {
            "client_id": client.client_id,
            "name": client.name,
            "redirect_uris": client.redirect_uris,
            "is_first_party": client.is_first_party,
            "is_public": client.is_public,
            "grant_types": client.grant_types,
            "client_secret_hash": client.client_secret_hash,
            "post_logout_redirect_uris": client.post_logout_redirect_uris,
            "created_at": self._serialize_datetime(client.created_at),
        }

    def _deserialize_client(self, data: dict) -> OAuthClient:
        return OAuthClient(
            client_id=data["client_id"],
            name=data.get("name", data["client_id"]),
            redirect_uris=list(data.get("redirect_uris") or []),
            is_first_party=data.get("is_first_party", False),
            is_public=data.get("is_public", True),
            grant_types=list(data.get("grant_types") or ["authorization_code"]),
            client_secret_hash=data.get("client_secret_hash"),
            post_logout_redirect_uris=list(data.get("post_logout_redirect_uris") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_consent(self, consent: OAuthConsent) -> dict:
        return {
            "user_id": consent.user_id,
            "client_id": consent.client_id,
            "scopes": consent.scopes,
            "created_at": self._serialize_datetime(consent.created_at),
            "updated_at": self._serialize_datetime(consent.updated_at),
        }

    def _deserialize_consent(self, data: dict) -> OAuthConsent:
        return OAuthConsent(
            user_id=data["user_id"],
            client_id=data["client_id"],
            scopes=list(data.get("scopes") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_auth_code(self, code: AuthorizationCode) -> dict:
        return {
            "code": code.code,
            "client_id": code.client_id,
            "user_id": code.user_id,
            "redirect_uri": code.redirect_uri,
            "code_challenge": code.code_challenge,
            "code_challenge_method": code.code_challenge_method,
            "expires_at": self._serialize_datetime(code.expires_at),
            "scope": code.scope,
            "nonce": code.nonce,
            "used": code.used,
            "created_at": self._serialize_datetime(code.created_at),
        }

    def _deserialize_auth_code(self, data: dict) -> AuthorizationCode:
        return AuthorizationCode(
            code=data["code"],
            client_id=data["client_id"],
            user_id=data["user_id"],
            redirect_uri=data["redirect_uri"],
            code_challenge=data["code_challenge"],
            code_challenge_method=data.get("code_challenge_method", "S256"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            scope=data.get("scope"),
            nonce=data.get("nonce"),
            used=data.get("used", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_oidc_payload(self, record: OidcPayload) -> dict:
        return {
            "id": record.id,
            "type": record.type,
            "payload": record.payload,
            "expires_at": self._serialize_datetime(record.expires_at),
            "grant_id": record.grant_id,
            "uid": record.uid,
            "consumed_at": self._serialize_datetime(record.consumed_at),
        }

    def _deserialize_oidc_payload(self, data: dict[str, Any]) -> OidcPayload:
        return OidcPayload(
            id=data["id"],
            type=data["type"],
            payload=data.get("payload") or {},
            expires_at=self._deserialize_datetime(data.get("expires_at")),
            grant_id=data.get("grant_id"),
            uid=data.get("uid"),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )

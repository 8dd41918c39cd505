from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


class PostgresStore:
    """Postgres-backed store for users, sessions and OAuth artifacts."""

    REQUIRED_TABLES = [
        "app_user",
        "user_auth_credential",
        "user_auth_provider",
        "auth_session",
        "oauth_client",
        "oauth_consent",
        "auth_code",
        "oidc_payload",
    ]

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return None

    @staticmethod
    def _parse_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return None
        return value

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            phone=row.get("phone"),
            display_name=row.get("display_name"),
            role=row.get("role") or "user",
            email_verified=bool(row.get("email_verified", False)),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            is_active=row.get("is_active", True),
            meta=self._parse_json(row.get("meta")),
        )

    def _session_from_row(self, row: dict) -> Session:
        raw_ip = row.get("ip_addr")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            expires_at=self._parse_ts(row.get("expires_at")) or utcnow(),
            last_used_at=self._parse_ts(row.get("last_used_at")),
            client_id=row.get("client_id"),
            refresh_token_hash=row.get("refresh_token_hash"),
            user_agent=row.get("user_agent"),
            ip_addr=str(raw_ip) if raw_ip is not None else None,
            location=row.get("location"),
            passkey_challenge=row.get("passkey_challenge"),
            meta=self._parse_json(row.get("meta")),
        )

    def _client_from_row(self, row: dict) -> OAuthClient:
        return OAuthClient(
            client_id=row["client_id"],
            name=row.get("name") or row["client_id"],
            redirect_uris=list(row.get("redirect_uris") or []),
            is_first_party=bool(row.get("is_first_party", False)),
            is_public=bool(row.get("is_public", True)),
            grant_types=list(row.get("grant_types") or ["authorization_code"]),
            client_secret_hash=row.get("client_secret_hash"),
            post_logout_redirect_uris=list(row.get("post_logout_redirect_uris") or []),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    def _consent_from_row(self, row: dict) -> OAuthConsent:
        return OAuthConsent(
            user_id=str(row["user_id"]),
            client_id=row["client_id"],
            scopes=list(row.get("scopes") or []),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            updated_at=self._parse_ts(row.get("updated_at")) or utcnow(),
        )

    def _auth_code_from_row(self, row: dict) -> AuthorizationCode:
        return AuthorizationCode(
            code=row["code"],
            client_id=row["client_id"],
            user_id=str(row["user_id"]),
            redirect_uri=row["redirect_uri"],
            code_challenge=row["code_challenge"],
            code_challenge_method=row.get("code_challenge_method") or "S256",
            expires_at=self._parse_ts(row.get("expires_at")) or utcnow(),
            scope=row.get("scope"),
            nonce=row.get("nonce"),
            used=bool(row.get("used", False)),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    def _oidc_payload_from_row(self, row: dict) -> OidcPayload:
        return OidcPayload(
            id=row["id"],
            type=row["type"],
            payload=self._parse_json(row.get("payload")) or {},
            expires_at=self._parse_ts(row.get("expires_at")),
            grant_id=row.get("grant_id"),
            uid=row.get("uid"),
            consumed_at=self._parse_ts(row.get("consumed_at")),
        )

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
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, phone, display_name, role, email_verified, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        phone,
                        display_name,
                        role,
                        email_verified,
                        is_active,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "phone" if "phone" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE phone = %s", (phone,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # social provider links
    def get_auth_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[UserAuthProvider]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_auth_provider WHERE provider = %s AND provider_uid = %s",
                (provider, provider_uid),
            ).fetchone()
        if not row:
            return None
        return UserAuthProvider(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_uid=row["provider_uid"],
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> UserAuthProvider:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, provider_uid) DO NOTHING
                    """,
                    (user_id, provider, provider_uid),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        mapping = self.get_auth_provider(provider, provider_uid)
        if mapping is None:
            raise ConstraintViolation(
                "provider link vanished", {"provider": provider}
            )
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
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
            location=location,
            client_id=client_id,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, client_id, created_at, expires_at, last_used_at, user_agent, ip_addr, location, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        client_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.last_used_at,
                        user_agent,
                        ip_addr,
                        location,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, last_used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s",
                (last_used_at, session_id),
            )

    def set_session_refresh_hash(self, session_id: str, refresh_token_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET refresh_token_hash = %s WHERE id = %s",
                (refresh_token_hash, session_id),
            )

    def rotate_session_refresh_hash(
        self, session_id: str, expected_hash: str, refresh_token_hash: str
    ) -> bool:
        """Swap the refresh hash only if it is still ``expected_hash``."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET refresh_token_hash = %s
                WHERE id = %s AND refresh_token_hash = %s
                RETURNING id
                """,
                (refresh_token_hash, session_id, expected_hash),
            ).fetchone()
        return row is not None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s "
                    "RETURNING id, expires_at",
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s RETURNING id, expires_at",
                    (user_id,),
                ).fetchall()
        # Rows already past expiry were dead; only live ones count as revoked
        return [
            str(row["id"]) for row in rows if now is None or row["expires_at"] > now
        ]

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY COALESCE(last_used_at, created_at) DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # oauth clients
    def upsert_client(self, client: OAuthClient) -> OAuthClient:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO oauth_client (client_id, name, redirect_uris, is_first_party, is_public, grant_types, client_secret_hash, post_logout_redirect_uris)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (client_id) DO UPDATE
                SET name = EXCLUDED.name,
                    redirect_uris = EXCLUDED.redirect_uris,
                    is_first_party = EXCLUDED.is_first_party,
                    is_public = EXCLUDED.is_public,
                    grant_types = EXCLUDED.grant_types,
                    client_secret_hash = EXCLUDED.client_secret_hash,
                    post_logout_redirect_uris = EXCLUDED.post_logout_redirect_uris
                RETURNING *
                """,
                (
                    client.client_id,
                    client.name,
                    list(client.redirect_uris),
                    client.is_first_party,
                    client.is_public,
                    list(client.grant_types),
                    client.client_secret_hash,
                    list(client.post_logout_redirect_uris),
                ),
            ).fetchone()
        return self._client_from_row(row)

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE client_id = %s", (client_id,)
            ).fetchone()
        return self._client_from_row(row) if row else None

    def list_clients(self) -> List[OAuthClient]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_client ORDER BY created_at"
            ).fetchall()
        return [self._client_from_row(row) for row in rows]

    # consents
    def upsert_consent(
        self, user_id: str, client_id: str, scopes: List[str]
    ) -> OAuthConsent:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO oauth_consent (user_id, client_id, scopes)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, client_id) DO UPDATE
                    SET scopes = EXCLUDED.scopes, updated_at = now()
                    RETURNING *
                    """,
                    (user_id, client_id, list(scopes)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "consent references unknown user or client",
                {"user_id": user_id, "client_id": client_id},
            )
        return self._consent_from_row(row)

    def get_consent(self, user_id: str, client_id: str) -> Optional[OAuthConsent]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_consent WHERE user_id = %s AND client_id = %s",
                (user_id, client_id),
            ).fetchone()
        return self._consent_from_row(row) if row else None

    def list_consents(self, user_id: str) -> List[OAuthConsent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_consent WHERE user_id = %s ORDER BY updated_at DESC",
                (user_id,),
            ).fetchall()
        return [self._consent_from_row(row) for row in rows]

    def delete_consent(self, user_id: str, client_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oauth_consent WHERE user_id = %s AND client_id = %s",
                (user_id, client_id),
            )
            return result.rowcount > 0

    # authorization codes
    def create_auth_code(self, code: AuthorizationCode) -> AuthorizationCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_code (code, client_id, user_id, redirect_uri, code_challenge, code_challenge_method, expires_at, scope, nonce, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        code.code,
                        code.client_id,
                        code.user_id,
                        code.redirect_uri,
                        code.code_challenge,
                        code.code_challenge_method,
                        code.expires_at,
                        code.scope,
                        code.nonce,
                        code.used,
                        code.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("authorization code collision", {"field": "code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "authorization code references unknown user or client",
                {"client_id": code.client_id},
            )
        return code

    def get_auth_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_code WHERE code = %s", (code,)
            ).fetchone()
        return self._auth_code_from_row(row) if row else None

    def consume_auth_code(self, code: str) -> bool:
        """Single compare-and-set; concurrent redeemers race on this row."""
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_code SET used = TRUE WHERE code = %s AND used = FALSE RETURNING code",
                (code,),
            ).fetchone()
        return row is not None

    def delete_expired_auth_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_code WHERE used = TRUE OR expires_at <= %s", (now,)
            )
            return result.rowcount

    # external-token store
    def upsert_oidc_payload(self, record: OidcPayload) -> OidcPayload:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oidc_payload (id, type, payload, expires_at, grant_id, uid, consumed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET payload = EXCLUDED.payload,
                    expires_at = EXCLUDED.expires_at,
                    grant_id = EXCLUDED.grant_id,
                    uid = EXCLUDED.uid,
                    consumed_at = EXCLUDED.consumed_at
                """,
                (
                    record.id,
                    record.type,
                    json.dumps(record.payload),
                    record.expires_at,
                    record.grant_id,
                    record.uid,
                    record.consumed_at,
                ),
            )
        return record

    def find_oidc_payload(self, payload_id: str) -> Optional[OidcPayload]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oidc_payload WHERE id = %s", (payload_id,)
            ).fetchone()
        return self._oidc_payload_from_row(row) if row else None

    def consume_oidc_payload(self, payload_id: str, consumed_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE oidc_payload SET consumed_at = %s WHERE id = %s",
                (consumed_at, payload_id),
            )

    def destroy_oidc_payload(self, payload_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM oidc_payload WHERE id = %s", (payload_id,))

    def revoke_oidc_grant(self, grant_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oidc_payload WHERE grant_id = %s", (grant_id,)
            )
            return result.rowcount

    def delete_expired_oidc_payloads(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oidc_payload WHERE consumed_at IS NOT NULL OR expires_at <= %s",
                (now,),
            )
            return result.rowcount

    def delete_access_tokens(self, user_id: str, client_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM oidc_payload
                WHERE type = 'AccessToken'
                  AND payload->>'accountId' = %s
                  AND payload->>'clientId' = %s
                """,
                (user_id, client_id),
            )
            return result.rowcount

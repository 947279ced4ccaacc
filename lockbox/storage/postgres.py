from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from lockbox.logging import get_logger
from lockbox.storage.crypto import SecretCipher
from lockbox.storage.errors import ConstraintViolation, StoreUnavailable
from lockbox.storage.models import (
    AccountSecurity,
    AuditEvent,
    OAuthClient,
    RotationResult,
    RotationStatus,
    TokenRecord,
    User,
)

T = TypeVar("T")

_SECURITY_COLUMNS = (
    "failed_login_attempts",
    "account_locked_until",
    "last_failed_login_at",
    "two_factor_enabled",
    "two_factor_secret",
    "two_factor_pending_verification",
    "two_factor_setup_started_at",
    "two_factor_backup_codes",
    "two_factor_verification_attempts",
    "two_factor_last_failed_attempt",
    "two_factor_last_verified_at",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed store. Each multi-step transition runs in one transaction
    holding a row lock, so concurrent requests for one user serialize."""

    def __init__(self, dsn: str, fs_root: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(secret_key)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the tables this store needs if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL,
                    tenant_id TEXT NOT NULL DEFAULT 'public',
                    role TEXT NOT NULL DEFAULT 'user',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    meta JSONB,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (tenant_id, email)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_auth_credential (
                    user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account_security (
                    user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
                    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
                    account_locked_until TIMESTAMPTZ,
                    last_failed_login_at TIMESTAMPTZ,
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_secret TEXT,
                    two_factor_pending_verification BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_setup_started_at TIMESTAMPTZ,
                    two_factor_backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
                    two_factor_verification_attempts INTEGER NOT NULL DEFAULT 0,
                    two_factor_last_failed_attempt TIMESTAMPTZ,
                    two_factor_last_verified_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_client (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    client_type TEXT NOT NULL,
                    tenant_id TEXT NOT NULL DEFAULT 'public',
                    allowed_scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
                    secret_hash TEXT,
                    refresh_token_ttl_days INTEGER,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_token (
                    id UUID PRIMARY KEY,
                    access_token_hash TEXT NOT NULL UNIQUE,
                    access_token_expires_at TIMESTAMPTZ NOT NULL,
                    refresh_token_hash TEXT UNIQUE,
                    refresh_token_expires_at TIMESTAMPTZ,
                    client_id TEXT NOT NULL REFERENCES oauth_client(id),
                    tenant_id TEXT NOT NULL DEFAULT 'public',
                    user_id UUID REFERENCES app_user(id) ON DELETE CASCADE,
                    scope JSONB NOT NULL DEFAULT '[]'::jsonb,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    rotated_from UUID,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS oauth_token_user_client_idx ON oauth_token (user_id, client_id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS security_audit_log (
                    id UUID PRIMARY KEY,
                    event TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    tenant_id TEXT NOT NULL DEFAULT 'public',
                    user_id UUID,
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS security_audit_log_user_idx ON security_audit_log (user_id, created_at DESC)"
            )

    # users
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str = "public",
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, tenant_id, role, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        email,
                        tenant_id,
                        role,
                        is_active,
                        json.dumps(normalized_meta) if normalized_meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            tenant_id=tenant_id,
            role=role,
            is_active=is_active,
            meta=normalized_meta,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str, *, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND tenant_id = %s",
                (email, tenant_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
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
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # account security
    def get_account_security(self, user_id: str) -> AccountSecurity:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_security WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return AccountSecurity(user_id=user_id)
        return self._security_from_row(row)

    def update_account_security(
        self, user_id: str, mutator: Callable[[AccountSecurity], T]
    ) -> T:
        """Lock the account row, apply ``mutator`` and write every column back.

        If the mutator raises, the transaction rolls back and nothing changes.
        """
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "INSERT INTO account_security (user_id) VALUES (%s) ON CONFLICT (user_id) DO NOTHING",
                    (user_id,),
                )
                row = conn.execute(
                    "SELECT * FROM account_security WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                record = self._security_from_row(row)
                result = mutator(record)
                record.updated_at = datetime.now(timezone.utc)
                assignments = ", ".join(f"{column} = %s" for column in _SECURITY_COLUMNS)
                conn.execute(
                    f"UPDATE account_security SET {assignments} WHERE user_id = %s",
                    (*self._security_params(record), user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for account security", {"user_id": user_id}
            )
        return result

    def expire_pending_two_factor(self, cutoff: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE account_security
                SET two_factor_enabled = FALSE,
                    two_factor_secret = NULL,
                    two_factor_pending_verification = FALSE,
                    two_factor_setup_started_at = NULL,
                    two_factor_backup_codes = '[]'::jsonb,
                    two_factor_verification_attempts = 0,
                    two_factor_last_failed_attempt = NULL,
                    updated_at = now()
                WHERE two_factor_pending_verification = TRUE
                  AND two_factor_setup_started_at < %s
                RETURNING user_id
                """,
                (cutoff,),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # clients
    def create_client(self, client: OAuthClient) -> OAuthClient:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_client (id, name, client_type, tenant_id, allowed_scopes, secret_hash, refresh_token_ttl_days, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        client.id,
                        client.name,
                        client.client_type,
                        client.tenant_id,
                        json.dumps(list(client.allowed_scopes)),
                        client.secret_hash,
                        client.refresh_token_ttl_days,
                        client.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("client already exists", {"client_id": client.id})
        return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM oauth_client WHERE id = %s", (client_id,)).fetchone()
        if not row:
            return None
        return OAuthClient(
            id=row["id"],
            name=row["name"],
            client_type=row["client_type"],
            tenant_id=row.get("tenant_id", "public"),
            allowed_scopes=self._json_list(row.get("allowed_scopes")),
            secret_hash=row.get("secret_hash"),
            refresh_token_ttl_days=row.get("refresh_token_ttl_days"),
            created_at=row["created_at"],
        )

    # tokens
    def _insert_token(self, conn: psycopg.Connection, record: TokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO oauth_token (id, access_token_hash, access_token_expires_at, refresh_token_hash, refresh_token_expires_at, client_id, tenant_id, user_id, scope, revoked, rotated_from, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.access_token_hash,
                record.access_token_expires_at,
                record.refresh_token_hash,
                record.refresh_token_expires_at,
                record.client_id,
                record.tenant_id,
                record.user_id,
                json.dumps(list(record.scope)),
                record.revoked,
                record.rotated_from,
                record.created_at,
            ),
        )

    def create_token(self, record: TokenRecord) -> TokenRecord:
        try:
            with self._connect() as conn:
                self._insert_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("token collision", {"token_id": record.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token owner missing", {"client_id": record.client_id})
        return record

    def get_token_by_access(self, access_token_hash: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_token WHERE access_token_hash = %s", (access_token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_token_by_refresh(self, refresh_token_hash: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_token WHERE refresh_token_hash = %s", (refresh_token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        refresh_token_hash: str,
        build: Callable[[TokenRecord], TokenRecord],
        *,
        now: datetime,
    ) -> RotationResult:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "SELECT * FROM oauth_token WHERE refresh_token_hash = %s FOR UPDATE",
                    (refresh_token_hash,),
                ).fetchone()
                if not row:
                    return RotationResult(RotationStatus.UNKNOWN)
                current = self._token_from_row(row)
                if current.revoked:
                    return RotationResult(RotationStatus.REUSED, previous=current)
                if not current.refresh_token_expires_at or current.refresh_token_expires_at <= now:
                    return RotationResult(RotationStatus.EXPIRED, previous=current)
                issued = build(current)
                conn.execute(
                    "UPDATE oauth_token SET revoked = TRUE WHERE id = %s", (current.id,)
                )
                self._insert_token(conn, issued)
        except errors.UniqueViolation:
            raise ConstraintViolation("token collision", {"field": "refresh_token"})
        current.revoked = True
        return RotationResult(RotationStatus.ROTATED, previous=current, issued=issued)

    def revoke_token(self, token_hash: str) -> Optional[TokenRecord]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                SELECT * FROM oauth_token
                WHERE access_token_hash = %s OR refresh_token_hash = %s
                FOR UPDATE
                """,
                (token_hash, token_hash),
            ).fetchone()
            if not row:
                return None
            record = self._token_from_row(row)
            if not record.revoked:
                conn.execute("UPDATE oauth_token SET revoked = TRUE WHERE id = %s", (record.id,))
                record.revoked = True
        return record

    def revoke_user_tokens(
        self, user_id: str, *, client_id: Optional[str] = None
    ) -> List[TokenRecord]:
        query = "UPDATE oauth_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE"
        params: list = [user_id]
        if client_id:
            query += " AND client_id = %s"
            params.append(client_id)
        query += " RETURNING *"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._token_from_row(row) for row in rows]

    def list_user_tokens(self, user_id: str, *, include_revoked: bool = False) -> List[TokenRecord]:
        query = "SELECT * FROM oauth_token WHERE user_id = %s"
        if not include_revoked:
            query += " AND revoked = FALSE"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (user_id,)).fetchall()
        return [self._token_from_row(row) for row in rows]

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_audit_log (id, event, severity, tenant_id, user_id, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event,
                    event.severity,
                    event.tenant_id,
                    event.user_id,
                    json.dumps(event.details, default=str),
                    event.created_at,
                ),
            )

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        event: Optional[str] = None,
        severity: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: list = []
        for column, value in (
            ("user_id", user_id),
            ("tenant_id", tenant_id),
            ("event", event),
            ("severity", severity),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_audit_log {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                event=row["event"],
                severity=row["severity"],
                tenant_id=row.get("tenant_id", "public"),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                details=row.get("details") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # row mapping
    @staticmethod
    def _json_list(raw) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            raw = json.loads(raw)
        return [str(item) for item in raw]

    def _user_from_row(self, row: Dict) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row.get("tenant_id", "public"),
            role=row.get("role", "user"),
            created_at=row.get("created_at", datetime.now(timezone.utc)),
            is_active=row.get("is_active", True),
            meta=meta,
        )

    def _security_from_row(self, row: Dict) -> AccountSecurity:
        user_id = str(row["user_id"])
        return AccountSecurity(
            user_id=user_id,
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            account_locked_until=row.get("account_locked_until"),
            last_failed_login_at=row.get("last_failed_login_at"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret"), user_id=user_id),
            two_factor_pending_verification=bool(row.get("two_factor_pending_verification")),
            two_factor_setup_started_at=row.get("two_factor_setup_started_at"),
            two_factor_backup_codes=self._json_list(row.get("two_factor_backup_codes")),
            two_factor_verification_attempts=int(row.get("two_factor_verification_attempts") or 0),
            two_factor_last_failed_attempt=row.get("two_factor_last_failed_attempt"),
            two_factor_last_verified_at=row.get("two_factor_last_verified_at"),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    def _security_params(self, record: AccountSecurity) -> tuple:
        return (
            record.failed_login_attempts,
            record.account_locked_until,
            record.last_failed_login_at,
            record.two_factor_enabled,
            self._cipher.encrypt(record.two_factor_secret),
            record.two_factor_pending_verification,
            record.two_factor_setup_started_at,
            json.dumps(list(record.two_factor_backup_codes)),
            record.two_factor_verification_attempts,
            record.two_factor_last_failed_attempt,
            record.two_factor_last_verified_at,
            record.updated_at,
        )

    def _token_from_row(self, row: Dict) -> TokenRecord:
        return TokenRecord(
            id=str(row["id"]),
            access_token_hash=row["access_token_hash"],
            access_token_expires_at=row["access_token_expires_at"],
            refresh_token_hash=row.get("refresh_token_hash"),
            refresh_token_expires_at=row.get("refresh_token_expires_at"),
            client_id=row["client_id"],
            tenant_id=row.get("tenant_id", "public"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            scope=self._json_list(row.get("scope")),
            revoked=bool(row.get("revoked")),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            rotated_from=str(row["rotated_from"]) if row.get("rotated_from") else None,
        )

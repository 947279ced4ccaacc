from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from lockbox.logging import get_logger
from lockbox.storage.crypto import SecretCipher
from lockbox.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process store used for tests and single-node development.

    Every public method takes ``_data_lock`` so multi-step transitions are
    atomic with respect to other threads. State is mirrored to a JSON file
    under ``fs_root/state`` after each write.
    """

    def __init__(self, fs_root: str = "/tmp/lockbox", *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.account_security: Dict[str, AccountSecurity] = {}
        self.clients: Dict[str, OAuthClient] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self._access_index: Dict[str, str] = {}
        self._refresh_index: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(secret_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # ------------------------------------------------------------------
    # Users and credentials
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str = "public",
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(
                u.email == email and u.tenant_id == tenant_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                tenant_id=tenant_id,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str, *, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email and u.tenant_id == tenant_id
                ),
                None,
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # ------------------------------------------------------------------
    # Account security
    # ------------------------------------------------------------------

    def _open_security(self, user_id: str) -> AccountSecurity:
        stored = self.account_security.get(user_id) or AccountSecurity(user_id=user_id)
        working = stored.copy()
        working.two_factor_secret = self._cipher.decrypt(
            stored.two_factor_secret, user_id=user_id
        )
        return working

    def _seal_security(self, record: AccountSecurity) -> AccountSecurity:
        sealed = record.copy()
        sealed.two_factor_secret = self._cipher.encrypt(record.two_factor_secret)
        return sealed

    def get_account_security(self, user_id: str) -> AccountSecurity:
        with self._data_lock:
            return self._open_security(user_id)

    def update_account_security(
        self, user_id: str, mutator: Callable[[AccountSecurity], T]
    ) -> T:
        """Run ``mutator`` on the account's record and commit it atomically.

        The mutator works on a copy; if it raises, nothing is written.
        """
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for account security", {"user_id": user_id})
            working = self._open_security(user_id)
            result = mutator(working)
            working.updated_at = datetime.now(timezone.utc)
            self.account_security[user_id] = self._seal_security(working)
            self._persist_state()
            return result

    def expire_pending_two_factor(self, cutoff: datetime) -> List[str]:
        """Clear every pending setup started before ``cutoff``; return affected users."""
        with self._data_lock:
            expired: List[str] = []
            for user_id, record in self.account_security.items():
                started = record.two_factor_setup_started_at
                if record.two_factor_pending_verification and started and started < cutoff:
                    cleared = record.copy()
                    cleared.clear_two_factor()
                    self.account_security[user_id] = cleared
                    expired.append(user_id)
            if expired:
                self._persist_state()
            return expired

    # ------------------------------------------------------------------
    # OAuth clients
    # ------------------------------------------------------------------

    def create_client(self, client: OAuthClient) -> OAuthClient:
        with self._data_lock:
            if client.id in self.clients:
                raise ConstraintViolation("client already exists", {"client_id": client.id})
            self.clients[client.id] = client
            self._persist_state()
            return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            return self.clients.get(client_id)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _insert_token_locked(self, record: TokenRecord) -> None:
        if record.access_token_hash in self._access_index:
            raise ConstraintViolation("access token collision", {"field": "access_token"})
        if record.refresh_token_hash and record.refresh_token_hash in self._refresh_index:
            raise ConstraintViolation("refresh token collision", {"field": "refresh_token"})
        self.tokens[record.id] = record
        self._access_index[record.access_token_hash] = record.id
        if record.refresh_token_hash:
            self._refresh_index[record.refresh_token_hash] = record.id

    def create_token(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            self._insert_token_locked(record)
            self._persist_state()
            return replace(record)

    def get_token_by_access(self, access_token_hash: str) -> Optional[TokenRecord]:
        with self._data_lock:
            token_id = self._access_index.get(access_token_hash)
            record = self.tokens.get(token_id) if token_id else None
            return replace(record) if record else None

    def get_token_by_refresh(self, refresh_token_hash: str) -> Optional[TokenRecord]:
        with self._data_lock:
            token_id = self._refresh_index.get(refresh_token_hash)
            record = self.tokens.get(token_id) if token_id else None
            return replace(record) if record else None

    def _find_token_locked(self, token_hash: str) -> Optional[TokenRecord]:
        token_id = self._access_index.get(token_hash) or self._refresh_index.get(token_hash)
        return self.tokens.get(token_id) if token_id else None

    def rotate_refresh_token(
        self,
        refresh_token_hash: str,
        build: Callable[[TokenRecord], TokenRecord],
        *,
        now: datetime,
    ) -> RotationResult:
        with self._data_lock:
            token_id = self._refresh_index.get(refresh_token_hash)
            current = self.tokens.get(token_id) if token_id else None
            if current is None:
                return RotationResult(RotationStatus.UNKNOWN)
            if current.revoked:
                return RotationResult(RotationStatus.REUSED, previous=replace(current))
            if not current.refresh_token_expires_at or current.refresh_token_expires_at <= now:
                return RotationResult(RotationStatus.EXPIRED, previous=replace(current))
            issued = build(replace(current))
            self._insert_token_locked(issued)
            current.revoked = True
            self._persist_state()
            return RotationResult(
                RotationStatus.ROTATED, previous=replace(current), issued=replace(issued)
            )

    def revoke_token(self, token_hash: str) -> Optional[TokenRecord]:
        """Revoke the row matching either digest; returns it, or None if unknown."""
        with self._data_lock:
            record = self._find_token_locked(token_hash)
            if record is None:
                return None
            if not record.revoked:
                record.revoked = True
                self._persist_state()
            return replace(record)

    def revoke_user_tokens(
        self, user_id: str, *, client_id: Optional[str] = None
    ) -> List[TokenRecord]:
        with self._data_lock:
            revoked: List[TokenRecord] = []
            for record in self.tokens.values():
                if record.user_id != user_id or record.revoked:
                    continue
                if client_id and record.client_id != client_id:
                    continue
                record.revoked = True
                revoked.append(replace(record))
            if revoked:
                self._persist_state()
            return revoked

    def list_user_tokens(self, user_id: str, *, include_revoked: bool = False) -> List[TokenRecord]:
        with self._data_lock:
            return [
                replace(r)
                for r in self.tokens.values()
                if r.user_id == user_id and (include_revoked or not r.revoked)
            ]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()

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
        with self._data_lock:
            matches = [
                e
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (tenant_id is None or e.tenant_id == tenant_id)
                and (event is None or e.event == event)
                and (severity is None or e.severity == severity)
                and (since is None or e.created_at >= since)
                and (until is None or e.created_at <= until)
            ]
            matches.sort(key=lambda e: e.created_at, reverse=True)
            return matches[offset : offset + limit]

    def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "account_security": [
                self._serialize_security(r) for r in self.account_security.values()
            ],
            "clients": [self._serialize_client(c) for c in self.clients.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "audit_events": [self._serialize_audit(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.account_security = {
            r["user_id"]: self._deserialize_security(r)
            for r in data.get("account_security", [])
        }
        self.clients = {c["id"]: self._deserialize_client(c) for c in data.get("clients", [])}
        self.tokens = {}
        self._access_index = {}
        self._refresh_index = {}
        for raw in data.get("tokens", []):
            self._insert_token_locked(self._deserialize_token(raw))
        self.audit_events = [self._deserialize_audit(e) for e in data.get("audit_events", [])]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "created_at": self._dt(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            tenant_id=data.get("tenant_id", "public"),
            role=data.get("role", "user"),
            created_at=self._parse_dt(data["created_at"]),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_security(self, record: AccountSecurity) -> dict:
        return {
            "user_id": record.user_id,
            "failed_login_attempts": record.failed_login_attempts,
            "account_locked_until": self._dt(record.account_locked_until),
            "last_failed_login_at": self._dt(record.last_failed_login_at),
            "two_factor_enabled": record.two_factor_enabled,
            "two_factor_secret": record.two_factor_secret,
            "two_factor_pending_verification": record.two_factor_pending_verification,
            "two_factor_setup_started_at": self._dt(record.two_factor_setup_started_at),
            "two_factor_backup_codes": list(record.two_factor_backup_codes),
            "two_factor_verification_attempts": record.two_factor_verification_attempts,
            "two_factor_last_failed_attempt": self._dt(record.two_factor_last_failed_attempt),
            "two_factor_last_verified_at": self._dt(record.two_factor_last_verified_at),
            "updated_at": self._dt(record.updated_at),
        }

    def _deserialize_security(self, data: dict) -> AccountSecurity:
        record = AccountSecurity(
            user_id=data["user_id"],
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            account_locked_until=self._parse_dt(data.get("account_locked_until")),
            last_failed_login_at=self._parse_dt(data.get("last_failed_login_at")),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=data.get("two_factor_secret"),
            two_factor_pending_verification=bool(
                data.get("two_factor_pending_verification", False)
            ),
            two_factor_setup_started_at=self._parse_dt(data.get("two_factor_setup_started_at")),
            two_factor_backup_codes=list(data.get("two_factor_backup_codes") or []),
            two_factor_verification_attempts=int(
                data.get("two_factor_verification_attempts", 0)
            ),
            two_factor_last_failed_attempt=self._parse_dt(
                data.get("two_factor_last_failed_attempt")
            ),
            two_factor_last_verified_at=self._parse_dt(data.get("two_factor_last_verified_at")),
        )
        if data.get("updated_at"):
            record.updated_at = self._parse_dt(data["updated_at"])
        return record

    def _serialize_client(self, client: OAuthClient) -> dict:
        return {
            "id": client.id,
            "name": client.name,
            "client_type": client.client_type,
            "tenant_id": client.tenant_id,
            "allowed_scopes": list(client.allowed_scopes),
            "secret_hash": client.secret_hash,
            "refresh_token_ttl_days": client.refresh_token_ttl_days,
            "created_at": self._dt(client.created_at),
        }

    def _deserialize_client(self, data: dict) -> OAuthClient:
        return OAuthClient(
            id=data["id"],
            name=data.get("name", data["id"]),
            client_type=data.get("client_type", "confidential"),
            tenant_id=data.get("tenant_id", "public"),
            allowed_scopes=list(data.get("allowed_scopes") or []),
            secret_hash=data.get("secret_hash"),
            refresh_token_ttl_days=data.get("refresh_token_ttl_days"),
            created_at=self._parse_dt(data["created_at"]),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "access_token_hash": record.access_token_hash,
            "access_token_expires_at": self._dt(record.access_token_expires_at),
            "refresh_token_hash": record.refresh_token_hash,
            "refresh_token_expires_at": self._dt(record.refresh_token_expires_at),
            "client_id": record.client_id,
            "tenant_id": record.tenant_id,
            "user_id": record.user_id,
            "scope": list(record.scope),
            "revoked": record.revoked,
            "created_at": self._dt(record.created_at),
            "rotated_from": record.rotated_from,
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=data["id"],
            access_token_hash=data["access_token_hash"],
            access_token_expires_at=self._parse_dt(data["access_token_expires_at"]),
            refresh_token_hash=data.get("refresh_token_hash"),
            refresh_token_expires_at=self._parse_dt(data.get("refresh_token_expires_at")),
            client_id=data["client_id"],
            tenant_id=data.get("tenant_id", "public"),
            user_id=data.get("user_id"),
            scope=list(data.get("scope") or []),
            revoked=bool(data.get("revoked", False)),
            created_at=self._parse_dt(data["created_at"]),
            rotated_from=data.get("rotated_from"),
        )

    def _serialize_audit(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "event": event.event,
            "severity": event.severity,
            "tenant_id": event.tenant_id,
            "user_id": event.user_id,
            "details": event.details,
            "created_at": self._dt(event.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            event=data["event"],
            severity=data.get("severity", "low"),
            tenant_id=data.get("tenant_id", "public"),
            user_id=data.get("user_id"),
            details=data.get("details") or {},
            created_at=self._parse_dt(data["created_at"]),
        )

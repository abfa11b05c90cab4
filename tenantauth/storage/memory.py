from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import (
    ActivityLog,
    Session,
    Tenant,
    TenantMembership,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store implementing the identity, membership, session and activity interfaces.

    Uniqueness rules mirror the relational schema: usernames and emails are
    unique among non-deleted users, session hashes are unique, and a
    (user, tenant, role) triple appears once. When ``fs_root`` is given the
    state is persisted as JSON after every write so a dev server survives
    restarts.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.memberships: List[TenantMembership] = []
        self.sessions: Dict[str, Session] = {}
        self.activity_logs: List[ActivityLog] = []
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

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

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- tenants -----------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        *,
        api_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tenant:
        with self._data_lock:
            for existing in self.tenants.values():
                if existing.deleted_at is not None:
                    continue
                if existing.name == name:
                    raise ConstraintViolation("tenant name already exists", {"field": "name"})
                if api_key and existing.api_key == api_key:
                    raise ConstraintViolation(
                        "tenant api key already exists", {"field": "api_key"}
                    )
            tenant = Tenant(
                id=str(uuid.uuid4()),
                name=name,
                api_key=api_key,
                description=description,
            )
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if tenant is None or tenant.deleted_at is not None:
                return None
            return tenant

    def get_tenant_by_api_key(self, api_key: str) -> Optional[Tenant]:
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.tenants.values()
                    if t.api_key == api_key and t.deleted_at is None
                ),
                None,
            )

    def get_default_tenant(self) -> Optional[Tenant]:
        with self._data_lock:
            active = [t for t in self.tenants.values() if t.deleted_at is None]
            if not active:
                return None
            return min(active, key=lambda t: t.created_at)

    # -- users -------------------------------------------------------------

    def _active_conflict(
        self, *, username: str, email: str, exclude_id: Optional[str] = None
    ) -> Optional[str]:
        for existing in self.users.values():
            if existing.id == exclude_id or existing.deleted_at is not None:
                continue
            if existing.email == email:
                return "email"
            if existing.username == username:
                return "username"
        return None

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
    ) -> User:
        with self._data_lock:
            field = self._active_conflict(username=username, email=email)
            if field:
                raise ConstraintViolation(f"{field} already exists", {"field": field})
            user = User(id=str(uuid.uuid4()), username=username, email=email)
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return user

    @staticmethod
    def _prefer_active(candidates: List[User]) -> Optional[User]:
        if not candidates:
            return None
        active = [u for u in candidates if u.deleted_at is None]
        if active:
            return active[0]
        return max(candidates, key=lambda u: u.deleted_at)

    def get_user(self, user_id: str, *, include_deleted: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or (user.deleted_at is not None and not include_deleted):
                return None
            return user

    def find_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.email == email and (include_deleted or u.deleted_at is None)
            ]
            return self._prefer_active(matches)

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.username == username and (include_deleted or u.deleted_at is None)
            ]
            return self._prefer_active(matches)

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if user is None:
                return None
            field = self._active_conflict(
                username=username or user.username,
                email=email or user.email,
                exclude_id=user_id,
            )
            if field:
                raise ConstraintViolation(f"{field} already exists", {"field": field})
            if username:
                user.username = username
            if email:
                user.email = email
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.get_user(user_id)
            if user is None:
                return False
            user.deleted_at = utcnow()
            user.updated_at = user.deleted_at
            self._persist_state()
            return True

    def restore_user(
        self,
        user_id: str,
        *,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            field = self._active_conflict(
                username=username, email=email, exclude_id=user_id
            )
            if field:
                raise ConstraintViolation(f"{field} already exists", {"field": field})
            user.username = username
            user.email = email
            user.deleted_at = None
            user.updated_at = utcnow()
            self.credentials[user_id] = (password_hash, password_algo)
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
            self.users[user_id].updated_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- memberships -------------------------------------------------------

    def add_membership(self, user_id: str, tenant_id: str, role: str) -> TenantMembership:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            for existing in self.memberships:
                if (
                    existing.user_id == user_id
                    and existing.tenant_id == tenant_id
                    and existing.role == role
                ):
                    raise ConstraintViolation(
                        "membership already exists",
                        {"user_id": user_id, "tenant_id": tenant_id, "role": role},
                    )
            membership = TenantMembership(
                id=str(uuid.uuid4()), user_id=user_id, tenant_id=tenant_id, role=role
            )
            self.memberships.append(membership)
            self._persist_state()
            return membership

    def list_roles_in_tenant(self, user_id: str, tenant_id: str) -> List[str]:
        with self._data_lock:
            return [
                m.role
                for m in sorted(self.memberships, key=lambda m: m.created_at)
                if m.user_id == user_id and m.tenant_id == tenant_id
            ]

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._data_lock:
            return sorted(
                (m for m in self.memberships if m.user_id == user_id),
                key=lambda m: m.created_at,
            )

    # -- sessions ----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        *,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sid = session_id or str(uuid.uuid4())
            if sid in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            if any(
                s.refresh_token_hash == refresh_token_hash for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "refresh_token_hash"}
                )
            sess = Session(
                id=sid,
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                created_at=utcnow(),
                expires_at=expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.sessions[sid] = sess
            self._persist_state()
            return sess

    def find_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is None:
                raise RecordNotFound(
                    f"Session with id {session_id} not found", {"session_id": session_id}
                )
            self._persist_state()

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- activity ----------------------------------------------------------

    def record_activity(self, entry: ActivityLog) -> None:
        with self._data_lock:
            self.activity_logs.append(entry)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "memberships": [self._serialize_membership(m) for m in self.memberships],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
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
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.memberships = [
            self._deserialize_membership(m) for m in data.get("memberships", [])
        ]
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            tenants=len(self.tenants),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "api_key": tenant.api_key,
            "description": tenant.description,
            "created_at": self._serialize_datetime(tenant.created_at),
            "deleted_at": self._serialize_datetime(tenant.deleted_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            name=data["name"],
            api_key=data.get("api_key"),
            description=data.get("description"),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_membership(self, membership: TenantMembership) -> dict:
        return {
            "id": membership.id,
            "user_id": membership.user_id,
            "tenant_id": membership.tenant_id,
            "role": membership.role,
            "created_at": self._serialize_datetime(membership.created_at),
        }

    def _deserialize_membership(self, data: dict) -> TenantMembership:
        return TenantMembership(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            tenant_id=str(data["tenant_id"]),
            role=data["role"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import (
    ActivityLog,
    Session,
    Tenant,
    TenantMembership,
    User,
)

_REQUIRED_TABLES = [
    "tenant",
    "app_user",
    "user_auth_credential",
    "user_tenant",
    "auth_session",
    "user_activity_log",
]

# Non-deleted rows win, then the most recently touched
_PREFER_ACTIVE_ORDER = "ORDER BY (deleted_at IS NOT NULL), deleted_at DESC NULLS LAST LIMIT 1"


class PostgresStore:
    """Postgres-backed identity, membership, session and activity store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                self.logger.error(
                    "postgres_schema_missing_tables", tables=sorted(missing_tables)
                )
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql before starting.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

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

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            created_at=self._parse_ts(row.get("created_at")),
            updated_at=self._parse_ts(row.get("updated_at")),
            deleted_at=self._parse_ts(row.get("deleted_at")),
        )

    def _tenant_from_row(self, row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            api_key=row.get("api_key"),
            description=row.get("description"),
            created_at=self._parse_ts(row.get("created_at")),
            deleted_at=self._parse_ts(row.get("deleted_at")),
        )

    def _session_from_row(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=self._parse_ts(row.get("created_at")),
            expires_at=self._parse_ts(row.get("expires_at")),
            user_agent=row.get("user_agent"),
            ip_address=str(row["ip_address"]) if row.get("ip_address") is not None else None,
        )

    # tenants
    def create_tenant(
        self,
        name: str,
        *,
        api_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenant (id, name, api_key, description)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, api_key, description),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "tenant already exists", {"constraint": self._constraint_name(exc)}
            )
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE id = %s AND deleted_at IS NULL", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_api_key(self, api_key: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE api_key = %s AND deleted_at IS NULL",
                (api_key,),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_default_tenant(self) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE deleted_at IS NULL ORDER BY created_at ASC LIMIT 1"
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # users
    @staticmethod
    def _constraint_name(exc: errors.UniqueViolation) -> Optional[str]:
        diag = getattr(exc, "diag", None)
        return getattr(diag, "constraint_name", None) if diag is not None else None

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "username or email already exists",
                {"constraint": self._constraint_name(exc)},
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str, *, include_deleted: bool = False) -> Optional[User]:
        query = "SELECT * FROM app_user WHERE id = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def _find_user(self, column: str, value: str, include_deleted: bool) -> Optional[User]:
        if include_deleted:
            query = f"SELECT * FROM app_user WHERE {column} = %s {_PREFER_ACTIVE_ORDER}"
        else:
            query = f"SELECT * FROM app_user WHERE {column} = %s AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        return self._find_user("email", email, include_deleted)

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        return self._find_user("username", username, include_deleted)

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET username = COALESCE(%s, username),
                        email = COALESCE(%s, email),
                        updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING *
                    """,
                    (username, email, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "username or email already exists",
                {"constraint": self._constraint_name(exc)},
            )
        return self._user_from_row(row) if row else None

    def soft_delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user SET deleted_at = now(), updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (user_id,),
            )
            return result.rowcount > 0

    def restore_user(
        self,
        user_id: str,
        *,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET username = %s, email = %s, deleted_at = NULL, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (username, email, user_id),
                ).fetchone()
                if row:
                    self._upsert_password(conn, user_id, password_hash, password_algo)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "username or email already exists",
                {"constraint": self._constraint_name(exc)},
            )
        return self._user_from_row(row) if row else None

    @staticmethod
    def _upsert_password(conn, user_id: str, password_hash: str, password_algo: str) -> None:
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

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                self._upsert_password(conn, user_id, password_hash, password_algo)
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # memberships
    def add_membership(self, user_id: str, tenant_id: str, role: str) -> TenantMembership:
        membership_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_tenant (id, user_id, tenant_id, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (membership_id, user_id, tenant_id, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists",
                {"user_id": user_id, "tenant_id": tenant_id, "role": role},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "membership references missing user or tenant",
                {"user_id": user_id, "tenant_id": tenant_id},
            )
        return TenantMembership(
            id=membership_id,
            user_id=user_id,
            tenant_id=tenant_id,
            role=role,
            created_at=self._parse_ts(row.get("created_at")) if row else None,
        )

    def list_roles_in_tenant(self, user_id: str, tenant_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role FROM user_tenant
                WHERE user_id = %s AND tenant_id = %s
                ORDER BY created_at ASC
                """,
                (user_id, tenant_id),
            ).fetchall()
        return [row["role"] for row in rows]

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_tenant WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [
            TenantMembership(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                tenant_id=str(row["tenant_id"]),
                role=row["role"],
                created_at=self._parse_ts(row.get("created_at")),
            )
            for row in rows
        ]

    # sessions
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
        sid = session_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, expires_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (sid, user_id, refresh_token_hash, expires_at, user_agent, ip_address),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists", {"field": "refresh_token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return self._session_from_row(row)

    def find_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            deleted = result.rowcount
        if deleted == 0:
            raise RecordNotFound(
                f"Session with id {session_id} not found", {"session_id": session_id}
            )

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    # activity
    def record_activity(self, entry: ActivityLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_activity_log (id, user_id, activity_type, status, error_message, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.activity_type,
                    entry.status,
                    entry.error_message,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )

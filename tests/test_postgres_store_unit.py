"""PostgresStore unit tests against a scripted fake pool; no database needed."""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responder):
        self.responder = responder
        self.statements = []

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        result = self.responder(query, params)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, responder):
        self.conn = FakeConnection(responder)
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _store(responder) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit"
    store.logger = get_logger("tests.postgres")
    store.pool = FakePool(responder)
    return store


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "username": "alice",
        "email": "alice@example.com",
        "created_at": NOW,
        "updated_at": NOW,
        "deleted_at": None,
    }
    row.update(overrides)
    return row


class TestSchemaVerification:
    def test_missing_tables_are_reported(self):
        def responder(query, params):
            table = params[0]
            present = table in ("public.tenant", "public.app_user")
            return FakeCursor([{"oid": table if present else None}])

        store = _store(responder)
        with pytest.raises(RuntimeError) as exc_info:
            store._verify_required_schema()
        message = str(exc_info.value)
        assert "auth_session" in message
        assert "public.tenant" not in message
        assert "scripts/schema.sql" in message

    def test_all_tables_present(self):
        store = _store(lambda q, p: FakeCursor([{"oid": 1}]))
        store._verify_required_schema()


class TestErrorMapping:
    def test_unique_violation_on_user_is_constraint_violation(self):
        store = _store(lambda q, p: errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            store.create_user("alice", "alice@example.com", "h", "argon2id")

    def test_duplicate_membership(self):
        store = _store(lambda q, p: errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as exc_info:
            store.add_membership("u", "t", "user")
        assert exc_info.value.detail == {"user_id": "u", "tenant_id": "t", "role": "user"}

    def test_membership_for_missing_tenant(self):
        store = _store(lambda q, p: errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            store.add_membership("u", "t", "user")

    def test_save_password_for_missing_user(self):
        store = _store(lambda q, p: errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            store.save_password("u", "h", "argon2id")

    def test_delete_missing_session(self):
        store = _store(lambda q, p: FakeCursor(rowcount=0))
        with pytest.raises(RecordNotFound, match="Session with id s-1 not found"):
            store.delete_session("s-1")


class TestRowMapping:
    def test_find_by_email_including_deleted_prefers_active(self):
        row = _user_row()
        store = _store(lambda q, p: FakeCursor([row]))
        user = store.find_user_by_email("alice@example.com", include_deleted=True)
        assert user.id == str(row["id"])
        query, params = store.pool.conn.statements[-1]
        assert "ORDER BY (deleted_at IS NOT NULL)" in query
        assert params == ("alice@example.com",)

    def test_find_by_username_excludes_deleted_by_default(self):
        store = _store(lambda q, p: FakeCursor([]))
        assert store.find_user_by_username("alice") is None
        query, _ = store.pool.conn.statements[-1]
        assert "deleted_at IS NULL" in query

    def test_roles_in_grant_order(self):
        store = _store(lambda q, p: FakeCursor([{"role": "admin"}, {"role": "user"}]))
        assert store.list_roles_in_tenant("u", "t") == ["admin", "user"]
        query, _ = store.pool.conn.statements[-1]
        assert query.endswith("ORDER BY created_at ASC")

    def test_session_row(self):
        sid = uuid.uuid4()
        row = {
            "id": sid,
            "user_id": uuid.uuid4(),
            "refresh_token_hash": "abc",
            "created_at": NOW,
            "expires_at": NOW,
            "user_agent": "ua",
            "ip_address": "10.0.0.1",
        }
        store = _store(lambda q, p: FakeCursor([row]))
        session = store.find_session_by_refresh_hash("abc")
        assert session.id == str(sid)
        assert session.ip_address == "10.0.0.1"

    def test_soft_delete_reports_rowcount(self):
        store = _store(lambda q, p: FakeCursor(rowcount=1))
        assert store.soft_delete_user("u") is True
        store = _store(lambda q, p: FakeCursor(rowcount=0))
        assert store.soft_delete_user("u") is False

    def test_password_record(self):
        store = _store(
            lambda q, p: FakeCursor([{"password_hash": "h", "password_algo": "argon2id"}])
        )
        assert store.get_password_record("u") == ("h", "argon2id")

    def test_close_closes_pool(self):
        store = _store(lambda q, p: FakeCursor())
        store.close()
        assert store.pool.closed is True

from datetime import timedelta

import pytest

from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import ActivityLog, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenant(store):
    return store.create_tenant("acme", api_key="acme-key")


def _user(store, username="alice", email="alice@example.com"):
    return store.create_user(username, email, "hash", "argon2id")


class TestUsers:
    def test_active_username_and_email_are_unique(self, store):
        _user(store)
        with pytest.raises(ConstraintViolation):
            _user(store, email="other@example.com")
        with pytest.raises(ConstraintViolation):
            _user(store, username="alice2")

    def test_soft_deleted_user_frees_identifiers(self, store):
        first = _user(store)
        assert store.soft_delete_user(first.id) is True
        second = _user(store)
        assert second.id != first.id
        assert store.get_user(first.id) is None
        assert store.get_user(first.id, include_deleted=True).is_deleted

    def test_lookup_prefers_active_row(self, store):
        old = _user(store)
        store.soft_delete_user(old.id)
        new = _user(store)
        assert store.find_user_by_email("alice@example.com", include_deleted=True).id == new.id
        assert store.find_user_by_username("alice").id == new.id

    def test_deleted_only_visible_with_flag(self, store):
        user = _user(store)
        store.soft_delete_user(user.id)
        assert store.find_user_by_email("alice@example.com") is None
        assert store.find_user_by_email("alice@example.com", include_deleted=True).id == user.id

    def test_restore_clears_delete_and_replaces_credential(self, store):
        user = _user(store)
        store.soft_delete_user(user.id)
        restored = store.restore_user(
            user.id,
            username="alice",
            email="alice@example.com",
            password_hash="new-hash",
            password_algo="argon2id",
        )
        assert restored.deleted_at is None
        assert store.get_password_record(user.id) == ("new-hash", "argon2id")

    def test_restore_conflicts_with_active_holder(self, store):
        user = _user(store)
        store.soft_delete_user(user.id)
        _user(store)
        with pytest.raises(ConstraintViolation):
            store.restore_user(
                user.id,
                username="alice",
                email="alice@example.com",
                password_hash="h",
                password_algo="argon2id",
            )

    def test_save_password_for_missing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "h", "argon2id")


class TestTenantsAndMemberships:
    def test_default_tenant_is_oldest(self, store, tenant):
        store.create_tenant("later", api_key="later-key")
        assert store.get_default_tenant().id == tenant.id
        assert store.get_tenant_by_api_key("later-key").name == "later"
        assert store.get_tenant_by_api_key("nope") is None

    def test_duplicate_tenant_name(self, store, tenant):
        with pytest.raises(ConstraintViolation):
            store.create_tenant("acme")

    def test_roles_in_grant_order(self, store, tenant):
        user = _user(store)
        store.add_membership(user.id, tenant.id, "admin")
        store.add_membership(user.id, tenant.id, "user")
        assert store.list_roles_in_tenant(user.id, tenant.id) == ["admin", "user"]
        assert [m.role for m in store.list_memberships(user.id)] == ["admin", "user"]

    def test_identical_membership_rejected(self, store, tenant):
        user = _user(store)
        store.add_membership(user.id, tenant.id, "user")
        with pytest.raises(ConstraintViolation):
            store.add_membership(user.id, tenant.id, "user")

    def test_membership_requires_user_and_tenant(self, store, tenant):
        user = _user(store)
        with pytest.raises(ConstraintViolation):
            store.add_membership("missing", tenant.id, "user")
        with pytest.raises(ConstraintViolation):
            store.add_membership(user.id, "missing", "user")


class TestSessions:
    def test_create_find_delete(self, store):
        user = _user(store)
        session = store.create_session(
            user.id, "hash-1", expires_at=utcnow() + timedelta(days=1), user_agent="ua"
        )
        assert store.find_session_by_refresh_hash("hash-1").id == session.id
        store.delete_session(session.id)
        assert store.find_session_by_refresh_hash("hash-1") is None

    def test_delete_missing_session(self, store):
        with pytest.raises(RecordNotFound, match="Session with id s-1 not found"):
            store.delete_session("s-1")

    def test_hash_and_id_are_unique(self, store):
        user = _user(store)
        expires = utcnow() + timedelta(days=1)
        store.create_session(user.id, "hash-1", expires_at=expires, session_id="s-1")
        with pytest.raises(ConstraintViolation):
            store.create_session(user.id, "hash-1", expires_at=expires)
        with pytest.raises(ConstraintViolation):
            store.create_session(user.id, "hash-2", expires_at=expires, session_id="s-1")

    def test_delete_user_sessions_counts(self, store):
        alice = _user(store)
        bob = _user(store, "bob", "bob@example.com")
        expires = utcnow() + timedelta(days=1)
        store.create_session(alice.id, "a1", expires_at=expires)
        store.create_session(alice.id, "a2", expires_at=expires)
        store.create_session(bob.id, "b1", expires_at=expires)
        assert store.delete_user_sessions(alice.id) == 2
        assert store.find_session_by_refresh_hash("b1") is not None


def test_state_persists_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    tenant = store.create_tenant("acme", api_key="acme-key")
    user = _user(store)
    store.add_membership(user.id, tenant.id, "user")
    store.create_session(user.id, "hash-1", expires_at=utcnow() + timedelta(days=1))
    store.record_activity(ActivityLog(activity_type="login", status="success", user_id=user.id))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_user(user.id).email == "alice@example.com"
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.list_roles_in_tenant(user.id, tenant.id) == ["user"]
    assert reloaded.find_session_by_refresh_hash("hash-1").user_id == user.id
    assert reloaded.get_tenant_by_api_key("acme-key").id == tenant.id

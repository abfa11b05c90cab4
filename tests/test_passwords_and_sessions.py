"""Unit tests for password hashing, the crypto pool and refresh sessions.

Tests for:
- argon2id hashing and verification
- CryptoExecutor lifecycle
- SessionService open, lookup and revocation
"""

import asyncio

import pytest
from argon2 import PasswordHasher

from tenantauth.service.errors import NotFoundError
from tenantauth.service.passwords import PASSWORD_ALGO, PasswordService, hash_refresh_token
from tenantauth.service.sessions import ClientInfo, SessionService
from tenantauth.service.workers import CryptoExecutor
from tenantauth.storage.memory import MemoryStore


@pytest.fixture
def passwords():
    # cheap parameters keep the suite fast
    return PasswordService(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice", "alice@example.com", "hash", PASSWORD_ALGO)


class TestPasswordHashing:
    """Tests for argon2id hashing."""

    def test_hash_is_not_plaintext(self, passwords):
        digest, algo = passwords.hash("SecurePassword123!")
        assert algo == "argon2id"
        assert "SecurePassword123!" not in digest
        assert digest.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, passwords):
        first, _ = passwords.hash("SecurePassword123!")
        second, _ = passwords.hash("SecurePassword123!")
        assert first != second

    def test_verify(self, passwords):
        record = passwords.hash("SecurePassword123!")
        assert passwords.verify(record, "SecurePassword123!") is True
        assert passwords.verify(record, "WrongPassword") is False

    def test_missing_or_foreign_records(self, passwords):
        digest, _ = passwords.hash("SecurePassword123!")
        assert passwords.verify(None, "SecurePassword123!") is False
        assert passwords.verify((digest, "bcrypt"), "SecurePassword123!") is False
        assert passwords.verify(("not-a-hash", PASSWORD_ALGO), "SecurePassword123!") is False

    def test_refresh_hash_is_stable_sha256(self):
        assert hash_refresh_token("abc") == hash_refresh_token("abc")
        assert len(hash_refresh_token("abc")) == 64
        assert hash_refresh_token("abc") != hash_refresh_token("abd")


class TestCryptoExecutor:
    """Tests for the crypto worker pool."""

    async def test_runs_off_loop(self, passwords):
        executor = CryptoExecutor(2)
        try:
            digest, _ = await executor.run(passwords.hash, "SecurePassword123!")
            results = await asyncio.gather(
                *(executor.run(passwords.verify, (digest, PASSWORD_ALGO), "SecurePassword123!") for _ in range(4))
            )
            assert results == [True] * 4
        finally:
            executor.shutdown()

    async def test_refuses_work_after_shutdown(self):
        executor = CryptoExecutor(1)
        executor.shutdown()
        executor.shutdown()
        with pytest.raises(RuntimeError):
            await executor.run(len, "abc")

    def test_worker_count_is_clamped(self):
        for requested, expected in ((0, 1), (4, 4), (500, CryptoExecutor.MAX_WORKERS)):
            executor = CryptoExecutor(requested)
            assert executor.max_workers == expected
            executor.shutdown(wait=False)


class TestSessionService:
    """Tests for refresh-token sessions."""

    def test_open_stores_only_the_hash(self, memory_store, user):
        sessions = SessionService(memory_store, ttl_seconds=3600)
        session = sessions.open(
            user.id, "raw-refresh-token", client=ClientInfo("10.0.0.1", "pytest")
        )
        assert session.refresh_token_hash == hash_refresh_token("raw-refresh-token")
        assert session.ip_address == "10.0.0.1"
        assert sessions.find_by_refresh_token("raw-refresh-token").id == session.id
        assert sessions.find_by_refresh_token("other-token") is None

    def test_expiry_follows_ttl(self, memory_store, user):
        sessions = SessionService(memory_store, ttl_seconds=3600)
        session = sessions.open(user.id, "raw-refresh-token")
        assert (session.expires_at - session.created_at).total_seconds() == pytest.approx(3600, abs=5)

    def test_revoke(self, memory_store, user):
        sessions = SessionService(memory_store, ttl_seconds=3600)
        session = sessions.open(user.id, "raw-refresh-token")
        sessions.revoke(session.id)
        assert sessions.find_by_refresh_token("raw-refresh-token") is None
        with pytest.raises(NotFoundError):
            sessions.revoke(session.id)

    def test_revoke_all(self, memory_store, user):
        sessions = SessionService(memory_store, ttl_seconds=3600)
        sessions.open(user.id, "token-1")
        sessions.open(user.id, "token-2")
        assert sessions.revoke_all(user.id) == 2
        assert sessions.revoke_all(user.id) == 0

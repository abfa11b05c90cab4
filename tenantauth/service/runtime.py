from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.activity import ActivityLogger
from tenantauth.service.auth import AuthService
from tenantauth.service.health import HealthMonitor
from tenantauth.service.identity import IdentityResolver
from tenantauth.service.invitations import InvitationGate
from tenantauth.service.passwords import PasswordService
from tenantauth.service.sessions import SessionService
from tenantauth.service.tokens import TokenService
from tenantauth.service.workers import CryptoExecutor
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.ttl_cache import HEALTH_CHECK_KEY, TTLCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        try:
            self.cache = TTLCache.open_with_recovery(self.settings.resolved_cache_path)
        except Exception:
            self.store.close()
            raise

        self.executor = CryptoExecutor(self.settings.crypto_workers)
        self.tokens = TokenService(self.settings)
        self.passwords = PasswordService()
        self.sessions = SessionService(
            self.store, ttl_seconds=self.settings.refresh_token_expiry
        )
        self.identity = IdentityResolver(
            self.store,
            self.store,
            self.passwords,
            self.executor,
            cache=self.cache,
            roles_ttl_seconds=self.settings.cache_ttl_seconds,
            memberships_ttl_seconds=self.settings.membership_cache_ttl_seconds,
        )
        self.invitations = InvitationGate(
            self.cache,
            ttl_seconds=self.settings.invitation_ttl_seconds,
            length=self.settings.invitation_code_length,
        )
        self.activity = ActivityLogger(
            self.store, max_pending=self.settings.activity_queue_size
        )
        self.health = HealthMonitor(
            interval_seconds=self.settings.health_check_interval_seconds
        )
        self.health.register("storage", self.store.verify_connection)
        self.health.register("cache", self._probe_cache)
        self.auth = AuthService(
            self.identity,
            self.sessions,
            self.tokens,
            self.invitations,
            self.activity,
            self.executor,
        )

        self.draining = False
        self._inflight = 0
        self._inflight_lock = threading.Lock()
        self._closed = False

        logger.info(
            "runtime_initialized",
            cache_path=self.cache.path,
            crypto_workers=self.settings.crypto_workers,
            health_interval=self.settings.health_check_interval_seconds,
        )

    def _probe_cache(self) -> None:
        self.cache.probe()
        self.cache.set(HEALTH_CHECK_KEY, "ok", 60)

    @property
    def inflight(self) -> int:
        return self._inflight

    def request_started(self) -> None:
        with self._inflight_lock:
            self._inflight += 1

    def request_finished(self) -> None:
        with self._inflight_lock:
            self._inflight = max(0, self._inflight - 1)

    def begin_drain(self, reason: str) -> None:
        if not self.draining:
            self.draining = True
            logger.warning("runtime_draining", reason=reason, inflight=self._inflight)

    async def start(self) -> None:
        await self.activity.start()
        await self.health.start()

    async def wait_for_inflight(self) -> None:
        deadline = asyncio.get_running_loop().time() + self.settings.shutdown_grace_seconds
        while self._inflight > 0 and asyncio.get_running_loop().time() < deadline:
            await asyncio.sleep(0.05)
        if self._inflight > 0:
            logger.warning("shutdown_grace_expired", inflight=self._inflight)

    async def close(self) -> None:
        """Run the shutdown sequence once; later calls return immediately.

        Each step logs its own failure and the sequence carries on.
        """
        if self._closed:
            return
        self._closed = True
        self.begin_drain("shutdown")
        await self.wait_for_inflight()

        try:
            await self.health.stop()
        except Exception as exc:
            logger.error("shutdown_health_stop_failed", error=str(exc))
        try:
            await self.activity.stop()
        except Exception as exc:
            logger.error("shutdown_activity_stop_failed", error=str(exc))
        try:
            self.cache.close()
        except Exception as exc:
            logger.error("shutdown_cache_close_failed", error=str(exc))
        try:
            self.store.close()
        except Exception as exc:
            logger.error("shutdown_store_close_failed", error=str(exc))
        try:
            self.executor.shutdown(wait=True)
        except Exception as exc:
            logger.error("shutdown_executor_failed", error=str(exc))
        logger.info("runtime_closed")

    def close_sync(self) -> None:
        """Release the cache lock and the pool without an event loop."""
        if self._closed:
            return
        self._closed = True
        for label, closer in (
            ("cache", self.cache.close),
            ("store", self.store.close),
            ("executor", lambda: self.executor.shutdown(wait=False)),
        ):
            try:
                closer()
            except Exception as exc:
                logger.error("runtime_close_failed", component=label, error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime and a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    The previous runtime's cache must be closed first since RocksDB holds an
    exclusive lock on its directory.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close_sync()
        Path(settings.resolved_cache_path).parent.mkdir(parents=True, exist_ok=True)
        runtime = Runtime(settings)
        return runtime

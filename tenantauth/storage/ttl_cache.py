"""Local expiring key/value cache backed by RocksDB.

Values are wrapped in a ``CachedItem`` JSON envelope carrying an absolute
expiry in epoch seconds. Expired entries are removed lazily, on the first
read after their TTL elapses. The cache is an optimization: every read or
write failure is logged and reported as a miss so callers fall back to the
primary store.
"""

from __future__ import annotations

import json
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from rocksdict import Options, Rdict

from tenantauth.logging import get_logger

logger = get_logger(__name__)

HEALTH_CHECK_KEY = "HEALTH_CHECK_PROBE"

# Substrings RocksDB uses when another handle (usually a crashed process) still owns LOCK
_STALE_LOCK_MARKERS = ("lock file", "Resource temporarily unavailable")


@dataclass
class CachedItem:
    data: Any
    expired_at: float

    def to_bytes(self) -> bytes:
        return json.dumps({"data": self.data, "expired_at": self.expired_at}).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CachedItem":
        payload = json.loads(raw.decode("utf-8"))
        return cls(data=payload["data"], expired_at=float(payload["expired_at"]))


def open_rdict(path: str) -> Rdict:
    options = Options(raw_mode=True)
    options.create_if_missing(True)
    return Rdict(path, options=options)


class TTLCache:
    def __init__(
        self,
        db: Rdict,
        path: str | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self.path = path
        self._clock = clock
        self._lock = threading.RLock()
        self._closed = False

    @classmethod
    def open_with_recovery(
        cls,
        path: str,
        opener: Optional[Callable[[str], Rdict]] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "TTLCache":
        """Open the store at ``path``, wiping it once if a stale lock blocks the open.

        Any failure that is not a stale lock, and any failure of the retry,
        propagates to the caller so startup aborts.
        """
        open_fn = opener or open_rdict
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            db = open_fn(path)
        except Exception as exc:
            message = str(exc)
            if not any(marker in message for marker in _STALE_LOCK_MARKERS):
                logger.error("ttl_cache_open_failed", path=path, error=message)
                raise
            logger.warning("ttl_cache_stale_lock_recovery", path=path, error=message)
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            db = open_fn(path)
        logger.info("ttl_cache_opened", path=path)
        return cls(db, path, clock=clock)

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, key: str) -> Any:
        with self._lock:
            if self._closed:
                return None
            raw_key = key.encode("utf-8")
            try:
                raw = self._db.get(raw_key)
            except Exception as exc:
                logger.warning("ttl_cache_read_failed", key=key, error=str(exc))
                return None
            if raw is None:
                return None
            try:
                item = CachedItem.from_bytes(bytes(raw))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("ttl_cache_decode_failed", key=key, error=str(exc))
                self._delete_raw(raw_key, key)
                return None
            if item.expired_at > self._clock():
                return item.data
            self._delete_raw(raw_key, key)
            return None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        item = CachedItem(data=value, expired_at=self._clock() + ttl_seconds)
        try:
            payload = item.to_bytes()
        except (TypeError, ValueError) as exc:
            logger.warning("ttl_cache_encode_failed", key=key, error=str(exc))
            return
        with self._lock:
            if self._closed:
                return
            try:
                self._db[key.encode("utf-8")] = payload
            except Exception as exc:
                logger.warning("ttl_cache_write_failed", key=key, error=str(exc))

    def delete(self, key: str) -> None:
        with self._lock:
            if self._closed:
                return
            self._delete_raw(key.encode("utf-8"), key)

    def exists(self, key: str) -> bool:
        """Raw presence check that ignores expiry and never deletes."""
        with self._lock:
            if self._closed:
                return False
            return self._db.get(key.encode("utf-8")) is not None

    def probe(self) -> None:
        """Read the probe key, letting storage errors propagate to the health monitor."""
        with self._lock:
            if self._closed:
                raise RuntimeError("ttl cache is closed")
            self._db.get(HEALTH_CHECK_KEY.encode("utf-8"))

    def flush(self) -> None:
        with self._lock:
            if not self._closed:
                self._db.flush()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._db.flush()
            finally:
                self._db.close()
            logger.info("ttl_cache_closed", path=self.path)

    def _delete_raw(self, raw_key: bytes, key: str) -> None:
        try:
            del self._db[raw_key]
        except KeyError:
            pass
        except Exception as exc:
            logger.warning("ttl_cache_delete_failed", key=key, error=str(exc))

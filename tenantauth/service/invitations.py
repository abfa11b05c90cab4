from __future__ import annotations

import secrets
import string
import threading

from tenantauth.logging import get_logger
from tenantauth.storage.ttl_cache import TTLCache

logger = get_logger(__name__)

_ALPHABET = string.ascii_letters + string.digits
_MARKER = "valid"


class InvitationGate:
    """Single-use codes that unlock registration with an elevated role.

    Possession of a code is the whole credential, so issuance must sit behind
    the operator secret. Codes live only in the TTL cache.
    """

    def __init__(self, cache: TTLCache, *, ttl_seconds: int = 3600, length: int = 8) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.length = length
        self._consume_lock = threading.Lock()

    @staticmethod
    def _key(code: str) -> str:
        return f"invite:{code}"

    def issue(self) -> str:
        code = "".join(secrets.choice(_ALPHABET) for _ in range(self.length))
        self.cache.set(self._key(code), _MARKER, self.ttl_seconds)
        logger.info("invitation_issued", ttl_seconds=self.ttl_seconds)
        return code

    def validate_and_consume(self, code: str | None) -> bool:
        if not code:
            return False
        key = self._key(code)
        # one code admits one registration
        with self._consume_lock:
            if self.cache.get(key) is None:
                return False
            self.cache.delete(key)
        logger.info("invitation_consumed")
        return True

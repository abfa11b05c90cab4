from __future__ import annotations

import asyncio
import concurrent.futures
import functools
from typing import Any, Callable, TypeVar

from tenantauth.logging import get_logger

T = TypeVar("T")


class CryptoExecutor:
    """Dedicated thread pool for password hashing and token signing.

    Nothing CPU-bound in the auth flows runs on the event loop.
    """

    DEFAULT_WORKERS = 4
    MAX_WORKERS = 32

    def __init__(self, max_workers: int = DEFAULT_WORKERS) -> None:
        self.logger = get_logger(__name__)
        workers = min(max(1, max_workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="tenantauth-crypto"
        )
        self._executor_shutdown = False
        self.max_workers = workers

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._executor_shutdown:
            raise RuntimeError("crypto executor is shut down")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the pool; with ``wait=False`` queued work is cancelled."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        try:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("crypto_executor_shutdown", wait=wait)
        except RuntimeError as exc:
            self.logger.warning("crypto_executor_shutdown_error", error=str(exc))

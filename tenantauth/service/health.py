from __future__ import annotations

import asyncio
import contextlib
from typing import Callable, Dict, List, Optional

from tenantauth.logging import get_logger

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


class HealthMonitor:
    """Background probers for the primary store and the TTL cache.

    Every prober shares one shutdown event. The first failed probe sets it
    and the process is expected to drain and exit; probers never try to
    repair a dependency themselves.
    """

    def __init__(
        self,
        *,
        interval_seconds: float = 10.0,
        timeout_seconds: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.shutdown_reason: Optional[str] = None
        self._probes: Dict[str, Callable[[], None]] = {}
        self._tasks: List[asyncio.Task] = []

    def register(self, name: str, probe: Callable[[], None]) -> None:
        self._probes[name] = probe

    async def check(self, name: str, probe: Callable[[], None]) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(probe), self.timeout_seconds)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=name, timeout=self.timeout_seconds)
        except Exception as exc:
            logger.error("health_check_failed", component=name, error=str(exc))
        return False

    async def check_all(self) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for name, probe in self._probes.items():
            results[name] = await self.check(name, probe)
        return results

    def trigger_shutdown(self, reason: str) -> None:
        if self.shutdown_event.is_set():
            return
        self.shutdown_reason = reason
        logger.error("health_shutdown_triggered", reason=reason)
        self.shutdown_event.set()

    async def start(self) -> None:
        if self._tasks:
            logger.warning("health_monitor_already_running")
            return
        for name, probe in self._probes.items():
            self._tasks.append(asyncio.create_task(self._watch(name, probe)))
        logger.info(
            "health_monitor_started",
            probes=sorted(self._probes),
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("health_monitor_stopped")

    async def _watch(self, name: str, probe: Callable[[], None]) -> None:
        while not self.shutdown_event.is_set():
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), self.interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            if not await self.check(name, probe):
                self.trigger_shutdown(f"{name} probe failed")
                return

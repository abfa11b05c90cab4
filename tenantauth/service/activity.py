from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.service.sessions import ClientInfo
from tenantauth.storage.models import ActivityLog

logger = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


class ActivityStore(Protocol):
    def record_activity(self, entry: ActivityLog) -> None: ...


class ActivityLogger:
    """Best-effort audit trail written off the request path.

    ``record`` only enqueues and never raises; a single worker task drains
    the queue into the store. When the queue is full new entries are dropped.
    """

    def __init__(self, store: ActivityStore, *, max_pending: int = 1000) -> None:
        self.store = store
        self._queue: asyncio.Queue[ActivityLog] = asyncio.Queue(maxsize=max_pending)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def record(
        self,
        activity_type: str,
        status: str,
        *,
        user_id: Optional[str] = None,
        error: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        client = client or ClientInfo()
        entry = ActivityLog(
            activity_type=activity_type,
            status=status,
            user_id=user_id,
            error_message=sanitize_error_message(error) if error else None,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "activity_log_dropped",
                activity_type=activity_type,
                status=status,
                dropped=self.dropped,
            )

    def success(
        self,
        activity_type: str,
        *,
        user_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        self.record(activity_type, STATUS_SUCCESS, user_id=user_id, client=client)

    def failure(
        self,
        activity_type: str,
        error: str,
        *,
        user_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        self.record(
            activity_type, STATUS_FAILURE, user_id=user_id, error=error, client=client
        )

    async def start(self) -> None:
        if self._running:
            logger.warning("activity_logger_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("activity_logger_started")

    async def stop(self) -> None:
        """Stop the worker, then write whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("activity_logger_stopped", dropped=self.dropped)

    async def drain(self) -> int:
        written = 0
        while True:
            try:
                entry = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return written
            await self._write(entry)
            written += 1

    async def _run_loop(self) -> None:
        while self._running:
            entry = await self._queue.get()
            await self._write(entry)

    async def _write(self, entry: ActivityLog) -> None:
        try:
            await asyncio.to_thread(self.store.record_activity, entry)
        except Exception as exc:
            # the audit trail must never fail the flow that produced it
            logger.error(
                "activity_log_write_failed",
                activity_type=entry.activity_type,
                error=str(exc),
            )

import asyncio

from tenantauth.service.activity import ActivityLogger
from tenantauth.service.sessions import ClientInfo
from tenantauth.storage.memory import MemoryStore


class BrokenStore:
    def __init__(self):
        self.attempts = 0

    def record_activity(self, entry):
        self.attempts += 1
        raise RuntimeError("connection to server refused")


async def test_record_is_written_by_drain():
    store = MemoryStore()
    activity = ActivityLogger(store)
    activity.success("login", user_id="u-1", client=ClientInfo("198.51.100.1", "curl"))
    activity.failure("login", "invalid password", user_id="u-1")
    assert activity.pending == 2
    assert await activity.drain() == 2
    first, second = store.activity_logs
    assert (first.status, first.ip_address, first.user_agent) == ("success", "198.51.100.1", "curl")
    assert (second.status, second.error_message) == ("failure", "invalid password")


async def test_full_queue_drops_new_entries():
    store = MemoryStore()
    activity = ActivityLogger(store, max_pending=2)
    for _ in range(5):
        activity.success("refresh_token")
    assert activity.dropped == 3
    await activity.drain()
    assert len(store.activity_logs) == 2


async def test_error_text_is_sanitized():
    store = MemoryStore()
    activity = ActivityLogger(store)
    activity.failure("login", "token=abc123 rejected")
    await activity.drain()
    assert "abc123" not in store.activity_logs[0].error_message


async def test_store_failures_are_swallowed():
    store = BrokenStore()
    activity = ActivityLogger(store)
    activity.success("logout")
    activity.success("logout")
    assert await activity.drain() == 2
    assert store.attempts == 2


async def test_worker_writes_in_background_and_stop_drains():
    store = MemoryStore()
    activity = ActivityLogger(store)
    await activity.start()
    activity.success("login")
    for _ in range(50):
        if store.activity_logs:
            break
        await asyncio.sleep(0.01)
    assert len(store.activity_logs) == 1

    activity.success("logout")
    await activity.stop()
    assert [e.activity_type for e in store.activity_logs] == ["login", "logout"]
    assert activity.pending == 0


async def test_start_twice_keeps_one_worker():
    activity = ActivityLogger(MemoryStore())
    await activity.start()
    task = activity._task
    await activity.start()
    assert activity._task is task
    await activity.stop()

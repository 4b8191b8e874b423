import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """
    A family of asyncio locks, one per key.

    Used to make writes for one key (a device handle, a job record) mutually
    exclusive while leaving other keys free to proceed concurrently.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def acquire(self, key: str):
        lock = self.get(key)
        async with lock:
            yield

    def discard(self, key: str):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self):
        return len(self._locks)


class SingleFlight:
    """
    Coalesce concurrent calls for the same key into one underlying call.

    The first caller for a key starts fn() as a task; callers arriving before
    it finishes await the same task and receive the same result or exception.
    Nothing is remembered after completion, so the next call starts afresh.
    A caller being cancelled does not cancel the shared call.
    """

    def __init__(self):
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._done, key))
        else:
            log.debug(f"Joining in-flight call for {key}")
        return await asyncio.shield(task)

    def _done(self, key: str, task: "asyncio.Task[Any]"):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters have already seen it
            task.exception()

"""
Challenge Deployer - Per-key coordination primitives

- SingleFlight: concurrent calls for one key share a single in-flight task
- KeyedLocks: one asyncio.Lock per key, dropped when nobody holds or waits
- run_detached: await work that must not be cancelled with its caller

Unrelated keys never wait on each other.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Generic, Hashable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _retrieve_result(task: "asyncio.Future[object]") -> None:
    # Mark the exception as retrieved when every waiter has gone away
    if not task.cancelled():
        task.exception()


async def run_detached(coro: Awaitable[T]) -> T:
    """
    Run a coroutine as its own task and await it through a shield.

    Cancelling the caller abandons the wait; the task keeps running.
    """
    task = asyncio.ensure_future(coro)
    task.add_done_callback(_retrieve_result)
    return await asyncio.shield(task)


class SingleFlight(Generic[T]):
    """
    Coalesce concurrent calls for the same key into one execution.

    The first caller for a key starts the work; callers arriving while it is
    in flight await the same task and receive the same result or exception.
    Once the task finishes the key is released, so the next call starts fresh.
    """

    def __init__(self, name: str = "singleflight"):
        self._name = name
        self._calls: Dict[Hashable, "asyncio.Task[T]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Execute fn once per key among concurrent callers.

        Args:
            key: Coalescing key
            fn: Zero-argument coroutine factory, only invoked by the leader

        Returns:
            The shared result of fn()
        """
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, fn))
            task.add_done_callback(_retrieve_result)
            self._calls[key] = task
        else:
            logger.debug("Joining in-flight call", flight=self._name, key=str(key))
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._calls.pop(key, None)


@dataclass
class _LockEntry:
    lock: asyncio.Lock
    users: int = 0


class KeyedLocks:
    """Mutual exclusion per key without serializing unrelated keys."""

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

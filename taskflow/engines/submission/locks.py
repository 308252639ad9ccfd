"""
Per-key asyncio locks for staging and rendering.

Uploads and renders for the same task (or the same group's task) queue
behind one lock. Entries are reference counted and dropped once nobody
holds or waits for them.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

from taskflow.kernel.models.task import Task


def task_lock_key(task: Task, group_id=None) -> str:
    """task:<id> for individual work, group:<group>:<definition> for group work."""
    if group_id is not None:
        return f"group:{group_id}:{task.task_definition_id}"
    return f"task:{task.id}"


class KeyedLocks:
    """Key -> (lock, users). Single process, single event loop."""

    def __init__(self):
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def _acquire_entry(self, key: str) -> asyncio.Lock:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        return lock

    def _release_entry(self, key: str) -> None:
        lock, users = self._locks[key]
        if users <= 1:
            del self._locks[key]
        else:
            self._locks[key] = (lock, users - 1)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._acquire_entry(key)
        try:
            async with lock:
                yield
        finally:
            self._release_entry(key)

    def locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._locks)

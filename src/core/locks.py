"""Per-key asyncio locks for single-writer access to aggregates."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from src.core.errors import RepositoryTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class LockEntry:
    """A lock plus the number of coroutines holding or waiting on it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLockRegistry:
    """Hands out one lock per key and forgets it once nobody uses it.

    Keys are namespaced strings such as ``order:<id>`` or ``coupon:<code>``.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        """Initialize the registry.

        Args:
            timeout_seconds: Default acquisition timeout. ``None`` reads
                ``lock_timeout_seconds`` from settings on each acquisition.
        """
        self._timeout_seconds = timeout_seconds
        self._entries: dict[str, LockEntry] = {}

    def _resolve_timeout(self, timeout: float | None) -> float:
        if timeout is not None:
            return timeout
        if self._timeout_seconds is not None:
            return self._timeout_seconds
        from src.core.config import get_settings

        return get_settings().lock_timeout_seconds

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Lock key.
            timeout: Seconds to wait for the lock.

        Raises:
            RepositoryTimeoutError: If the lock is not acquired in time.
        """
        entry = self._entries.setdefault(key, LockEntry())
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self._resolve_timeout(timeout))
            except asyncio.TimeoutError as e:
                logger.warning("Timed out waiting for lock %s", key)
                raise RepositoryTimeoutError(f"Timed out waiting for lock {key}") from e
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict:
        """Get registry statistics for monitoring."""
        return {
            "active_keys": len(self._entries),
            "locked_keys": sum(1 for entry in self._entries.values() if entry.lock.locked()),
        }

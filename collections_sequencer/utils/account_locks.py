"""
Per-account mutation locks.

At most one mutation (tick, payment, pause/resume, escalate) may run against
an account's sequence at a time. Different accounts never contend. A lock
lives only while some task holds or waits for it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import structlog

logger = structlog.get_logger(__name__)


class AccountLockRegistry:
    """Lazily created asyncio locks keyed by account id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def lock_for(self, account_id: str) -> asyncio.Lock:
        """Get (creating if needed) the lock for an account."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        """Hold the account's lock for the duration of the block."""
        lock = self.lock_for(account_id)
        self._holders[account_id] = self._holders.get(account_id, 0) + 1
        try:
            if lock.locked():
                logger.debug("Waiting for account lock", account_id=account_id)
            async with lock:
                yield
        finally:
            self._release(account_id)

    def _release(self, account_id: str) -> None:
        remaining = self._holders[account_id] - 1
        if remaining:
            self._holders[account_id] = remaining
            return
        # Last holder or waiter gone
        del self._holders[account_id]
        self._locks.pop(account_id, None)

    def is_locked(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)

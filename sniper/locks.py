import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import LockTimeout

log = logging.getLogger(__name__)


class ChannelLocks:
    """One FIFO mutex per channel id.

    ``asyncio.Lock`` wakes waiters in the order they queued, so messages from
    a single channel are handled in arrival order. Entries are dropped once no
    task holds or waits on them.
    """

    def __init__(self, *, timeout_ms: int = 30_000) -> None:
        self.timeout_s = timeout_ms / 1000.0
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, channel_id: str) -> bool:
        lock = self._locks.get(str(channel_id))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def acquire(self, channel_id: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        key = str(channel_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self.timeout_s if timeout is None else timeout)
            except asyncio.TimeoutError as exc:
                raise LockTimeout(f"timed out waiting for channel {key}") from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)


class Outbox:
    """Sends chat messages with a minimum spacing per channel."""

    def __init__(self, *, spacing_ms: int = 0) -> None:
        self.spacing_s = spacing_ms / 1000.0
        self._last_sent: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._last_sent)

    def forget(self, channel_id) -> None:
        self._last_sent.pop(str(channel_id), None)

    async def send(self, channel, content: str, *, reply_to=None):
        key = str(getattr(channel, "id", channel))
        if self.spacing_s > 0:
            wait = self._last_sent.get(key, 0.0) + self.spacing_s - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
        if reply_to is not None and hasattr(reply_to, "reply"):
            sent = await reply_to.reply(content)
        else:
            sent = await channel.send(content)
        self._last_sent[key] = time.monotonic()
        log.debug("sent to %s: %s", key, content)
        return sent

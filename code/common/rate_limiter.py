# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger("babelcord.ratelimit")


class ActionType(Enum):
    WEBHOOK_MESSAGE = "webhook_message"
    WEBHOOK_CREATE = "webhook_create"
    EMOJI_CREATE = "emoji_create"
    EMOJI_DELETE = "emoji_delete"


class RateLimiter:
    """Token bucket with an adaptive cooldown that 429 responses can push out."""

    def __init__(self, max_rate: int, time_window: float):
        self._max_rate = max_rate
        self._time_window = time_window
        self._allowance = float(max_rate)
        self._last_check = time.monotonic()
        self._lock = asyncio.Lock()
        self._cooldown_until = 0.0

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()

            if now < self._cooldown_until:
                await asyncio.sleep(self._cooldown_until - now)
                now = time.monotonic()

            elapsed = now - self._last_check
            self._last_check = now
            self._allowance = min(
                self._max_rate,
                self._allowance + elapsed * (self._max_rate / self._time_window),
            )

            if self._allowance < 1.0:
                wait = (1.0 - self._allowance) * (self._time_window / self._max_rate)
                if wait > 0:
                    await asyncio.sleep(wait)
                self._last_check = time.monotonic()
                self._allowance = 0.0
            else:
                self._allowance -= 1.0

    def backoff(self, seconds: float):
        candidate_end = time.monotonic() + max(0.0, seconds)
        if candidate_end > self._cooldown_until:
            self._cooldown_until = candidate_end

    def reset(self):
        self._cooldown_until = 0.0

    def remaining_cooldown(self) -> float:
        return max(0.0, self._cooldown_until - time.monotonic())


class RateLimitManager:
    def __init__(self, config: Dict[ActionType, Tuple[int, float]] = None):
        cfg = config or {
            ActionType.WEBHOOK_MESSAGE: (5, 2.5),
            ActionType.WEBHOOK_CREATE: (1, 10.0),
            ActionType.EMOJI_CREATE: (2, 30.0),
            ActionType.EMOJI_DELETE: (5, 10.0),
        }
        self._config = cfg
        # WEBHOOK_MESSAGE buckets are per destination channel, the rest are global
        self._limiters: Dict[ActionType, RateLimiter] = {
            a: RateLimiter(*cfg[a]) for a in cfg if a is not ActionType.WEBHOOK_MESSAGE
        }
        self._keyed: Dict[str, RateLimiter] = {}

    def _get(self, action: ActionType, key: str | None = None) -> Optional[RateLimiter]:
        if action is ActionType.WEBHOOK_MESSAGE:
            if key is None:
                return None
            lim = self._keyed.get(key)
            if not lim:
                lim = RateLimiter(*self._config[ActionType.WEBHOOK_MESSAGE])
                self._keyed[key] = lim
            return lim
        return self._limiters.get(action)

    async def acquire(self, action: ActionType, key: str | None = None):
        lim = self._get(action, key)
        if lim:
            await lim.acquire()

    def penalize(self, action: ActionType, seconds: float, key: str | None = None):
        lim = self._get(action, key)
        if lim:
            lim.backoff(seconds)

    def reset(self, action: ActionType, key: str | None = None):
        lim = self._get(action, key)
        if lim:
            lim.reset()

    def remaining(self, action: ActionType, key: str | None = None) -> float:
        lim = self._get(action, key)
        return lim.remaining_cooldown() if lim else 0.0


class OrderedDispatcher:
    """
    Single-worker FIFO in front of a rate-limited provider.

    Every submitted call runs strictly after the previous one has finished,
    and no two calls start less than ``min_interval`` seconds apart, no matter
    how many coroutines submit concurrently.
    """

    def __init__(self, min_interval: float, *, name: str = "dispatcher"):
        self.min_interval = max(0.0, float(min_interval))
        self.name = name
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._last_dispatch: float | None = None
        self._closed = False
        self.dispatched = 0

    @property
    def last_dispatch(self) -> float | None:
        return self._last_dispatch

    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"{self.name}-worker")

    async def submit(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Queue ``factory`` and wait for its result (or exception)."""
        if self._closed:
            raise RuntimeError(f"{self.name} is closed")
        self._ensure_worker()
        fut = asyncio.get_running_loop().create_future()
        await self._queue.put((factory, fut))
        return await fut

    async def _run(self) -> None:
        while True:
            factory, fut = await self._queue.get()
            try:
                if fut.cancelled():
                    continue

                if self._last_dispatch is not None:
                    wait = self._last_dispatch + self.min_interval - time.monotonic()
                    if wait > 0:
                        await asyncio.sleep(wait)

                self._last_dispatch = time.monotonic()
                self.dispatched += 1
                try:
                    result = await factory()
                except asyncio.CancelledError:
                    if not fut.done():
                        fut.cancel()
                    raise
                except Exception as e:
                    if not fut.done():
                        fut.set_exception(e)
                else:
                    if not fut.done():
                        fut.set_result(result)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        self._closed = True
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._queue is not None:
            while True:
                try:
                    _, fut = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if not fut.done():
                    fut.cancel()
                self._queue.task_done()
        logger.debug("%s closed after %d dispatches", self.name, self.dispatched)

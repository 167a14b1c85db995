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
from typing import Awaitable, Callable, Set

logger = logging.getLogger("babelcord.scheduler")

# Keeps fire-and-forget tasks referenced until they finish
_live: Set[asyncio.Task] = set()


class ScheduledTask:
    """Handle returned by schedule(); cancel() is a no-op once the action ran."""

    def __init__(self, name: str):
        self.name = name
        self.fired = False
        self._task: asyncio.Task | None = None

    def cancel(self) -> bool:
        if self._task is None or self._task.done() or self.fired:
            return False
        self._task.cancel()
        return True

    def cancelled(self) -> bool:
        return bool(self._task and self._task.cancelled())

    def done(self) -> bool:
        return bool(self._task and self._task.done())

    def add_done_callback(self, fn) -> None:
        if self._task is not None:
            self._task.add_done_callback(lambda _t: fn(self))

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


def schedule(
    action: Callable[[], Awaitable[object]], delay: float, *, name: str = "deferred"
) -> ScheduledTask:
    """Run ``action()`` after ``delay`` seconds on the running loop."""
    handle = ScheduledTask(name)

    async def _runner():
        await asyncio.sleep(max(0.0, delay))
        handle.fired = True
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[⛔] Scheduled action %s failed", name)

    task = asyncio.create_task(_runner(), name=name)
    handle._task = task
    _live.add(task)
    task.add_done_callback(_live.discard)
    return handle

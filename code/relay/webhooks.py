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
from typing import Dict, Optional

import aiohttp
import discord
from discord.errors import HTTPException, NotFound

from common.rate_limiter import ActionType, RateLimitManager

logger = logging.getLogger("babelcord.webhooks")


class WebhookRegistry:
    """
    One bot-owned webhook per destination channel, created lazily.

    Cached handles are trusted for ``ttl`` seconds and re-verified with
    Discord afterwards; a handle that no longer resolves is dropped and
    replaced on the next send.
    """

    def __init__(
        self,
        bot: discord.Bot,
        ratelimit: RateLimitManager,
        *,
        name: str = "Babelcord Translator",
        ttl: float = 300,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.bot = bot
        self.ratelimit = ratelimit
        self.name = name
        self.ttl = ttl
        self.session = session
        self._urls: Dict[int, str] = {}
        self._wh_meta: Dict[int, dict] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._new_webhook_gate = asyncio.Lock()
        self._shutting_down = False

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    def _bind(self, url: str) -> discord.Webhook:
        return discord.Webhook.from_url(url, session=self._session())

    @staticmethod
    def _url(wh: discord.Webhook) -> str:
        return f"https://discord.com/api/webhooks/{wh.id}/{wh.token}"

    def _is_ours(self, wh: discord.Webhook) -> bool:
        me = self.bot.user
        return (
            wh.token is not None
            and me is not None
            and wh.user is not None
            and wh.user.id == me.id
            and (wh.name or "").strip().lower() == self.name.strip().lower()
        )

    async def _create_webhook_safely(self, ch) -> Optional[discord.Webhook]:
        if self._shutting_down:
            return None
        async with self._new_webhook_gate:
            await self.ratelimit.acquire(ActionType.WEBHOOK_CREATE)
            webhook = await ch.create_webhook(name=self.name)
            logger.info("[➕] Created a webhook in channel %s", ch.name)
            return webhook

    async def _verify(self, channel_id: int) -> bool:
        url = self._urls.get(channel_id)
        if not url:
            return False
        try:
            webhook_id = int(url.rstrip("/").split("/")[-2])
            await self.bot.fetch_webhook(webhook_id)
        except (NotFound, HTTPException, ValueError):
            logger.debug("Cached webhook for #%s no longer resolves", channel_id)
            self.forget(channel_id)
            return False
        self._wh_meta.setdefault(channel_id, {})["checked_at"] = time.time()
        return True

    async def get(self, ch) -> Optional[discord.Webhook]:
        """Webhook for a text channel, reusing ours or creating one."""
        channel_id = ch.id
        meta = self._wh_meta.get(channel_id)
        if channel_id in self._urls and meta and time.time() - meta.get("checked_at", 0) < self.ttl:
            return self._bind(self._urls[channel_id])

        lock = self._locks.setdefault(channel_id, asyncio.Lock())
        async with lock:
            if channel_id in self._urls and await self._verify(channel_id):
                return self._bind(self._urls[channel_id])

            existing = None
            try:
                for wh in await ch.webhooks():
                    if self._is_ours(wh):
                        existing = wh
                        break
            except discord.Forbidden:
                logger.warning("[⚠️] Missing Manage Webhooks in #%s", getattr(ch, "name", channel_id))
                return None

            wh = existing or await self._create_webhook_safely(ch)
            if wh is None:
                return None
            self._urls[channel_id] = self._url(wh)
            self._wh_meta[channel_id] = {"checked_at": time.time()}
            return self._bind(self._urls[channel_id])

    def forget(self, channel_id: int) -> None:
        self._urls.pop(channel_id, None)
        self._wh_meta.pop(channel_id, None)

    async def delete(self, channel_id: int) -> bool:
        url = self._urls.get(channel_id)
        if not url:
            return False
        try:
            await self._bind(url).delete(reason="Babelcord sync removed")
            logger.info("[🧹] Deleted webhook for channel #%s", channel_id)
            return True
        except NotFound:
            return False
        except HTTPException as e:
            logger.warning("[⚠️] Could not delete webhook for #%s: %s", channel_id, e)
            return False
        finally:
            self.forget(channel_id)

    async def prune(self) -> int:
        dropped = 0
        for channel_id in list(self._urls):
            if not await self._verify(channel_id):
                dropped += 1
        if dropped:
            logger.info("[🧹] Pruned %d stale webhook handle(s)", dropped)
        return dropped

    def clear(self) -> None:
        self._shutting_down = True
        self._urls.clear()
        self._wh_meta.clear()
        self._locks.clear()

    def stats(self) -> dict:
        now = time.time()
        return {
            "cached": len(self._urls),
            "stale": sum(
                1 for m in self._wh_meta.values() if now - m.get("checked_at", 0) >= self.ttl
            ),
            "channels": sorted(str(c) for c in self._urls),
        }

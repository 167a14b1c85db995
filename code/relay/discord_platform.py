# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import re
from typing import List, Optional

import aiohttp
import discord
from discord import Embed
from discord.errors import Forbidden, HTTPException, NotFound

from common.errors import DeliveryError, ResourceUnavailableError
from common.rate_limiter import ActionType, RateLimitManager
from relay.images import shrink_emoji
from relay.models import Author, ContextMessage, IncomingMessage
from relay.platform import ChannelInfo, ChatPlatform, EmojiInfo, GuildEmojis
from relay.webhooks import WebhookRegistry

logger = logging.getLogger("babelcord.discord")

EMOJI_CDN = "https://cdn.discordapp.com/emojis/{id}.{ext}"
MAX_CONTENT = 2000
MAX_DESC = 4096
MAX_USERNAME = 80

# Discord error code for "maximum number of emojis reached"
_EMOJI_LIMIT_CODE = 30008

_MENTIONS = discord.AllowedMentions(everyone=False, roles=False, users=True)
_RESERVED_NAME = re.compile(r"discord|clyde", re.IGNORECASE)


def to_incoming(message: discord.Message, avatar_size: int = 512) -> IncomingMessage:
    author = message.author
    return IncomingMessage(
        id=str(message.id),
        author=Author(
            id=str(author.id),
            username=author.name,
            display_name=getattr(author, "display_name", None),
            avatar_url=author.display_avatar.with_size(avatar_size).with_static_format("png").url,
            bot=author.bot,
        ),
        content=message.content or "",
        channel_id=str(message.channel.id),
        server_id=str(message.guild.id) if message.guild else None,
        created_at=message.created_at,
        channel_name=getattr(message.channel, "name", None),
    )


def webhook_username(display_name: str) -> str:
    """Webhook usernames may not contain 'discord' or 'clyde' and cap at 80 chars."""
    name = _RESERVED_NAME.sub(lambda m: m.group(0)[:-1] + "*", display_name or "").strip()
    return (name or "Unknown")[:MAX_USERNAME]


def build_payload(text: str) -> dict:
    if len(text) > MAX_CONTENT:
        return {"content": None, "embeds": [Embed(description=text[:MAX_DESC])]}
    return {"content": text}


class DiscordPlatform(ChatPlatform):
    def __init__(
        self,
        bot: discord.Bot,
        ratelimit: RateLimitManager,
        webhooks: WebhookRegistry,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.bot = bot
        self.ratelimit = ratelimit
        self.webhooks = webhooks
        self.session = session

    def set_session(self, session: aiohttp.ClientSession | None):
        self.session = session
        self.webhooks.session = session

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    @property
    def bot_user_id(self) -> Optional[str]:
        return str(self.bot.user.id) if self.bot.user else None

    async def _channel(self, channel_id: str):
        ch = self.bot.get_channel(int(channel_id))
        if ch is None:
            try:
                ch = await self.bot.fetch_channel(int(channel_id))
            except (NotFound, Forbidden) as e:
                raise DeliveryError(f"channel {channel_id} is not reachable: {e}") from e
        return ch

    # ---------- sending ----------
    async def send_plain(self, channel_id: str, text: str) -> None:
        ch = await self._channel(channel_id)
        try:
            await ch.send(**build_payload(text), allowed_mentions=_MENTIONS)
        except HTTPException as e:
            raise DeliveryError(f"send to #{channel_id} failed: {e}") from e

    async def send_impersonated(
        self,
        channel_id: str,
        text: str,
        display_name: str,
        avatar_url: Optional[str] = None,
        avatar_path: Optional[str] = None,
    ) -> None:
        ch = await self._channel(channel_id)
        thread = ch if isinstance(ch, discord.Thread) else None
        parent = ch.parent if thread else ch
        if parent is None:
            raise DeliveryError(f"thread {channel_id} has no parent channel")

        try:
            webhook = await self.webhooks.get(parent)
        except HTTPException as e:
            raise DeliveryError(f"webhook unavailable for #{channel_id}: {e}") from e
        if webhook is None:
            raise DeliveryError(f"no webhook for #{channel_id}")

        kw = {
            "username": webhook_username(display_name),
            "allowed_mentions": _MENTIONS,
            "wait": True,
        }
        if thread is not None:
            kw["thread"] = thread

        # one webhook serves every author; the avatar is set per message
        if avatar_url:
            kw["avatar_url"] = avatar_url

        await self.ratelimit.acquire(ActionType.WEBHOOK_MESSAGE, str(channel_id))
        try:
            await webhook.send(**build_payload(text), **kw)
        except NotFound as e:
            self.webhooks.forget(parent.id)
            raise DeliveryError(f"webhook for #{channel_id} vanished") from e
        except HTTPException as e:
            raise DeliveryError(f"webhook send to #{channel_id} failed: {e}") from e

    # ---------- lookups ----------
    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        try:
            ch = await self._channel(channel_id)
        except DeliveryError:
            return None
        guild = getattr(ch, "guild", None)
        return ChannelInfo(
            id=str(ch.id),
            name=getattr(ch, "name", "") or "",
            guild_id=str(guild.id) if guild else None,
        )

    async def fetch_guild_emojis(self, guild_id: str) -> Optional[GuildEmojis]:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            return None
        me = guild.me
        return GuildEmojis(
            guild_id=str(guild.id),
            emojis=[
                EmojiInfo(id=str(e.id), name=e.name, animated=e.animated, url=str(e.url))
                for e in guild.emojis
            ],
            limit=guild.emoji_limit,
            can_manage=bool(me and me.guild_permissions.manage_emojis),
        )

    async def fetch_external_emoji(
        self, emoji_id: str, name: str, animated: bool
    ) -> Optional[EmojiInfo]:
        known = self.bot.get_emoji(int(emoji_id))
        if known is not None:
            return EmojiInfo(id=str(known.id), name=known.name, animated=known.animated, url=str(known.url))

        url = EMOJI_CDN.format(id=emoji_id, ext="gif" if animated else "png")
        try:
            async with self._session().head(url) as resp:
                if resp.status != 200:
                    return None
        except aiohttp.ClientError as e:
            logger.debug("CDN lookup for emoji %s failed: %s", emoji_id, e)
            return None
        return EmojiInfo(id=str(emoji_id), name=name, animated=animated, url=url)

    async def clone_emoji(self, guild_id: str, source_image_url: str, name: str) -> EmojiInfo:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            raise ResourceUnavailableError(f"guild {guild_id} is not available")

        raw = await self.download_attachment(source_image_url)
        try:
            raw = await shrink_emoji(raw)
        except Exception as e:
            logger.error("[⛔] Error shrinking emoji %s: %s", name, e)

        await self.ratelimit.acquire(ActionType.EMOJI_CREATE)
        try:
            created = await guild.create_custom_emoji(
                name=name, image=raw, reason="Babelcord temporary emoji"
            )
        except Forbidden as e:
            raise ResourceUnavailableError(f"cannot create emojis in {guild_id}: {e}") from e
        except HTTPException as e:
            if e.code == _EMOJI_LIMIT_CODE:
                raise ResourceUnavailableError(f"guild {guild_id} is out of emoji slots") from e
            raise ResourceUnavailableError(f"emoji create failed in {guild_id}: {e}") from e

        return EmojiInfo(
            id=str(created.id), name=created.name, animated=created.animated, url=str(created.url)
        )

    async def delete_emoji(self, guild_id: str, emoji_id: str) -> None:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            raise ResourceUnavailableError(f"guild {guild_id} is not available")
        await self.ratelimit.acquire(ActionType.EMOJI_DELETE)
        try:
            emoji = guild.get_emoji(int(emoji_id)) or await guild.fetch_emoji(int(emoji_id))
            await emoji.delete(reason="Babelcord temporary emoji cleanup")
        except NotFound:
            logger.debug("Emoji %s already gone from guild %s", emoji_id, guild_id)

    async def download_attachment(self, url: str) -> bytes:
        try:
            async with self._session().get(url) as resp:
                if resp.status != 200:
                    raise ResourceUnavailableError(f"download failed {url} (HTTP {resp.status})")
                return await resp.read()
        except aiohttp.ClientError as e:
            raise ResourceUnavailableError(f"download failed {url}: {e}") from e

    async def fetch_recent_messages(
        self, channel_id: str, limit: int, before_message_id: Optional[str] = None
    ) -> List[ContextMessage]:
        ch = await self._channel(channel_id)
        before = discord.Object(id=int(before_message_id)) if before_message_id else None
        out: List[ContextMessage] = []
        try:
            async for m in ch.history(limit=limit, before=before):
                out.append(
                    ContextMessage(
                        author=getattr(m.author, "display_name", None) or m.author.name,
                        content=m.content or "",
                        timestamp=m.created_at,
                        bot=m.author.bot,
                    )
                )
        except (Forbidden, HTTPException) as e:
            logger.debug("History unavailable for #%s: %s", channel_id, e)
        out.reverse()
        return out

    async def close(self) -> None:
        self.webhooks.clear()
        if self.session and not self.session.closed:
            await self.session.close()

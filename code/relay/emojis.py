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
import re
import time
from typing import Dict, List, Optional, Tuple

from common.errors import ResourceUnavailableError
from relay.models import EmojiCloneRecord
from relay.platform import ChatPlatform, EmojiInfo, GuildEmojis
from relay.scheduler import ScheduledTask, schedule

logger = logging.getLogger("babelcord.emojis")

EMOJI_RE = re.compile(r"<(a?):(?P<name>[^:<>\s]+):(?P<id>\d+)>")
MAX_EMOJI_NAME = 32


class EmojiBridge:
    """
    Makes custom emoji tokens render in another guild.

    A token is pointed at the target guild's own copy when one exists,
    otherwise the source image is cloned into the target guild under a
    temporary name and deleted again shortly after the message went out.
    Anything that goes wrong degrades the token to plain ``:name:`` text.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        cleanup_delay: float = 5.0,
        temp_prefix: str = "temp_",
    ):
        self.platform = platform
        self.cleanup_delay = cleanup_delay
        self.temp_prefix = temp_prefix
        self._temporary: Dict[Tuple[str, str], EmojiCloneRecord] = {}
        self._cleanups: set[ScheduledTask] = set()

    @staticmethod
    def has_custom_emoji(text: str) -> bool:
        return bool(text) and EMOJI_RE.search(text) is not None

    def _temp_name(self, name: str) -> str:
        suffix = f"_{str(int(time.time() * 1000))[-6:]}"
        room = MAX_EMOJI_NAME - len(self.temp_prefix) - len(suffix)
        base = re.sub(r"[^A-Za-z0-9_]", "_", name)[: max(room, 1)]
        return f"{self.temp_prefix}{base}{suffix}"

    async def _guild(self, guild_id: Optional[str]) -> Optional[GuildEmojis]:
        if not guild_id:
            return None
        try:
            return await self.platform.fetch_guild_emojis(str(guild_id))
        except Exception as e:
            logger.warning("[⚠️] Could not read emojis of guild %s: %s", guild_id, e)
            return None

    async def _locate_source(
        self, source: Optional[GuildEmojis], emoji_id: str, name: str, animated: bool
    ) -> Optional[EmojiInfo]:
        found = source.get(emoji_id) if source else None
        if found:
            return found
        try:
            return await self.platform.fetch_external_emoji(emoji_id, name, animated)
        except Exception as e:
            logger.warning("[⚠️] Failed to fetch external emoji %s:%s: %s", name, emoji_id, e)
            return None

    async def _clone(
        self, src: EmojiInfo, target: GuildEmojis, name: str
    ) -> EmojiInfo:
        if not target.can_manage:
            raise ResourceUnavailableError(
                f"missing Manage Emojis permission in guild {target.guild_id}"
            )
        if target.slots_left(src.animated) <= 0:
            raise ResourceUnavailableError(
                f"guild {target.guild_id} has no free {'animated' if src.animated else 'static'} emoji slots"
            )
        if not src.url:
            raise ResourceUnavailableError(f"no image url for emoji {name}:{src.id}")
        return await self.platform.clone_emoji(target.guild_id, src.url, self._temp_name(name))

    async def bridge(
        self, text: str, source_guild_id: Optional[str], target_guild_id: Optional[str]
    ) -> Tuple[str, List[EmojiCloneRecord]]:
        matches = list(EMOJI_RE.finditer(text or ""))
        if not matches:
            return text, []

        target = await self._guild(target_guild_id)
        source = await self._guild(source_guild_id)

        records: List[EmojiCloneRecord] = []
        resolved: Dict[str, str] = {}
        pieces: List[str] = []
        cursor = 0

        for m in matches:
            pieces.append(text[cursor:m.start()])
            cursor = m.end()

            name, emoji_id = m.group("name"), m.group("id")
            animated = m.group(1) == "a"

            if emoji_id in resolved:
                pieces.append(resolved[emoji_id])
                continue

            replacement = f":{name}:"
            try:
                existing = None
                if target is not None:
                    # id first, then the first emoji sharing the name
                    existing = target.get(emoji_id) or target.find_by_name(name)

                if existing:
                    replacement = existing.token()
                elif target is not None:
                    src = await self._locate_source(source, emoji_id, name, animated)
                    if src is None:
                        logger.info(
                            "[😊] Emoji %s:%s not found anywhere; using :%s:", name, emoji_id, name
                        )
                    else:
                        if src.animated != animated:
                            src = EmojiInfo(id=src.id, name=src.name, animated=animated, url=src.url)
                        cloned = await self._clone(src, target, name)
                        record = EmojiCloneRecord(
                            original_id=emoji_id,
                            original_name=name,
                            cloned_id=str(cloned.id),
                            cloned_name=cloned.name,
                            guild_id=str(target.guild_id),
                            animated=cloned.animated,
                        )
                        self._temporary[record.key] = record
                        records.append(record)
                        target.emojis.append(cloned)
                        replacement = cloned.token()
                        logger.info(
                            "[😊] Cloned emoji %s into guild %s as %s",
                            name,
                            target.guild_id,
                            cloned.name,
                            extra={"guild_id": target.guild_id},
                        )
            except ResourceUnavailableError as e:
                logger.info("[😊] Emoji %s degraded to text: %s", name, e)
            except Exception as e:
                logger.warning("[⚠️] Failed to bridge emoji %s:%s: %s", name, emoji_id, e)

            resolved[emoji_id] = replacement
            pieces.append(replacement)

        pieces.append(text[cursor:])
        return "".join(pieces), records

    def is_temporary(self, emoji_id: str, guild_id: str) -> bool:
        return (str(guild_id), str(emoji_id)) in self._temporary

    async def _delete(self, record: EmojiCloneRecord) -> None:
        if self._temporary.pop(record.key, None) is None:
            return
        try:
            await self.platform.delete_emoji(record.guild_id, record.cloned_id)
            logger.info(
                "[🧹] Removed temporary emoji %s (%s)",
                record.cloned_name,
                record.cloned_id,
                extra={"guild_id": record.guild_id},
            )
        except Exception as e:
            logger.error(
                "[⛔] Failed to remove temporary emoji %s from guild %s: %s",
                record.cloned_name,
                record.guild_id,
                e,
            )

    def schedule_cleanup(self, records: List[EmojiCloneRecord]) -> Optional[ScheduledTask]:
        """Fire-and-forget; the returned handle is never cancelled."""
        if not records:
            return None
        batch = list(records)

        async def _run():
            for rec in batch:
                await self._delete(rec)

        handle = schedule(_run, self.cleanup_delay, name="emoji-cleanup")
        self._cleanups.add(handle)
        handle.add_done_callback(self._cleanups.discard)
        logger.debug(
            "Scheduled cleanup of %d temporary emoji(s) in %.1fs", len(batch), self.cleanup_delay
        )
        return handle

    async def emergency_cleanup(self, guild_id: Optional[str] = None) -> int:
        batch = [
            r for r in list(self._temporary.values())
            if guild_id is None or r.guild_id == str(guild_id)
        ]
        if batch:
            logger.info("[🧹] Emergency cleanup: removing %d temporary emoji(s)", len(batch))
        await asyncio.gather(*(self._delete(r) for r in batch))
        return len(batch)

    async def cleanup_all(self) -> int:
        removed = await self.emergency_cleanup(None)
        self._temporary.clear()
        return removed

    def stats(self) -> dict:
        by_guild: Dict[str, int] = {}
        for rec in self._temporary.values():
            by_guild[rec.guild_id] = by_guild.get(rec.guild_id, 0) + 1
        return {"total_temporary": len(self._temporary), "by_guild": by_guild}

# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Operations the relay core needs from the chat platform.

The core only talks to this interface; ``relay.discord_platform`` implements
it on top of py-cord and the tests implement it in memory.
"""

from __future__ import annotations
import abc
from dataclasses import dataclass, field
from typing import List, Optional

from relay.models import ContextMessage


@dataclass(frozen=True)
class EmojiInfo:
    id: str
    name: str
    animated: bool = False
    url: Optional[str] = None

    def token(self) -> str:
        return f"<{'a' if self.animated else ''}:{self.name}:{self.id}>"


@dataclass
class GuildEmojis:
    guild_id: str
    emojis: List[EmojiInfo] = field(default_factory=list)
    # Discord caps static and animated emojis separately
    limit: int = 50
    can_manage: bool = False

    def get(self, emoji_id: str) -> Optional[EmojiInfo]:
        for e in self.emojis:
            if e.id == str(emoji_id):
                return e
        return None

    def find_by_name(self, name: str) -> Optional[EmojiInfo]:
        for e in self.emojis:
            if e.name == name:
                return e
        return None

    def slots_left(self, animated: bool) -> int:
        used = sum(1 for e in self.emojis if e.animated == animated)
        return self.limit - used


@dataclass(frozen=True)
class ChannelInfo:
    id: str
    name: str
    guild_id: Optional[str] = None


class ChatPlatform(abc.ABC):
    @property
    @abc.abstractmethod
    def bot_user_id(self) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def send_plain(self, channel_id: str, text: str) -> None:
        """Post as the bot itself. Raises DeliveryError."""

    @abc.abstractmethod
    async def send_impersonated(
        self,
        channel_id: str,
        text: str,
        display_name: str,
        avatar_url: Optional[str] = None,
        avatar_path: Optional[str] = None,
    ) -> None:
        """
        Post under another identity (webhook style). Raises DeliveryError.

        ``avatar_path`` is a local copy of the avatar for adapters that cannot
        reference ``avatar_url`` directly.
        """

    @abc.abstractmethod
    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        ...

    @abc.abstractmethod
    async def fetch_guild_emojis(self, guild_id: str) -> Optional[GuildEmojis]:
        ...

    @abc.abstractmethod
    async def fetch_external_emoji(
        self, emoji_id: str, name: str, animated: bool
    ) -> Optional[EmojiInfo]:
        """Locate an emoji that is not in any cached guild, or return None."""

    @abc.abstractmethod
    async def clone_emoji(
        self, guild_id: str, source_image_url: str, name: str
    ) -> EmojiInfo:
        """Create a custom emoji. Raises ResourceUnavailableError."""

    @abc.abstractmethod
    async def delete_emoji(self, guild_id: str, emoji_id: str) -> None:
        ...

    @abc.abstractmethod
    async def download_attachment(self, url: str) -> bytes:
        ...

    @abc.abstractmethod
    async def fetch_recent_messages(
        self, channel_id: str, limit: int, before_message_id: Optional[str] = None
    ) -> List[ContextMessage]:
        """Oldest first, excluding ``before_message_id`` itself."""

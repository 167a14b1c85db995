# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class ChannelConfig:
    channel_id: str
    language: str


@dataclass(frozen=True)
class SyncGroup:
    server_id: str
    group_id: str
    members: List[ChannelConfig]


@dataclass(frozen=True)
class Author:
    id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bot: bool = False


@dataclass(frozen=True)
class IncomingMessage:
    id: str
    author: Author
    content: str
    channel_id: str
    server_id: Optional[str]
    created_at: datetime
    channel_name: Optional[str] = None

    @property
    def author_id(self) -> str:
        return self.author.id


@dataclass(frozen=True)
class ContextMessage:
    """A preceding channel message handed to the primary translator."""

    author: str
    content: str
    timestamp: datetime
    bot: bool = False


@dataclass(frozen=True)
class UserProfile:
    username: str
    display_name: str
    avatar_url: Optional[str] = None
    local_avatar_path: Optional[str] = None


@dataclass
class QueuedDelivery:
    id: str
    target_channel_id: str
    target_language: str
    translated_text: str
    timestamp_of_source: float
    user_profile: UserProfile
    source_guild_id: Optional[str] = None
    source_channel_id: Optional[str] = None
    source_channel_name: Optional[str] = None


@dataclass(frozen=True)
class EmojiCloneRecord:
    original_id: str
    original_name: str
    cloned_id: str
    cloned_name: str
    guild_id: str
    animated: bool

    @property
    def key(self) -> tuple[str, str]:
        return (self.guild_id, self.cloned_id)


@dataclass
class TranslationResult:
    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    context_used: bool = False
    fallback_used: bool = False
    provider: str = ""
    attempts: int = 0
    errors: List[str] = field(default_factory=list)

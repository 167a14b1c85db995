# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import List, Optional

from relay.models import ChannelConfig, SyncGroup


class GroupResolver:
    """Read-only lookups over one loaded sync-storage snapshot."""

    def __init__(self, snapshot: dict | None):
        self.snapshot = snapshot or {}

    def _members(self, raw: list) -> List[ChannelConfig]:
        seen: set[str] = set()
        members: List[ChannelConfig] = []
        for cfg in raw or []:
            if not isinstance(cfg, dict):
                continue
            cid = cfg.get("channelId")
            lang = cfg.get("language")
            if cid is None or not lang:
                continue
            cid = str(cid)
            # channel ids are unique within a group; first entry wins
            if cid in seen:
                continue
            seen.add(cid)
            members.append(ChannelConfig(channel_id=cid, language=str(lang)))
        return members

    def resolve(self, server_id: str, channel_id: str) -> List[SyncGroup]:
        server = self.snapshot.get(str(server_id))
        if not isinstance(server, dict):
            return []

        groups: List[SyncGroup] = []
        for group_id, raw in server.items():
            members = self._members(raw)
            if any(m.channel_id == str(channel_id) for m in members):
                groups.append(
                    SyncGroup(server_id=str(server_id), group_id=str(group_id), members=members)
                )
        return groups

    def channel_language(self, server_id: str, channel_id: str) -> Optional[str]:
        """Language of the first group entry naming this channel."""
        server = self.snapshot.get(str(server_id))
        if not isinstance(server, dict):
            return None
        for raw in server.values():
            for m in self._members(raw):
                if m.channel_id == str(channel_id):
                    return m.language
        return None

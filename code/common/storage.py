# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from common.errors import StorageError

logger = logging.getLogger("babelcord.storage")

# serverId -> groupId -> [{"channelId": ..., "language": ...}]
Snapshot = Dict[str, Dict[str, List[dict]]]


class SyncStorage:
    """
    Flat JSON file mapping server -> sync group -> member channels.

    The relay pipeline only calls load(); everything that mutates the file is
    driven by the admin slash commands.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def load(self) -> Snapshot:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt sync storage {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Corrupt sync storage {self.path}: top level is not an object")
        return data

    def save(self, data: Snapshot) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".sync-", suffix=".json"
            )
        except OSError as e:
            raise StorageError(f"Failed to save sync storage: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise StorageError(f"Failed to save sync storage: {e}") from e
        logger.debug("Sync storage saved to %s", self.path)

    # ---------- admin mutations ----------
    def add_channel(
        self, server_id: str, group_id: str, channel_id: str, language: str
    ) -> None:
        data = self.load()
        members = data.setdefault(str(server_id), {}).setdefault(str(group_id), [])
        entry = {"channelId": str(channel_id), "language": language.lower()}

        for i, cfg in enumerate(members):
            if str(cfg.get("channelId")) == str(channel_id):
                members[i] = entry
                break
        else:
            members.append(entry)

        self.save(data)

    def remove_channel(self, server_id: str, group_id: str, channel_id: str) -> bool:
        data = self.load()
        server = data.get(str(server_id))
        if not server or str(group_id) not in server:
            return False

        before = len(server[str(group_id)])
        server[str(group_id)] = [
            cfg for cfg in server[str(group_id)]
            if str(cfg.get("channelId")) != str(channel_id)
        ]
        removed = len(server[str(group_id)]) < before

        if not server[str(group_id)]:
            del server[str(group_id)]
        if not server:
            del data[str(server_id)]

        if removed:
            self.save(data)
        return removed

    def clear(self) -> None:
        self.save({})

    # ---------- read helpers ----------
    def groups(self, server_id: str) -> list[str]:
        return list(self.load().get(str(server_id), {}).keys())

    def channels(self, server_id: str, group_id: str) -> list[dict]:
        return list(self.load().get(str(server_id), {}).get(str(group_id), []))

    def channel_language(self, server_id: str, channel_id: str) -> Optional[str]:
        for members in self.load().get(str(server_id), {}).values():
            for cfg in members:
                if str(cfg.get("channelId")) == str(channel_id):
                    return cfg.get("language")
        return None

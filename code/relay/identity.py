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
import io
import logging
import os
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from PIL import Image, UnidentifiedImageError

from relay.models import Author, UserProfile
from relay.platform import ChatPlatform
from relay.scheduler import ScheduledTask, schedule

logger = logging.getLogger("babelcord.identity")

_FORMAT_EXT = {"PNG": ".png", "JPEG": ".jpg", "GIF": ".gif", "WEBP": ".webp"}
_TS_RE = re.compile(r"_(\d{13})\.[a-z]+$")


async def delete_file(path: str) -> bool:
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, os.remove, path)
    except FileNotFoundError:
        logger.debug("Avatar file already gone: %s", path)
        return False
    logger.debug("Deleted avatar file %s", path)
    return True


class AvatarReferences:
    """
    Reference counts for downloaded avatar files.

    A file is deleted only after its count drops to zero and a short grace
    window passes without a new reference arriving.
    """

    def __init__(
        self,
        grace_seconds: float = 1.0,
        deleter: Callable[[str], Awaitable[bool]] = delete_file,
    ):
        self.grace_seconds = grace_seconds
        self._delete = deleter
        self._counts: Dict[str, int] = {}
        self._scheduled: Dict[str, ScheduledTask] = {}

    def count(self, path: str) -> int:
        return self._counts.get(path, 0)

    def is_scheduled(self, path: str) -> bool:
        h = self._scheduled.get(path)
        return bool(h and not h.done())

    def add_reference(self, path: Optional[str], n: int = 1) -> None:
        if not path or n <= 0:
            return
        self._counts[path] = self._counts.get(path, 0) + n

        pending = self._scheduled.pop(path, None)
        if pending and pending.cancel():
            logger.debug("Cancelled scheduled cleanup for %s", path)

        logger.debug("Added %d reference(s) for %s (count: %d)", n, path, self._counts[path])

    def remove_reference(self, path: Optional[str]) -> None:
        if not path:
            return
        current = self._counts.get(path, 0)
        if current <= 0:
            logger.debug("remove_reference on untracked avatar %s; ignoring", path)
            return

        if current == 1:
            del self._counts[path]
            self._schedule_delete(path)
        else:
            self._counts[path] = current - 1
            logger.debug("Removed reference for %s (count: %d)", path, current - 1)

    def discard(self, path: Optional[str]) -> None:
        """Schedule deletion of a file nobody ever referenced."""
        if path and self._counts.get(path, 0) == 0:
            self._schedule_delete(path)

    def _schedule_delete(self, path: str) -> None:
        async def _fire():
            if self._counts.get(path, 0) > 0:
                return
            self._scheduled.pop(path, None)
            try:
                await self._delete(path)
            except OSError as e:
                logger.warning("[⚠️] Failed to clean up avatar file %s: %s", path, e)

        old = self._scheduled.pop(path, None)
        if old:
            old.cancel()
        self._scheduled[path] = schedule(
            _fire, self.grace_seconds, name=f"avatar-cleanup:{os.path.basename(path)}"
        )
        logger.debug("Scheduled cleanup for %s in %.1fs", path, self.grace_seconds)

    async def force_cleanup(self, path: str) -> bool:
        pending = self._scheduled.pop(path, None)
        if pending:
            pending.cancel()
        self._counts.pop(path, None)
        try:
            return bool(await self._delete(path))
        except OSError as e:
            logger.error("[⛔] Force cleanup failed for %s: %s", path, e)
            return False

    async def cleanup_all(self) -> None:
        """Best-effort deletion of every tracked or pending file (shutdown)."""
        paths = set(self._counts) | set(self._scheduled)
        for h in self._scheduled.values():
            h.cancel()
        self._scheduled.clear()
        self._counts.clear()
        if not paths:
            return
        logger.info("[🧹] Emergency cleanup of %d avatar file(s)", len(paths))
        results = await asyncio.gather(
            *(self._delete(p) for p in paths), return_exceptions=True
        )
        for p, r in zip(paths, results):
            if isinstance(r, Exception):
                logger.warning("[⚠️] Avatar cleanup failed for %s: %s", p, r)

    def stats(self) -> dict:
        return {
            "pending_files": len(self._counts),
            "scheduled_cleanups": sum(1 for h in self._scheduled.values() if not h.done()),
            "files": sorted(self._counts),
        }


class IdentityProjector:
    def __init__(
        self,
        platform: ChatPlatform,
        references: AvatarReferences,
        avatar_dir: str | os.PathLike = "./tmp/pfp",
    ):
        self.platform = platform
        self.references = references
        self.avatar_dir = Path(avatar_dir)

    async def project(self, author: Author) -> UserProfile:
        """Never raises: a failed download just leaves local_avatar_path unset."""
        display_name = (author.display_name or "").strip() or author.username
        local_path = None

        if author.avatar_url:
            try:
                local_path = await self._download(author)
            except Exception as e:
                logger.warning(
                    "[⚠️] Failed to download avatar for %s: %s", author.username, e
                )

        return UserProfile(
            username=author.username,
            display_name=display_name,
            avatar_url=author.avatar_url,
            local_avatar_path=local_path,
        )

    @staticmethod
    def _extension(data: bytes) -> str:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return _FORMAT_EXT.get((img.format or "").upper(), ".png")
        except UnidentifiedImageError:
            return ".png"

    @staticmethod
    def _filename(user_id: str, username: str, ext: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9_-]", "_", username or "user")
        return f"{user_id}_{safe}_{int(time.time() * 1000)}{ext}"

    async def _download(self, author: Author) -> str:
        data = await self.platform.download_attachment(author.avatar_url)
        if not data:
            raise ValueError("empty avatar payload")

        path = self.avatar_dir / self._filename(author.id, author.username, self._extension(data))

        def _write():
            self.avatar_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        def _unlink():
            path.unlink(missing_ok=True)

        def _orphaned(fut: asyncio.Future):
            if not fut.cancelled() and fut.exception() is None:
                loop.run_in_executor(None, _unlink)

        loop = asyncio.get_running_loop()
        write = loop.run_in_executor(None, _write)
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # the thread still finishes the write; nobody will reference the file
            write.add_done_callback(_orphaned)
            raise
        logger.debug("Avatar downloaded to %s", path)
        return str(path)

    def cleanup_old_avatars(self, max_age_hours: float = 24) -> int:
        """Remove leftovers (e.g. from a crash) older than max_age_hours."""
        if not self.avatar_dir.is_dir():
            return 0
        cutoff = (time.time() - max_age_hours * 3600) * 1000
        removed = 0
        for f in self.avatar_dir.iterdir():
            m = _TS_RE.search(f.name)
            if not m or int(m.group(1)) >= cutoff:
                continue
            if self.references.count(str(f)) > 0:
                continue
            try:
                f.unlink()
                removed += 1
            except OSError as e:
                logger.warning("[⚠️] Could not remove old avatar %s: %s", f, e)
        if removed:
            logger.info("[🧹] Removed %d stale avatar file(s)", removed)
        return removed

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
import heapq
import itertools
import logging
from typing import Dict, List, Optional

from common.errors import DeliveryError
from relay.emojis import EmojiBridge
from relay.identity import AvatarReferences
from relay.models import EmojiCloneRecord, QueuedDelivery
from relay.platform import ChatPlatform

logger = logging.getLogger("babelcord.delivery")


class Slot:
    """
    A position in a DeliveryQueue, ordered by source timestamp.

    Slots created by reserve() hold the line until fulfil() hands over the
    translated delivery; the queue never sends past an unfilled slot.
    """

    __slots__ = ("queue", "delivery_id", "timestamp", "delivery", "cancelled")

    def __init__(self, queue: "DeliveryQueue", delivery_id: str, timestamp: float):
        self.queue = queue
        self.delivery_id = delivery_id
        self.timestamp = timestamp
        self.delivery: Optional[QueuedDelivery] = None
        self.cancelled = False

    @property
    def ready(self) -> bool:
        return self.delivery is not None or self.cancelled

    def fulfil(self, delivery: QueuedDelivery) -> None:
        if self.ready:
            raise RuntimeError(f"slot {self.delivery_id} already settled")
        self.delivery = delivery
        self.queue._wake()

    def cancel(self) -> None:
        if self.ready:
            return
        self.cancelled = True
        self.queue._wake()


class DeliveryQueue:
    """
    Sequential, timestamp-ordered sender for one destination channel.

    Idle -> Draining -> Idle. Sends are strictly one at a time and in
    non-decreasing source timestamp order; a failed send is logged and the
    rest of the backlog keeps draining.
    """

    def __init__(
        self,
        channel_id: str,
        platform: ChatPlatform,
        emojis: Optional[EmojiBridge],
        references: Optional[AvatarReferences],
    ):
        self.channel_id = str(channel_id)
        self.platform = platform
        self.emojis = emojis
        self.references = references

        self._heap: List[tuple] = []
        self._seq = itertools.count()
        self._task: Optional[asyncio.Task] = None
        self._changed = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._target_guild_id: Optional[str] = None
        self.sent = 0
        self.failed = 0

    # ---------- state ----------
    def __len__(self) -> int:
        return len(self._heap)

    @property
    def processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def _wake(self) -> None:
        self._changed.set()
        self._kick()

    def _kick(self) -> None:
        if self._heap and not self.processing:
            self._idle.clear()
            self._task = asyncio.create_task(
                self._drain(), name=f"delivery:{self.channel_id}"
            )

    async def wait_idle(self) -> None:
        await self._idle.wait()

    # ---------- producers ----------
    def reserve(self, delivery_id: str, timestamp: float) -> Slot:
        slot = Slot(self, delivery_id, float(timestamp))
        heapq.heappush(self._heap, (slot.timestamp, next(self._seq), slot))
        self._wake()
        return slot

    def enqueue(self, delivery: QueuedDelivery) -> Slot:
        slot = Slot(self, delivery.id, float(delivery.timestamp_of_source))
        slot.delivery = delivery
        heapq.heappush(self._heap, (slot.timestamp, next(self._seq), slot))
        logger.debug(
            "Queued delivery %s",
            delivery.id,
            extra={"channel_id": self.channel_id, "queue_length": len(self._heap)},
        )
        self._wake()
        return slot

    # ---------- consumer ----------
    async def _drain(self) -> None:
        cancelled = False
        try:
            while self._heap:
                _, _, head = self._heap[0]
                if not head.ready:
                    self._changed.clear()
                    await self._changed.wait()
                    continue

                heapq.heappop(self._heap)
                if head.cancelled:
                    continue

                try:
                    await self._send(head.delivery)
                    self.sent += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failed += 1
                    logger.error(
                        "[⛔] Failed to deliver %s: %s",
                        head.delivery.id,
                        e,
                        extra={"channel_id": self.channel_id},
                    )
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            self._task = None
            if self._heap and not cancelled:
                self._kick()
            else:
                self._idle.set()

    async def _target_guild(self) -> Optional[str]:
        if self._target_guild_id is None:
            info = await self.platform.fetch_channel(self.channel_id)
            self._target_guild_id = info.guild_id if info else None
        return self._target_guild_id

    @staticmethod
    def _plain_text(delivery: QueuedDelivery, text: str) -> str:
        if delivery.source_channel_name:
            origin = f"#{delivery.source_channel_name}"
        elif delivery.source_channel_id:
            origin = f"<#{delivery.source_channel_id}>"
        else:
            origin = "another channel"
        return f"**{delivery.user_profile.display_name}** (from {origin}):\n{text}"

    async def _send(self, delivery: QueuedDelivery) -> None:
        profile = delivery.user_profile
        records: List[EmojiCloneRecord] = []
        try:
            text = delivery.translated_text
            if self.emojis is not None and EmojiBridge.has_custom_emoji(text):
                try:
                    text, records = await self.emojis.bridge(
                        text, delivery.source_guild_id, await self._target_guild()
                    )
                except Exception as e:
                    logger.warning("[⚠️] Emoji bridging failed, sending as-is: %s", e)

            try:
                await self.platform.send_impersonated(
                    self.channel_id,
                    text,
                    profile.display_name,
                    avatar_url=profile.avatar_url,
                    avatar_path=profile.local_avatar_path,
                )
                logger.info(
                    "[💬] Delivered %s translation from %s",
                    delivery.target_language,
                    profile.display_name,
                    extra={"channel_id": self.channel_id, "message_id": delivery.id},
                )
                return
            except Exception as e:
                logger.warning(
                    "[⚠️] Impersonated send failed, falling back to plain post: %s",
                    e,
                    extra={"channel_id": self.channel_id},
                )

            try:
                await self.platform.send_plain(self.channel_id, self._plain_text(delivery, text))
            except DeliveryError:
                raise
            except Exception as e:
                raise DeliveryError(f"plain send to {self.channel_id} failed: {e}") from e
            logger.info(
                "[💬] Delivered %s translation from %s (plain)",
                delivery.target_language,
                profile.display_name,
                extra={"channel_id": self.channel_id, "message_id": delivery.id},
            )
        finally:
            if self.emojis is not None and records:
                self.emojis.schedule_cleanup(records)
            if self.references is not None:
                self.references.remove_reference(profile.local_avatar_path)


class DeliveryQueueManager:
    """Owns one DeliveryQueue per destination channel."""

    def __init__(
        self,
        platform: ChatPlatform,
        emojis: Optional[EmojiBridge] = None,
        references: Optional[AvatarReferences] = None,
    ):
        self.platform = platform
        self.emojis = emojis
        self.references = references
        self._queues: Dict[str, DeliveryQueue] = {}

    def queue_for(self, channel_id: str) -> DeliveryQueue:
        q = self._queues.get(str(channel_id))
        if q is None:
            q = DeliveryQueue(str(channel_id), self.platform, self.emojis, self.references)
            self._queues[str(channel_id)] = q
        return q

    def reserve(self, channel_id: str, delivery_id: str, timestamp: float) -> Slot:
        return self.queue_for(channel_id).reserve(delivery_id, timestamp)

    def enqueue(self, delivery: QueuedDelivery) -> Slot:
        return self.queue_for(delivery.target_channel_id).enqueue(delivery)

    def stats(self) -> dict:
        return {
            cid: {"length": len(q), "processing": q.processing}
            for cid, q in self._queues.items()
        }

    async def drain_all(self, timeout: Optional[float] = None) -> None:
        waits = [q.wait_idle() for q in self._queues.values()]
        if waits:
            await asyncio.wait_for(asyncio.gather(*waits), timeout)

    def clear(self) -> None:
        self._queues.clear()

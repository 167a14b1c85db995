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
from typing import List, Optional, Sequence, Tuple

from common.errors import StorageError, TranslationError, ValidationError
from common.logging_setup import guild_scope, message_scope
from common.storage import SyncStorage
from relay.delivery import DeliveryQueueManager, Slot
from relay.groups import GroupResolver
from relay.identity import AvatarReferences, IdentityProjector
from relay.models import ChannelConfig, ContextMessage, IncomingMessage, QueuedDelivery, UserProfile
from relay.platform import ChatPlatform
from relay.translation import TranslationOrchestrator

logger = logging.getLogger("babelcord.coordinator")

UNTRANSLATED_PREFIX = "[Untranslated]"
FALLBACK_MARKER = "\n-# machine translated"


class SyncCoordinator:
    """
    Fans one incoming message out to every channel it is synced with.

    Messages take turns loading the sync configuration and reserving their
    queue slots, in arrival order and before any translation starts, so a
    later message can never overtake an earlier one in a destination
    channel even when its translation finishes first.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        storage: SyncStorage,
        orchestrator: TranslationOrchestrator,
        identity: IdentityProjector,
        references: AvatarReferences,
        queues: DeliveryQueueManager,
        *,
        context_messages: int = 10,
    ):
        self.platform = platform
        self.storage = storage
        self.orchestrator = orchestrator
        self.identity = identity
        self.references = references
        self.queues = queues
        self.context_messages = context_messages
        self.processed = 0
        self._reserve_lock = asyncio.Lock()

    def _should_ignore(self, msg: IncomingMessage) -> bool:
        if msg.author.bot:
            return True
        bot_id = self.platform.bot_user_id
        if bot_id is not None and str(msg.author.id) == str(bot_id):
            return True
        if not msg.server_id:
            return True
        return not (msg.content or "").strip()

    def _resolver(self) -> GroupResolver:
        return GroupResolver(self.storage.load())

    async def _load_resolver(self) -> GroupResolver:
        loop = asyncio.get_running_loop()
        return GroupResolver(await loop.run_in_executor(None, self.storage.load))

    @staticmethod
    def _targets(msg: IncomingMessage, groups, source_lang: str) -> List[ChannelConfig]:
        """Distinct target channels across all groups; first group wins."""
        seen = {str(msg.channel_id)}
        targets: List[ChannelConfig] = []
        for group in groups:
            for member in group.members:
                if member.channel_id in seen:
                    continue
                seen.add(member.channel_id)
                if member.language.lower() == source_lang.lower():
                    logger.debug(
                        "Skipping %s: already in %s", member.channel_id, source_lang
                    )
                    continue
                targets.append(member)
        return targets

    async def handle_message(self, msg: IncomingMessage) -> int:
        """
        Returns the number of deliveries produced (0 when the message is
        ignored). StorageError propagates so the caller can tell the author.
        """
        if self._should_ignore(msg):
            return 0

        message_scope.set(str(msg.id))
        guild_scope.set(str(msg.server_id))

        async with self._reserve_lock:
            plan = await self._plan(msg)
        if plan is None:
            return 0
        source_lang, targets, slots = plan

        logger.info(
            "[🌐] Message from %s in %s fans out to %d channel(s)",
            msg.author.username,
            msg.channel_id,
            len(targets),
            extra={"message_id": msg.id, "channel_id": msg.channel_id},
        )

        profile: Optional[UserProfile] = None
        try:
            try:
                profile = await self.identity.project(msg.author)
            except Exception as e:
                logger.warning("[⚠️] Identity projection failed, using bare profile: %s", e)
                profile = UserProfile(
                    username=msg.author.username,
                    display_name=msg.author.display_name or msg.author.username,
                    avatar_url=msg.author.avatar_url,
                )
            self.references.add_reference(profile.local_avatar_path, len(targets))

            context = await self._context(msg)

            await asyncio.gather(
                *(
                    self._translate_into(msg, source_lang, target, slot, profile, context)
                    for target, slot in zip(targets, slots)
                )
            )
        finally:
            # only reached with unsettled slots when the handler was cancelled
            for slot in slots:
                if not slot.ready:
                    slot.cancel()
                    if profile is not None:
                        self.references.remove_reference(profile.local_avatar_path)

        self.processed += 1
        return len(targets)

    async def _plan(
        self, msg: IncomingMessage
    ) -> Optional[Tuple[str, List[ChannelConfig], List[Slot]]]:
        try:
            resolver = await self._load_resolver()
        except StorageError as e:
            logger.error("[⛔] Could not load sync configuration: %s", e)
            raise

        source_lang = resolver.channel_language(msg.server_id, msg.channel_id)
        if not source_lang:
            return None

        groups = resolver.resolve(msg.server_id, msg.channel_id)
        if not groups:
            return None

        targets = self._targets(msg, groups, source_lang)
        if not targets:
            return None

        timestamp = msg.created_at.timestamp()
        slots = [
            self.queues.reserve(t.channel_id, f"{msg.id}_{t.channel_id}", timestamp)
            for t in targets
        ]
        return source_lang, targets, slots

    async def _context(self, msg: IncomingMessage) -> List[ContextMessage]:
        if self.context_messages <= 0:
            return []
        try:
            return await self.platform.fetch_recent_messages(
                msg.channel_id, self.context_messages, before_message_id=msg.id
            )
        except Exception as e:
            logger.warning("[⚠️] Could not fetch context for %s: %s", msg.id, e)
            return []

    async def _translate_into(
        self,
        msg: IncomingMessage,
        source_lang: str,
        target: ChannelConfig,
        slot: Slot,
        profile: UserProfile,
        context: Sequence[ContextMessage],
    ) -> None:
        text: Optional[str] = None
        try:
            result = await self.orchestrator.translate(
                msg.content,
                source_lang,
                target.language,
                context,
                message_id=msg.id,
            )
            text = result.translated_text
            if result.fallback_used:
                text += FALLBACK_MARKER
        except (TranslationError, ValidationError) as e:
            logger.error(
                "[⛔] Translation to %s failed, delivering original: %s",
                target.language,
                e,
                extra={"message_id": msg.id, "target_language": target.language},
            )
        except Exception:
            logger.exception("[⛔] Unexpected error translating to %s", target.language)
        finally:
            if text is None:
                text = f"{UNTRANSLATED_PREFIX} {msg.content}"
            slot.fulfil(
                QueuedDelivery(
                    id=slot.delivery_id,
                    target_channel_id=target.channel_id,
                    target_language=target.language,
                    translated_text=text,
                    timestamp_of_source=slot.timestamp,
                    user_profile=profile,
                    source_guild_id=msg.server_id,
                    source_channel_id=msg.channel_id,
                    source_channel_name=msg.channel_name,
                )
            )

    def sync_status(self, server_id: str, channel_id: str) -> dict:
        resolver = self._resolver()
        language = resolver.channel_language(server_id, channel_id)
        return {
            "is_synced": language is not None,
            "language": language,
            "groups": [g.group_id for g in resolver.resolve(server_id, channel_id)],
        }

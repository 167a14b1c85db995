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
import contextlib
import logging
import signal
from typing import Any, Coroutine, Optional

import aiohttp
import discord
import uvicorn
from discord.errors import Forbidden, HTTPException

from admin.app import create_app
from common.config import CURRENT_VERSION, Config
from common.errors import StorageError
from common.logging_setup import configure_app_logging
from common.rate_limiter import RateLimitManager
from common.storage import SyncStorage
from relay.coordinator import SyncCoordinator
from relay.delivery import DeliveryQueueManager
from relay.discord_hooks import install_discord_rl_hook
from relay.discord_platform import DiscordPlatform, to_incoming
from relay.emojis import EmojiBridge
from relay.identity import AvatarReferences, IdentityProjector
from relay.translation import TranslationOrchestrator
from relay.translators import GoogleTranslator, MistralTranslator
from relay.webhooks import WebhookRegistry

logger = logging.getLogger("babelcord.relay")

MAINTENANCE_INTERVAL = 3600
DRAIN_TIMEOUT = 10.0


class _AdminServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the bot."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class RelayBot:
    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config(logger=logger)
        intents = discord.Intents.default()
        intents.guilds = True
        intents.messages = True
        intents.message_content = True
        self.bot = discord.Bot(intents=intents)
        self.bot.relay = self

        self.session: Optional[aiohttp.ClientSession] = None
        self.ratelimit = RateLimitManager()
        self.storage = SyncStorage(self.config.SYNC_STORAGE_PATH)
        self.webhooks = WebhookRegistry(
            self.bot,
            self.ratelimit,
            name=self.config.WEBHOOK_NAME,
            ttl=self.config.WEBHOOK_META_TTL,
        )
        self.platform = DiscordPlatform(self.bot, self.ratelimit, self.webhooks)
        self.references = AvatarReferences(grace_seconds=self.config.AVATAR_GRACE_SECONDS)
        self.identity = IdentityProjector(self.platform, self.references, self.config.AVATAR_DIR)
        self.emojis = EmojiBridge(
            self.platform,
            cleanup_delay=self.config.EMOJI_CLEANUP_DELAY_SECONDS,
            temp_prefix=self.config.TEMP_EMOJI_PREFIX,
        )
        self.queues = DeliveryQueueManager(self.platform, self.emojis, self.references)

        self.primary = MistralTranslator(
            self.config.MISTRAL_API_KEY,
            model=self.config.MISTRAL_MODEL,
            api_url=self.config.MISTRAL_API_URL,
            max_context=self.config.TRANSLATE_CONTEXT_MESSAGES,
            timeout=self.config.TRANSLATE_TIMEOUT_SECONDS,
        )
        self.secondary = GoogleTranslator(
            api_url=self.config.GOOGLE_TRANSLATE_URL,
            timeout=self.config.TRANSLATE_TIMEOUT_SECONDS,
        )
        self.orchestrator = TranslationOrchestrator.from_config(
            self.config, self.primary, self.secondary
        )
        self.coordinator = SyncCoordinator(
            self.platform,
            self.storage,
            self.orchestrator,
            self.identity,
            self.references,
            self.queues,
            context_messages=self.config.TRANSLATE_CONTEXT_MESSAGES,
        )

        self._tasks: set[asyncio.Task] = set()
        self._maintenance_task: asyncio.Task | None = None
        self._admin: _AdminServer | None = None
        self._admin_task: asyncio.Task | None = None
        self._shutting_down = False

        install_discord_rl_hook(self.ratelimit)
        if not self.config.MISTRAL_API_KEY:
            logger.warning("[⚠️] MISTRAL_API_KEY is not set; every message will use the fallback translator")

        self.bot.event(self.on_ready)
        self.bot.event(self.on_message)

        orig_on_connect = self.bot.on_connect

        async def _command_sync():
            try:
                await orig_on_connect()
            except Forbidden as e:
                logger.warning("[⚠️] Can't sync slash commands: %s", e)

        self.bot.on_connect = _command_sync
        self.bot.load_extension("commands.commands")

    def _track(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        t = asyncio.create_task(coro, name=name or "relay")
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)
        return t

    async def on_ready(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        self.platform.set_session(self.session)
        self.primary.set_session(self.session)
        self.secondary.set_session(self.session)

        try:
            await self.bot.change_presence(activity=discord.Game(name=f"Babelcord {CURRENT_VERSION}"))
        except Exception as e:
            logger.debug("[⚠️] Failed to update bot status: %s", e)

        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        if self.config.ADMIN_ENABLED and self._admin_task is None:
            self._start_admin()

        logger.info(
            "[🤖] Logged in as %s in %d server(s)", self.bot.user, len(self.bot.guilds)
        )

    async def on_message(self, message: discord.Message):
        if self._shutting_down:
            return
        if message.guild is None or message.webhook_id is not None:
            return
        incoming = to_incoming(message, self.config.AVATAR_SIZE)
        self._track(self._handle(incoming, message), name=f"msg:{message.id}")

    async def _handle(self, incoming, message: discord.Message):
        try:
            await self.coordinator.handle_message(incoming)
        except StorageError:
            try:
                await message.reply(
                    "⚠️ Translation sync settings could not be loaded; this message was not relayed.",
                    mention_author=False,
                )
            except HTTPException as e:
                logger.debug("Could not post storage warning: %s", e)
        except Exception:
            logger.exception("[⛔] Unhandled error relaying message %s", incoming.id)

    async def _maintenance_loop(self):
        try:
            while not self._shutting_down:
                try:
                    self.identity.cleanup_old_avatars(self.config.AVATAR_MAX_AGE_HOURS)
                    self.orchestrator.dumper.cleanup_old_dumps(self.config.LLM_DUMP_MAX_AGE_HOURS)
                    await self.webhooks.prune()
                except Exception:
                    logger.exception("[⛔] Maintenance pass failed")
                await asyncio.sleep(MAINTENANCE_INTERVAL)
        except asyncio.CancelledError:
            pass

    def _start_admin(self):
        app = create_app(self.stats, is_ready=self.bot.is_ready)
        self._admin = _AdminServer(
            uvicorn.Config(
                app,
                host=self.config.ADMIN_HOST,
                port=self.config.ADMIN_PORT,
                log_level="warning",
            )
        )
        self._admin_task = asyncio.create_task(self._admin.serve())
        logger.info(
            "[🌐] Status endpoint on http://%s:%s", self.config.ADMIN_HOST, self.config.ADMIN_PORT
        )

    def stats(self) -> dict:
        dispatcher = self.orchestrator.dispatcher
        return {
            "processed": self.coordinator.processed,
            "queues": self.queues.stats(),
            "webhooks": self.webhooks.stats(),
            "emojis": self.emojis.stats(),
            "avatars": self.references.stats(),
            "llm_dumps": self.orchestrator.dumper.stats(),
            "translator": {
                "pending": dispatcher.pending(),
                "dispatched": dispatcher.dispatched,
            },
        }

    async def _shutdown(self):
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down Babelcord...")

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        with contextlib.suppress(asyncio.TimeoutError):
            await self.queues.drain_all(timeout=DRAIN_TIMEOUT)

        try:
            removed = await self.emojis.cleanup_all()
            if removed:
                logger.info("[🧹] Removed %d temporary emoji(s) on shutdown", removed)
        except Exception:
            logger.exception("[⛔] Emoji cleanup failed during shutdown")

        try:
            await self.references.cleanup_all()
        except Exception:
            logger.debug("[shutdown] avatar cleanup failed", exc_info=True)

        self.webhooks.clear()
        self.queues.clear()

        async def _cancel_and_wait(task, name: str):
            if not task:
                return
            try:
                task.cancel()
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("[shutdown] %s task error during cancel/wait", name, exc_info=True)

        await _cancel_and_wait(self._maintenance_task, "maintenance")
        if self._admin is not None:
            self._admin.should_exit = True
            with contextlib.suppress(Exception, asyncio.TimeoutError):
                await asyncio.wait_for(self._admin_task, 5)

        await self.orchestrator.close()

        try:
            if self.session and not self.session.closed:
                await self.session.close()
        except Exception:
            logger.debug("[shutdown] aiohttp session close failed", exc_info=True)

        try:
            if not self.bot.is_closed():
                await self.bot.close()
        except Exception:
            logger.debug("[shutdown] bot close failed", exc_info=True)

        logger.info("Shutdown complete.")

    def run(self):
        """
        Start the bot on a fresh event loop; SIGTERM/SIGINT run the
        shutdown sequence before the loop stops.
        """
        if not self.config.DISCORD_TOKEN:
            raise SystemExit("DISCORD_TOKEN is not set")

        logger.info("[✨] Starting Babelcord %s", CURRENT_VERSION)
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))

        try:
            loop.run_until_complete(self.bot.start(self.config.DISCORD_TOKEN))
        finally:
            if not self._shutting_down:
                loop.run_until_complete(self._shutdown())
            pending = asyncio.all_tasks(loop=loop)
            for task in pending:
                task.cancel()
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()


def main():
    configure_app_logging()
    RelayBot().run()


if __name__ == "__main__":
    main()

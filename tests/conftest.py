"""
Shared fixtures for the Babelcord test-suite.

FakePlatform is an in-memory ChatPlatform; the fake translators can be
scripted to fail, time out or answer with a delay per text.
"""
import asyncio
import io
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from PIL import Image

from common.config import Config
from common.errors import DeliveryError, ResourceUnavailableError, TranslationProviderError
from common.rate_limiter import OrderedDispatcher
from relay.models import Author, ContextMessage, IncomingMessage
from relay.platform import ChannelInfo, ChatPlatform, EmojiInfo, GuildEmojis
from relay.translation import AuditDumper, TranslationOrchestrator


def png_bytes(size: int = 4) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (size, size), (255, 0, 0, 255)).save(buf, format="PNG")
    return buf.getvalue()


class FakePlatform(ChatPlatform):
    def __init__(self, bot_id: str = "999"):
        self._bot_id = bot_id
        self.guilds: Dict[str, GuildEmojis] = {}
        self.channels: Dict[str, ChannelInfo] = {}
        self.external: Dict[str, EmojiInfo] = {}
        self.history: Dict[str, List[ContextMessage]] = {}
        self.sent: List[dict] = []
        self.cloned: List[EmojiInfo] = []
        self.deleted: List[tuple] = []
        self.fail_impersonated: set = set()
        self.fail_plain: set = set()
        self.clone_error: Optional[Exception] = None
        self.avatar_bytes: Optional[bytes] = png_bytes()
        self.download_error: Optional[Exception] = None
        self.send_delay = 0.0
        self.in_flight: Dict[str, int] = {}
        self.overlaps = 0
        self._next_id = 900000

    # helpers for tests
    def add_channel(self, channel_id: str, guild_id: str, name: str = "chan"):
        self.channels[channel_id] = ChannelInfo(id=channel_id, name=name, guild_id=guild_id)

    def add_guild(self, guild_id: str, emojis=(), *, can_manage: bool = True, limit: int = 50):
        self.guilds[guild_id] = GuildEmojis(
            guild_id=guild_id, emojis=list(emojis), limit=limit, can_manage=can_manage
        )

    def texts(self, channel_id: str) -> List[str]:
        return [s["text"] for s in self.sent if s["channel_id"] == channel_id]

    @property
    def bot_user_id(self) -> Optional[str]:
        return self._bot_id

    async def _send(self, record: dict):
        cid = record["channel_id"]
        self.in_flight[cid] = self.in_flight.get(cid, 0) + 1
        if self.in_flight[cid] > 1:
            self.overlaps += 1
        try:
            if self.send_delay:
                await asyncio.sleep(self.send_delay)
            record["at"] = time.monotonic()
            self.sent.append(record)
        finally:
            self.in_flight[cid] -= 1

    async def send_plain(self, channel_id: str, text: str) -> None:
        if channel_id in self.fail_plain:
            raise DeliveryError("plain send failed")
        await self._send({"kind": "plain", "channel_id": channel_id, "text": text})

    async def send_impersonated(
        self, channel_id, text, display_name, avatar_url=None, avatar_path=None
    ) -> None:
        if channel_id in self.fail_impersonated:
            raise DeliveryError("webhook send failed")
        await self._send(
            {
                "kind": "webhook",
                "channel_id": channel_id,
                "text": text,
                "display_name": display_name,
                "avatar_url": avatar_url,
                "avatar_path": avatar_path,
            }
        )

    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        return self.channels.get(channel_id)

    async def fetch_guild_emojis(self, guild_id: str) -> Optional[GuildEmojis]:
        g = self.guilds.get(guild_id)
        if g is None:
            return None
        return GuildEmojis(g.guild_id, list(g.emojis), g.limit, g.can_manage)

    async def fetch_external_emoji(self, emoji_id, name, animated) -> Optional[EmojiInfo]:
        return self.external.get(emoji_id)

    async def clone_emoji(self, guild_id: str, source_image_url: str, name: str) -> EmojiInfo:
        if self.clone_error is not None:
            raise self.clone_error
        self._next_id += 1
        animated = source_image_url.endswith(".gif")
        emoji = EmojiInfo(id=str(self._next_id), name=name, animated=animated, url=source_image_url)
        self.guilds[guild_id].emojis.append(emoji)
        self.cloned.append(emoji)
        return emoji

    async def delete_emoji(self, guild_id: str, emoji_id: str) -> None:
        g = self.guilds[guild_id]
        g.emojis = [e for e in g.emojis if e.id != emoji_id]
        self.deleted.append((guild_id, emoji_id))

    async def download_attachment(self, url: str) -> bytes:
        if self.download_error is not None:
            raise self.download_error
        if self.avatar_bytes is None:
            raise ResourceUnavailableError("no avatar")
        return self.avatar_bytes

    async def fetch_recent_messages(self, channel_id, limit, before_message_id=None):
        return list(self.history.get(channel_id, []))[-limit:]


class FakePrimary:
    """Context-aware translator stand-in. ``table`` maps (text, target) -> output."""

    name = "fake-llm"
    max_length = 4000

    def __init__(self, table=None, *, fail_times: int = 0, error=None, delays=None):
        self.table = dict(table or {})
        self.fail_times = fail_times
        self.error = error or TranslationProviderError("primary down")
        self.delays = dict(delays or {})
        self.calls: List[tuple] = []

    def select_context(self, context):
        return [m for m in (context or []) if not m.bot]

    def build_prompt(self, text, source_lang, target_lang, context=None):
        return f"{source_lang}|{target_lang}|{len(context or [])}|{text}"

    async def complete(self, prompt: str) -> str:
        _, target, _, text = prompt.split("|", 3)
        self.calls.append((text, target, time.monotonic()))
        delay = self.delays.get(text, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if self.fail_times:
            self.fail_times -= 1
            raise self.error
        return self.table.get((text, target), f"[{target}] {text}")

    @staticmethod
    def extract(raw: str) -> str:
        return raw.strip()


class FakeSecondary:
    name = "fake-mt"
    max_length = 5000

    def __init__(self, table=None, *, fail: bool = False):
        self.table = dict(table or {})
        self.fail = fail
        self.calls: List[tuple] = []

    async def translate_plain(self, text, source_lang, target_lang):
        self.calls.append((text, target_lang))
        if self.fail:
            raise TranslationProviderError("secondary down")
        return self.table.get((text, target_lang), f"<{target_lang}> {text}")


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


def make_message(
    content: str,
    *,
    message_id: str = "1001",
    channel_id: str = "c-en",
    server_id: Optional[str] = "g1",
    author_id: str = "42",
    bot: bool = False,
    created_at: Optional[datetime] = None,
    avatar_url: Optional[str] = "https://cdn.example/avatar.png",
) -> IncomingMessage:
    return IncomingMessage(
        id=message_id,
        author=Author(
            id=author_id,
            username="alice",
            display_name="Alice",
            avatar_url=avatar_url,
            bot=bot,
        ),
        content=content,
        channel_id=channel_id,
        server_id=server_id,
        created_at=created_at or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        channel_name="general",
    )


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def config(tmp_path):
    return Config(
        overrides={
            "SYNC_STORAGE_PATH": str(tmp_path / "sync.json"),
            "LLM_DUMPS_DIR": str(tmp_path / "dumps"),
            "AVATAR_DIR": str(tmp_path / "pfp"),
            "AVATAR_GRACE_SECONDS": 0.05,
            "EMOJI_CLEANUP_DELAY_SECONDS": 0.05,
            "TRANSLATE_MIN_INTERVAL_SECONDS": 0.0,
            "TRANSLATE_TIMEOUT_SECONDS": 0.2,
            "TRANSLATE_MAX_RETRIES": 2,
        }
    )


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_orchestrator(tmp_path, sleeper):
    def _make(primary=None, secondary=None, *, min_interval=0.0, max_retries=2, timeout=0.2, dumps=False):
        return TranslationOrchestrator(
            primary if primary is not None else FakePrimary(),
            secondary if secondary is not None else FakeSecondary(),
            OrderedDispatcher(min_interval, name="test-primary"),
            max_retries=max_retries,
            timeout=timeout,
            backoff_base=2,
            timeout_backoff_base=3,
            dumper=AuditDumper(tmp_path / "dumps" if dumps else None, model="fake"),
            sleep=sleeper,
        )

    return _make

"""
End-to-end tests for SyncCoordinator against the in-memory platform:
fan-out, rejection rules, untranslated delivery and emoji bridging.
"""
import asyncio
import os
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from common.errors import StorageError
from common.storage import SyncStorage
from relay.coordinator import FALLBACK_MARKER, UNTRANSLATED_PREFIX, SyncCoordinator
from relay.delivery import DeliveryQueue, DeliveryQueueManager
from relay.emojis import EmojiBridge
from relay.identity import AvatarReferences, IdentityProjector
from relay.models import TranslationResult
from relay.platform import EmojiInfo
from tests.conftest import FakePrimary, FakeSecondary, make_message

WAVE = EmojiInfo(id="111", name="wave_custom", url="https://cdn/emojis/111.png")


@pytest.fixture
def relay(platform, config, make_orchestrator, tmp_path):
    def _build(primary=None, secondary=None, orchestrator=None):
        storage = SyncStorage(config.SYNC_STORAGE_PATH)
        storage.add_channel("g1", "lobby", "c-en", "en")
        storage.add_channel("g1", "lobby", "c-es", "es")
        storage.add_channel("g1", "lobby", "c-en2", "EN")
        storage.add_channel("g1", "raid", "c-en", "en")
        storage.add_channel("g1", "raid", "c-fr", "fr")
        storage.add_channel("g1", "raid", "c-es", "es")

        platform.add_channel("c-en", "g1", "general")
        platform.add_channel("c-en2", "g1")
        platform.add_channel("c-fr", "g1")
        platform.add_channel("c-es", "g2")
        platform.add_guild("g1", [WAVE])
        platform.add_guild("g2", [])

        refs = AvatarReferences(grace_seconds=config.AVATAR_GRACE_SECONDS)
        identity = IdentityProjector(platform, refs, config.AVATAR_DIR)
        bridge = EmojiBridge(platform, cleanup_delay=config.EMOJI_CLEANUP_DELAY_SECONDS)
        queues = DeliveryQueueManager(platform, bridge, refs)
        orch = orchestrator or make_orchestrator(primary or FakePrimary(), secondary or FakeSecondary())
        coordinator = SyncCoordinator(platform, storage, orch, identity, refs, queues)
        return SimpleNamespace(
            coordinator=coordinator, storage=storage, refs=refs, queues=queues, bridge=bridge
        )

    return _build


@pytest.fixture
def captured(monkeypatch):
    seen = []
    original = DeliveryQueue._send

    async def spy(self, delivery):
        seen.append(delivery)
        await original(self, delivery)

    monkeypatch.setattr(DeliveryQueue, "_send", spy)
    return seen


@pytest.mark.asyncio
async def test_one_delivery_per_distinct_target_with_source_timestamp(platform, relay, captured):
    r = relay()
    msg = make_message("Hello")

    produced = await r.coordinator.handle_message(msg)
    await r.queues.drain_all(timeout=2)

    assert produced == 2
    assert sorted(d.target_channel_id for d in captured) == ["c-es", "c-fr"]
    assert all(d.timestamp_of_source == msg.created_at.timestamp() for d in captured)
    assert {d.id for d in captured} == {"1001_c-es", "1001_c-fr"}
    assert platform.texts("c-es") == ["[es] Hello"]
    assert platform.texts("c-fr") == ["[fr] Hello"]
    assert platform.texts("c-en2") == []


@pytest.mark.asyncio
async def test_emoji_only_in_source_guild_is_cloned_and_cleaned(platform, relay, config):
    primary = FakePrimary({("Hello <:wave_custom:111>", "es"): "Hola <:wave_custom:111>"})
    r = relay(primary=primary)

    await r.coordinator.handle_message(make_message("Hello <:wave_custom:111>"))
    await r.queues.drain_all(timeout=2)

    [sent] = [s for s in platform.sent if s["channel_id"] == "c-es"]
    [clone] = platform.cloned
    assert sent["text"] == f"Hola <:{clone.name}:{clone.id}>"
    assert clone.name.startswith("temp_wave_custom_")
    # c-fr lives in the source guild and reuses the original emoji
    assert platform.texts("c-fr") == ["[fr] Hello <:wave_custom:111>"]

    assert r.bridge.is_temporary(clone.id, "g2")
    await asyncio.sleep(config.EMOJI_CLEANUP_DELAY_SECONDS + 0.05)
    assert platform.deleted == [("g2", clone.id)]
    assert not r.bridge.is_temporary(clone.id, "g2")


@pytest.mark.asyncio
async def test_translation_failure_delivers_annotated_original(platform, relay):
    r = relay(primary=FakePrimary(fail_times=99), secondary=FakeSecondary(fail=True))

    await r.coordinator.handle_message(make_message("Hello"))
    await r.queues.drain_all(timeout=2)

    assert platform.texts("c-es") == [f"{UNTRANSLATED_PREFIX} Hello"]
    assert platform.texts("c-fr") == [f"{UNTRANSLATED_PREFIX} Hello"]


@pytest.mark.asyncio
async def test_fallback_translation_carries_marker(platform, relay):
    r = relay(primary=FakePrimary(fail_times=99), secondary=FakeSecondary({("Hello", "es"): "Hola"}))

    await r.coordinator.handle_message(make_message("Hello"))
    await r.queues.drain_all(timeout=2)

    assert platform.texts("c-es") == ["Hola" + FALLBACK_MARKER]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": "Hello", "bot": True},
        {"content": "Hello", "author_id": "999"},
        {"content": "   "},
        {"content": ""},
        {"content": "Hello", "server_id": None},
        {"content": "Hello", "channel_id": "c-unknown"},
    ],
)
async def test_ignored_messages_produce_nothing(platform, relay, kwargs):
    r = relay()
    kwargs = dict(kwargs)
    content = kwargs.pop("content")

    assert await r.coordinator.handle_message(make_message(content, **kwargs)) == 0
    await r.queues.drain_all(timeout=2)
    assert platform.sent == []
    assert r.queues.stats() == {}


@pytest.mark.asyncio
async def test_avatar_file_outlives_every_fanout_delivery(platform, relay, config):
    r = relay()
    platform.send_delay = 0.02

    await r.coordinator.handle_message(make_message("Hello"))
    [path] = r.refs.stats()["files"]
    assert os.path.exists(path)

    await r.queues.drain_all(timeout=2)
    assert r.refs.count(path) == 0
    assert all(s["avatar_path"] == path for s in platform.sent)

    await asyncio.sleep(config.AVATAR_GRACE_SECONDS + 0.05)
    assert not os.path.exists(path)


@pytest.mark.asyncio
async def test_later_message_never_overtakes_earlier_one(platform, relay):
    class LatencyOrchestrator:
        async def translate(self, text, source, target, context=None, *, message_id=None):
            await asyncio.sleep(0.08 if text == "first" else 0.0)
            return TranslationResult(text, f"{text}!", source, target, context_used=True)

    r = relay(orchestrator=LatencyOrchestrator())
    t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
    first = make_message("first", message_id="1", created_at=t0)
    second = make_message("second", message_id="2", created_at=t0 + timedelta(seconds=1))

    await asyncio.gather(r.coordinator.handle_message(first), r.coordinator.handle_message(second))
    await r.queues.drain_all(timeout=2)

    assert platform.texts("c-es") == ["first!", "second!"]
    assert platform.texts("c-fr") == ["first!", "second!"]


@pytest.mark.asyncio
async def test_storage_errors_surface(platform, relay, config):
    r = relay()
    with open(config.SYNC_STORAGE_PATH, "w", encoding="utf-8") as fh:
        fh.write("{broken")

    with pytest.raises(StorageError):
        await r.coordinator.handle_message(make_message("Hello"))


def test_sync_status(relay):
    r = relay()
    assert r.coordinator.sync_status("g1", "c-es") == {
        "is_synced": True,
        "language": "es",
        "groups": ["lobby", "raid"],
    }
    assert r.coordinator.sync_status("g1", "nope") == {
        "is_synced": False,
        "language": None,
        "groups": [],
    }


@pytest.mark.asyncio
async def test_sync_configuration_is_read_off_the_event_loop(platform, relay, monkeypatch):
    r = relay()
    loop_thread = threading.get_ident()
    readers = []
    original = r.storage.load

    def spying_load():
        readers.append(threading.get_ident())
        return original()

    monkeypatch.setattr(r.storage, "load", spying_load)

    assert await r.coordinator.handle_message(make_message("Hello")) == 2
    await r.queues.drain_all(timeout=2)

    assert readers and loop_thread not in readers

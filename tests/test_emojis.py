"""Tests for EmojiBridge token rewriting, cloning and cleanup."""
import asyncio

import pytest

from common.errors import ResourceUnavailableError
from relay.emojis import EmojiBridge
from relay.platform import EmojiInfo

WAVE = EmojiInfo(id="111", name="wave_custom", url="https://cdn/emojis/111.png")
PARTY = EmojiInfo(id="222", name="party", animated=True, url="https://cdn/emojis/222.gif")


@pytest.fixture
def bridge(platform):
    platform.add_guild("src", [WAVE, PARTY])
    platform.add_guild("dst", [])
    return EmojiBridge(platform, cleanup_delay=0.02, temp_prefix="temp_")


def test_has_custom_emoji():
    assert EmojiBridge.has_custom_emoji("hi <:wave_custom:111>")
    assert EmojiBridge.has_custom_emoji("<a:party:222>")
    assert not EmojiBridge.has_custom_emoji("hi :wave: <#123>")
    assert not EmojiBridge.has_custom_emoji("")


@pytest.mark.asyncio
async def test_existing_emoji_by_id_is_reused(platform, bridge):
    platform.guilds["dst"].emojis.append(WAVE)
    text, records = await bridge.bridge("yo <:wave_custom:111>", "src", "dst")
    assert text == "yo <:wave_custom:111>"
    assert records == []
    assert platform.cloned == []


@pytest.mark.asyncio
async def test_existing_emoji_by_name_is_reused(platform, bridge):
    platform.guilds["dst"].emojis.append(EmojiInfo(id="999", name="wave_custom"))
    text, records = await bridge.bridge("yo <:wave_custom:111>", "src", "dst")
    assert text == "yo <:wave_custom:999>"
    assert records == []


@pytest.mark.asyncio
async def test_missing_emoji_is_cloned_from_source(platform, bridge):
    text, records = await bridge.bridge("Hola <:wave_custom:111>!", "src", "dst")

    assert len(records) == 1
    rec = records[0]
    assert rec.original_id == "111" and rec.guild_id == "dst"
    assert rec.cloned_name.startswith("temp_wave_custom_")
    assert len(rec.cloned_name) <= 32
    assert text == f"Hola <:{rec.cloned_name}:{rec.cloned_id}>!"
    assert bridge.is_temporary(rec.cloned_id, "dst")


@pytest.mark.asyncio
async def test_repeated_token_clones_once(platform, bridge):
    text, records = await bridge.bridge("<a:party:222> and <a:party:222>", "src", "dst")
    assert len(records) == 1
    token = f"<a:{records[0].cloned_name}:{records[0].cloned_id}>"
    assert text == f"{token} and {token}"


@pytest.mark.asyncio
async def test_external_emoji_is_fetched_when_not_in_source(platform, bridge):
    platform.external["333"] = EmojiInfo(id="333", name="ext", url="https://cdn/emojis/333.png")
    text, records = await bridge.bridge("<:ext:333>", "src", "dst")
    assert len(records) == 1
    assert text.startswith("<:temp_ext_")


@pytest.mark.asyncio
async def test_unlocatable_emoji_degrades_to_name(platform, bridge):
    text, records = await bridge.bridge("hey <:ghost:444> there", "src", "dst")
    assert text == "hey :ghost: there"
    assert records == []


@pytest.mark.asyncio
async def test_missing_permission_degrades(platform, bridge):
    platform.guilds["dst"].can_manage = False
    text, records = await bridge.bridge("<:wave_custom:111>", "src", "dst")
    assert text == ":wave_custom:"
    assert records == []


@pytest.mark.asyncio
async def test_full_guild_degrades_only_matching_kind(platform, bridge):
    platform.add_guild(
        "dst",
        [EmojiInfo(id=str(i), name=f"s{i}") for i in range(2)],
        limit=2,
    )
    text, records = await bridge.bridge("<:wave_custom:111> <a:party:222>", "src", "dst")
    assert text.startswith(":wave_custom: <a:temp_party_")
    assert len(records) == 1 and records[0].animated


@pytest.mark.asyncio
async def test_clone_failure_degrades(platform, bridge):
    platform.clone_error = ResourceUnavailableError("boom")
    text, records = await bridge.bridge("<:wave_custom:111>", "src", "dst")
    assert text == ":wave_custom:"
    assert records == []


@pytest.mark.asyncio
async def test_scheduled_cleanup_deletes_and_untracks(platform, bridge):
    _, records = await bridge.bridge("<:wave_custom:111>", "src", "dst")
    rec = records[0]

    bridge.schedule_cleanup(records)
    assert bridge.is_temporary(rec.cloned_id, "dst")
    await asyncio.sleep(0.06)

    assert platform.deleted == [("dst", rec.cloned_id)]
    assert not bridge.is_temporary(rec.cloned_id, "dst")
    assert bridge.stats() == {"total_temporary": 0, "by_guild": {}}


@pytest.mark.asyncio
async def test_emergency_cleanup_is_guild_scoped_and_idempotent(platform, bridge):
    platform.add_guild("dst2", [])
    _, r1 = await bridge.bridge("<:wave_custom:111>", "src", "dst")
    _, r2 = await bridge.bridge("<:wave_custom:111>", "src", "dst2")

    assert await bridge.emergency_cleanup("dst") == 1
    assert bridge.stats()["by_guild"] == {"dst2": 1}

    bridge.schedule_cleanup(r1)
    await asyncio.sleep(0.06)
    assert platform.deleted == [("dst", r1[0].cloned_id)]

    assert await bridge.cleanup_all() == 1
    assert not bridge.is_temporary(r2[0].cloned_id, "dst2")

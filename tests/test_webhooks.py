"""
WebhookRegistry caching and DiscordPlatform.send_impersonated, driven with
stub channels and webhooks instead of a gateway connection.
"""
from types import SimpleNamespace

import pytest
from discord.errors import NotFound

from common.errors import DeliveryError
from common.rate_limiter import RateLimitManager
from relay.discord_platform import DiscordPlatform
from relay.webhooks import WebhookRegistry

BOT_ID = 999
HOOK_NAME = "Babelcord Translator"


def not_found():
    return NotFound(SimpleNamespace(status=404, reason="Not Found"), "Unknown Webhook")


class StubHook:
    def __init__(self, hook_id, *, owner=BOT_ID, name=HOOK_NAME, token="tok"):
        self.id = hook_id
        self.token = token
        self.name = name
        self.user = SimpleNamespace(id=owner) if owner is not None else None
        self.sent = []
        self.edits = 0
        self.fail_with = None

    async def send(self, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(kwargs)

    async def edit(self, **kwargs):
        self.edits += 1

    async def delete(self, **kwargs):
        pass


class StubChannel:
    def __init__(self, channel_id, hooks=()):
        self.id = channel_id
        self.name = f"chan-{channel_id}"
        self.hooks = list(hooks)
        self.created = []
        self._next = 5000

    async def webhooks(self):
        return list(self.hooks)

    async def create_webhook(self, name):
        self._next += 1
        hook = StubHook(self._next, name=name)
        self.hooks.append(hook)
        self.created.append(hook)
        return hook


class StubBot:
    def __init__(self):
        self.user = SimpleNamespace(id=BOT_ID)
        self.live = {}
        self.channels = {}
        self.fetches = 0

    async def fetch_webhook(self, webhook_id):
        self.fetches += 1
        if webhook_id not in self.live:
            raise not_found()
        return self.live[webhook_id]

    def get_channel(self, channel_id):
        return self.channels.get(channel_id)


@pytest.fixture
def bot():
    return StubBot()


@pytest.fixture
def make_registry(bot):
    def _make(ttl=300):
        reg = WebhookRegistry(bot, RateLimitManager(), name=HOOK_NAME, ttl=ttl)

        def bind(url):
            hook_id = int(url.rstrip("/").split("/")[-2])
            for ch in bot.channels.values():
                for hook in ch.hooks:
                    if hook.id == hook_id:
                        return hook
            raise AssertionError(f"unknown webhook {hook_id}")

        reg._bind = bind
        return reg

    return _make


def register(bot, channel):
    bot.channels[channel.id] = channel
    for hook in channel.hooks:
        bot.live[hook.id] = hook
    return channel


@pytest.mark.asyncio
async def test_first_use_creates_a_webhook_then_reuses_it_within_ttl(bot, make_registry):
    ch = register(bot, StubChannel(1))
    reg = make_registry(ttl=300)

    first = await reg.get(ch)
    bot.live[first.id] = first
    second = await reg.get(ch)

    assert first is second
    assert len(ch.created) == 1
    assert bot.fetches == 0
    assert reg.stats()["cached"] == 1


@pytest.mark.asyncio
async def test_cached_handle_is_reverified_after_ttl(bot, make_registry):
    hook = StubHook(10)
    ch = register(bot, StubChannel(1, [hook]))
    reg = make_registry(ttl=0)

    assert await reg.get(ch) is hook
    assert await reg.get(ch) is hook
    assert bot.fetches == 1
    assert ch.created == []


@pytest.mark.asyncio
async def test_stale_handle_is_replaced(bot, make_registry):
    hook = StubHook(10)
    ch = register(bot, StubChannel(1, [hook]))
    reg = make_registry(ttl=0)
    assert await reg.get(ch) is hook

    # deleted on Discord's side
    del bot.live[hook.id]
    ch.hooks.remove(hook)

    replacement = await reg.get(ch)
    assert replacement is not hook
    assert ch.created == [replacement]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "foreign",
    [
        StubHook(20, owner=1234),
        StubHook(21, name="Someone Else's Hook"),
        StubHook(22, token=None),
        StubHook(23, owner=None),
    ],
)
async def test_foreign_webhooks_are_never_adopted(bot, make_registry, foreign):
    ch = register(bot, StubChannel(1, [foreign]))
    reg = make_registry()

    hook = await reg.get(ch)
    assert hook is not foreign
    assert ch.created == [hook]


@pytest.mark.asyncio
async def test_own_existing_webhook_is_adopted(bot, make_registry):
    ours = StubHook(30)
    ch = register(bot, StubChannel(1, [StubHook(29, owner=1234), ours]))
    reg = make_registry()

    assert await reg.get(ch) is ours
    assert ch.created == []


@pytest.fixture
def discord_platform(bot, make_registry):
    return DiscordPlatform(bot, RateLimitManager(), make_registry())


@pytest.mark.asyncio
async def test_impersonated_send_carries_name_and_avatar_url(bot, discord_platform):
    hook = StubHook(40)
    register(bot, StubChannel(1, [hook]))

    await discord_platform.send_impersonated(
        "1", "hola", "Alice", avatar_url="https://cdn/a.png", avatar_path="/tmp/a.png"
    )
    await discord_platform.send_impersonated(
        "1", "hey", "Bob", avatar_url="https://cdn/b.png", avatar_path="/tmp/b.png"
    )

    assert [(s["username"], s["avatar_url"], s["content"]) for s in hook.sent] == [
        ("Alice", "https://cdn/a.png", "hola"),
        ("Bob", "https://cdn/b.png", "hey"),
    ]
    # switching authors never touches the shared webhook
    assert hook.edits == 0


@pytest.mark.asyncio
async def test_not_found_on_send_forgets_the_handle(bot, discord_platform):
    hook = StubHook(50)
    ch = register(bot, StubChannel(1, [hook]))
    hook.fail_with = not_found()

    with pytest.raises(DeliveryError):
        await discord_platform.send_impersonated("1", "hola", "Alice")
    assert discord_platform.webhooks.stats()["cached"] == 0

    # the next send looks the channel's webhooks up again
    ch.hooks.remove(hook)
    await discord_platform.send_impersonated("1", "hola", "Alice")
    [fresh] = ch.created
    assert fresh.sent[0]["content"] == "hola"

# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import logging, re
from typing import Optional, Tuple
from common.rate_limiter import ActionType

log = logging.getLogger("babelcord.discord_hooks")

COOLDOWN_SECONDS = 60

_ROUTE_MAP: Tuple[Tuple[re.Pattern, ActionType], ...] = (
    (re.compile(r"^/webhooks/\{webhook_id\}/\{webhook_token\}"), ActionType.WEBHOOK_MESSAGE),
    (re.compile(r"^/channels/\{channel_id\}/webhooks"), ActionType.WEBHOOK_CREATE),
    (re.compile(r"^/guilds/\{guild_id\}/emojis/\{emoji_id\}"), ActionType.EMOJI_DELETE),
    (re.compile(r"^/guilds/\{guild_id\}/emojis"), ActionType.EMOJI_CREATE),
)


def _pick_major(parts: list[str]) -> str | None:
    for p in parts:
        if p and p.isdigit():
            return p
    return None


class DiscordHTTPRLHandler(logging.Handler):
    """
    Watches py-cord's ``discord.http`` warnings for 429 retries and pushes
    the matching limiter into a cooldown.
    """

    _rx = re.compile(r"Retrying in ([\d.]+) seconds.*bucket \"([^\"]+)\"")

    def __init__(self, ratelimit_mgr, cooldown: float = COOLDOWN_SECONDS):
        super().__init__(level=logging.WARNING)
        self.rlm = ratelimit_mgr
        self.cooldown = cooldown

    def map_bucket(
        self, bucket: str
    ) -> tuple[Optional[ActionType], Optional[str], str]:
        parts = bucket.split(":")
        major = _pick_major(parts)
        route = parts[-1]

        action = None
        for pat, act in _ROUTE_MAP:
            if pat.search(route):
                action = act
                break

        key = major if action == ActionType.WEBHOOK_MESSAGE else None

        log.debug(
            "Bucket map: route=%s parts=%s -> action=%s key=%s",
            route,
            parts,
            getattr(action, "name", None),
            key,
        )
        return action, key, route

    def emit(self, record: logging.LogRecord):
        try:
            m = self._rx.search(record.getMessage())
            if not m:
                return

            retry_after = float(m.group(1))
            action, key, route = self.map_bucket(m.group(2))
            if not action:
                log.debug("No ActionType mapping for route=%s; no penalty applied", route)
                return

            # py-cord already waits out message buckets on its own
            if action == ActionType.WEBHOOK_MESSAGE:
                return

            penalty = max(retry_after, self.cooldown)
            self.rlm.penalize(action, penalty, key=key)
            log.warning(
                "[❗] Discord rate limit detected; cooling down %s for %.0fs",
                action.name,
                penalty,
            )
        except Exception as e:
            log.exception("[⛔] Error in DiscordHTTPRLHandler.emit: %s", e)


def install_discord_rl_hook(ratelimit_mgr) -> DiscordHTTPRLHandler:
    http_log = logging.getLogger("discord.http")
    for h in http_log.handlers:
        if isinstance(h, DiscordHTTPRLHandler):
            log.debug("DiscordHTTPRLHandler already installed on 'discord.http'")
            return h
    handler = DiscordHTTPRLHandler(ratelimit_mgr)
    http_log.addHandler(handler)
    log.debug("Installed DiscordHTTPRLHandler on 'discord.http' logger")
    return handler

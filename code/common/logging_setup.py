# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import os
import sys as _sys
import json as _json
import contextvars
from datetime import datetime, timezone


REDACT_KEYS = {"DISCORD_TOKEN", "MISTRAL_API_KEY"}

# Set per incoming message so every fan-out log line carries its origin
message_scope = contextvars.ContextVar("message_scope", default="-")
guild_scope = contextvars.ContextVar("guild_scope", default="-")

EXTRA_KEYS = (
    "message_id",
    "channel_id",
    "guild_id",
    "target_language",
    "attempt",
    "queue_length",
    "took_ms",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _redact_value(val):
    try:
        s = str(val)
        for k in REDACT_KEYS:
            envv = os.getenv(k)
            if envv and envv in s:
                s = s.replace(envv, "***REDACTED***")
        return s
    except Exception:
        return "<unprintable>"


class RedactFilter(logging.Filter):
    """Stamps message/guild scope onto each record and masks token values."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.scope = message_scope.get()
        record.guild = guild_scope.get()
        try:
            if isinstance(record.args, tuple):
                record.args = tuple(
                    _redact_value(a) if isinstance(a, str) else a for a in record.args
                )
            if isinstance(record.msg, str):
                record.msg = _redact_value(record.msg)
        except Exception:
            pass
        return True


LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


def _extras(record: logging.LogRecord) -> dict:
    out = {}
    for k in EXTRA_KEYS:
        v = getattr(record, k, None)
        if v not in (None, "", []):
            out[k] = v
    return out


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        mark = LEVEL_MARK.get(record.levelno, "•")
        scope = getattr(record, "scope", "-")
        msg = super().format(record)
        extras = _extras(record)
        extras_s = (
            " | " + " ".join(f"{k}={v}" for k, v in extras.items()) if extras else ""
        )
        return f"{_now_iso()} {mark} {record.levelname:<8} [{scope}] {msg}{extras_s}"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "time": _now_iso(),
            "lvl": record.levelname,
            "msg": super().format(record),
            "scope": getattr(record, "scope", "-"),
            "guild": getattr(record, "guild", "-"),
            "logger": record.name,
        }
        base.update(_extras(record))
        return _json.dumps(base, separators=(",", ":"), default=str)


def configure_app_logging(level: str | None = None, fmt: str | None = None):
    """
    Route the babelcord logger tree to stdout.

    LOG_FORMAT picks HUMAN (default) or JSON lines; LOG_LEVEL sets the
    threshold. Explicit arguments win over the environment.
    """
    fmt = (fmt or os.getenv("LOG_FORMAT", "HUMAN")).strip().upper()
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()

    root = logging.getLogger("babelcord")
    root.handlers.clear()

    h = logging.StreamHandler(stream=_sys.stdout)
    if fmt == "JSON":
        h.setFormatter(JSONFormatter("%(message)s"))
    else:
        h.setFormatter(HumanFormatter("%(message)s"))
    h.addFilter(RedactFilter())
    root.addHandler(h)

    root.propagate = False
    root.setLevel(getattr(logging, lvl, logging.INFO))

    for lib in (
        "discord",
        "discord.client",
        "discord.gateway",
        "discord.state",
        "aiohttp.access",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(lib).setLevel(logging.WARNING)
    logging.getLogger("discord.client").setLevel(logging.ERROR)
    return root

# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

logger = logging.getLogger("babelcord.config")
CURRENT_VERSION = "v1.0.0"


class Config:
    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        overrides: Optional[dict] = None,
    ):
        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = os.getenv(key)
            if v is None or v.strip() == "":
                v = env_default
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                return float(env_default)

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        # --- Tokens / keys ---
        self.DISCORD_TOKEN = _str("DISCORD_TOKEN")
        self.MISTRAL_API_KEY = _str("MISTRAL_API_KEY")

        # --- Sync group store ---
        self.SYNC_STORAGE_PATH = _str(
            "SYNC_STORAGE_PATH", "./data/sync-translations.json"
        )

        # --- Translation ---
        self.MISTRAL_MODEL = _str("MISTRAL_MODEL", "mistral-small-latest")
        self.MISTRAL_API_URL = _str(
            "MISTRAL_API_URL", "https://api.mistral.ai/v1/chat/completions"
        )
        self.GOOGLE_TRANSLATE_URL = _str(
            "GOOGLE_TRANSLATE_URL", "https://translate.googleapis.com/translate_a/single"
        )
        self.TRANSLATE_CONTEXT_MESSAGES = _int("TRANSLATE_CONTEXT_MESSAGES", "10")
        self.TRANSLATE_MAX_RETRIES = max(1, _int("TRANSLATE_MAX_RETRIES", "2"))
        self.TRANSLATE_TIMEOUT_SECONDS = _float("TRANSLATE_TIMEOUT_SECONDS", "30")
        self.TRANSLATE_MIN_INTERVAL_SECONDS = _float(
            "TRANSLATE_MIN_INTERVAL_SECONDS", "1.0"
        )
        # exponential backoff bases, in seconds
        self.TRANSLATE_BACKOFF_BASE = _float("TRANSLATE_BACKOFF_BASE", "2")
        self.TRANSLATE_TIMEOUT_BACKOFF_BASE = _float(
            "TRANSLATE_TIMEOUT_BACKOFF_BASE", "3"
        )
        self.LLM_DUMPS_DIR = _str("LLM_DUMPS_DIR", "./tmp/llm-dumps")
        self.LLM_DUMP_MAX_AGE_HOURS = _int("LLM_DUMP_MAX_AGE_HOURS", "24")

        # --- Identity ---
        self.AVATAR_DIR = _str("AVATAR_DIR", "./tmp/pfp")
        self.AVATAR_SIZE = _int("AVATAR_SIZE", "512")
        self.AVATAR_GRACE_SECONDS = _float("AVATAR_GRACE_SECONDS", "1.0")
        self.AVATAR_MAX_AGE_HOURS = _int("AVATAR_MAX_AGE_HOURS", "24")

        # --- Emoji bridging ---
        self.EMOJI_CLEANUP_DELAY_SECONDS = _float("EMOJI_CLEANUP_DELAY_SECONDS", "5.0")
        self.TEMP_EMOJI_PREFIX = _str("TEMP_EMOJI_PREFIX", "temp_") or "temp_"

        # --- Webhooks ---
        self.WEBHOOK_NAME = _str("WEBHOOK_NAME", "Babelcord Translator")
        self.WEBHOOK_META_TTL = _int("WEBHOOK_META_TTL", "300")

        # --- Status endpoint ---
        self.ADMIN_ENABLED = _bool("ADMIN_ENABLED", "false")
        self.ADMIN_HOST = _str("ADMIN_HOST", "127.0.0.1")
        self.ADMIN_PORT = _int("ADMIN_PORT", "8080")

        # --- Users allowed to run admin commands ---
        cmd_users_raw = _str("COMMAND_USERS", "") or ""
        self.COMMAND_USERS = []
        for tok in str(cmd_users_raw).split(","):
            tok = tok.strip()
            if tok:
                try:
                    self.COMMAND_USERS.append(int(tok))
                except ValueError:
                    pass

        self.logger = (logger or logging.getLogger("babelcord")).getChild(
            self.__class__.__name__
        )

        for key, value in (overrides or {}).items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown config key: {key}")
            setattr(self, key, value)

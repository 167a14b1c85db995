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
from typing import List, Optional, Sequence

import aiohttp

from common import languages
from common.errors import TranslationProviderError, TranslationTimeoutError
from relay.models import ContextMessage

logger = logging.getLogger("babelcord.translators")

MAX_CONTEXT_CHARS = 200

_STRIP_PREFIXES = (
    "translation:",
    "translated text:",
    "the translation is:",
    "here is the translation:",
)
_QUOTE_PAIRS = {'"': '"', "'": "'", "«": "»", "“": "”"}


class _SessionMixin:
    session: Optional[aiohttp.ClientSession] = None

    def set_session(self, session: aiohttp.ClientSession | None):
        self.session = session

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def close(self):
        if self.session is not None and not self.session.closed:
            await self.session.close()


class MistralTranslator(_SessionMixin):
    """Context-aware translation through the Mistral chat completions API."""

    name = "mistral"
    max_length = 4000

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "mistral-small-latest",
        api_url: str = "https://api.mistral.ai/v1/chat/completions",
        max_context: int = 10,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.max_context = max_context
        self.timeout = timeout
        self.session = session

    def select_context(self, context: Sequence[ContextMessage] | None) -> List[ContextMessage]:
        picked = [
            m for m in (context or [])[: self.max_context]
            if not m.bot and (m.content or "").strip()
        ]
        return [
            ContextMessage(
                author=m.author,
                content=m.content[:MAX_CONTEXT_CHARS],
                timestamp=m.timestamp,
            )
            for m in picked
        ]

    def build_prompt(
        self,
        text: str,
        source_lang: Optional[str],
        target_lang: str,
        context: Sequence[ContextMessage] | None = None,
    ) -> str:
        target_name = languages.language_name(target_lang)
        if source_lang and source_lang.lower() != "auto":
            source_name = languages.language_name(source_lang)
        else:
            source_name = "auto-detected"

        lines = [
            "You are a professional translator specializing in Discord chat translations. "
            "Your task is to translate the given message accurately while preserving the tone, "
            "style, and context.",
            "",
            "**Translation Guidelines:**",
            "- Maintain the original tone (casual, formal, excited, etc.)",
            "- Preserve emojis, mentions, and special formatting",
            "- Keep slang and gaming terminology natural in the target language",
            "- Consider the conversational context",
            "- If something cannot be translated directly, provide the closest cultural equivalent",
            "",
            f"**Source Language:** {source_name}",
            f"**Target Language:** {target_name}",
        ]

        ctx = self.select_context(context)
        if ctx:
            lines += ["", "**Recent Conversation Context:**"]
            lines += [f"{i}. [{m.author}]: {m.content}" for i, m in enumerate(ctx, 1)]

        lines += [
            "",
            "**Message to Translate:**",
            f'"{text}"',
            "",
            "**Translation Instructions:**",
            "- Respond with ONLY the translated text",
            "- Do not include explanations, notes, or commentary",
            "- Do not repeat the original text",
            f"- Ensure the translation flows naturally in {target_name}",
            "- Preserve custom emoji syntax such as <:name:123> exactly as written",
            "",
            "**Translation:**",
        ]
        return "\n".join(lines)

    async def complete(self, prompt: str) -> str:
        """Send one prompt and return the raw model output."""
        if not self.api_key:
            raise TranslationProviderError("MISTRAL_API_KEY is not configured")

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 1000,
            "temperature": 0.3,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with self._session().post(
                self.api_url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise TranslationProviderError(
                        f"Mistral API error {resp.status}: {body[:300]}"
                    )
                data = await resp.json()
        except asyncio.TimeoutError as e:
            raise TranslationTimeoutError(
                f"Mistral request exceeded {self.timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise TranslationProviderError(f"Mistral request failed: {e}") from e
        except ValueError as e:
            raise TranslationProviderError(f"Mistral returned invalid JSON: {e}") from e

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise TranslationProviderError("Malformed Mistral response") from e

    @staticmethod
    def extract(raw: str) -> str:
        translation = (raw or "").strip()
        for prefix in _STRIP_PREFIXES:
            if translation.lower().startswith(prefix):
                translation = translation[len(prefix):].strip()

        if len(translation) >= 2 and _QUOTE_PAIRS.get(translation[0]) == translation[-1]:
            translation = translation[1:-1]

        translation = translation.strip()
        if not translation:
            raise TranslationProviderError("LLM returned empty translation")
        return translation

    async def translate_with_context(
        self,
        text: str,
        source_lang: Optional[str],
        target_lang: str,
        context: Sequence[ContextMessage] | None = None,
    ) -> str:
        prompt = self.build_prompt(text, source_lang, target_lang, context)
        return self.extract(await self.complete(prompt))


class GoogleTranslator(_SessionMixin):
    """Plain machine translation through the public gtx endpoint."""

    name = "google"
    max_length = 5000

    def __init__(
        self,
        *,
        api_url: str = "https://translate.googleapis.com/translate_a/single",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_url = api_url
        self.timeout = timeout
        self.session = session

    async def translate_plain(
        self, text: str, source_lang: Optional[str], target_lang: str
    ) -> str:
        params = {
            "client": "gtx",
            "sl": (source_lang or "auto").lower(),
            "tl": target_lang.lower(),
            "dt": "t",
            "q": text,
        }
        try:
            async with self._session().get(
                self.api_url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    raise TranslationProviderError(
                        f"Google translate HTTP {resp.status}"
                    )
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TranslationTimeoutError("Google translate request timed out") from e
        except aiohttp.ClientError as e:
            raise TranslationProviderError(f"Google translate request failed: {e}") from e
        except ValueError as e:
            raise TranslationProviderError(f"Google translate returned invalid JSON: {e}") from e

        return self.parse(data)

    @staticmethod
    def parse(data) -> str:
        if not isinstance(data, list) or not data or not isinstance(data[0], list):
            raise TranslationProviderError("Invalid translation response format")
        translated = "".join(
            seg[0] for seg in data[0] if isinstance(seg, list) and seg and seg[0]
        )
        if not translated:
            raise TranslationProviderError("Empty translation result")
        return translated

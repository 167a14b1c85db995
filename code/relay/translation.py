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
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from common import languages
from common.errors import (
    TranslationError,
    TranslationTimeoutError,
    ValidationError,
)
from common.rate_limiter import OrderedDispatcher
from relay.models import ContextMessage, TranslationResult

logger = logging.getLogger("babelcord.translation")


class AuditDumper:
    """Writes every primary-translator attempt (prompt and response) to disk."""

    def __init__(self, root: str | Path | None, model: str = ""):
        self.root = Path(root) if root else None
        self.model = model

    def folder_for(self, message_id: Optional[str]) -> Optional[Path]:
        if self.root is None:
            return None
        return self.root / f"{int(time.time() * 1000)}_{message_id or 'unknown'}"

    def dump(
        self,
        folder: Optional[Path],
        attempt: int,
        prompt: str,
        response: str,
        *,
        success: bool,
        original_text: str,
        target_language: str,
        context_used: bool,
        translated_text: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if folder is None:
            return
        stamp = datetime.now(timezone.utc).isoformat()
        meta = [
            "",
            "=== METADATA ===",
            f"Timestamp: {stamp}",
            f"Attempt: {attempt}",
            f"Success: {success}",
            f"Original Text: {original_text}",
            f"Target Language: {target_language}",
            f"Context Used: {context_used}",
            f"Model: {self.model}",
        ]
        if translated_text is not None:
            meta.append(f"Translated Text: {translated_text}")
        if error:
            meta.append(f"Error: {error}")
        footer = "\n".join(meta) + "\n"
        try:
            folder.mkdir(parents=True, exist_ok=True)
            (folder / f"prompt_{attempt}.txt").write_text(prompt + "\n" + footer, encoding="utf-8")
            (folder / f"response_{attempt}.txt").write_text(
                response + "\n" + footer + f"Raw Response Length: {len(response)}\n",
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("[⚠️] Failed to dump LLM prompt/response: %s", e)

    def _dump_dirs(self) -> list[tuple[int, Path]]:
        if self.root is None or not self.root.is_dir():
            return []
        out = []
        for p in self.root.iterdir():
            head = p.name.split("_", 1)[0]
            if p.is_dir() and head.isdigit():
                out.append((int(head), p))
        return sorted(out)

    def cleanup_old_dumps(self, max_age_hours: float = 24) -> int:
        cutoff = (time.time() - max_age_hours * 3600) * 1000
        removed = 0
        for ts, path in self._dump_dirs():
            if ts < cutoff:
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("[🧹] Removed %d old LLM dump folder(s)", removed)
        return removed

    def stats(self) -> dict:
        dirs = self._dump_dirs()
        size = 0
        for _, path in dirs:
            size += sum(f.stat().st_size for f in path.rglob("*") if f.is_file())

        def _iso(ms: int) -> str:
            return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()

        return {
            "total_dumps": len(dirs),
            "oldest_dump": _iso(dirs[0][0]) if dirs else None,
            "newest_dump": _iso(dirs[-1][0]) if dirs else None,
            "total_size_mb": round(size / (1024 * 1024), 2),
        }


class TranslationOrchestrator:
    """
    Translate one fragment to one language.

    The context-aware primary translator is tried first, every attempt going
    through one shared OrderedDispatcher so calls are serialized and spaced
    out. Timeouts and provider errors are retried with different backoff
    bases. When the primary path is exhausted the plain secondary translator
    gets exactly one attempt. Nothing is substituted silently: if both fail a
    TranslationError is raised and the caller decides what to deliver.
    """

    def __init__(
        self,
        primary,
        secondary,
        dispatcher: OrderedDispatcher,
        *,
        max_retries: int = 2,
        timeout: float = 30.0,
        backoff_base: float = 2.0,
        timeout_backoff_base: float = 3.0,
        dumper: Optional[AuditDumper] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.primary = primary
        self.secondary = secondary
        self.dispatcher = dispatcher
        self.max_retries = max(1, int(max_retries))
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.timeout_backoff_base = timeout_backoff_base
        self.dumper = dumper or AuditDumper(None)
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, primary, secondary) -> "TranslationOrchestrator":
        return cls(
            primary,
            secondary,
            OrderedDispatcher(config.TRANSLATE_MIN_INTERVAL_SECONDS, name="primary-translator"),
            max_retries=config.TRANSLATE_MAX_RETRIES,
            timeout=config.TRANSLATE_TIMEOUT_SECONDS,
            backoff_base=config.TRANSLATE_BACKOFF_BASE,
            timeout_backoff_base=config.TRANSLATE_TIMEOUT_BACKOFF_BASE,
            dumper=AuditDumper(config.LLM_DUMPS_DIR, model=config.MISTRAL_MODEL),
        )

    @property
    def max_length(self) -> int:
        limits = [
            getattr(t, "max_length", None) for t in (self.primary, self.secondary) if t
        ]
        limits = [n for n in limits if n]
        return min(limits) if limits else 4000

    def validate(self, text: str, source_lang: Optional[str], target_lang: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text cannot be empty or contain only whitespace")
        if len(text) > self.max_length:
            raise ValidationError(
                f"Text is too long (maximum {self.max_length} characters)"
            )
        if not target_lang or not languages.is_supported(target_lang):
            raise ValidationError(f"Unsupported target language: {target_lang}")
        if target_lang.lower() == "auto":
            raise ValidationError("Target language cannot be auto")
        if source_lang and not languages.is_supported(source_lang):
            raise ValidationError(f"Unsupported origin language: {source_lang}")

    def backoff_for(self, error: Exception, attempt: int) -> float:
        base = (
            self.timeout_backoff_base
            if isinstance(error, TranslationTimeoutError)
            else self.backoff_base
        )
        return float(base) ** attempt

    async def _primary_attempt(self, prompt: str) -> str:
        try:
            return await asyncio.wait_for(self.primary.complete(prompt), self.timeout)
        except asyncio.TimeoutError as e:
            raise TranslationTimeoutError(
                f"Primary translator exceeded {self.timeout}s"
            ) from e

    async def translate(
        self,
        text: str,
        source_lang: Optional[str],
        target_lang: str,
        context: Sequence[ContextMessage] | None = None,
        *,
        message_id: Optional[str] = None,
    ) -> TranslationResult:
        self.validate(text, source_lang, target_lang)

        result = TranslationResult(
            original_text=text,
            translated_text="",
            source_language=(source_lang or "auto").lower(),
            target_language=target_lang.lower(),
        )

        if self.primary is not None:
            translated = await self._translate_primary(text, source_lang, target_lang, context, message_id, result)
            if translated is not None:
                result.translated_text = translated
                result.provider = getattr(self.primary, "name", "primary")
                return result

        if self.secondary is None:
            raise TranslationError(
                "Primary translation failed and no fallback is configured: "
                + "; ".join(result.errors)
            )

        result.attempts += 1
        try:
            translated = await self.secondary.translate_plain(text, source_lang, target_lang)
        except (TranslationError, ValidationError) as e:
            result.errors.append(f"secondary: {e}")
            logger.error(
                "[⛔] Fallback translation to %s failed: %s",
                target_lang,
                e,
                extra={"message_id": message_id, "target_language": target_lang},
            )
            raise TranslationError(
                "All translation paths failed: " + "; ".join(result.errors)
            ) from e

        if not translated or not translated.strip():
            result.errors.append("secondary: empty result")
            raise TranslationError("All translation paths failed: " + "; ".join(result.errors))

        result.translated_text = translated
        result.context_used = False
        result.fallback_used = True
        result.provider = getattr(self.secondary, "name", "secondary")
        logger.info(
            "[🌐] Used fallback translator for %s after %d primary attempt(s)",
            target_lang,
            result.attempts - 1,
            extra={"message_id": message_id, "target_language": target_lang},
        )
        return result

    async def _translate_primary(
        self,
        text: str,
        source_lang: Optional[str],
        target_lang: str,
        context: Sequence[ContextMessage] | None,
        message_id: Optional[str],
        result: TranslationResult,
    ) -> Optional[str]:
        ctx = list(context or [])
        if hasattr(self.primary, "select_context"):
            ctx = self.primary.select_context(ctx)
        prompt = self.primary.build_prompt(text, source_lang, target_lang, ctx)
        context_used = bool(ctx)
        folder = self.dumper.folder_for(message_id)

        for attempt in range(1, self.max_retries + 1):
            result.attempts += 1
            started = time.monotonic()
            try:
                raw = await self.dispatcher.submit(lambda: self._primary_attempt(prompt))
                translated = self.primary.extract(raw)
            except TranslationError as e:
                result.errors.append(f"primary#{attempt}: {e}")
                self.dumper.dump(
                    folder,
                    attempt,
                    prompt,
                    f"ERROR: {e}",
                    success=False,
                    original_text=text,
                    target_language=target_lang,
                    context_used=context_used,
                    error=str(e),
                )
                logger.warning(
                    "[⚠️] Primary translation attempt %d/%d failed (%s): %s",
                    attempt,
                    self.max_retries,
                    type(e).__name__,
                    e,
                    extra={"message_id": message_id, "target_language": target_lang, "attempt": attempt},
                )
                if attempt < self.max_retries:
                    await self._sleep(self.backoff_for(e, attempt))
                continue

            self.dumper.dump(
                folder,
                attempt,
                prompt,
                raw,
                success=True,
                original_text=text,
                target_language=target_lang,
                context_used=context_used,
                translated_text=translated,
            )
            result.context_used = True
            logger.debug(
                "Primary translation to %s succeeded on attempt %d",
                target_lang,
                attempt,
                extra={
                    "message_id": message_id,
                    "target_language": target_lang,
                    "took_ms": round((time.monotonic() - started) * 1000, 1),
                },
            )
            return translated

        return None

    async def close(self) -> None:
        await self.dispatcher.close()

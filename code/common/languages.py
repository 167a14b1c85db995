# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Closed set of language codes both translators accept."""

from __future__ import annotations
from typing import NamedTuple


class Language(NamedTuple):
    code: str
    name: str
    native: str


SUPPORTED_LANGUAGES: tuple[Language, ...] = (
    Language("auto", "Auto-detect", "Auto-detect"),
    Language("en", "English", "English"),
    Language("es", "Spanish", "Español"),
    Language("fr", "French", "Français"),
    Language("de", "German", "Deutsch"),
    Language("it", "Italian", "Italiano"),
    Language("pt", "Portuguese", "Português"),
    Language("ru", "Russian", "Русский"),
    Language("ja", "Japanese", "日本語"),
    Language("ko", "Korean", "한국어"),
    Language("zh-cn", "Chinese (Simplified)", "简体中文"),
    Language("zh-tw", "Chinese (Traditional)", "繁體中文"),
    Language("ar", "Arabic", "العربية"),
    Language("hi", "Hindi", "हिन्दी"),
    Language("th", "Thai", "ไทย"),
    Language("vi", "Vietnamese", "Tiếng Việt"),
    Language("tr", "Turkish", "Türkçe"),
    Language("pl", "Polish", "Polski"),
    Language("nl", "Dutch", "Nederlands"),
    Language("sv", "Swedish", "Svenska"),
    Language("da", "Danish", "Dansk"),
    Language("no", "Norwegian", "Norsk"),
    Language("fi", "Finnish", "Suomi"),
    Language("cs", "Czech", "Čeština"),
    Language("sk", "Slovak", "Slovenčina"),
    Language("hu", "Hungarian", "Magyar"),
    Language("ro", "Romanian", "Română"),
    Language("bg", "Bulgarian", "Български"),
    Language("hr", "Croatian", "Hrvatski"),
    Language("sl", "Slovenian", "Slovenščina"),
    Language("et", "Estonian", "Eesti"),
    Language("lv", "Latvian", "Latviešu"),
    Language("lt", "Lithuanian", "Lietuvių"),
    Language("mt", "Maltese", "Malti"),
    Language("ga", "Irish", "Gaeilge"),
    Language("cy", "Welsh", "Cymraeg"),
    Language("eu", "Basque", "Euskera"),
    Language("ca", "Catalan", "Català"),
    Language("gl", "Galician", "Galego"),
    Language("ast", "Asturian", "Asturianu"),
    Language("oc", "Occitan", "Occitan"),
    Language("br", "Breton", "Brezhoneg"),
    Language("co", "Corsican", "Corsu"),
    Language("is", "Icelandic", "Íslenska"),
    Language("mk", "Macedonian", "Македонски"),
    Language("sq", "Albanian", "Shqip"),
    Language("sr", "Serbian", "Српски"),
    Language("bs", "Bosnian", "Bosanski"),
    Language("me", "Montenegrin", "Crnogorski"),
)

# Offered as slash-command choices (Discord caps choices at 25)
PRIMARY_CODES = (
    "en", "es", "fr", "de", "it", "pt", "ru",
    "ja", "ko", "zh-cn", "zh-tw", "ar", "hi",
)

_BY_CODE = {lang.code: lang for lang in SUPPORTED_LANGUAGES}


def get_language(code: str | None) -> Language | None:
    if not code:
        return None
    return _BY_CODE.get(str(code).strip().lower())


def is_supported(code: str | None) -> bool:
    return get_language(code) is not None


def language_name(code: str) -> str:
    lang = get_language(code)
    return lang.name if lang else code


def native_name(code: str) -> str:
    lang = get_language(code)
    return (lang.native or lang.name) if lang else code


def supported_codes() -> list[str]:
    return [lang.code for lang in SUPPORTED_LANGUAGES]


def primary_choices() -> list[tuple[str, str]]:
    """(label, code) pairs for the admin command's language option."""
    return [(f"{_BY_CODE[c].name} ({_BY_CODE[c].native})", c) for c in PRIMARY_CODES]


def search(query: str) -> list[Language]:
    q = (query or "").strip().lower()
    if not q:
        return []
    return [
        lang
        for lang in SUPPORTED_LANGUAGES
        if q in lang.code or q in lang.name.lower() or q in lang.native.lower()
    ]

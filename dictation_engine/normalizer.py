"""Post-processing filters that remove hallucinated transcript text."""

import logging
import re
import unicodedata
from typing import Iterable

logger = logging.getLogger(__name__)

# Unicode character-name prefixes identifying each script.
SCRIPT_PREFIXES: dict[str, tuple[str, ...]] = {
    "latin": ("LATIN",),
    "cyrillic": ("CYRILLIC",),
    "greek": ("GREEK",),
    "arabic": ("ARABIC",),
    "hebrew": ("HEBREW",),
    "devanagari": ("DEVANAGARI",),
    "thai": ("THAI",),
    "hangul": ("HANGUL",),
    "han": ("CJK", "IDEOGRAPHIC", "FULLWIDTH", "HALFWIDTH"),
    "kana": ("HIRAGANA", "KATAKANA"),
}

LANGUAGE_SCRIPTS: dict[str, tuple[str, ...]] = {
    "en": ("latin",),
    "de": ("latin",),
    "es": ("latin",),
    "fr": ("latin",),
    "it": ("latin",),
    "nl": ("latin",),
    "pl": ("latin",),
    "pt": ("latin",),
    "sv": ("latin",),
    "tr": ("latin",),
    "vi": ("latin",),
    "ru": ("cyrillic", "latin"),
    "uk": ("cyrillic", "latin"),
    "el": ("greek", "latin"),
    "ar": ("arabic", "latin"),
    "he": ("hebrew", "latin"),
    "hi": ("devanagari", "latin"),
    "th": ("thai", "latin"),
    "ko": ("hangul", "han", "latin"),
    "ja": ("han", "kana", "latin"),
    "zh": ("han", "latin"),
}

DEFAULT_HALLUCINATIONS = (
    "thank you for watching",
    "thanks for watching",
    "please subscribe",
    "subtitles by the amara.org community",
)

_REPEATED_WORD = re.compile(r"(?<![\w'])([\w']+)(?:\s+\1(?![\w'])){2,}", re.IGNORECASE)
_BRACKETED = re.compile(r"^\s*(?:\[[^\]]*\]|\([^)]*\)|\*[^*]*\*)\s*$")
_MUSIC = re.compile(r"^[♪♫].*$|^.*[♪♫]$")
_BOILERPLATE = re.compile(r"^\s*connect specific.*$", re.IGNORECASE)


def _script_of(char: str) -> str | None:
    name = unicodedata.name(char, "")
    for script, prefixes in SCRIPT_PREFIXES.items():
        if name.startswith(prefixes):
            return script
    return None


class TextNormalizer:
    """Filter chain applied to backend transcript text.

    The output is either cleaned text or an empty string; empty means the
    segment contributes nothing.
    """

    def __init__(self, language: str = "en", extra_hallucinations: Iterable[str] = ()):
        self.language = language
        base = language.split("-")[0].lower() if language else ""
        scripts = LANGUAGE_SCRIPTS.get(base)
        self.allowed_scripts: frozenset[str] | None = frozenset(scripts) if scripts else None
        self._phrases = frozenset(
            phrase.strip().lower().rstrip(".!")
            for phrase in (*DEFAULT_HALLUCINATIONS, *extra_hallucinations)
            if phrase.strip()
        )
        if self.allowed_scripts is None:
            logger.debug("No script filter for language '%s'", language)

    def normalize(self, text: str) -> str:
        """Run the full filter chain.

        Args:
            text: Raw backend text

        Returns:
            Normalized text, or "" when nothing meaningful remains
        """
        if not text:
            return ""

        cleaned = self.strip_foreign_script(text)
        cleaned = self.collapse_repeats(cleaned)
        cleaned = re.sub(r"\s+", " ", cleaned)
        cleaned = re.sub(r"\s+([.,!?;:])", r"\1", cleaned)
        cleaned = cleaned.strip()

        if not cleaned or self.is_hallucination(cleaned):
            logger.info("Filtered empty or hallucinated text: %r", text)
            return ""
        return cleaned

    def strip_foreign_script(self, text: str) -> str:
        """Drop letters and marks outside the scripts expected for the language.

        Digits, punctuation, whitespace and symbols are always kept. A
        combining mark with no script of its own follows its base letter.
        """
        if self.allowed_scripts is None:
            return text

        kept = []
        base_kept = True
        for char in text:
            category = unicodedata.category(char)[0]
            if category not in ("L", "M"):
                kept.append(char)
                base_kept = True
                continue
            script = _script_of(char)
            if script is None and category == "M":
                if base_kept:
                    kept.append(char)
                continue
            base_kept = script in self.allowed_scripts
            if base_kept:
                kept.append(char)
        return "".join(kept)

    @staticmethod
    def collapse_repeats(text: str) -> str:
        """Collapse a word repeated three or more times into one occurrence."""
        return _REPEATED_WORD.sub(r"\1", text)

    def is_hallucination(self, text: str) -> bool:
        """Return True for canned outputs produced on silence or noise."""
        if not re.search(r"\w", text):
            return True
        if _BRACKETED.match(text) or _MUSIC.match(text) or _BOILERPLATE.match(text):
            return True
        return text.lower().rstrip(".!") in self._phrases


def normalize_text(text: str, language: str = "en") -> str:
    """Normalize text with a one-off normalizer for ``language``."""
    return TextNormalizer(language).normalize(text)


def word_count(text: str) -> int:
    return len(text.split())

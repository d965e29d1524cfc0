"""
Script-aware tokenizer for lexical indexing and query terms.

Pipeline:
1. Entity protection: known names are masked with private-use placeholders
2. Script segmentation: asian (CJK + kana) / latin / other runs
3. Asian runs -> jieba (Chinese) or punctuation fallback; latin runs -> word split
4. Placeholders are restored to the original names
5. Stopword, length and punctuation filtering

Each tokenizer owns its own jieba dictionary so entity injection stays
scoped to one conversation.
"""

import asyncio
import logging
import re
import time
import unicodedata
from collections.abc import Iterable
from enum import Enum

import jieba

from story_recall.config import TokenizerConfig
from story_recall.core.tokenizer.stopwords import KEEP_WORDS, build_stop_words
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)

jieba.setLogLevel(logging.WARNING)

PLACEHOLDER_PREFIX = "\ue000\ue010"
PLACEHOLDER_SUFFIX = "\ue001"
_PLACEHOLDER_RE = re.compile("\ue000\ue010(\\d+)\ue001")
_PUA_RE = re.compile("[\ue000-\ue0ff]")

_FALLBACK_SPLIT_RE = re.compile(
    r"[\s，。！？、；：“”‘’（）【】《》…—\-,.!?;:'\"()\[\]{}<>/\\|@#$%^&*+=~`]+"
)
_LATIN_SPLIT_RE = re.compile(r"[\s\-_.,;:!?'\"()\[\]{}<>/\\|@#$%^&*+=~`]+")

# Registered with jieba at high frequency so names are never cut
ENTITY_WORD_FREQ = 99999


class SegmenterState(str, Enum):
    """jieba dictionary lifecycle."""

    IDLE = "IDLE"
    LOADING = "LOADING"
    READY = "READY"
    FAILED = "FAILED"


class ScriptType(str, Enum):
    ASIAN = "asian"
    LATIN = "latin"
    OTHER = "other"


def is_kana(code: int) -> bool:
    return (
        0x3040 <= code <= 0x309F  # Hiragana
        or 0x30A0 <= code <= 0x30FF  # Katakana
        or 0x31F0 <= code <= 0x31FF  # Katakana extensions
        or 0xFF65 <= code <= 0xFF9F  # Halfwidth katakana
    )


def is_cjk(code: int) -> bool:
    return (
        0x4E00 <= code <= 0x9FFF
        or 0x3400 <= code <= 0x4DBF
        or 0xF900 <= code <= 0xFAFF
        or 0x20000 <= code <= 0x2A6DF
    )


def is_latin(code: int) -> bool:
    return (
        0x41 <= code <= 0x5A
        or 0x61 <= code <= 0x7A
        or 0x30 <= code <= 0x39
        or 0xC0 <= code <= 0x024F
    )


def script_of(ch: str) -> ScriptType:
    code = ord(ch)
    if is_cjk(code) or is_kana(code):
        return ScriptType.ASIAN
    if is_latin(code):
        return ScriptType.LATIN
    return ScriptType.OTHER


def segment_by_script(text: str) -> list[tuple[ScriptType, str]]:
    """
    Split text into runs of the same script.

    Whitespace-only "other" runs are dropped.

    Args:
        text: Input text

    Returns:
        List of (script, run) tuples in text order
    """
    segments: list[tuple[ScriptType, str]] = []
    if not text:
        return segments

    current: ScriptType | None = None
    start = 0
    for i, ch in enumerate(text):
        kind = script_of(ch)
        if kind != current:
            if current is not None and start < i:
                run = text[start:i]
                if current != ScriptType.OTHER or run.strip():
                    segments.append((current, run))
            current = kind
            start = i

    if current is not None and start < len(text):
        run = text[start:]
        if current != ScriptType.OTHER or run.strip():
            segments.append((current, run))

    return segments


def detect_asian_language(text: str) -> str:
    """Return "ja" when kana exceed 30% of asian characters, "zh" otherwise."""
    kana = 0
    cjk = 0
    for ch in text:
        code = ord(ch)
        if is_kana(code):
            kana += 1
        elif is_cjk(code):
            cjk += 1
    total = kana + cjk
    if total == 0:
        return "other"
    return "ja" if kana / total > 0.3 else "zh"


def tokenize_asian_fallback(text: str) -> list[str]:
    """
    Segment asian text without a dictionary.

    Splits on punctuation and whitespace, keeps 2-6 character parts, and
    turns longer parts into 4-character windows at step 2 plus the first
    6 characters.
    """
    tokens: list[str] = []
    for part in _FALLBACK_SPLIT_RE.split(text or ""):
        part = part.strip()
        if not part:
            continue
        if 2 <= len(part) <= 6:
            tokens.append(part)
        elif len(part) > 6:
            for i in range(0, len(part) - 3, 2):
                tokens.append(part[i : i + 4])
            tokens.append(part[:6])
    return tokens


def tokenize_latin(text: str) -> list[str]:
    """Split latin text on whitespace/punctuation, lowercase, keep length >= 3."""
    return [w.lower() for w in (p.strip() for p in _LATIN_SPLIT_RE.split(text or "")) if len(w) >= 3]


def is_symbolic(token: str) -> bool:
    """True when the token is only whitespace, control, punctuation or symbols."""
    return all(
        ch.isspace() or unicodedata.category(ch)[0] in ("P", "S", "C") for ch in token
    )


class TextTokenizer:
    """
    Tokenizer with entity protection and a lazily loaded jieba dictionary.

    Usage:
        tokenizer = TextTokenizer()
        await tokenizer.preload()
        tokenizer.inject_entities({"林黛玉"}, {"林黛玉": "林黛玉"})
        terms = tokenizer.tokenize("林黛玉在潇湘馆读书")
    """

    def __init__(self, config: TokenizerConfig | None = None):
        """
        Initialize tokenizer.

        Args:
            config: Optional tokenizer configuration. Uses defaults if not provided.
        """
        self.config = config or TokenizerConfig()
        self.stop_words = build_stop_words(self.config.extra_stop_words)
        self.keep_words = frozenset(
            w.strip().lower() for w in (*KEEP_WORDS, *self.config.keep_words) if w and w.strip()
        )

        self.state = SegmenterState.IDLE
        self._jieba = jieba.Tokenizer()
        self._loading: asyncio.Task | None = None

        self._entity_list: list[str] = []
        self._entity_keep: frozenset[str] = frozenset()
        self._injected: set[str] = set()

    # ═══════════════════════════════════════════════════════════════════════════
    # Segmenter lifecycle
    # ═══════════════════════════════════════════════════════════════════════════

    @property
    def is_ready(self) -> bool:
        return self.state == SegmenterState.READY

    async def preload(self) -> bool:
        """
        Load the jieba dictionary.

        Safe to call repeatedly: concurrent callers await the same load, and a
        call in FAILED state retries.

        Returns:
            True if the segmenter is ready
        """
        if not self.config.use_jieba:
            return False
        if self.state == SegmenterState.READY:
            return True
        if self.state == SegmenterState.LOADING and self._loading is not None:
            return await asyncio.shield(self._loading)

        self.state = SegmenterState.LOADING
        self._loading = asyncio.create_task(self._load())
        try:
            return await asyncio.shield(self._loading)
        finally:
            if self._loading is not None and self._loading.done():
                self._loading = None

    async def _load(self) -> bool:
        start = time.perf_counter()
        try:
            await asyncio.to_thread(self._jieba.initialize)
        except Exception as e:
            self.state = SegmenterState.FAILED
            logger.error(
                f"jieba dictionary load failed: {e}",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            return False

        self.state = SegmenterState.READY
        elapsed = round((time.perf_counter() - start) * 1000)
        logger.info(f"jieba dictionary loaded ({elapsed}ms)")

        if self._entity_list:
            self._injected.clear()
            self._inject_into_jieba(self._entity_list)
        return True

    # ═══════════════════════════════════════════════════════════════════════════
    # Entity dictionary
    # ═══════════════════════════════════════════════════════════════════════════

    def inject_entities(
        self, lexicon: Iterable[str] | None, display_map: dict[str, str] | None = None
    ) -> None:
        """
        Replace the protected entity list.

        Args:
            lexicon: Normalized entity names
            display_map: normalized -> display form
        """
        display_map = display_map or {}
        entities = []
        for normalized in lexicon or []:
            display = display_map.get(normalized) or normalized
            if len(display) >= 2:
                entities.append(display)

        if not entities:
            self._entity_list = []
            self._entity_keep = frozenset()
            return

        # Longest first so the longest match wins
        entities.sort(key=len, reverse=True)
        self._entity_list = entities
        self._entity_keep = frozenset(e.strip().lower() for e in entities if e.strip())

        if self.is_ready:
            self._inject_into_jieba(entities)

        logger.info(f"Entity dictionary updated: {len(entities)} entities")

    def _inject_into_jieba(self, entities: list[str]) -> None:
        count = 0
        for entity in entities:
            if entity in self._injected:
                continue
            self._jieba.add_word(entity, freq=ENTITY_WORD_FREQ)
            self._injected.add(entity)
            count += 1
        if count:
            logger.debug(f"Injected {count} new entities into jieba")

    def reset(self) -> None:
        """Clear entity state. The loaded dictionary is kept."""
        self._entity_list = []
        self._entity_keep = frozenset()
        self._injected.clear()

    def _mask_entities(self, text: str) -> tuple[str, dict[str, str]]:
        entities: dict[str, str] = {}
        if not self._entity_list or not text:
            return text, entities

        masked = text
        idx = 0
        for entity in self._entity_list:
            # Matched on the text itself: lowercasing can change string length
            pattern = re.compile(re.escape(entity), re.IGNORECASE)
            search_from = 0
            while True:
                match = pattern.search(masked, search_from)
                if match is None:
                    break
                pos, end = match.span()

                # Skip matches touching an existing placeholder
                around = masked[max(0, pos - 4) : end + 4]
                if "\ue000" in around or "\ue001" in around:
                    search_from = pos + 1
                    continue

                placeholder = f"{PLACEHOLDER_PREFIX}{idx}{PLACEHOLDER_SUFFIX}"
                entities[placeholder] = match.group(0)
                masked = masked[:pos] + placeholder + masked[end:]
                idx += 1
                search_from = pos + len(placeholder)

        return masked, entities

    # ═══════════════════════════════════════════════════════════════════════════
    # Tokenization
    # ═══════════════════════════════════════════════════════════════════════════

    def _tokenize_asian(self, text: str) -> list[str]:
        if detect_asian_language(text) == "ja" or not self.is_ready:
            return tokenize_asian_fallback(text)
        try:
            words = self._jieba.cut(text, HMM=True)
            return [w.strip() for w in words if len(w.strip()) >= 2]
        except Exception as e:
            logger.warning(f"jieba cut failed, using fallback: {e}")
            return tokenize_asian_fallback(text)

    def _tokenize_core(self, text: str | None) -> list[str]:
        """Mask, segment, tokenize and restore. No filtering or case folding."""
        if not text:
            return []
        value = str(text).strip()
        if not value:
            return []

        masked, entities = self._mask_entities(value)

        raw: list[str] = []
        last = 0
        # Placeholders are emitted whole; only the text between them is segmented
        for match in _PLACEHOLDER_RE.finditer(masked):
            raw.extend(self._tokenize_span(masked[last : match.start()]))
            original = entities.get(match.group(0))
            if original:
                raw.append(original)
            last = match.end()
        raw.extend(self._tokenize_span(masked[last:]))

        # Drop any placeholder fragments
        return [t for t in raw if not _PUA_RE.search(t)]

    def _tokenize_span(self, text: str) -> list[str]:
        tokens: list[str] = []
        for kind, run in segment_by_script(text):
            if kind == ScriptType.ASIAN:
                tokens.extend(self._tokenize_asian(run))
            elif kind == ScriptType.LATIN:
                tokens.extend(tokenize_latin(run))
        return tokens

    def _keep(self, token: str) -> bool:
        if not token or len(token) < 2:
            return False
        if token in self.stop_words and token not in self.keep_words and token not in self._entity_keep:
            return False
        return not is_symbolic(token)

    def tokenize(self, text: str | None) -> list[str]:
        """
        Tokenize text into query terms.

        Args:
            text: Input text

        Returns:
            Filtered tokens, deduplicated case-insensitively, original case kept
        """
        seen: set[str] = set()
        result: list[str] = []
        for token in self._tokenize_core(text):
            cleaned = token.strip().lower()
            if not self._keep(cleaned) or cleaned in seen:
                continue
            seen.add(cleaned)
            result.append(token.strip())
        return result

    def tokenize_for_index(self, text: str | None) -> list[str]:
        """
        Tokenize text for indexing.

        Same filters as tokenize, but lowercased and not deduplicated so term
        frequencies survive.
        """
        lowered = (t.strip().lower() for t in self._tokenize_core(text))
        return [t for t in lowered if self._keep(t)]

"""
Text helpers shared by the query builder, lexicon and lexical index.

- normalize: canonical form used for entity matching
- apply_text_filter_rules: strip user-defined start/end spans
- clean_message_text: message text as it enters a query
- parse_floor_range: floor span encoded at the end of event summaries
"""

import re
import unicodedata
from collections.abc import Iterable

from story_recall.config import TextFilterRule

_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_TTS_RE = re.compile(r"\[tts:[^\]]*\]", re.IGNORECASE)
_STATE_RE = re.compile(r"<state>[\s\S]*?</state>", re.IGNORECASE)
_FLOOR_RANGE_RE = re.compile(r"\(#(\d+)(?:-(\d+))?\)")
_TRAILING_RANGE_RE = re.compile(r"\s*\(#\d+(?:-\d+)?\)\s*$")


def normalize(text: str | None) -> str:
    """NFKC-normalize, drop zero-width characters, trim and lowercase."""
    if not text:
        return ""
    value = unicodedata.normalize("NFKC", str(text))
    return _ZERO_WIDTH_RE.sub("", value).strip().lower()


def apply_text_filter_rules(text: str, rules: Iterable[TextFilterRule] | None) -> str:
    """
    Remove user-defined spans from text.

    Rule semantics:
    - start + end: remove every start...end span (inclusive, non-greedy)
    - start only: cut from start to the end of the text
    - end only: cut from the beginning through end
    - neither: skipped

    Args:
        text: Input text
        rules: Filter rules to apply in order

    Returns:
        Filtered and trimmed text
    """
    if not text:
        return text
    rules = list(rules or [])
    if not rules:
        return text

    result = text
    for rule in rules:
        start = rule.start or ""
        end = rule.end or ""
        if not start and not end:
            continue

        if start and end:
            pattern = re.compile(re.escape(start) + r"[\s\S]*?" + re.escape(end), re.IGNORECASE)
            result = pattern.sub("", result)
        elif start:
            idx = result.lower().find(start.lower())
            if idx != -1:
                result = result[:idx]
        else:
            idx = result.lower().find(end.lower())
            if idx != -1:
                result = result[idx + len(end) :]

    return result.strip()


def clean_message_text(text: str | None, rules: Iterable[TextFilterRule] | None = None) -> str:
    """Apply filter rules, strip [tts:...] and <state> blocks, trim."""
    value = apply_text_filter_rules(text or "", rules)
    value = _TTS_RE.sub("", value)
    value = _STATE_RE.sub("", value)
    return value.strip()


def strip_floor_marker(summary: str | None) -> str:
    """Remove the trailing (#a-b) floor marker from an event summary."""
    return _TRAILING_RANGE_RE.sub("", summary or "").strip()


def parse_floor_range(summary: str | None) -> tuple[int, int] | None:
    """
    Parse the floor range marker of an event summary.

    Markers are 1-based: "(#3)" or "(#3-7)". The returned range is 0-based
    and inclusive.

    Args:
        summary: Event summary text

    Returns:
        (start, end) tuple, or None if no marker is present
    """
    if not summary:
        return None
    match = _FLOOR_RANGE_RE.search(summary)
    if not match:
        return None
    first = int(match.group(1))
    last = int(match.group(2)) if match.group(2) else first
    return max(0, first - 1), max(0, last - 1)

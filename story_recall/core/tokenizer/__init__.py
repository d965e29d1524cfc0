"""
Tokenization utilities.

- TextTokenizer: script-aware term extraction (jieba for Chinese) with entity protection
- TokenCounter: tiktoken-based token counting for evidence size metrics
"""

from story_recall.core.tokenizer.stopwords import BASE_STOP_WORDS, build_stop_words
from story_recall.core.tokenizer.text_tokenizer import (
    SegmenterState,
    TextTokenizer,
    segment_by_script,
    tokenize_asian_fallback,
)
from story_recall.core.tokenizer.token_counter import TokenCounter

__all__ = [
    "TextTokenizer",
    "SegmenterState",
    "segment_by_script",
    "tokenize_asian_fallback",
    "TokenCounter",
    "BASE_STOP_WORDS",
    "build_stop_words",
]

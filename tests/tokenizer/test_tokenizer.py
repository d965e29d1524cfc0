"""
Tests for tokenization.

Tests cover:
1. Script segmentation and dictionary-free fallback
2. Latin tokenization and stopword filtering
3. Entity protection
4. jieba lifecycle (preload, injection, reset)
5. Token counting (accurate and approximate)
"""

import pytest

from story_recall.config import TokenizerConfig
from story_recall.core.tokenizer import (
    SegmenterState,
    TextTokenizer,
    TokenCounter,
    segment_by_script,
    tokenize_asian_fallback,
)
from story_recall.core.tokenizer.text_tokenizer import (
    PLACEHOLDER_PREFIX,
    PLACEHOLDER_SUFFIX,
    ScriptType,
    detect_asian_language,
)


@pytest.fixture
def offline_tokenizer() -> TextTokenizer:
    return TextTokenizer(TokenizerConfig(use_jieba=False))


class TestScriptSegmentation:
    """Tests for script run detection."""

    def test_mixed_runs(self):
        segments = segment_by_script("Bob说hello")
        assert segments == [
            (ScriptType.LATIN, "Bob"),
            (ScriptType.ASIAN, "说"),
            (ScriptType.LATIN, "hello"),
        ]

    def test_whitespace_other_runs_dropped(self):
        segments = segment_by_script("hi there")
        assert all(kind != ScriptType.OTHER for kind, _ in segments)

    def test_empty(self):
        assert segment_by_script("") == []

    def test_detect_language(self):
        assert detect_asian_language("こんにちはせかい") == "ja"
        assert detect_asian_language("你好世界") == "zh"
        assert detect_asian_language("hello") == "other"


class TestAsianFallback:
    """Tests for dictionary-free segmentation."""

    def test_short_parts_kept(self):
        assert tokenize_asian_fallback("你好，世界") == ["你好", "世界"]

    def test_single_character_dropped(self):
        assert tokenize_asian_fallback("我") == []

    def test_long_parts_windowed(self):
        tokens = tokenize_asian_fallback("一二三四五六七八")
        assert tokens == ["一二三四", "三四五六", "五六七八", "一二三四五六"]


class TestTextTokenizer:
    """Tests for TextTokenizer without jieba."""

    def test_latin_lowercased_stopwords_removed(self, offline_tokenizer):
        tokens = offline_tokenizer.tokenize_for_index("The Sword was hidden under the tree")
        assert tokens == ["sword", "hidden", "tree"]

    def test_short_latin_dropped(self, offline_tokenizer):
        assert offline_tokenizer.tokenize_for_index("an ox is") == []

    def test_tokenize_dedupes(self, offline_tokenizer):
        tokens = offline_tokenizer.tokenize("Sword sword SWORD tree")
        assert tokens == ["sword", "tree"]

    def test_tokenize_keeps_entity_display_case(self, offline_tokenizer):
        offline_tokenizer.inject_entities({"mary ann"}, {"mary ann": "Mary Ann"})
        assert offline_tokenizer.tokenize("Mary Ann met mary ann") == ["Mary Ann", "met"]

    def test_index_keeps_frequencies(self, offline_tokenizer):
        tokens = offline_tokenizer.tokenize_for_index("sword sword tree")
        assert tokens.count("sword") == 2

    def test_empty(self, offline_tokenizer):
        assert offline_tokenizer.tokenize(None) == []
        assert offline_tokenizer.tokenize("   ") == []

    def test_extra_stop_words(self):
        tokenizer = TextTokenizer(TokenizerConfig(use_jieba=False, extra_stop_words=["sword"]))
        assert tokenizer.tokenize_for_index("sword tree") == ["tree"]

    def test_entity_protected_as_one_token(self, offline_tokenizer):
        """Test an injected multi-word name survives as a single token."""
        offline_tokenizer.inject_entities({"mary ann"}, {"mary ann": "Mary Ann"})
        tokens = offline_tokenizer.tokenize_for_index("Mary Ann drew the sword")
        assert "mary ann" in tokens
        assert "mary" not in tokens

    def test_entity_after_length_changing_lowercase(self, offline_tokenizer):
        """Test masking offsets hold when lowercasing earlier text changes its length."""
        offline_tokenizer.inject_entities({"mary ann"}, {"mary ann": "Mary Ann"})
        tokens = offline_tokenizer.tokenize_for_index("İİİ Mary Ann drew the sword")
        assert "mary ann" in tokens
        assert "mary" not in tokens
        assert "sword" in tokens

    def test_entity_overrides_stopword(self, offline_tokenizer):
        """Test an entity equal to a stopword is kept."""
        offline_tokenizer.inject_entities({"will"}, {"will": "Will"})
        assert "will" in offline_tokenizer.tokenize_for_index("Will opened the gate")

    def test_reset_clears_entities(self, offline_tokenizer):
        offline_tokenizer.inject_entities({"mary ann"}, {"mary ann": "Mary Ann"})
        offline_tokenizer.reset()
        tokens = offline_tokenizer.tokenize_for_index("Mary Ann drew the sword")
        assert "mary ann" not in tokens
        assert "mary" in tokens

    def test_no_placeholder_leaks(self, offline_tokenizer):
        offline_tokenizer.inject_entities({"林黛玉"}, {"林黛玉": "林黛玉"})
        tokens = offline_tokenizer.tokenize_for_index("林黛玉在潇湘馆读书")
        assert "林黛玉" in tokens
        assert not any(PLACEHOLDER_PREFIX in t or PLACEHOLDER_SUFFIX in t for t in tokens)

    @pytest.mark.asyncio
    async def test_preload_disabled(self, offline_tokenizer):
        assert await offline_tokenizer.preload() is False
        assert offline_tokenizer.state == SegmenterState.IDLE


class TestJiebaTokenizer:
    """Tests for the jieba-backed path (dictionary bundled with jieba)."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_preload_and_segment(self):
        tokenizer = TextTokenizer(TokenizerConfig(use_jieba=True))
        assert await tokenizer.preload() is True
        assert tokenizer.is_ready

        tokens = tokenizer.tokenize_for_index("我们今天在北京大学读书")
        assert "北京大学" in tokens or "北京" in tokens

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_injected_entity_not_split(self):
        tokenizer = TextTokenizer(TokenizerConfig(use_jieba=True))
        await tokenizer.preload()
        tokenizer.inject_entities({"薛宝钗"}, {"薛宝钗": "薛宝钗"})

        tokens = tokenizer.tokenize_for_index("薛宝钗来到了怡红院")
        assert "薛宝钗" in tokens

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_concurrent_preload(self):
        """Test concurrent callers share one load."""
        import asyncio

        tokenizer = TextTokenizer(TokenizerConfig(use_jieba=True))
        results = await asyncio.gather(tokenizer.preload(), tokenizer.preload())
        assert results == [True, True]


class TestTokenCounter:
    """Tests for token counting."""

    def test_estimate(self):
        counter = TokenCounter(TokenizerConfig(provider="approximate"))
        assert counter.count_tokens("Hello world") == len("Hello world") // 4

    def test_custom_ratio(self):
        counter = TokenCounter(TokenizerConfig(provider="approximate", chars_per_token=5.0))
        assert counter.estimate_tokens("Hello world test") == 3

    def test_empty(self):
        counter = TokenCounter(TokenizerConfig(provider="approximate"))
        assert counter.count_tokens("") == 0

    def test_count_many_skips_empty(self):
        counter = TokenCounter(TokenizerConfig(provider="approximate"))
        assert counter.count_many(["abcdefgh", None, "", "abcd"]) == 3

    @pytest.mark.slow
    def test_tiktoken_count(self):
        """Test accurate counting (downloads the encoding on first use)."""
        counter = TokenCounter()
        count = counter.count_tokens("The quick brown fox jumps over the lazy dog.")
        assert count > 0
        assert count == counter.count_tokens("The quick brown fox jumps over the lazy dog.")

"""
Sizing of assembled evidence in model tokens.

The recall metrics report how many tokens the selected atoms and attached
L1 chunks would add to a prompt. ``provider="approximate"`` avoids loading a
tiktoken encoding at all, which keeps tests and offline runs cheap.
"""

from collections.abc import Iterable

import tiktoken

from story_recall.config import TokenizerConfig


class TokenCounter:
    """Counts evidence tokens with tiktoken or a chars-per-token estimate."""

    def __init__(self, config: TokenizerConfig | None = None):
        self.config = config or TokenizerConfig()
        self._encoding: tiktoken.Encoding | None = None

    @property
    def encoding(self) -> tiktoken.Encoding:
        # Loaded on first exact count; the first load may download the BPE file
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self.config.model)
        return self._encoding

    def count_tokens(self, text: str) -> int:
        """
        Args:
            text: Evidence text

        Returns:
            Exact tiktoken count, or the estimate under the approximate provider
        """
        if not text:
            return 0
        if self.config.provider == "approximate":
            return self.estimate_tokens(text)
        return len(self.encoding.encode(text))

    def estimate_tokens(self, text: str) -> int:
        """Character length divided by ``chars_per_token``, rounded down."""
        return int(len(text) / self.config.chars_per_token) if text else 0

    def count_many(self, texts: Iterable[str | None]) -> int:
        """Total over several evidence texts; None and empty entries add nothing."""
        return sum(self.count_tokens(text) for text in texts if text)

"""
Exception types raised by story-recall.

Providers and stores raise these; the recall pipeline catches them at stage
boundaries and turns them into degraded results plus log lines. ``context``
carries the structured fields that end up in the log record's ``extra``.
"""


class RecallError(Exception):
    """Root of every error raised inside story-recall."""

    def __init__(self, message: str, context: dict | None = None):
        """
        Args:
            message: Human-readable description
            context: Structured details (status codes, sizes, paths) for logging
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


class StoreError(RecallError):
    """The memory store could not be opened or read."""


class ValidationError(RecallError):
    """Caller passed input the recall components refuse, such as blank text to embed."""


class ConfigurationError(RecallError):
    """A provider or backend name is unknown, or a required credential is missing."""


class EmbeddingError(RecallError):
    """
    Query embedding failed.

    The orchestrator retries once; a second failure ends the call with a
    degraded result instead of propagating.
    """


class RerankError(RecallError):
    """The cross-encoder service failed or timed out; callers fall back to fusion order."""


class IndexBuildError(RecallError):
    """Building the lexical index failed; recall continues on dense retrieval only."""

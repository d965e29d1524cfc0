"""
story-recall: hybrid, LLM-free memory recall for long-running conversations.

Retrieves the relevant slice of an atom/chunk/event store for the last turns of
dialogue using dense retrieval, a lexical index, rank fusion, cross-encoder
rerank, PageRank diffusion and causal-chain tracing.
"""

__version__ = "0.1.0"

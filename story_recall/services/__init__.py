"""
Services for story-recall.

Recall pipeline services:
- RecallEngine: Two-round hybrid recall orchestration
- RecallEngineContext: Per-conversation state and lexical index lifecycle
- QueryBuilder: Weighted query segments, focus entities, lexical terms
- LexicalIndex: In-memory inverted index with IDF statistics
- Fusion, evidence, diffusion and causal tracing stages
"""

from story_recall.services.causal_tracer import CausalTrace, build_event_index, trace_causation
from story_recall.services.diffusion import DiffusedAtom, diffuse_from_seeds
from story_recall.services.entity_lexicon import (
    CharacterPools,
    build_character_pools,
    build_display_name_map,
    build_entity_lexicon,
    extract_entities_from_text,
)
from story_recall.services.lexical_index import LexicalIndex, LexicalSearchResult
from story_recall.services.metrics import detect_issues, format_metrics_log
from story_recall.services.query_builder import QueryBuilder
from story_recall.services.recall_engine import RecallEngine, RecallEngineContext, get_last_messages

__all__ = [
    "RecallEngine",
    "RecallEngineContext",
    "get_last_messages",
    "QueryBuilder",
    "LexicalIndex",
    "LexicalSearchResult",
    "CharacterPools",
    "build_character_pools",
    "build_display_name_map",
    "build_entity_lexicon",
    "extract_entities_from_text",
    "DiffusedAtom",
    "diffuse_from_seeds",
    "CausalTrace",
    "build_event_index",
    "trace_causation",
    "detect_issues",
    "format_metrics_log",
]

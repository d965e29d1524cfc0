"""
Diagnostic metrics collected during one recall call.

The pipeline only writes to these models; no retrieval decision reads them.
Times are milliseconds.
"""

from typing import Any

from pydantic import BaseModel, Field


class SimilarityStats(BaseModel):
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0


class ScoreStats(BaseModel):
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0


class QueryLengths(BaseModel):
    v0_chars: int = 0
    v1_chars: int | None = None  # None when there are no hints
    rerank_chars: int = 0


class QueryMetrics(BaseModel):
    build_time: int = 0
    refine_time: int = 0
    lengths: QueryLengths = Field(default_factory=QueryLengths)
    segment_weights: list[float] = Field(default_factory=list)
    r2_weights: list[float] | None = None


class AnchorMetrics(BaseModel):
    need_recall: bool = False
    focus_terms: list[str] = Field(default_factory=list)
    focus_characters: list[str] = Field(default_factory=list)
    matched: int = 0
    floors_hit: int = 0
    top_hits: list[dict[str, Any]] = Field(default_factory=list)


class LexicalMetrics(BaseModel):
    terms: list[str] = Field(default_factory=list)
    chunk_hits: int = 0
    event_hits: int = 0
    search_time: int = 0
    index_ready_time: int = 0
    idf_enabled: bool = False
    idf_doc_count: int = 0
    top_idf_terms: list[dict[str, Any]] = Field(default_factory=list)
    term_searches: int = 0
    event_filtered_by_dense: int = 0
    floor_filtered_by_dense: int = 0


class FusionMetrics(BaseModel):
    dense_floors: int = 0
    lex_floors: int = 0
    total_unique: int = 0
    after_cap: int = 0
    time: int = 0
    dense_agg_method: str = ""
    lex_density_bonus: float = 0.0


class RecallTypeCounts(BaseModel):
    direct: int = 0
    related: int = 0
    causal: int = 0
    lexical: int = 0
    l0_linked: int = 0


class EntityFilterMetrics(BaseModel):
    focus_characters: list[str] = Field(default_factory=list)
    before: int = 0
    after: int = 0
    filtered: int = 0


class EventMetrics(BaseModel):
    in_store: int = 0
    considered: int = 0
    selected: int = 0
    by_recall_type: RecallTypeCounts = Field(default_factory=RecallTypeCounts)
    similarity_distribution: SimilarityStats = Field(default_factory=SimilarityStats)
    entity_filter: EntityFilterMetrics | None = None
    causal_chain_depth: int = 0
    causal_count: int = 0
    entities_used: int = 0
    focus_terms_count: int = 0
    entity_names: list[str] = Field(default_factory=list)


class EvidenceMetrics(BaseModel):
    # Floor stage
    floor_candidates: int = 0
    floors_selected: int = 0
    l0_collected: int = 0
    must_keep_terms_count: int = 0
    must_keep_floors_count: int = 0
    must_keep_floors: list[int] = Field(default_factory=list)
    dropped_by_rerank_count: int = 0
    lex_hit_but_not_selected: int = 0
    rerank_applied: bool = False
    rerank_failed: bool = False
    before_rerank: int = 0
    after_rerank: int = 0
    rerank_time: int = 0
    rerank_scores: ScoreStats | None = None
    rerank_doc_avg_length: int = 0

    # L1 stage
    l1_pulled: int = 0
    l1_attached: int = 0
    l1_cosine_time: int = 0
    context_pairs_added: int = 0

    # Token size of selected atom texts plus attached chunks
    tokens: int = 0


class ChannelCounts(BaseModel):
    what: int = 0
    r_sem: int = 0
    who: int = 0
    where: int = 0


class DiffusionMetrics(BaseModel):
    seed_count: int = 0
    graph_nodes: int = 0
    graph_edges: int = 0
    candidate_pairs: int = 0
    pairs_from_what: int = 0
    pairs_from_r_sem: int = 0
    r_sem_avg_sim: float = 0.0
    time_window_filtered_pairs: int = 0
    top_k_pruned_pairs: int = 0
    edge_density: float = 0.0
    reweight_who_used: int = 0
    reweight_where_used: int = 0
    iterations: int = 0
    convergence_error: float = 0.0
    ppr_activated: int = 0
    cosine_gate_passed: int = 0
    cosine_gate_filtered: int = 0
    cosine_gate_no_vector: int = 0
    post_gate_pass_rate: int = 0
    final_count: int = 0
    score_distribution: ScoreStats = Field(default_factory=ScoreStats)
    by_channel: ChannelCounts = Field(default_factory=ChannelCounts)
    time: int = 0


class TimingMetrics(BaseModel):
    anchor_search: int = 0
    event_retrieval: int = 0
    evidence_retrieval: int = 0
    evidence_rerank: int = 0
    diffusion: int = 0
    total: int = 0


class QualityMetrics(BaseModel):
    event_precision_proxy: float = 0.0
    l1_attach_rate: int = 0
    rerank_retention_rate: int = 0
    diffusion_effective_rate: int = 0
    potential_issues: list[str] = Field(default_factory=list)


class RecallMetrics(BaseModel):
    """Mutable diagnostic record accumulated throughout one recall call."""

    query: QueryMetrics = Field(default_factory=QueryMetrics)
    anchor: AnchorMetrics = Field(default_factory=AnchorMetrics)
    lexical: LexicalMetrics = Field(default_factory=LexicalMetrics)
    fusion: FusionMetrics = Field(default_factory=FusionMetrics)
    event: EventMetrics = Field(default_factory=EventMetrics)
    evidence: EvidenceMetrics = Field(default_factory=EvidenceMetrics)
    diffusion: DiffusionMetrics = Field(default_factory=DiffusionMetrics)
    timing: TimingMetrics = Field(default_factory=TimingMetrics)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)

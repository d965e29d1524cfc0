"""
Recall metrics helpers: statistics, issue detection and the text report.

The pipeline fills a RecallMetrics record while it runs; these helpers only
read it (detect_issues also fills the derived quality rates).
"""

from collections.abc import Sequence

from story_recall.models.metrics import RecallMetrics, ScoreStats, SimilarityStats


def calc_similarity_stats(values: Sequence[float]) -> SimilarityStats:
    """Min/max/mean/median rounded to 3 decimals (all 0 for empty input)."""
    if not values:
        return SimilarityStats()

    ordered = sorted(values)
    return SimilarityStats(
        min=round(ordered[0], 3),
        max=round(ordered[-1], 3),
        mean=round(sum(ordered) / len(ordered), 3),
        median=round(ordered[len(ordered) // 2], 3),
    )


def calc_score_stats(values: Sequence[float]) -> ScoreStats:
    """Min/max/mean rounded to 3 decimals (all 0 for empty input)."""
    if not values:
        return ScoreStats()
    return ScoreStats(
        min=round(min(values), 3),
        max=round(max(values), 3),
        mean=round(sum(values) / len(values), 3),
    )


def _fmt_weights(weights: Sequence[float] | None) -> str:
    if not weights:
        return "N/A"
    return "[" + ", ".join(f"{w:.3f}" for w in weights) + "]"


def detect_issues(metrics: RecallMetrics) -> list[str]:
    """
    Detect potential retrieval problems.

    Also computes quality.rerank_retention_rate and
    quality.diffusion_effective_rate.

    Args:
        metrics: Metrics of one recall call

    Returns:
        Human-readable issue descriptions
    """
    m = metrics
    issues: list[str] = []

    # Query construction
    if not m.anchor.focus_terms:
        issues.append(
            "No focus entities extracted - entity lexicon may be empty or messages too short"
        )

    weights = m.query.segment_weights
    if weights:
        focus_weight = weights[-1]
        if focus_weight < 0.15:
            issues.append(
                f"Focus segment weight very low ({focus_weight * 100:.0f}%) - "
                "focus message may be too short"
            )
        if all(w < 0.1 for w in weights):
            issues.append("All segment weights below 10% - all messages may be extremely short")

    # Anchors
    if m.anchor.matched == 0 and m.anchor.need_recall:
        issues.append("No anchors matched - may need to generate anchors")

    # Lexical
    if m.lexical.terms and m.lexical.chunk_hits == 0 and m.lexical.event_hits == 0:
        issues.append("Lexical search returned zero hits - terms may not match any indexed content")

    # Fusion
    if m.fusion.lex_floors == 0 and m.fusion.dense_floors > 0:
        issues.append("No lexical floors in fusion - hybrid retrieval not contributing")
    if m.fusion.after_cap == 0:
        issues.append("Fusion produced zero floor candidates - all retrieval paths may have failed")

    # Events
    if m.event.considered > 0:
        dense_selected = m.event.by_recall_type.direct + m.event.by_recall_type.related
        ratio = dense_selected / m.event.considered
        if ratio < 0.1:
            issues.append(
                f"Dense event selection ratio too low ({ratio * 100:.1f}%) - threshold may be too high"
            )
        if ratio > 0.6 and m.event.considered > 10:
            issues.append(
                f"Dense event selection ratio high ({ratio * 100:.1f}%) - may include noise"
            )

    entity_filter = m.event.entity_filter
    if entity_filter is not None:
        if entity_filter.filtered == 0 and entity_filter.before > 10:
            issues.append(
                "No events filtered by entity - focus entities may be too broad or missing"
            )
        if entity_filter.before > 0 and entity_filter.filtered > entity_filter.before * 0.8:
            issues.append(
                f"Too many events filtered ({entity_filter.filtered}/{entity_filter.before}) - "
                "focus may be too narrow"
            )

    sim = m.event.similarity_distribution
    if 0 < sim.min < 0.5:
        issues.append(f"Low similarity events included (min={sim.min})")

    if m.event.selected > 0 and m.event.causal_count == 0 and m.event.by_recall_type.direct == 0:
        issues.append("No direct or causal events - query may not align with stored events")

    # Floor rerank
    ev = m.evidence
    if ev.rerank_failed:
        issues.append(
            "Rerank API failed - using fusion rank order as fallback, relevance scores are zero"
        )

    if ev.rerank_applied and not ev.rerank_failed:
        if ev.rerank_scores is not None:
            if ev.rerank_scores.max < 0.3:
                issues.append(
                    f"Low floor rerank scores (max={ev.rerank_scores.max}) - "
                    "query-document domain mismatch"
                )
            if ev.rerank_scores.mean < 0.2:
                issues.append(
                    f"Very low average floor rerank score (mean={ev.rerank_scores.mean}) - "
                    "context may be weak"
                )
        if ev.rerank_time > 3000:
            issues.append(f"Slow floor rerank ({ev.rerank_time}ms) - may affect response time")
        if ev.rerank_doc_avg_length > 3000:
            issues.append(
                f"Large rerank documents (avg {ev.rerank_doc_avg_length} chars) - "
                "may reduce rerank precision"
            )

    retention = (
        round(ev.floors_selected / ev.floor_candidates * 100) if ev.floor_candidates > 0 else 0
    )
    m.quality.rerank_retention_rate = retention
    if ev.floor_candidates > 0 and retention < 25:
        issues.append(
            f"Low rerank retention rate ({retention}%) - fusion ranking poorly aligned with reranker"
        )

    # L1 attachment
    if ev.floors_selected > 0 and ev.l1_pulled == 0:
        issues.append("Zero L1 chunks pulled - L1 vectors may not exist or DB read failed")
    if ev.floors_selected > 0 and ev.l1_attached == 0 and ev.l1_pulled > 0:
        issues.append("L1 chunks pulled but none attached - cosine scores may be too low")
    if ev.floors_selected > 3 and m.quality.l1_attach_rate < 50:
        issues.append(
            f"Low L1 attach rate ({m.quality.l1_attach_rate}%) - selected floors lack L1 chunks"
        )

    # Performance
    if m.timing.total > 8000:
        issues.append(f"Slow recall ({m.timing.total}ms) - consider optimization")
    if m.query.build_time > 100:
        issues.append(f"Slow query build ({m.query.build_time}ms) - entity lexicon may be too large")
    if ev.l1_cosine_time > 1000:
        issues.append(f"Slow L1 cosine scoring ({ev.l1_cosine_time}ms) - too many chunks pulled")

    # Diffusion
    d = m.diffusion
    if d.graph_edges == 0 and d.seed_count > 0:
        issues.append("No diffusion graph edges - atoms may lack edges fields")
    if d.ppr_activated > 0 and d.cosine_gate_passed == 0:
        issues.append(
            "All PPR-activated nodes failed cosine gate - graph structure diverged from query semantics"
        )

    m.quality.diffusion_effective_rate = (
        round(d.final_count / d.ppr_activated * 100) if d.ppr_activated > 0 else 0
    )

    if d.cosine_gate_no_vector > 5:
        issues.append(
            f"{d.cosine_gate_no_vector} PPR nodes missing vectors - L0 vectorization may be incomplete"
        )
    if d.time > 50:
        issues.append(f"Slow diffusion ({d.time}ms) - graph may be too dense")
    if d.ppr_activated > 0 and (d.post_gate_pass_rate < 20 or d.post_gate_pass_rate > 60):
        issues.append(f"Diffusion post-gate pass rate out of target ({d.post_gate_pass_rate}%)")

    return issues


def format_metrics_log(metrics: RecallMetrics, dense_gate: float = 0.50) -> str:
    """
    Render metrics as a multi-section text report.

    Args:
        metrics: Metrics of one recall call
        dense_gate: Lexical floor dense gate shown in the Lexical section

    Returns:
        Report text
    """
    m = metrics
    lines: list[str] = [
        "",
        "════════════════════════════════════════",
        "          Recall Metrics Report         ",
        "════════════════════════════════════════",
        "",
    ]

    lengths = m.query.lengths
    lines += [
        "[Query Length]",
        f"├─ query_v0_chars: {lengths.v0_chars}",
        f"├─ query_v1_chars: {'N/A' if lengths.v1_chars is None else lengths.v1_chars}",
        f"└─ rerank_query_chars: {lengths.rerank_chars}",
        "",
        "[Query]",
        f"├─ build_time: {m.query.build_time}ms",
        f"├─ refine_time: {m.query.refine_time}ms",
        f"├─ r1_weights: {_fmt_weights(m.query.segment_weights)}",
        (
            f"└─ r2_weights: {_fmt_weights(m.query.r2_weights)}"
            if m.query.r2_weights
            else "└─ r2_weights: N/A (no hints)"
        ),
        "",
    ]

    lines += ["[Anchor] L0 StateAtoms", f"├─ need_recall: {str(m.anchor.need_recall).lower()}"]
    if m.anchor.need_recall:
        lines += [
            f"├─ focus_terms: [{', '.join(m.anchor.focus_terms)}]",
            f"├─ focus_characters: [{', '.join(m.anchor.focus_characters)}]",
            f"├─ matched: {m.anchor.matched}",
            f"└─ floors_hit: {m.anchor.floors_hit}",
        ]
    lines.append("")

    lex = m.lexical
    lines += [
        "[Lexical]",
        f"├─ terms: [{', '.join(lex.terms[:8])}]",
        f"├─ chunk_hits: {lex.chunk_hits}",
        f"├─ event_hits: {lex.event_hits}",
        f"├─ search_time: {lex.search_time}ms",
    ]
    if lex.index_ready_time > 0:
        lines.append(f"├─ index_ready_time: {lex.index_ready_time}ms")
    lines.append(f"├─ idf_enabled: {str(lex.idf_enabled).lower()}")
    if lex.idf_doc_count > 0:
        lines.append(f"├─ idf_doc_count: {lex.idf_doc_count}")
    if lex.top_idf_terms:
        top = ", ".join(f"{t['term']}:{t['idf']}" for t in lex.top_idf_terms[:5])
        lines.append(f"├─ top_idf_terms: [{top}]")
    if lex.term_searches > 0:
        lines.append(f"├─ term_searches: {lex.term_searches}")
    if lex.event_filtered_by_dense > 0:
        lines.append(f"├─ event_filtered_by_dense: {lex.event_filtered_by_dense}")
    if lex.floor_filtered_by_dense > 0:
        lines.append(f"├─ floor_filtered_by_dense: {lex.floor_filtered_by_dense}")
    lines += [f"└─ dense_gate_threshold: {dense_gate:.2f}", ""]

    fusion = m.fusion
    lines += ["[Fusion] W-RRF (floor-level)", f"├─ dense_floors: {fusion.dense_floors}"]
    lines.append(f"├─ lex_floors: {fusion.lex_floors}")
    if fusion.lex_density_bonus > 0:
        lines.append(f"│   └─ density_bonus: {fusion.lex_density_bonus}")
    lines += [
        f"├─ total_unique: {fusion.total_unique}",
        f"├─ after_cap: {fusion.after_cap}",
        f"└─ time: {fusion.time}ms",
        "",
    ]

    ev = m.evidence
    lines += [
        "[Fusion Guard] Lexical Must-Keep",
        f"├─ must_keep_terms: {ev.must_keep_terms_count}",
        f"├─ must_keep_floors: {ev.must_keep_floors_count}",
    ]
    if ev.must_keep_floors:
        lines.append(f"│   └─ floors: [{', '.join(str(f) for f in ev.must_keep_floors[:10])}]")
    lines += [f"└─ lex_hit_but_not_selected: {ev.lex_hit_but_not_selected}", ""]

    event = m.event
    lines += ["[Event] L2 Events", f"├─ in_store: {event.in_store}", f"├─ considered: {event.considered}"]
    if event.entity_filter is not None:
        ef = event.entity_filter
        lines += [
            "├─ entity_filter:",
            f"│   ├─ focus_characters: [{', '.join(ef.focus_characters)}]",
            f"│   ├─ before: {ef.before}",
            f"│   ├─ after: {ef.after}",
            f"│   └─ filtered: {ef.filtered}",
        ]
    by_type = event.by_recall_type
    lines += [
        f"├─ selected: {event.selected}",
        "├─ by_recall_type:",
        f"│   ├─ direct: {by_type.direct}",
        f"│   ├─ related: {by_type.related}",
        f"│   ├─ causal: {by_type.causal}",
    ]
    if by_type.l0_linked:
        lines += [f"│   ├─ lexical: {by_type.lexical}", f"│   └─ l0_linked: {by_type.l0_linked}"]
    else:
        lines.append(f"│   └─ lexical: {by_type.lexical}")
    sim = event.similarity_distribution
    if sim.max > 0:
        lines += [
            "├─ similarity_distribution:",
            f"│   ├─ min: {sim.min}",
            f"│   ├─ max: {sim.max}",
            f"│   ├─ mean: {sim.mean}",
            f"│   └─ median: {sim.median}",
        ]
    lines += [
        f"├─ causal_chain: depth={event.causal_chain_depth}, count={event.causal_count}",
        f"└─ focus_characters_used: {event.entities_used} [{', '.join(event.entity_names)}], "
        f"focus_terms_count={event.focus_terms_count}",
        "",
    ]

    lines += [
        "[Evidence] Two-Stage: Floor Rerank -> L1 Pull",
        "├─ Stage 1 (Floor Rerank):",
        f"│   ├─ floor_candidates (post-fusion): {ev.floor_candidates}",
    ]
    if ev.rerank_applied:
        lines.append("│   ├─ rerank_applied: true")
        if ev.rerank_failed:
            lines.append("│   │   ⚠ rerank_failed: using fusion order")
        lines += [
            f"│   │   ├─ before: {ev.before_rerank} floors",
            f"│   │   ├─ after: {ev.after_rerank} floors",
            f"│   │   └─ time: {ev.rerank_time}ms",
        ]
        if ev.dropped_by_rerank_count > 0:
            lines.append(f"│   ├─ dropped_normal: {ev.dropped_by_rerank_count}")
        if ev.rerank_scores is not None:
            rs = ev.rerank_scores
            lines.append(f"│   ├─ rerank_scores: min={rs.min}, max={rs.max}, mean={rs.mean}")
        if ev.rerank_doc_avg_length > 0:
            lines.append(f"│   ├─ rerank_doc_avg_length: {ev.rerank_doc_avg_length} chars")
    else:
        lines.append("│   ├─ rerank_applied: false")
    lines += [
        f"│   ├─ floors_selected: {ev.floors_selected}",
        f"│   └─ l0_atoms_collected: {ev.l0_collected}",
        "├─ Stage 2 (L1):",
        f"│   ├─ pulled: {ev.l1_pulled}",
        f"│   ├─ attached: {ev.l1_attached}",
        f"│   └─ cosine_time: {ev.l1_cosine_time}ms",
        f"└─ tokens: {ev.tokens}",
        "",
    ]

    d = m.diffusion
    lines += [
        "[Diffusion] PPR Spreading Activation",
        f"├─ seeds: {d.seed_count}",
        f"├─ graph: {d.graph_nodes} nodes, {d.graph_edges} edges",
        f"├─ candidate_pairs: {d.candidate_pairs} (what={d.pairs_from_what}, r_sem={d.pairs_from_r_sem})",
        f"├─ r_sem_avg_sim: {d.r_sem_avg_sim}",
        f"├─ pair_filters: time_window={d.time_window_filtered_pairs}, topk_pruned={d.top_k_pruned_pairs}",
        f"├─ edge_density: {d.edge_density}%",
    ]
    if d.graph_edges > 0:
        ch = d.by_channel
        lines += [
            f"│   ├─ by_channel: what={ch.what}, r_sem={ch.r_sem}, who={ch.who}, where={ch.where}",
            f"│   └─ reweight_used: who={d.reweight_who_used}, where={d.reweight_where_used}",
        ]
    if d.iterations > 0:
        lines.append(f"├─ ppr: {d.iterations} iterations, ε={d.convergence_error:.1e}")
    lines.append(f"├─ activated (excl seeds): {d.ppr_activated}")
    if d.ppr_activated > 0:
        lines.append(
            f"├─ cosine_gate: {d.cosine_gate_passed} passed, {d.cosine_gate_filtered} filtered"
        )
        prefix = "│   ├─" if d.cosine_gate_no_vector > 0 else "│   └─"
        lines.append(f"{prefix} pass_rate: {d.post_gate_pass_rate}%")
        if d.cosine_gate_no_vector > 0:
            lines.append(f"│   └─ no_vector: {d.cosine_gate_no_vector}")
    lines.append(f"├─ final_injected: {d.final_count}")
    if d.final_count > 0:
        ds = d.score_distribution
        lines.append(f"├─ scores: min={ds.min}, max={ds.max}, mean={ds.mean}")
    lines += [f"└─ time: {d.time}ms", ""]

    t = m.timing
    lexical_total = lex.search_time + lex.index_ready_time
    lines += [
        "[Timing]",
        f"├─ query_build: {m.query.build_time}ms",
        f"├─ query_refine: {m.query.refine_time}ms",
        f"├─ anchor_search: {t.anchor_search}ms",
        f"├─ lexical_search: {lexical_total}ms "
        f"(query={lex.search_time}ms, index_ready={lex.index_ready_time}ms)",
        f"├─ fusion: {fusion.time}ms",
        f"├─ event_retrieval: {t.event_retrieval}ms",
        f"├─ evidence_retrieval: {t.evidence_retrieval}ms",
        f"├─ floor_rerank: {t.evidence_rerank}ms",
        f"├─ l1_cosine: {ev.l1_cosine_time}ms",
        f"├─ diffusion: {t.diffusion}ms",
        f"└─ total: {t.total}ms",
        "",
    ]

    q = m.quality
    lines += [
        "[Quality]",
        f"├─ event_precision_proxy: {q.event_precision_proxy}",
        f"├─ l1_attach_rate: {q.l1_attach_rate}%",
        f"├─ rerank_retention_rate: {q.rerank_retention_rate}%",
        f"├─ diffusion_effective_rate: {q.diffusion_effective_rate}%",
    ]
    if q.potential_issues:
        lines.append("└─ potential_issues:")
        for i, issue in enumerate(q.potential_issues):
            prefix = "   └─" if i == len(q.potential_issues) - 1 else "   ├─"
            lines.append(f"{prefix} ⚠ {issue}")
    else:
        lines.append("└─ potential_issues: none")

    lines += ["", "════════════════════════════════════════", ""]
    return "\n".join(lines)

"""
Personalized PageRank diffusion over L0 atoms.

Spreads activation from reranked seed atoms through an atom graph to reach
narratively connected atoms that dense search missed.

Graph:
    Candidate edges come from shared interaction pairs (WHAT) and similar
    relation vectors (R-SEM, top-K per node). WHO and WHERE only reweight
    existing candidates. Pairs farther apart than the floor window are dropped.

PPR:
    pi' = d * W @ pi + (alpha + d * dangling_mass) * s,  d = 1 - alpha
    until ||pi' - pi||_1 < epsilon or max_iter iterations.

Post-verification:
    Seeds are excluded; a node must pass the cosine gate against the query and
    ``pi / max(pi) * cosine`` must reach the score floor.
"""

import math
import time
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import numpy as np

from story_recall.config import DiffusionConfig
from story_recall.models.atom import StateAtom, StateVector
from story_recall.models.metrics import ChannelCounts, DiffusionMetrics, RecallMetrics
from story_recall.models.recall import EvidenceItem
from story_recall.services.metrics import calc_score_stats
from story_recall.utils.logger import get_logger
from story_recall.utils.text import normalize
from story_recall.utils.vector_math import cosine_similarity

logger = get_logger(__name__)

PAIR_SEPARATOR = "↔"


@dataclass
class AtomFeatures:
    entities: set[str]
    interaction_pairs: set[str]
    location: str


@dataclass
class AtomGraph:
    """Undirected weighted graph; neighbors[i] lists (j, weight)."""

    neighbors: list[list[tuple[int, float]]]
    edge_count: int = 0
    candidate_pairs: int = 0
    pairs_from_what: int = 0
    pairs_from_r_sem: int = 0
    r_sem_avg_sim: float = 0.0
    time_window_filtered_pairs: int = 0
    top_k_pruned_pairs: int = 0
    reweight_who_used: int = 0
    reweight_where_used: int = 0
    edge_density: float = 0.0
    by_channel: ChannelCounts = field(default_factory=ChannelCounts)
    build_time: int = 0


@dataclass
class PprResult:
    pi: np.ndarray
    iterations: int
    error: float


@dataclass
class DiffusedAtom:
    atom_id: str
    floor: int
    atom: StateAtom
    final_score: float
    ppr_score: float
    ppr_normalized: float
    cosine: float


# ═══════════════════════════════════════════════════════════
# FEATURES
# ═══════════════════════════════════════════════════════════


def extract_entities(atom: StateAtom, exclude: set[str]) -> set[str]:
    """Edge endpoints, normalized, minus excluded names."""
    out = set()
    for edge in atom.edges:
        for raw in (edge.s, edge.t):
            value = normalize(raw)
            if value and value not in exclude:
                out.add(value)
    return out


def extract_interaction_pairs(atom: StateAtom, exclude: set[str]) -> set[str]:
    """Direction-insensitive 'a↔b' pairs from edges with both endpoints."""
    out = set()
    for edge in atom.edges:
        s, t = normalize(edge.s), normalize(edge.t)
        if s and t and s not in exclude and t not in exclude:
            out.add(PAIR_SEPARATOR.join(sorted((s, t))))
    return out


def extract_features(atoms: Sequence[StateAtom], exclude: set[str]) -> list[AtomFeatures]:
    return [
        AtomFeatures(
            entities=extract_entities(atom, exclude),
            interaction_pairs=extract_interaction_pairs(atom, exclude),
            location=normalize(atom.where),
        )
        for atom in atoms
    ]


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    inter = len(a & b)
    union = len(a) + len(b) - inter
    return inter / union if union > 0 else 0.0


def overlap_coefficient(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


def time_score(distance: int, divisor: float) -> float:
    return math.exp(-distance / divisor)


# ═══════════════════════════════════════════════════════════
# GRAPH
# ═══════════════════════════════════════════════════════════


def build_graph(
    atoms: Sequence[StateAtom],
    state_vectors: Iterable[StateVector] = (),
    exclude_entities: set[str] | None = None,
    config: DiffusionConfig | None = None,
) -> AtomGraph:
    """
    Build the weighted undirected atom graph.

    Args:
        atoms: All atoms of the conversation
        state_vectors: State vectors providing relation vectors
        exclude_entities: Normalized names left out of WHAT/WHO features
        config: Diffusion constants

    Returns:
        AtomGraph with channel statistics
    """
    config = config or DiffusionConfig()
    start = time.perf_counter()
    n = len(atoms)
    features = extract_features(atoms, exclude_entities or set())

    what_index: dict[str, list[int]] = defaultdict(list)
    location_freq: dict[str, int] = defaultdict(int)
    for i, feat in enumerate(features):
        for pair in feat.interaction_pairs:
            what_index[pair].append(i)
        if feat.location:
            location_freq[feat.location] += 1

    pairs_by_what: set[tuple[int, int]] = set()
    for indices in what_index.values():
        for a in range(len(indices)):
            for b in range(a + 1, len(indices)):
                lo, hi = sorted((indices[a], indices[b]))
                pairs_by_what.add((lo, hi))

    r_vectors_by_id = {sv.atom_id: sv.r_vector for sv in state_vectors if sv.r_vector}
    r_vectors = [r_vectors_by_id.get(atom.atom_id) for atom in atoms]

    # Sliding floor window keeps the scan below O(N^2) for long chats
    directed: list[list[tuple[int, float]]] = [[] for _ in range(n)]
    r_sem_sum = 0.0
    r_sem_count = 0
    by_floor = sorted(range(n), key=lambda i: atoms[i].floor)
    for left, i in enumerate(by_floor):
        base_floor = atoms[i].floor
        for j in by_floor[left + 1 :]:
            if atoms[j].floor - base_floor > config.time_window_max:
                break
            vi, vj = r_vectors[i], r_vectors[j]
            if not vi or not vj:
                continue
            sim = cosine_similarity(vi, vj)
            if sim < config.r_sem_min_sim:
                continue
            directed[i].append((j, sim))
            directed[j].append((i, sim))
            r_sem_sum += sim
            r_sem_count += 1

    pairs_by_r_sem: set[tuple[int, int]] = set()
    r_sem_by_pair: dict[tuple[int, int], float] = {}
    top_k_pruned = 0
    for i, items in enumerate(directed):
        if not items:
            continue
        items.sort(key=lambda item: item[1], reverse=True)
        top_k_pruned += max(0, len(items) - config.r_sem_top_k)
        for j, sim in items[: config.r_sem_top_k]:
            key = (min(i, j), max(i, j))
            pairs_by_r_sem.add(key)
            if sim > r_sem_by_pair.get(key, 0.0):
                r_sem_by_pair[key] = sim

    candidate_pairs = pairs_by_what | pairs_by_r_sem

    graph = AtomGraph(neighbors=[[] for _ in range(n)])
    for i, j in sorted(candidate_pairs):
        distance = abs(atoms[i].floor - atoms[j].floor)
        if distance > config.time_window_max:
            graph.time_window_filtered_pairs += 1
            continue

        fi, fj = features[i], features[j]
        w_what = overlap_coefficient(fi.interaction_pairs, fj.interaction_pairs)
        w_r_sem = r_sem_by_pair.get((i, j), 0.0)
        w_who = jaccard(fi.entities, fj.entities)
        w_where = 0.0
        if fi.location and fi.location == fj.location:
            freq = location_freq.get(fi.location, 1)
            w_where = max(
                config.where_freq_damp_min,
                min(1.0, config.where_freq_damp_pivot / max(1, freq)),
            )

        weight = (
            config.gamma_what * w_what
            + config.gamma_r_sem * w_r_sem
            + config.gamma_who * w_who
            + config.gamma_where * w_where
            + config.gamma_time * time_score(distance, config.time_decay_divisor)
        )
        if weight <= 0:
            continue

        graph.neighbors[i].append((j, weight))
        graph.neighbors[j].append((i, weight))
        graph.edge_count += 1
        if w_what > 0:
            graph.by_channel.what += 1
        if w_r_sem > 0:
            graph.by_channel.r_sem += 1
        if w_who > 0:
            graph.by_channel.who += 1
            graph.reweight_who_used += 1
        if w_where > 0:
            graph.by_channel.where += 1
            graph.reweight_where_used += 1

    total_pairs = n * (n - 1) / 2 if n > 1 else 0
    graph.edge_density = round(graph.edge_count / total_pairs * 100, 2) if total_pairs else 0.0
    graph.candidate_pairs = len(candidate_pairs)
    graph.pairs_from_what = len(pairs_by_what)
    graph.pairs_from_r_sem = len(pairs_by_r_sem)
    graph.r_sem_avg_sim = round(r_sem_sum / r_sem_count, 3) if r_sem_count else 0.0
    graph.top_k_pruned_pairs = top_k_pruned
    graph.build_time = round((time.perf_counter() - start) * 1000)

    logger.info(
        f"Graph: {n} nodes, {graph.edge_count} edges "
        f"(candidate_by_what={graph.pairs_from_what} candidate_by_r_sem={graph.pairs_from_r_sem}) "
        f"(what={graph.by_channel.what} r_sem={graph.by_channel.r_sem} "
        f"who={graph.by_channel.who} where={graph.by_channel.where}) "
        f"(time_window_filtered={graph.time_window_filtered_pairs} topk_pruned={top_k_pruned}) "
        f"({graph.build_time}ms)"
    )
    return graph


# ═══════════════════════════════════════════════════════════
# PPR
# ═══════════════════════════════════════════════════════════


def build_seed_vector(
    seeds: Sequence[EvidenceItem], id_to_idx: dict[str, int], n: int
) -> np.ndarray:
    """Personalization vector weighted by max(0, rerank_score or similarity), L1-normalized."""
    s = np.zeros(n, dtype=np.float64)
    for seed in seeds:
        idx = id_to_idx.get(seed.atom_id)
        if idx is None:
            continue
        s[idx] += max(0.0, seed.rerank_score or seed.similarity or 0.0)
    total = s.sum()
    if total > 0:
        s /= total
    return s


def column_normalize(
    neighbors: Sequence[Sequence[tuple[int, float]]],
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Column-normalize the adjacency lists.

    Returns:
        (sources, targets, probs, dangling): sparse transition entries
        W[target, source] = prob, and the indices of nodes without edges
    """
    sources: list[int] = []
    targets: list[int] = []
    probs: list[float] = []
    dangling: list[int] = []
    for j, edges in enumerate(neighbors):
        total = sum(w for _, w in edges)
        if total <= 0:
            dangling.append(j)
            continue
        for target, weight in edges:
            sources.append(j)
            targets.append(target)
            probs.append(weight / total)
    return (
        np.asarray(sources, dtype=np.int64),
        np.asarray(targets, dtype=np.int64),
        np.asarray(probs, dtype=np.float64),
        np.asarray(dangling, dtype=np.int64),
    )


def power_iteration(
    neighbors: Sequence[Sequence[tuple[int, float]]],
    seed_vector: np.ndarray,
    config: DiffusionConfig | None = None,
) -> PprResult:
    """
    Personalized PageRank by power iteration.

    Dangling mass is redistributed through the seed vector, so a
    distribution that starts at the seed vector keeps summing to 1.

    Args:
        neighbors: Adjacency lists (j -> [(i, weight)])
        seed_vector: Personalization vector summing to 1
        config: Diffusion constants

    Returns:
        PprResult with the stationary distribution, iterations and last L1 delta
    """
    config = config or DiffusionConfig()
    n = len(neighbors)
    sources, targets, probs, dangling = column_normalize(neighbors)
    d = 1.0 - config.alpha

    pi = seed_vector.astype(np.float64).copy()
    iterations = 0
    error = 0.0
    for iteration in range(config.max_iter):
        pi_new = np.zeros(n, dtype=np.float64)
        if sources.size:
            np.add.at(pi_new, targets, d * pi[sources] * probs)
        dangling_mass = float(pi[dangling].sum()) if dangling.size else 0.0
        pi_new += (config.alpha + d * dangling_mass) * seed_vector

        error = float(np.abs(pi_new - pi).sum())
        pi = pi_new
        iterations = iteration + 1
        if error < config.epsilon:
            break

    return PprResult(pi=pi, iterations=iterations, error=error)


# ═══════════════════════════════════════════════════════════
# POST-VERIFICATION
# ═══════════════════════════════════════════════════════════


@dataclass
class GateStats:
    passed: int = 0
    filtered: int = 0
    no_vector: int = 0


def post_verify(
    pi: np.ndarray,
    atoms: Sequence[StateAtom],
    seed_ids: set[str],
    vector_map: dict[str, list[float]],
    query_vector: list[float],
    config: DiffusionConfig | None = None,
) -> tuple[list[DiffusedAtom], GateStats]:
    """Apply the cosine gate and score floor to activated non-seed atoms."""
    config = config or DiffusionConfig()
    stats = GateStats()

    max_ppr = 0.0
    for i, atom in enumerate(atoms):
        if pi[i] > 0 and atom.atom_id not in seed_ids:
            max_ppr = max(max_ppr, float(pi[i]))
    if max_ppr <= 0:
        return [], stats

    out: list[DiffusedAtom] = []
    for i, atom in enumerate(atoms):
        if atom.atom_id in seed_ids or pi[i] <= 0:
            continue

        vector = vector_map.get(atom.atom_id)
        if not vector:
            stats.no_vector += 1
            continue

        cos = cosine_similarity(query_vector, vector)
        if cos < config.cosine_gate:
            stats.filtered += 1
            continue

        normalized = float(pi[i]) / max_ppr
        final = normalized * cos
        if final < config.score_floor:
            stats.filtered += 1
            continue

        stats.passed += 1
        out.append(
            DiffusedAtom(
                atom_id=atom.atom_id,
                floor=atom.floor,
                atom=atom,
                final_score=final,
                ppr_score=float(pi[i]),
                ppr_normalized=normalized,
                cosine=cos,
            )
        )

    out.sort(key=lambda d: d.final_score, reverse=True)
    return out[: config.diffusion_cap], stats


# ═══════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════


def _graph_metrics(graph: AtomGraph, seed_count: int, node_count: int) -> DiffusionMetrics:
    return DiffusionMetrics(
        seed_count=seed_count,
        graph_nodes=node_count,
        graph_edges=graph.edge_count,
        candidate_pairs=graph.candidate_pairs,
        pairs_from_what=graph.pairs_from_what,
        pairs_from_r_sem=graph.pairs_from_r_sem,
        r_sem_avg_sim=graph.r_sem_avg_sim,
        time_window_filtered_pairs=graph.time_window_filtered_pairs,
        top_k_pruned_pairs=graph.top_k_pruned_pairs,
        edge_density=graph.edge_density,
        reweight_who_used=graph.reweight_who_used,
        reweight_where_used=graph.reweight_where_used,
        by_channel=graph.by_channel,
        time=graph.build_time,
    )


def diffuse_from_seeds(
    seeds: Sequence[EvidenceItem],
    atoms: Sequence[StateAtom],
    state_vectors: Sequence[StateVector],
    query_vector: list[float],
    user_name: str | None = None,
    config: DiffusionConfig | None = None,
    metrics: RecallMetrics | None = None,
) -> list[DiffusedAtom]:
    """
    Spread activation from seed atoms and return verified new atoms.

    Args:
        seeds: Selected evidence items (rerank-verified seeds)
        atoms: All atoms of the conversation
        state_vectors: All state vectors of the conversation
        query_vector: Round-2 query vector
        user_name: User display name, excluded from graph entities
        config: Diffusion constants
        metrics: Optional metrics record to fill

    Returns:
        Diffused atoms sorted by final score, seeds excluded
    """
    config = config or DiffusionConfig()
    start = time.perf_counter()

    if not seeds or not atoms or not query_vector:
        if metrics is not None:
            metrics.diffusion = DiffusionMetrics()
        return []

    exclude = {normalize(user_name)} if normalize(user_name) else set()
    id_to_idx = {atom.atom_id: i for i, atom in enumerate(atoms)}
    valid_seeds = [s for s in seeds if s.atom_id in id_to_idx]
    seed_ids = {s.atom_id for s in valid_seeds}
    if not valid_seeds:
        if metrics is not None:
            metrics.diffusion = DiffusionMetrics()
        return []

    graph = build_graph(atoms, state_vectors, exclude, config)
    n = len(atoms)

    if graph.edge_count == 0:
        if metrics is not None:
            metrics.diffusion = _graph_metrics(graph, len(valid_seeds), n)
        logger.info("No graph edges, skipping diffusion")
        return []

    seed_vector = build_seed_vector(valid_seeds, id_to_idx, n)
    ppr_start = time.perf_counter()
    ppr = power_iteration(graph.neighbors, seed_vector, config)
    ppr_time = round((time.perf_counter() - ppr_start) * 1000)

    activated = sum(
        1 for i, atom in enumerate(atoms) if ppr.pi[i] > 0 and atom.atom_id not in seed_ids
    )

    vector_map = {sv.atom_id: sv.vector for sv in state_vectors}
    diffused, gate = post_verify(ppr.pi, atoms, seed_ids, vector_map, query_vector, config)
    total_time = round((time.perf_counter() - start) * 1000)

    if metrics is not None:
        dm = _graph_metrics(graph, len(valid_seeds), n)
        dm.iterations = ppr.iterations
        dm.convergence_error = ppr.error
        dm.ppr_activated = activated
        dm.cosine_gate_passed = gate.passed
        dm.cosine_gate_filtered = gate.filtered
        dm.cosine_gate_no_vector = gate.no_vector
        dm.post_gate_pass_rate = round(gate.passed / activated * 100) if activated else 0
        dm.final_count = len(diffused)
        dm.score_distribution = calc_score_stats([d.final_score for d in diffused])
        dm.time = total_time
        metrics.diffusion = dm

    logger.info(
        f"Diffusion: {len(valid_seeds)} seeds -> graph({n}n/{graph.edge_count}e) -> "
        f"PPR({ppr.iterations}it, eps={ppr.error:.1e}, {ppr_time}ms) -> {activated} activated -> "
        f"gate({gate.passed} passed/{gate.filtered} filtered/{gate.no_vector} no vector) -> "
        f"{len(diffused)} final ({total_time}ms)"
    )
    return diffused

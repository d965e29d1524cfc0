"""
Recall Engine - two-round hybrid memory recall.

Pipeline:
1. Query build (focus/context segments, focus entities, lexical terms)
2. Round 1 dense retrieval (batch embed -> weighted average -> anchors/events)
3. Query refinement (memory hints from round 1)
4. Round 2 dense retrieval (reuse round 1 vectors + hints vector)
5. Lexical search + dense-gated event merge
6. Floor fusion, fusion guard, rerank, L0 collection
7. PPR diffusion from the reranked seeds
8. L0 -> L2 floor-range linking, L1 pairing
9. Causal chain tracing

Every empty or degraded path returns a RecallResult with a log_text and
populated metrics; nothing in the pipeline raises for a cold start.
"""

import asyncio
import time
from collections.abc import Sequence

from story_recall.config import Config
from story_recall.core.embeddings.base import Embedder
from story_recall.core.factory import EmbedderFactory, RerankerFactory, StoreFactory
from story_recall.core.memory_store.base import MemoryStore
from story_recall.core.rerank.base import Reranker
from story_recall.core.tokenizer.text_tokenizer import TextTokenizer
from story_recall.core.tokenizer.token_counter import TokenCounter
from story_recall.models.conversation import ChatMessage, ParticipantContext, StoryMeta
from story_recall.models.event import CausalHit, Event, EventHit, RecallType
from story_recall.models.metrics import RecallMetrics
from story_recall.models.recall import EvidenceItem, RecallOptions, RecallResult
from story_recall.services.causal_tracer import build_event_index, trace_causation
from story_recall.services.dense_retrieval import embed_with_retry, recall_anchors, recall_events
from story_recall.services.diffusion import diffuse_from_seeds
from story_recall.services.entity_lexicon import build_character_pools, build_display_name_map
from story_recall.services.evidence import build_l1_pairs, locate_and_pull_evidence
from story_recall.services.lexical_index import LexicalIndex, LexicalSearchResult, disabled_idf_accessor
from story_recall.services.metrics import detect_issues, format_metrics_log
from story_recall.services.query_builder import (
    QueryBuilder,
    compute_r2_weights,
    compute_segment_weights,
)
from story_recall.utils.exceptions import EmbeddingError, IndexBuildError
from story_recall.utils.id_generator import diffused_item_id
from story_recall.utils.logger import get_logger
from story_recall.utils.text import normalize, parse_floor_range
from story_recall.utils.vector_math import cosine_similarity, weighted_average_vectors

logger = get_logger(__name__)


def get_last_messages(
    chat: Sequence[ChatMessage], count: int = 3, exclude_last_ai: bool = False
) -> list[ChatMessage]:
    """
    Last ``count`` messages of the chat.

    With exclude_last_ai, a trailing AI turn is dropped first (regeneration).
    """
    if not chat:
        return []
    messages = list(chat)
    if exclude_last_ai and messages and not messages[-1].is_user:
        messages = messages[:-1]
    return messages[-count:] if count > 0 else []


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


class RecallEngineContext:
    """
    Per-conversation state owned by the caller.

    Holds the conversation inputs, the collaborators and the lexical index
    with its in-flight build task. At most one build runs at a time: callers
    that find a build in flight await the same task.
    """

    def __init__(
        self,
        conversation_id: str,
        chat: Sequence[ChatMessage],
        store: MemoryStore,
        embedder: Embedder,
        reranker: Reranker,
        tokenizer: TextTokenizer | None = None,
        participants: ParticipantContext | None = None,
        story: StoryMeta | None = None,
        config: Config | None = None,
    ):
        """
        Initialize recall context.

        Args:
            conversation_id: Conversation identifier
            chat: Chat transcript (list index = floor)
            store: Memory store
            embedder: Embedding provider
            reranker: Rerank provider
            tokenizer: Tokenizer (created from config when omitted)
            participants: Participant names
            story: Story metadata
            config: Configuration (defaults when omitted)
        """
        self.config = config or Config()
        self.conversation_id = conversation_id
        self.chat = list(chat)
        self.participants = participants or ParticipantContext()
        self.story = story
        self.store = store
        self.embedder = embedder
        self.reranker = reranker
        self.tokenizer = tokenizer or TextTokenizer(self.config.tokenizer)
        self.token_counter = TokenCounter(self.config.tokenizer)

        self.lexical_index = LexicalIndex(self.tokenizer, self.config.lexical)
        self._build_task: asyncio.Task | None = None
        self._fingerprint: str | None = None

    @classmethod
    async def from_config(
        cls,
        config: Config,
        conversation_id: str,
        chat: Sequence[ChatMessage],
        participants: ParticipantContext | None = None,
        story: StoryMeta | None = None,
    ) -> "RecallEngineContext":
        """Create a context with providers and store built by the factories."""
        store = StoreFactory.create(config.store)
        await store.initialize()
        return cls(
            conversation_id=conversation_id,
            chat=chat,
            store=store,
            embedder=EmbedderFactory.create(config.embedder),
            reranker=RerankerFactory.create(config.reranker),
            participants=participants,
            story=story,
            config=config,
        )

    @property
    def fingerprint(self) -> str:
        """Embedding engine fingerprint, cached until the conversation switches."""
        if self._fingerprint is None:
            self._fingerprint = self.embedder.fingerprint
        return self._fingerprint

    @property
    def is_building(self) -> bool:
        return self._build_task is not None and not self._build_task.done()

    # ═══════════════════════════════════════════════════════════
    # LEXICAL INDEX LIFECYCLE
    # ═══════════════════════════════════════════════════════════

    async def _build_index(self, events: Sequence[Event]) -> LexicalIndex:
        try:
            chunks = await self.store.get_all_chunks(self.conversation_id)
        except Exception as e:
            logger.warning(f"Failed to load chunks for lexical index: {e}")
            chunks = []
        try:
            await self.lexical_index.build(chunks, events)
        except Exception as e:
            raise IndexBuildError(
                f"Lexical index build failed: {e}",
                {"chunks": len(chunks), "events": len(events), "error_type": type(e).__name__},
            ) from e
        return self.lexical_index

    async def get_lexical_index(self, events: Sequence[Event]) -> LexicalIndex | None:
        """
        Return the built index, building it if needed.

        Returns:
            The index, or None when the build failed
        """
        if self.lexical_index.is_built and not self.is_building:
            return self.lexical_index

        if self._build_task is None or self._build_task.done():
            logger.info(f"Lexical cache miss, rebuilding (conversation={self.conversation_id[:8]})")
            self._build_task = asyncio.create_task(self._build_index(list(events)))

        task = self._build_task
        try:
            return await asyncio.shield(task)
        except IndexBuildError as e:
            logger.error(e.message, extra=e.context)
            return None
        except asyncio.CancelledError:
            # invalidate() cancelled the shared build; only our own cancellation propagates
            current = asyncio.current_task()
            if task.cancelled() and (current is None or current.cancelling() == 0):
                logger.warning("Lexical index build was cancelled by invalidation, continuing dense-only")
                return None
            raise
        finally:
            if self._build_task is task and task.done():
                self._build_task = None

    def warmup(self, events: Sequence[Event]) -> None:
        """Start tokenizer preload and the index build in the background."""
        if self.is_building:
            return

        async def _warm() -> None:
            await self.tokenizer.preload()
            await self.get_lexical_index(events)

        task = asyncio.create_task(_warm())
        task.add_done_callback(self._log_warmup_failure)

    @staticmethod
    def _log_warmup_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Lexical warmup failed: {error}")

    def invalidate(self) -> None:
        """Drop the lexical index and the cached fingerprint."""
        if self.lexical_index.is_built:
            logger.info("Lexical index cache invalidated")
        if self._build_task is not None and not self._build_task.done():
            self._build_task.cancel()
        self._build_task = None
        self.lexical_index.clear()
        self._fingerprint = None

    def switch_conversation(
        self,
        conversation_id: str,
        chat: Sequence[ChatMessage],
        participants: ParticipantContext | None = None,
        story: StoryMeta | None = None,
    ) -> None:
        """Point the context at another conversation and invalidate caches."""
        self.invalidate()
        self.tokenizer.reset()
        self.conversation_id = conversation_id
        self.chat = list(chat)
        self.participants = participants or ParticipantContext()
        self.story = story
        logger.info(f"Switched conversation: {conversation_id}")

    async def close(self) -> None:
        self.invalidate()
        await self.embedder.close()
        await self.reranker.close()
        await self.store.close()


class RecallEngine:
    """
    Two-round hybrid recall over one RecallEngineContext.

    Usage:
        ctx = await RecallEngineContext.from_config(config, "chat-1", chat)
        engine = RecallEngine(ctx)
        result = await engine.recall_memory(events)
    """

    def __init__(self, context: RecallEngineContext):
        self.ctx = context
        self.config = context.config
        self.retrieval = context.config.retrieval

    def _empty_result(
        self,
        start: float,
        metrics: RecallMetrics,
        log_text: str,
        focus_terms: list[str] | None = None,
        focus_characters: list[str] | None = None,
    ) -> RecallResult:
        metrics.timing.total = _elapsed_ms(start)
        return RecallResult(
            focus_terms=focus_terms or [],
            focus_characters=focus_characters or [],
            elapsed_ms=metrics.timing.total,
            log_text=log_text,
            metrics=metrics,
        )

    async def recall_memory(
        self, events: Sequence[Event], options: RecallOptions | None = None
    ) -> RecallResult:
        """
        Recall evidence for the next turn.

        Args:
            events: All L2 events of the conversation
            options: Pending user message and regeneration flag

        Returns:
            RecallResult (degraded results carry the reason in log_text)
        """
        start = time.perf_counter()
        options = options or RecallOptions()
        metrics = RecallMetrics()
        ctx = self.ctx
        cfg = self.retrieval
        events = list(events or [])

        if not events:
            metrics.anchor.need_recall = False
            return self._empty_result(start, metrics, "No events.")

        metrics.anchor.need_recall = True

        # ─── Stage 1: query build ─────────────────────────────────
        build_start = time.perf_counter()
        pending = options.pending_user_message
        count = cfg.last_messages_k_with_pending if pending else cfg.last_messages_k
        last_messages = get_last_messages(ctx.chat, count, options.exclude_last_ai)

        # Non-blocking: query terms fall back to tf when the index is not ready
        ctx.warmup(events)

        atoms = await ctx.store.get_state_atoms(ctx.conversation_id)
        pools = build_character_pools(ctx.story, ctx.participants, events, atoms)
        display_map = build_display_name_map(ctx.story, ctx.participants, events, atoms)
        ctx.tokenizer.inject_entities(pools.all, display_map)

        idf = ctx.lexical_index.idf_accessor() if ctx.lexical_index.is_built else disabled_idf_accessor()
        builder = QueryBuilder(ctx.tokenizer, cfg, self.config.text_filter.rules)
        bundle = builder.build_query_bundle(
            last_messages, pending, ctx.participants, pools, display_map, idf
        )
        focus_terms = list(bundle.focus_terms)
        focus_characters = list(bundle.focus_characters)

        metrics.query.build_time = _elapsed_ms(build_start)
        metrics.anchor.focus_terms = focus_terms
        metrics.anchor.focus_characters = focus_characters
        metrics.query.lengths.v0_chars = sum(len(s.text) for s in bundle.query_segments)
        metrics.query.lengths.v1_chars = None
        metrics.query.lengths.rerank_chars = len(bundle.rerank_query)

        logger.info(
            f"Query Build: focus_terms=[{','.join(focus_terms)}] "
            f"focus_characters=[{','.join(focus_characters)}] "
            f"segments={len(bundle.query_segments)} lexTerms=[{','.join(bundle.lexical_terms[:5])}]"
        )

        def degraded(text: str) -> RecallResult:
            return self._empty_result(start, metrics, text, focus_terms, focus_characters)

        # ─── Stage 2: round 1 dense ───────────────────────────────
        segment_texts = [s.text for s in bundle.query_segments]
        if not segment_texts:
            return degraded("No query segments.")

        try:
            r1_vectors = await embed_with_retry(ctx.embedder, segment_texts, self.config.embedder)
        except EmbeddingError:
            return degraded("Embedding failed (round 1, after retry).")

        if not r1_vectors or len(r1_vectors) != len(segment_texts) or any(not v for v in r1_vectors):
            return degraded("Empty query vectors (round 1).")

        r1_weights = compute_segment_weights(bundle.query_segments, cfg)
        metrics.query.segment_weights = [round(w, 3) for w in r1_weights]
        query_v0 = weighted_average_vectors(r1_vectors, r1_weights)
        if not query_v0:
            return degraded("Weighted average produced empty vector.")

        fingerprint = ctx.fingerprint
        r1_anchor_start = time.perf_counter()
        r1_anchors = await recall_anchors(query_v0, ctx.store, ctx.conversation_id, fingerprint, cfg)
        r1_anchor_time = _elapsed_ms(r1_anchor_start)

        r1_event_start = time.perf_counter()
        r1_events = await recall_events(
            query_v0, events, ctx.store, ctx.conversation_id, fingerprint, focus_characters, cfg
        )
        r1_event_time = _elapsed_ms(r1_event_start)

        logger.info(
            f"Round 1: anchors={len(r1_anchors.hits)} events={len(r1_events.hits)} "
            f"weights=[{','.join(f'{w:.2f}' for w in r1_weights)}] "
            f"(anchor={r1_anchor_time}ms event={r1_event_time}ms)"
        )

        # ─── Stage 3: refinement ──────────────────────────────────
        refine_start = time.perf_counter()
        builder.refine_query_bundle(bundle, r1_anchors.hits, r1_events.hits, idf)
        metrics.query.refine_time = _elapsed_ms(refine_start)
        if bundle.hints_segment is not None:
            metrics.query.lengths.v1_chars = metrics.query.lengths.v0_chars + len(bundle.hints_segment.text)

        logger.info(
            f"Refinement: hasHints={bundle.hints_segment is not None} "
            f"lexTerms={len(bundle.lexical_terms)} ({metrics.query.refine_time}ms)"
        )

        # ─── Stage 4: round 2 dense ───────────────────────────────
        query_v1 = query_v0
        if bundle.hints_segment is not None:
            try:
                hints_vectors = await embed_with_retry(
                    ctx.embedder, [bundle.hints_segment.text], self.config.embedder
                )
                hints_vector = hints_vectors[0] if hints_vectors else []
                if hints_vector:
                    r2_weights = compute_r2_weights(bundle.query_segments, bundle.hints_segment, cfg)
                    combined = weighted_average_vectors([*r1_vectors, hints_vector], r2_weights)
                    if combined:
                        query_v1 = combined
                        metrics.query.r2_weights = [round(w, 3) for w in r2_weights]
                        logger.info(f"Round 2 weights: [{','.join(f'{w:.2f}' for w in r2_weights)}]")
            except EmbeddingError as e:
                logger.warning(f"Round 2 hints embedding failed, using round 1 vector: {e.message}")

        anchor_start = time.perf_counter()
        anchors = await recall_anchors(
            query_v1, ctx.store, ctx.conversation_id, fingerprint, cfg, metrics
        )
        metrics.timing.anchor_search = _elapsed_ms(anchor_start)

        event_start = time.perf_counter()
        event_recall = await recall_events(
            query_v1, events, ctx.store, ctx.conversation_id, fingerprint, focus_characters, cfg, metrics
        )
        metrics.timing.event_retrieval = _elapsed_ms(event_start)
        event_hits: list[EventHit] = list(event_recall.hits)
        event_vectors = event_recall.vector_map

        logger.info(
            f"Round 2: anchors={len(anchors.hits)} floors={len(anchors.floors)} events={len(event_hits)}"
        )

        # ─── Stage 5: lexical ─────────────────────────────────────
        lex_start = time.perf_counter()
        lexical_result = LexicalSearchResult()
        index_ready_time = 0
        try:
            ready_start = time.perf_counter()
            index = await ctx.get_lexical_index(events)
            index_ready_time = _elapsed_ms(ready_start)
            if index is not None:
                lexical_result = index.search(bundle.lexical_terms)
        except Exception as e:
            logger.warning(f"Lexical search failed: {e}")
        lex_time = _elapsed_ms(lex_start)

        metrics.lexical.chunk_hits = len(lexical_result.chunk_ids)
        metrics.lexical.event_hits = len(lexical_result.event_ids)
        metrics.lexical.search_time = lexical_result.search_time_ms
        metrics.lexical.index_ready_time = index_ready_time
        metrics.lexical.terms = bundle.lexical_terms[:10]
        metrics.lexical.idf_enabled = lexical_result.idf_enabled
        metrics.lexical.idf_doc_count = lexical_result.idf_doc_count
        metrics.lexical.top_idf_terms = [
            {"term": t.term, "idf": round(t.idf, 3)} for t in lexical_result.top_idf_terms
        ]
        metrics.lexical.term_searches = lexical_result.term_searches

        focus_set = {normalize(c) for c in focus_characters if normalize(c)}
        event_index = build_event_index(events)
        existing_ids = {h.event.id for h in event_hits}

        def classify(event: Event) -> RecallType:
            matched = bool(focus_set) and any(normalize(p) in focus_set for p in event.participants)
            return RecallType.DIRECT if matched else RecallType.RELATED

        lexical_event_count = 0
        lexical_event_filtered = 0
        for event_id in lexical_result.event_ids:
            if event_id in existing_ids:
                continue
            event = event_index.get(event_id)
            if event is None:
                continue
            vector = event_vectors.get(event_id)
            if not vector:
                lexical_event_filtered += 1
                continue
            sim = cosine_similarity(query_v1, vector)
            if sim < cfg.lexical_event_dense_min:
                lexical_event_filtered += 1
                continue
            event_hits.append(EventHit(event=event, similarity=sim, recall_type=classify(event)))
            existing_ids.add(event_id)
            lexical_event_count += 1

        metrics.lexical.event_filtered_by_dense = lexical_event_filtered
        if lexical_event_count:
            metrics.event.by_recall_type.lexical = lexical_event_count
            metrics.event.selected += lexical_event_count

        logger.info(
            f"Lexical: chunks={len(lexical_result.chunk_ids)} events={len(lexical_result.event_ids)} "
            f"mergedEvents=+{lexical_event_count} filteredByDense={lexical_event_filtered} "
            f"idfEnabled={'yes' if lexical_result.idf_enabled else 'no'} "
            f"idfDocs={lexical_result.idf_doc_count} termSearches={lexical_result.term_searches} "
            f"(indexReady={index_ready_time}ms search={lexical_result.search_time_ms}ms total={lex_time}ms)"
        )

        # ─── Stage 6: evidence ────────────────────────────────────
        evidence = await locate_and_pull_evidence(
            anchors.hits,
            atoms,
            query_v1,
            bundle.rerank_query,
            lexical_result,
            bundle.lexical_terms,
            store=ctx.store,
            conversation_id=ctx.conversation_id,
            chat=ctx.chat,
            context=ctx.participants,
            reranker=ctx.reranker,
            tokenizer=ctx.tokenizer,
            config=cfg,
            reranker_config=self.config.reranker,
            metrics=metrics,
        )
        l0_selected: list[EvidenceItem] = list(evidence.l0_selected)

        # ─── Stage 7: diffusion ───────────────────────────────────
        diffused = diffuse_from_seeds(
            l0_selected,
            atoms,
            anchors.state_vectors,
            query_v1,
            user_name=ctx.participants.name1,
            config=self.config.diffusion,
            metrics=metrics,
        )
        for item in diffused:
            l0_selected.append(
                EvidenceItem(
                    id=diffused_item_id(item.atom_id),
                    atom_id=item.atom_id,
                    floor=item.floor,
                    similarity=item.final_score,
                    rerank_score=item.final_score,
                    atom=item.atom,
                    text=item.atom.semantic or "",
                )
            )
        metrics.timing.diffusion = metrics.diffusion.time

        # ─── Stage 8: L0 -> L2 linking, L1 pairs ─────────────────
        recalled_floors = {item.floor for item in l0_selected}
        l0_linked = 0
        for event in events:
            if event.id in existing_ids:
                continue
            floor_range = parse_floor_range(event.summary)
            if floor_range is None:
                continue
            range_start, range_end = floor_range
            if not any(range_start <= f <= range_end for f in recalled_floors):
                continue
            vector = event_vectors.get(event.id)
            sim = cosine_similarity(query_v1, vector) if vector else 0.0
            if sim < cfg.lexical_event_dense_min:
                continue
            event_hits.append(EventHit(event=event, similarity=sim, recall_type=classify(event)))
            existing_ids.add(event.id)
            l0_linked += 1

        if l0_linked:
            metrics.event.by_recall_type.l0_linked = l0_linked
            metrics.event.selected += l0_linked

        logger.info(
            f"L0-linked events: {len(recalled_floors)} floors -> {l0_linked} events linked "
            f"(sim>={cfg.lexical_event_dense_min})"
        )

        l1_by_floor = await build_l1_pairs(
            l0_selected,
            query_v1,
            evidence.l1_scores,
            store=ctx.store,
            conversation_id=ctx.conversation_id,
            chat=ctx.chat,
            metrics=metrics,
        )

        # ─── Stage 9: causal chain ────────────────────────────────
        trace = trace_causation(
            event_hits, event_index, cfg.causal_chain_max_depth, cfg.causal_inject_max
        )
        recalled_ids = {h.event.id for h in event_hits}
        causal_chain: list[CausalHit] = [
            hit for hit in trace.results if hit.event.id not in recalled_ids
        ]
        metrics.event.by_recall_type.causal = len(causal_chain)
        metrics.event.causal_chain_depth = trace.max_depth
        metrics.event.causal_count = len(causal_chain)

        # ─── Finish ───────────────────────────────────────────────
        metrics.event.entity_names = focus_characters
        metrics.event.entities_used = len(focus_characters)
        metrics.event.focus_terms_count = len(focus_terms)

        attached_texts = [
            chunk.text
            for pair in l1_by_floor.values()
            for chunk in (pair.ai_top1, pair.user_top1)
            if chunk is not None
        ]
        metrics.evidence.tokens = ctx.token_counter.count_many(
            [item.text for item in l0_selected] + attached_texts
        )

        if event_hits:
            direct = sum(1 for h in event_hits if h.recall_type == RecallType.DIRECT)
            metrics.quality.event_precision_proxy = round(direct / len(event_hits), 3)

        metrics.timing.total = _elapsed_ms(start)
        metrics.quality.potential_issues = detect_issues(metrics)

        logger.info(
            f"Recall done: events={len(event_hits)} (l0Linked=+{l0_linked}) causal={len(causal_chain)} "
            f"L0={len(l0_selected)} L1 floors={len(l1_by_floor)} "
            f"mustKeep=[{','.join(str(f) for f in evidence.must_keep_floors)}] ({metrics.timing.total}ms)",
            extra={"conversation_id": ctx.conversation_id, "issues": len(metrics.quality.potential_issues)},
        )

        return RecallResult(
            events=event_hits,
            causal_chain=causal_chain,
            l0_selected=l0_selected,
            l1_by_floor=l1_by_floor,
            focus_terms=focus_terms,
            focus_characters=focus_characters,
            must_keep_floors=evidence.must_keep_floors,
            elapsed_ms=metrics.timing.total,
            log_text=format_metrics_log(metrics, cfg.lexical_floor_dense_min),
            metrics=metrics,
        )

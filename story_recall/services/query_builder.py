"""
Deterministic query builder (no LLM).

Turns the recent message window into a weighted multi-segment QueryBundle
and, after the first dense round, refines it with memory hints.

Segment layout with K=3:
    msg[0] = USER(#N-2)  context  base_weight 0.15
    msg[1] = AI(#N-1)    context  base_weight 0.30
    msg[2] = USER(#N)    focus    base_weight 0.55

The orchestrator turns base weights into effective weights with
compute_segment_weights / compute_r2_weights.
"""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

from story_recall.config import RetrievalConfig, TextFilterRule
from story_recall.core.tokenizer.text_tokenizer import TextTokenizer
from story_recall.models.conversation import ChatMessage, ParticipantContext
from story_recall.models.event import EventHit
from story_recall.models.query import QueryBundle, QuerySegment
from story_recall.models.recall import AnchorHit
from story_recall.services.entity_lexicon import CharacterPools, extract_entities_from_text
from story_recall.services.lexical_index import IdfAccessor
from story_recall.utils.text import clean_message_text, normalize, strip_floor_marker

DEFAULT_USER_NAME = "用户"
DEFAULT_CHARACTER_NAME = "角色"


# ═══════════════════════════════════════════════════════════
# WEIGHTS
# ═══════════════════════════════════════════════════════════


def compute_length_factor(
    char_count: int, full_threshold: int = 50, min_factor: float = 0.35
) -> float:
    """
    Length factor for a segment.

    Returns min_factor at 0 characters, 1.0 at full_threshold and beyond,
    linear in between.
    """
    if char_count >= full_threshold:
        return 1.0
    if char_count <= 0:
        return min_factor
    return min_factor + (1.0 - min_factor) * (char_count / full_threshold)


def clamp_min_normalized_weight(
    weights: list[float], target_idx: int, min_weight: float
) -> list[float]:
    """
    Raise one normalized weight to min_weight.

    The deficit is taken from the other weights proportionally so the sum
    stays 1.

    Args:
        weights: Weights summing to 1
        target_idx: Index of the weight to protect
        min_weight: Minimum share for that weight

    Returns:
        Adjusted weights
    """
    if not weights:
        return []
    if target_idx < 0 or target_idx >= len(weights):
        return weights

    current = weights[target_idx]
    if current >= min_weight:
        return weights

    other_sum = 1 - current
    if other_sum <= 0:
        out = [0.0] * len(weights)
        out[target_idx] = 1.0
        return out

    scale = (1 - min_weight) / other_sum
    out = [min_weight if i == target_idx else w * scale for i, w in enumerate(weights)]
    out[target_idx] += 1 - sum(out)
    return out


def _normalize(weights: list[float]) -> list[float]:
    total = sum(weights)
    if total <= 0:
        return [1 / len(weights)] * len(weights)
    return [w / total for w in weights]


def _tail_aligned(bases: Sequence[float], count: int) -> list[float]:
    """Assign context bases so the newest context gets the last (largest) base."""
    return [bases[max(0, len(bases) - count + i)] for i in range(count)]


def compute_segment_weights(
    segments: Sequence[QuerySegment], config: RetrievalConfig | None = None
) -> list[float]:
    """
    Round-1 effective weights: base x length factor, normalized, focus clamped.

    The focus segment is the last one.
    """
    if not segments:
        return []
    config = config or RetrievalConfig()

    adjusted = [
        s.base_weight
        * compute_length_factor(s.char_count, config.length_full_threshold, config.length_min_factor)
        for s in segments
    ]
    return clamp_min_normalized_weight(
        _normalize(adjusted), len(segments) - 1, config.focus_min_normalized_weight
    )


def compute_r2_weights(
    segments: Sequence[QuerySegment],
    hints_segment: QuerySegment | None,
    config: RetrievalConfig | None = None,
) -> list[float]:
    """
    Round-2 effective weights.

    Context and focus use the R2 base schedule (the focus yields share to the
    hints segment, appended last). The focus clamp still applies to the
    focus segment.
    """
    if not segments:
        return []
    config = config or RetrievalConfig()

    def factor(n: int) -> float:
        return compute_length_factor(n, config.length_full_threshold, config.length_min_factor)

    context_count = len(segments) - 1
    bases = _tail_aligned(config.context_base_weights_r2, context_count)
    bases.append(config.focus_base_weight_r2)

    adjusted = [w * factor(segments[i].char_count) for i, w in enumerate(bases)]
    if hints_segment is not None:
        adjusted.append(hints_segment.base_weight * factor(hints_segment.char_count))

    return clamp_min_normalized_weight(
        _normalize(adjusted), len(segments) - 1, config.focus_min_normalized_weight
    )


# ═══════════════════════════════════════════════════════════
# QUERY BUILDER
# ═══════════════════════════════════════════════════════════


@dataclass
class _MessageEntry:
    text: str
    clean: str

    @property
    def char_count(self) -> int:
        return len(self.clean)


class QueryBuilder:
    """
    Builds and refines QueryBundles for one conversation.

    Responsibilities:
    - Focus/context separation
    - Focus terms and focus characters from the entity lexicon
    - Lexical terms ranked by tf x idf
    - Hints segment from round-1 hits
    """

    def __init__(
        self,
        tokenizer: TextTokenizer,
        config: RetrievalConfig | None = None,
        filter_rules: list[TextFilterRule] | None = None,
    ):
        """
        Initialize query builder.

        Args:
            tokenizer: Tokenizer used for key-term extraction
            config: Retrieval constants
            filter_rules: Text filter rules applied to message text
        """
        self.tokenizer = tokenizer
        self.config = config or RetrievalConfig()
        self.filter_rules = filter_rules or []

    def clean(self, text: str | None) -> str:
        return clean_message_text(text, self.filter_rules)

    def extract_key_terms(
        self, text: str, max_terms: int | None = None, idf: IdfAccessor | None = None
    ) -> list[str]:
        """
        Rank index tokens of text by tf x idf.

        Args:
            text: Cleaned text
            max_terms: Maximum number of terms (default: lexical_terms_max)
            idf: IDF statistics; idf=1 when missing or disabled

        Returns:
            Lowercase terms, best first (ties broken by tf)
        """
        if not text:
            return []
        limit = self.config.lexical_terms_max if max_terms is None else max_terms

        freq = Counter(t.lower() for t in self.tokenizer.tokenize_for_index(text) if t)
        scored = []
        for term, tf in freq.items():
            weight = idf.get_idf(term) if idf is not None and idf.enabled else 1.0
            scored.append((term, tf, tf * weight))

        scored.sort(key=lambda item: (item[2], item[1]), reverse=True)
        return [term for term, _, _ in scored[:limit]]

    def _message_entry(
        self, message: ChatMessage, context: ParticipantContext
    ) -> _MessageEntry | None:
        if not message.mes:
            return None
        if message.is_user:
            speaker = context.name1 or DEFAULT_USER_NAME
        else:
            speaker = message.name or context.name2 or DEFAULT_CHARACTER_NAME

        clean = self.clean(message.mes)
        if not clean:
            return None
        return _MessageEntry(text=f"{speaker}：{clean}", clean=clean)

    def build_query_bundle(
        self,
        last_messages: Sequence[ChatMessage],
        pending_user_message: str | None,
        context: ParticipantContext,
        pools: CharacterPools,
        display_map: dict[str, str],
        idf: IdfAccessor | None = None,
    ) -> QueryBundle:
        """
        Build the initial query bundle.

        The pending message, when present, is the focus and every window
        message is context. Otherwise the last window message is the focus.

        Args:
            last_messages: Recent messages, oldest first
            pending_user_message: Unsent user message
            context: Participant names
            pools: Character pools of the conversation
            display_map: normalized -> display form
            idf: Lexical IDF statistics

        Returns:
            QueryBundle with segments ordered context then focus
        """
        lexicon = set(pools.all)
        context_entries: list[_MessageEntry] = []
        focus_entry: _MessageEntry | None = None
        clean_texts: list[str] = []

        messages = list(last_messages or [])
        if pending_user_message:
            pending_clean = self.clean(pending_user_message)
            if pending_clean:
                speaker = context.name1 or DEFAULT_USER_NAME
                focus_entry = _MessageEntry(text=f"{speaker}：{pending_clean}", clean=pending_clean)
                clean_texts.append(pending_clean)
            context_messages = messages
        else:
            if messages:
                focus_entry = self._message_entry(messages[-1], context)
                if focus_entry:
                    clean_texts.append(focus_entry.clean)
            context_messages = messages[:-1]

        for message in context_messages:
            entry = self._message_entry(message, context)
            if entry:
                context_entries.append(entry)
                clean_texts.append(entry.clean)

        combined = " ".join(clean_texts)
        focus_terms = extract_entities_from_text(combined, lexicon, display_map)
        focus_characters = [t for t in focus_terms if normalize(t) in pools.trusted]

        bases = _tail_aligned(self.config.context_base_weights, len(context_entries))
        segments = [
            QuerySegment(text=entry.text, base_weight=base, char_count=entry.char_count)
            for entry, base in zip(context_entries, bases)
        ]
        if focus_entry:
            segments.append(
                QuerySegment(
                    text=focus_entry.text,
                    base_weight=self.config.focus_base_weight,
                    char_count=focus_entry.char_count,
                )
            )

        context_lines = [e.text for e in context_entries]
        rerank_lines = [focus_entry.text, *context_lines] if focus_entry else context_lines

        terms = list(dict.fromkeys(t.lower() for t in focus_terms))
        for term in self.extract_key_terms(combined, idf=idf):
            if len(terms) >= self.config.lexical_terms_max:
                break
            if term not in terms:
                terms.append(term)

        return QueryBundle(
            query_segments=segments,
            hints_segment=None,
            rerank_query="\n".join(rerank_lines),
            lexical_terms=terms,
            focus_terms=focus_terms,
            focus_characters=focus_characters,
            lexicon=lexicon,
            display_map=dict(display_map),
        )

    def refine_query_bundle(
        self,
        bundle: QueryBundle,
        anchor_hits: Sequence[AnchorHit],
        event_hits: Sequence[EventHit],
        idf: IdfAccessor | None = None,
    ) -> None:
        """
        Add round-1 memory hints to the bundle in place.

        Fills hints_segment and appends hint key terms to lexical_terms.
        rerank_query is left unchanged.
        """
        hints: list[str] = []
        for hit in list(anchor_hits)[: self.config.memory_hint_atoms_max]:
            if hit.atom.semantic:
                hints.append(hit.atom.semantic)

        for hit in list(event_hits)[: self.config.memory_hint_events_max]:
            title = hit.event.title.strip()
            summary = strip_floor_marker(hit.event.summary)
            line = f"{title}: {summary}" if title and summary else title or summary
            if line:
                hints.append(line)

        if not hints:
            bundle.hints_segment = None
            return

        hints_text = "\n".join(hints)
        bundle.hints_segment = QuerySegment(
            text=hints_text,
            base_weight=self.config.hints_base_weight,
            char_count=len(hints_text),
        )

        for term in self.extract_key_terms(" ".join(hints), self.config.hint_terms_max, idf):
            if len(bundle.lexical_terms) >= self.config.lexical_terms_max:
                break
            if term not in bundle.lexical_terms:
                bundle.lexical_terms.append(term)

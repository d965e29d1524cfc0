"""
Lexical index over L1 chunks and L2 event summaries.

Two structures are maintained side by side:
- InvertedIndex: BM25 postings with prefix and fuzzy term expansion
- IdfTable: per-document token sets and document frequencies used to weight
  query terms (clamped to [idf_min, idf_max])

Both are updated incrementally per floor / per event so a new turn never
forces a full rebuild. A full build is skipped when the document
fingerprint is unchanged.
"""

import asyncio
import bisect
import math
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from story_recall.config import LexicalConfig
from story_recall.core.tokenizer.text_tokenizer import TextTokenizer
from story_recall.models.chunk import Chunk
from story_recall.models.event import Event
from story_recall.utils.logger import get_logger
from story_recall.utils.text import strip_floor_marker

logger = get_logger(__name__)

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193


class DocKind(str, Enum):
    CHUNK = "chunk"
    EVENT = "event"


class LexicalDocument(BaseModel):
    """Indexed document. Event documents carry no floor."""

    id: str
    kind: DocKind
    floor: int | None = None
    text: str


class TermIdf(BaseModel):
    term: str
    idf: float


class TermFloorHit(BaseModel):
    floor: int
    weighted_score: float
    chunk_id: str


class ChunkLexScore(BaseModel):
    chunk_id: str
    score: float


class FloorLexScore(BaseModel):
    floor: int
    score: float
    hit_terms_count: int


class LexicalSearchResult(BaseModel):
    """Per-call lexical search output."""

    chunk_ids: list[str] = Field(default_factory=list, description="Sorted by weighted score")
    chunk_scores: list[ChunkLexScore] = Field(default_factory=list)
    chunk_floors: set[int] = Field(default_factory=set)
    event_ids: list[str] = Field(default_factory=list, description="Sorted by weighted score")
    term_floor_hits: dict[str, list[TermFloorHit]] = Field(default_factory=dict)
    floor_lex_scores: list[FloorLexScore] = Field(default_factory=list)
    top_idf_terms: list[TermIdf] = Field(default_factory=list)
    idf_enabled: bool = False
    idf_doc_count: int = 0
    term_searches: int = 0
    query_terms: list[str] = Field(default_factory=list)
    search_time_ms: int = 0


@dataclass(frozen=True)
class IdfAccessor:
    """Read-only IDF view handed to the query builder."""

    enabled: bool
    doc_count: int
    get_idf: Callable[[str], float]


def disabled_idf_accessor() -> IdfAccessor:
    return IdfAccessor(enabled=False, doc_count=0, get_idf=lambda term: 1.0)


def normalize_term(term: str | None) -> str:
    return str(term or "").strip().lower()


def compute_idf(df: int, doc_count: int, idf_min: float = 1.0, idf_max: float = 4.0) -> float:
    """
    Smoothed IDF clamped to [idf_min, idf_max].

    Args:
        df: Number of documents containing the term
        doc_count: Total document count

    Returns:
        ``clamp(ln((N + 1) / (df + 1)) + 1)``, or 1.0 when there are no documents
    """
    if doc_count <= 0:
        return 1.0
    raw = math.log((doc_count + 1) / (max(0, df) + 1)) + 1
    return max(idf_min, min(idf_max, raw))


def fnv1a32(text: str, seed: int = FNV_OFFSET_BASIS) -> int:
    value = seed & 0xFFFFFFFF
    for ch in text:
        value ^= ord(ch)
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return value


def compute_fingerprint(docs: Iterable[LexicalDocument]) -> str:
    """Order-independent content fingerprint: "{count}:{fnv1a hex}"."""
    ordered = sorted(docs, key=lambda d: f"{d.kind.value}:{d.id}")
    value = FNV_OFFSET_BASIS
    for doc in ordered:
        floor = "" if doc.floor is None else str(doc.floor)
        payload = f"{doc.kind.value}\x1f{doc.id}\x1f{floor}\x1f{doc.text}\x1e"
        value = fnv1a32(payload, value)
    return f"{len(ordered)}:{value:x}"


def build_event_document(event: Event) -> LexicalDocument | None:
    """Event document text: title, participants, summary without its floor marker."""
    parts = []
    if event.title:
        parts.append(event.title)
    if event.participants:
        parts.append(" ".join(event.participants))
    summary = strip_floor_marker(event.summary)
    if summary:
        parts.append(summary)

    text = " ".join(parts).strip()
    if not event.id or not text:
        return None
    return LexicalDocument(id=event.id, kind=DocKind.EVENT, floor=None, text=text)


def build_chunk_document(chunk: Chunk) -> LexicalDocument | None:
    if not chunk.chunk_id or not chunk.text:
        return None
    return LexicalDocument(id=chunk.chunk_id, kind=DocKind.CHUNK, floor=chunk.floor, text=chunk.text)


def collect_documents(chunks: Iterable[Chunk], events: Iterable[Event]) -> list[LexicalDocument]:
    docs = [doc for doc in (build_chunk_document(c) for c in chunks) if doc]
    docs.extend(doc for doc in (build_event_document(e) for e in events) if doc)
    return docs


# ═══════════════════════════════════════════════════════════
# IDF TABLE
# ═══════════════════════════════════════════════════════════


class IdfTable:
    """Document-frequency statistics, independent of the BM25 postings."""

    def __init__(self, idf_min: float = 1.0, idf_max: float = 4.0):
        self.idf_min = idf_min
        self.idf_max = idf_max
        self.doc_tokens: dict[str, frozenset[str]] = {}
        self.df: dict[str, int] = {}

    @property
    def doc_count(self) -> int:
        return len(self.doc_tokens)

    def add_document(self, doc_id: str, tokens: Iterable[str]) -> None:
        """Add a document; an existing document with the same ID is replaced."""
        self.remove_document(doc_id)
        unique = frozenset(t for t in (normalize_term(t) for t in tokens) if t)
        self.doc_tokens[doc_id] = unique
        for token in unique:
            self.df[token] = self.df.get(token, 0) + 1

    def remove_document(self, doc_id: str) -> None:
        tokens = self.doc_tokens.pop(doc_id, None)
        if tokens is None:
            return
        for token in tokens:
            current = self.df.get(token, 0)
            if current <= 1:
                self.df.pop(token, None)
            else:
                self.df[token] = current - 1

    def idf(self, term: str) -> float:
        normalized = normalize_term(term)
        if not normalized or self.doc_count <= 0:
            return 1.0
        return compute_idf(self.df.get(normalized, 0), self.doc_count, self.idf_min, self.idf_max)

    def clear(self) -> None:
        self.doc_tokens.clear()
        self.df.clear()


# ═══════════════════════════════════════════════════════════
# INVERTED INDEX (BM25)
# ═══════════════════════════════════════════════════════════


class InvertedIndex:
    """
    Inverted index for BM25 scoring.
    Structure: term -> {doc_id: term_frequency}
    """

    def __init__(self, k1: float = 1.2, b: float = 0.7):
        self.k1 = k1
        self.b = b
        self.postings: dict[str, dict[str, int]] = defaultdict(dict)
        self.doc_lengths: dict[str, int] = {}
        self.doc_terms: dict[str, set[str]] = {}
        self._total_length = 0
        self._vocabulary: list[str] | None = None

    @property
    def total_docs(self) -> int:
        return len(self.doc_lengths)

    @property
    def avg_doc_length(self) -> float:
        return self._total_length / self.total_docs if self.total_docs else 0.0

    @property
    def vocabulary(self) -> list[str]:
        """Sorted vocabulary, rebuilt lazily after changes."""
        if self._vocabulary is None:
            self._vocabulary = sorted(self.postings)
        return self._vocabulary

    def add_document(self, doc_id: str, tokens: list[str]) -> None:
        """Add or update a document in the index."""
        self.remove_document(doc_id)
        if not tokens:
            return

        counts: dict[str, int] = defaultdict(int)
        for token in tokens:
            counts[token] += 1
        for term, count in counts.items():
            self.postings[term][doc_id] = count

        self.doc_terms[doc_id] = set(counts)
        self.doc_lengths[doc_id] = len(tokens)
        self._total_length += len(tokens)
        self._vocabulary = None

    def remove_document(self, doc_id: str) -> None:
        """Remove a document from the index."""
        length = self.doc_lengths.pop(doc_id, None)
        if length is None:
            return
        self._total_length -= length

        for term in self.doc_terms.pop(doc_id, ()):
            docs = self.postings.get(term)
            if docs is None:
                continue
            docs.pop(doc_id, None)
            if not docs:
                del self.postings[term]
        self._vocabulary = None

    def bm25(self, term: str, doc_id: str) -> float:
        docs = self.postings.get(term)
        if not docs or doc_id not in docs:
            return 0.0
        tf = docs[doc_id]
        df = len(docs)
        idf = math.log(1 + (self.total_docs - df + 0.5) / (df + 0.5))
        avg = self.avg_doc_length or 1.0
        norm = tf + self.k1 * (1 - self.b + self.b * self.doc_lengths[doc_id] / avg)
        return idf * tf * (self.k1 + 1) / norm

    def expand(
        self,
        token: str,
        fuzzy: float,
        prefix: bool,
        fuzzy_weight: float,
        prefix_weight: float,
    ) -> dict[str, float]:
        """
        Index terms matched by a query token, with their match weight.

        Exact match weighs 1; prefix and fuzzy expansions weigh less. The best
        weight per index term wins.
        """
        matches: dict[str, float] = {}
        if token in self.postings:
            matches[token] = 1.0

        vocabulary = self.vocabulary
        if prefix:
            start = bisect.bisect_left(vocabulary, token)
            for term in vocabulary[start:]:
                if not term.startswith(token):
                    break
                if term != token:
                    matches[term] = max(matches.get(term, 0.0), prefix_weight)

        max_distance = round(fuzzy * len(token))
        if max_distance > 0 and vocabulary:
            for term, _, _ in process.extract(
                token,
                vocabulary,
                scorer=Levenshtein.distance,
                score_cutoff=max_distance,
                limit=None,
            ):
                if term != token:
                    matches[term] = max(matches.get(term, 0.0), fuzzy_weight)

        return matches

    def clear(self) -> None:
        self.postings.clear()
        self.doc_lengths.clear()
        self.doc_terms.clear()
        self._total_length = 0
        self._vocabulary = None


# ═══════════════════════════════════════════════════════════
# LEXICAL INDEX
# ═══════════════════════════════════════════════════════════


class LexicalIndex:
    """
    Per-conversation lexical index with incremental maintenance.

    Usage:
        index = LexicalIndex(tokenizer)
        await index.build(chunks, events)
        result = index.search(["sword", "林黛玉"])
    """

    def __init__(self, tokenizer: TextTokenizer, config: LexicalConfig | None = None):
        """
        Initialize lexical index.

        Args:
            tokenizer: Tokenizer used for documents and query terms
            config: Optional lexical configuration. Uses defaults if not provided.
        """
        self.tokenizer = tokenizer
        self.config = config or LexicalConfig()
        self.index = InvertedIndex(k1=self.config.bm25_k1, b=self.config.bm25_b)
        self.idf_table = IdfTable(idf_min=self.config.idf_min, idf_max=self.config.idf_max)
        self.docs: dict[str, LexicalDocument] = {}
        self.floor_doc_ids: dict[int, list[str]] = {}
        self.fingerprint: str | None = None

    @property
    def doc_count(self) -> int:
        return len(self.docs)

    @property
    def is_built(self) -> bool:
        return self.fingerprint is not None

    # ═══════════════════════════════════════════════════════════
    # BUILD & INCREMENTAL OPERATIONS
    # ═══════════════════════════════════════════════════════════

    async def build(self, chunks: Iterable[Chunk], events: Iterable[Event]) -> bool:
        """
        Build the index from scratch.

        Runs in batches, yielding to the event loop between them.

        Args:
            chunks: All chunks of the conversation
            events: All events of the conversation

        Returns:
            True if the index was rebuilt, False if the fingerprint was unchanged
        """
        docs = collect_documents(chunks, events)
        fingerprint = compute_fingerprint(docs)
        if fingerprint == self.fingerprint:
            logger.debug(f"Lexical index unchanged ({fingerprint}), skipping rebuild")
            return False

        start = time.perf_counter()
        self.clear()

        batch_size = self.config.build_batch_size
        for offset in range(0, len(docs), batch_size):
            for doc in docs[offset : offset + batch_size]:
                self._add_document(doc)
            if offset + batch_size < len(docs):
                await asyncio.sleep(0)

        self.fingerprint = fingerprint
        elapsed = round((time.perf_counter() - start) * 1000)
        logger.info(
            f"Lexical index built: {len(docs)} docs ({elapsed}ms)",
            extra={"doc_count": len(docs), "fingerprint": fingerprint},
        )
        return True

    def add_documents_for_floor(self, floor: int, chunks: Iterable[Chunk]) -> None:
        """Replace the chunk documents of one floor."""
        self.remove_documents_by_floor(floor)

        added = 0
        for chunk in chunks:
            doc = build_chunk_document(chunk)
            if doc is None:
                continue
            if doc.floor is None or doc.floor < 0:
                doc = doc.model_copy(update={"floor": floor})
            self._add_document(doc)
            added += 1

        if added:
            logger.info(f"Incremental add floor={floor} chunks={added}")

    def remove_documents_by_floor(self, floor: int) -> None:
        doc_ids = self.floor_doc_ids.pop(floor, [])
        for doc_id in doc_ids:
            self._remove_document(doc_id)
        if doc_ids:
            logger.info(f"Incremental remove floor={floor} chunks={len(doc_ids)}")

    def add_event_documents(self, events: Iterable[Event]) -> None:
        """Add or replace event documents by event ID."""
        added = 0
        for event in events:
            doc = build_event_document(event)
            if doc is None:
                continue
            self._add_document(doc)
            added += 1
        if added:
            logger.info(f"Incremental add events={added}")

    def _add_document(self, doc: LexicalDocument) -> None:
        if doc.id in self.docs:
            self._remove_document(doc.id)

        tokens = self.tokenizer.tokenize_for_index(doc.text)
        self.index.add_document(doc.id, tokens)
        self.idf_table.add_document(doc.id, tokens)
        self.docs[doc.id] = doc
        if doc.kind == DocKind.CHUNK and doc.floor is not None and doc.floor >= 0:
            self.floor_doc_ids.setdefault(doc.floor, []).append(doc.id)

    def _remove_document(self, doc_id: str) -> None:
        doc = self.docs.pop(doc_id, None)
        if doc is None:
            return
        self.index.remove_document(doc_id)
        self.idf_table.remove_document(doc_id)
        if doc.floor is not None and doc.floor in self.floor_doc_ids:
            remaining = [d for d in self.floor_doc_ids[doc.floor] if d != doc_id]
            if remaining:
                self.floor_doc_ids[doc.floor] = remaining
            else:
                del self.floor_doc_ids[doc.floor]

    def clear(self) -> None:
        """Drop all documents, postings and IDF statistics."""
        self.index.clear()
        self.idf_table.clear()
        self.docs.clear()
        self.floor_doc_ids.clear()
        self.fingerprint = None

    # ═══════════════════════════════════════════════════════════
    # IDF
    # ═══════════════════════════════════════════════════════════

    def idf(self, term: str) -> float:
        return self.idf_table.idf(term)

    def idf_accessor(self) -> IdfAccessor:
        """IDF view for query-term ranking; idf=1 when no statistics exist."""
        return IdfAccessor(
            enabled=self.idf_table.doc_count > 0,
            doc_count=self.idf_table.doc_count,
            get_idf=self.idf,
        )

    # ═══════════════════════════════════════════════════════════
    # SEARCH
    # ═══════════════════════════════════════════════════════════

    def search_term(self, term: str) -> dict[str, float]:
        """
        Score documents for one query term.

        The term is tokenized like documents; each token is expanded to
        matching index terms and BM25 scores are summed per document.

        Returns:
            doc_id -> score
        """
        scores: dict[str, float] = defaultdict(float)
        for token in self.tokenizer.tokenize_for_index(term):
            expansions = self.index.expand(
                token,
                fuzzy=self.config.fuzzy,
                prefix=self.config.prefix,
                fuzzy_weight=self.config.fuzzy_weight,
                prefix_weight=self.config.prefix_weight,
            )
            for index_term, weight in expansions.items():
                for doc_id in self.index.postings.get(index_term, {}):
                    scores[doc_id] += weight * self.index.bm25(index_term, doc_id)
        return dict(scores)

    def search(self, terms: Iterable[str] | None) -> LexicalSearchResult:
        """
        Search the index with already-normalized terms.

        Each unique term is searched independently and its hit scores are
        weighted by the term's IDF, then accumulated per document.

        Args:
            terms: Query terms

        Returns:
            LexicalSearchResult with chunk/event hits and per-floor diagnostics
        """
        start = time.perf_counter()
        result = LexicalSearchResult(
            idf_enabled=self.idf_table.doc_count > 0,
            idf_doc_count=self.idf_table.doc_count,
        )

        query_terms = list(dict.fromkeys(t for t in (normalize_term(t) for t in terms or []) if t))
        if not query_terms or not self.docs:
            result.query_terms = query_terms
            result.search_time_ms = round((time.perf_counter() - start) * 1000)
            return result

        result.query_terms = query_terms
        weighted_scores: dict[str, float] = defaultdict(float)
        idf_pairs: list[TermIdf] = []
        term_floor_hits: dict[str, list[TermFloorHit]] = {}
        floor_agg: dict[int, tuple[float, set[str]]] = {}

        for term in query_terms:
            idf = self.idf(term)
            idf_pairs.append(TermIdf(term=term, idf=idf))

            try:
                hits = self.search_term(term)
            except Exception as e:
                logger.warning(f"Lexical term search failed: {term}: {e}")
                continue

            result.term_searches += 1

            for doc_id, score in hits.items():
                weighted = score * idf
                weighted_scores[doc_id] += weighted

                doc = self.docs.get(doc_id)
                if doc is None or doc.kind != DocKind.CHUNK or doc.floor is None or doc.floor < 0:
                    continue
                term_floor_hits.setdefault(term, []).append(
                    TermFloorHit(floor=doc.floor, weighted_score=weighted, chunk_id=doc_id)
                )
                total, hit_terms = floor_agg.get(doc.floor, (0.0, set()))
                hit_terms.add(term)
                floor_agg[doc.floor] = (total + weighted, hit_terms)

        idf_pairs.sort(key=lambda p: p.idf, reverse=True)
        result.top_idf_terms = idf_pairs[: self.config.top_idf_terms]
        result.term_floor_hits = term_floor_hits
        result.floor_lex_scores = sorted(
            (
                FloorLexScore(floor=floor, score=round(total, 6), hit_terms_count=len(hit_terms))
                for floor, (total, hit_terms) in floor_agg.items()
            ),
            key=lambda f: f.score,
            reverse=True,
        )

        for doc_id, score in sorted(weighted_scores.items(), key=lambda item: item[1], reverse=True):
            doc = self.docs.get(doc_id)
            if doc is None:
                continue
            if doc.kind == DocKind.CHUNK:
                result.chunk_ids.append(doc_id)
                result.chunk_scores.append(ChunkLexScore(chunk_id=doc_id, score=score))
                if doc.floor is not None and doc.floor >= 0:
                    result.chunk_floors.add(doc.floor)
            else:
                result.event_ids.append(doc_id)

        result.search_time_ms = round((time.perf_counter() - start) * 1000)
        logger.info(
            f"Lexical search terms=[{','.join(query_terms[:5])}] chunks={len(result.chunk_ids)} "
            f"events={len(result.event_ids)} termSearches={result.term_searches} "
            f"({result.search_time_ms}ms)"
        )
        return result

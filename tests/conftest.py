"""Shared fixtures for story-recall tests.

Fixtures use function scope to avoid event loop issues. Providers are
replaced by deterministic fakes so no test needs a network service:

- KeywordEmbedder: one axis per keyword plus a small bias axis
- ScriptedReranker: scores documents by keyword, or fails on demand
"""

import pytest

from story_recall.config import Config, EmbedderConfig, TokenizerConfig
from story_recall.core.embeddings.base import Embedder
from story_recall.core.memory_store.in_memory import InMemoryStore
from story_recall.core.rerank.base import Reranker, RerankOutcome, RerankResult
from story_recall.core.tokenizer.text_tokenizer import TextTokenizer
from story_recall.models.atom import AtomEdge, StateAtom, StateVector
from story_recall.models.chunk import Chunk, ChunkVector
from story_recall.models.conversation import ChatMessage, ParticipantContext
from story_recall.models.event import Event, EventVector

CONVERSATION_ID = "chat-test-0001"

KEYWORDS = ("sword", "tea", "rain")
BIAS = 0.1


def keyword_vector(text: str) -> list[float]:
    """[sword, tea, rain, bias] presence vector."""
    lowered = (text or "").lower()
    return [1.0 if k in lowered else 0.0 for k in KEYWORDS] + [BIAS]


class KeywordEmbedder(Embedder):
    """Deterministic embedder for tests."""

    provider = "fake"
    model = "keyword-embed"
    dimension = 4

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls: list[list[str]] = []

    async def embed(self, text: str, **kwargs) -> list[float]:
        return keyword_vector(text)

    async def batch_embed(self, texts: list[str], batch_size: int = 32, **kwargs) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("embedding service unavailable")
        return [keyword_vector(t) for t in texts]

    async def close(self):
        pass


class ScriptedReranker(Reranker):
    """Scores documents containing a keyword high, everything else low."""

    def __init__(self, keyword: str = "sword", hit: float = 0.9, miss: float = 0.05, fail: bool = False):
        self.keyword = keyword
        self.hit = hit
        self.miss = miss
        self.fail = fail
        self.calls: list[tuple[str, list[str]]] = []

    async def rerank(self, query: str, documents: list[str], top_n: int) -> RerankOutcome:
        self.calls.append((query, list(documents)))
        if self.fail:
            return RerankOutcome.failure(min(top_n, len(documents)))
        results = [
            RerankResult(index=i, relevance_score=self.hit if self.keyword in doc.lower() else self.miss)
            for i, doc in enumerate(documents)
        ]
        results.sort(key=lambda r: r.relevance_score, reverse=True)
        return RerankOutcome(results=results[:top_n])

    async def close(self):
        pass


# ═══════════════════════════════════════════════════════════
# Story fixture data
# ═══════════════════════════════════════════════════════════

CHAT_TEXTS = [
    (True, "Bob, where did you hide the sword?"),
    (False, "I buried the sword under the old oak tree."),
    (True, "Let's have some tea first."),
    (False, "The tea is ready in the garden."),
    (True, "Bob, tell me about the sword again."),
]


def make_chat() -> list[ChatMessage]:
    return [
        ChatMessage(mes=text, is_user=is_user, name=None if is_user else "Bob")
        for is_user, text in CHAT_TEXTS
    ]


def make_atoms() -> list[StateAtom]:
    return [
        StateAtom(
            atom_id="a-1",
            floor=1,
            semantic="Bob buried the sword under the oak tree",
            edges=[AtomEdge(s="Bob", t="Tom", r="hid the sword from")],
            where="oak tree",
        ),
        StateAtom(
            atom_id="a-3",
            floor=3,
            semantic="Tom and Bob drink tea in the garden",
            edges=[AtomEdge(s="Tom", t="Bob", r="drinks tea with")],
            where="garden",
        ),
    ]


def make_events() -> list[Event]:
    return [
        Event(
            id="evt-0",
            title="Bob finds a blade",
            participants=["Bob"],
            summary="Bob found a blade during the rain. (#1)",
        ),
        Event(
            id="evt-1",
            title="Bob hides the sword",
            participants=["Bob"],
            summary="Bob buried the sword under the oak. (#1-2)",
            caused_by=["evt-0"],
        ),
        Event(
            id="evt-2",
            title="Tea in the garden",
            participants=["Alice"],
            summary="Alice serves tea in the garden. (#3-4)",
        ),
    ]


async def seed_store(store: InMemoryStore, conversation_id: str = CONVERSATION_ID) -> None:
    """Write the fixture conversation into a store."""
    chat = make_chat()
    atoms = make_atoms()
    await store.save_state_atoms(conversation_id, atoms)
    await store.save_state_vectors(
        conversation_id,
        [StateVector(atom_id=a.atom_id, floor=a.floor, vector=keyword_vector(a.semantic)) for a in atoms],
    )
    chunks = [
        Chunk(
            chunk_id=f"c-{floor}-0",
            floor=floor,
            chunk_idx=0,
            speaker="Tom" if msg.is_user else "Bob",
            is_user=msg.is_user,
            text=msg.mes,
        )
        for floor, msg in enumerate(chat)
    ]
    await store.save_chunks(
        conversation_id,
        chunks,
        [ChunkVector(chunk_id=c.chunk_id, floor=c.floor, vector=keyword_vector(c.text)) for c in chunks],
    )
    # evt-0 points at the rain axis; evt-2 is dominated by the bias axis
    await store.save_event_vectors(
        conversation_id,
        [
            EventVector(event_id="evt-0", vector=[0.0, 0.0, 1.0, 0.1]),
            EventVector(event_id="evt-1", vector=[1.0, 0.0, 0.0, 0.1]),
            EventVector(event_id="evt-2", vector=[0.0, 1.0, 0.0, 1.0]),
        ],
    )


# ═══════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════


@pytest.fixture
def test_config() -> Config:
    """Defaults with offline tokenizer settings and no retry delay."""
    return Config(
        embedder=EmbedderConfig(provider="fake", timeout=2.0, retry_timeout=2.0, retry_delay=0.0),
        tokenizer=TokenizerConfig(provider="approximate", use_jieba=False),
    )


@pytest.fixture
def tokenizer() -> TextTokenizer:
    return TextTokenizer(TokenizerConfig(provider="approximate", use_jieba=False))


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def reranker() -> ScriptedReranker:
    return ScriptedReranker()


@pytest.fixture
def participants() -> ParticipantContext:
    return ParticipantContext(name1="Tom", name2="Bob")


@pytest.fixture
def chat() -> list[ChatMessage]:
    return make_chat()


@pytest.fixture
def atoms() -> list[StateAtom]:
    return make_atoms()


@pytest.fixture
def events() -> list[Event]:
    return make_events()


@pytest.fixture
async def seeded_store() -> InMemoryStore:
    store = InMemoryStore()
    await store.initialize()
    await seed_store(store)
    return store

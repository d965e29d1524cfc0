"""
Entity lexicon (deterministic, no LLM).

Builds the normalized character/entity sets of a conversation from story
metadata, event participants and L0 atom edges, and finds lexicon entries
in free text.

The user's own name (context.name1) is never part of any pool.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from story_recall.models.atom import StateAtom
from story_recall.models.conversation import ParticipantContext, StoryMeta
from story_recall.models.event import Event
from story_recall.utils.text import normalize

# Pronouns, role labels and obvious non-person nouns
PERSON_LEXICON_BLACKLIST = frozenset(
    {
        "我", "你", "他", "她", "它", "我们", "你们", "他们", "她们", "它们",
        "自己", "对方", "用户", "助手", "男人", "女人", "女性", "成熟女性", "主人", "主角",
        "电脑", "电脑屏幕", "手机", "监控画面", "摄像头", "阳光", "折叠床", "书房", "卫生间隔间",
        "user", "assistant", "narrator", "system", "he", "she", "it", "we", "they", "you",
        "me", "him", "her", "them", "us", "someone", "everyone",
    }
)


@dataclass
class CharacterPools:
    """
    Character name pools with trust tiers (all normalized).

    - trusted: story main characters, arc names, name2, event participants
    - candidate: L0 atom edge subjects/targets
    - all: union of both
    """

    trusted: set[str] = field(default_factory=set)
    candidate: set[str] = field(default_factory=set)
    all: set[str] = field(default_factory=set)


def is_blacklisted_person_term(raw: str | None) -> bool:
    return normalize(raw) in PERSON_LEXICON_BLACKLIST


def _add_person_term(pool: set[str], raw: str | None) -> None:
    term = normalize(raw)
    if len(term) < 2 or term in PERSON_LEXICON_BLACKLIST:
        return
    pool.add(term)


def _main_character_names(story: StoryMeta | None) -> list[str]:
    names = []
    for entry in story.main_characters if story else []:
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, dict) and entry.get("name"):
            names.append(str(entry["name"]))
    return names


def _trusted_sources(
    story: StoryMeta | None, context: ParticipantContext | None, events: Iterable[Event]
) -> list[str]:
    sources = _main_character_names(story)
    sources.extend(arc.name for arc in (story.arcs if story else []))
    if context and context.name2:
        sources.append(context.name2)
    for event in events:
        sources.extend(event.participants)
    return sources


def _atom_sources(atoms: Iterable[StateAtom]) -> list[str]:
    sources = []
    for atom in atoms:
        for edge in atom.edges:
            sources.append(edge.s)
            sources.append(edge.t)
    return sources


def build_character_pools(
    story: StoryMeta | None,
    context: ParticipantContext | None,
    events: Iterable[Event] = (),
    atoms: Iterable[StateAtom] = (),
) -> CharacterPools:
    """
    Build character pools with trust tiers.

    Args:
        story: Story metadata (main characters, arcs)
        context: Participant names
        events: L2 events (participants are trusted)
        atoms: L0 atoms (edge endpoints are candidates)

    Returns:
        CharacterPools
    """
    trusted: set[str] = set()
    for raw in _trusted_sources(story, context, events):
        _add_person_term(trusted, raw)

    candidate: set[str] = set()
    for raw in _atom_sources(atoms):
        _add_person_term(candidate, raw)

    user = normalize(context.name1) if context else ""
    if user:
        trusted.discard(user)
        candidate.discard(user)

    return CharacterPools(trusted=trusted, candidate=candidate, all=trusted | candidate)


def build_entity_lexicon(
    story: StoryMeta | None,
    context: ParticipantContext | None,
    events: Iterable[Event] = (),
    atoms: Iterable[StateAtom] = (),
) -> set[str]:
    """Normalized entity set: union of all character pools."""
    return build_character_pools(story, context, events, atoms).all


def build_display_name_map(
    story: StoryMeta | None,
    context: ParticipantContext | None,
    events: Iterable[Event] = (),
    atoms: Iterable[StateAtom] = (),
) -> dict[str, str]:
    """
    Map normalized names to their first-seen raw form.

    Sources and exclusions match build_character_pools.
    """
    display_map: dict[str, str] = {}
    for raw in [*_trusted_sources(story, context, events), *_atom_sources(atoms)]:
        term = normalize(raw)
        if len(term) < 2 or term in PERSON_LEXICON_BLACKLIST:
            continue
        display_map.setdefault(term, str(raw).strip())

    if context and context.name1:
        display_map.pop(normalize(context.name1), None)

    return display_map


def extract_entities_from_text(
    text: str | None, lexicon: Iterable[str] | None, display_map: dict[str, str] | None = None
) -> list[str]:
    """
    Find lexicon entries contained in text.

    Entries are checked longest first (then alphabetically) so the output
    order is stable across runs.

    Args:
        text: Cleaned text
        lexicon: Normalized entity names
        display_map: normalized -> display form

    Returns:
        Display forms of matched entities, deduplicated
    """
    if not text or not lexicon:
        return []

    text_norm = normalize(text)
    display_map = display_map or {}
    hits: list[str] = []
    seen: set[str] = set()

    for entity in sorted(set(lexicon), key=lambda e: (-len(e), e)):
        if entity and entity in text_norm and entity not in seen:
            seen.add(entity)
            hits.append(display_map.get(entity) or entity)

    return hits

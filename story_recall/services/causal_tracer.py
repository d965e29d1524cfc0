"""Backward traversal of event causation links."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from story_recall.models.event import CausalHit, Event, EventHit
from story_recall.utils.id_generator import is_event_id


@dataclass
class CausalTrace:
    results: list[CausalHit] = field(default_factory=list)
    max_depth: int = 0


def build_event_index(events: Iterable[Event]) -> dict[str, Event]:
    return {event.id: event for event in events if event.id}


def trace_causation(
    event_hits: Sequence[EventHit],
    event_index: dict[str, Event],
    max_depth: int = 10,
    max_inject: int = 30,
) -> CausalTrace:
    """
    Walk caused_by links backward from every recalled event.

    Each ancestor keeps its minimum depth and every recalled event whose
    chain reaches it. A node already on the current path is not re-entered,
    and a node is re-expanded only when reached at a strictly smaller depth
    than before from the same recalled event, so cycles terminate.

    Args:
        event_hits: Recalled events
        event_index: event id -> Event
        max_depth: Maximum traversal depth
        max_inject: Maximum number of ancestors returned

    Returns:
        CausalTrace sorted by chain_from count desc, then depth asc
    """
    found: dict[str, tuple[Event, int, list[str]]] = {}
    deepest = 0

    def visit(event_id: str, depth: int, root: str, path: set[str], best: dict[str, int]) -> None:
        nonlocal deepest
        if depth > max_depth or not is_event_id(event_id) or event_id in path:
            return
        event = event_index.get(event_id)
        if event is None:
            return
        if event_id in best and best[event_id] <= depth:
            return
        best[event_id] = depth
        deepest = max(deepest, depth)

        if event_id in found:
            known, known_depth, chain_from = found[event_id]
            if root not in chain_from:
                chain_from.append(root)
            found[event_id] = (known, min(known_depth, depth), chain_from)
        else:
            found[event_id] = (event, depth, [root])

        path.add(event_id)
        for parent in event.caused_by:
            visit(str(parent or "").strip(), depth + 1, root, path, best)
        path.discard(event_id)

    for hit in event_hits:
        root = hit.event.id
        if not root:
            continue
        best: dict[str, int] = {}
        for parent in hit.event.caused_by:
            visit(str(parent or "").strip(), 1, root, {root}, best)

    ordered = sorted(found.values(), key=lambda item: (-len(item[2]), item[1]))[:max_inject]
    results = [
        CausalHit(event=event, depth=depth, chain_from=chain_from)
        for event, depth, chain_from in ordered
    ]
    return CausalTrace(results=results, max_depth=deepest)

"""
ID helpers for story-recall.

Provides consistent IDs for stored and derived items:
- Chunks: c-{floor}-{idx}
- Events: evt-{n}
- Evidence items: anchor-{atom_id}, diffused-{atom_id}
"""

import re

_CHUNK_ID_RE = re.compile(r"^c-(\d+)-(\d+)$")
_EVENT_ID_RE = re.compile(r"^evt-\d+$")


def make_chunk_id(floor: int, chunk_idx: int) -> str:
    """
    Generate Chunk ID from its floor and position.

    Args:
        floor: Zero-based turn index
        chunk_idx: Zero-based chunk index within the floor

    Returns:
        ID in format "c-{floor}-{idx}"
    """
    return f"c-{floor}-{chunk_idx}"


def parse_chunk_floor(chunk_id: str) -> int | None:
    """
    Extract the floor from a chunk ID.

    Args:
        chunk_id: ID in format "c-{floor}-{idx}"

    Returns:
        Floor number, or None if the ID is malformed
    """
    match = _CHUNK_ID_RE.match(chunk_id or "")
    if not match:
        return None
    return int(match.group(1))


def is_event_id(value: str) -> bool:
    """Check whether a string is a well-formed event ID (evt-N)."""
    return bool(_EVENT_ID_RE.match(value or ""))


def anchor_item_id(atom_id: str) -> str:
    return f"anchor-{atom_id}"


def diffused_item_id(atom_id: str) -> str:
    return f"diffused-{atom_id}"

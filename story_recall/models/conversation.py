"""Conversation inputs supplied by the caller."""

from typing import Any

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """One turn of the chat transcript. The list index is the floor."""

    model_config = {"extra": "ignore"}

    mes: str = Field(default="", description="Message text")
    is_user: bool = Field(default=False, description="Whether the user wrote this turn")
    name: str | None = Field(default=None, description="Speaker display name")


class ParticipantContext(BaseModel):
    """Participant names: name1 is the user, name2 the assistant character."""

    name1: str | None = None
    name2: str | None = None


class StoryArc(BaseModel):
    model_config = {"extra": "ignore"}

    name: str = ""


class StoryMeta(BaseModel):
    """Story-level metadata used to seed the entity lexicon."""

    model_config = {"extra": "ignore"}

    # Entries are plain names or {"name": ...} mappings
    main_characters: list[str | dict[str, Any]] = Field(default_factory=list)
    arcs: list[StoryArc] = Field(default_factory=list)

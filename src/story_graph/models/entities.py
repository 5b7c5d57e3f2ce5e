"""Entity models for the unified story graph."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a short random id such as ``event_3f2a9c1d04be``."""
    return f"{prefix}_{uuid4().hex[:12]}"


class EntityType(str, Enum):
    """Closed set of node kinds in the graph."""

    CHARACTER = "character"
    LOCATION = "location"
    ITEM = "item"
    SKILL = "skill"
    EVENT = "event"
    QUEST = "quest"
    FACTION = "faction"
    STORY = "story"
    CHAPTER = "chapter"
    SERIES = "series"
    BOOK = "book"
    LOOT_TABLE = "lootTable"
    RESEARCH = "research"


class EntityReference(BaseModel):
    """Lightweight pointer to an entity. Does not own the entity."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: EntityType
    name: str = ""


class BaseEntity(BaseModel):
    """A generic, typed node representing any domain object."""

    id: str
    name: str
    type: EntityType
    description: str = ""
    tags: set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_serializer("tags")
    def _serialize_tags(self, tags: set[str]) -> list[str]:
        return sorted(tags)

    def reference(self) -> EntityReference:
        return EntityReference(id=self.id, type=self.type, name=self.name)

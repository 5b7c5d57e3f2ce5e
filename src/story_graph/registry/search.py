"""Search options and results for the entity registry."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Callable, Optional

from story_graph.models.entities import BaseEntity, EntityType
from story_graph.models.relationships import EntityRelationship, RelationshipType


class EntitySort(str, Enum):
    RELEVANCE = "relevance"
    CREATED = "created"  # registry insertion order
    NAME = "name"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"


class MatchTier(IntEnum):
    """How a query matched an entity. Higher ranks first."""

    NONE = 0
    DESCRIPTION = 1  # description or metadata text
    FUZZY_NAME = 2
    TAG = 3
    NAME_SUBSTRING = 4
    EXACT_NAME = 5


@dataclass
class EntityFilter:
    """Structural constraints combined with the text query."""

    types: list[EntityType] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)  # any-of
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    has_relationship_with: Optional[str] = None
    relationship_types: list[RelationshipType] = field(default_factory=list)
    custom_filter: Optional[Callable[[BaseEntity], bool]] = None

    def is_empty(self) -> bool:
        return not (
            self.types
            or self.tags
            or self.created_after
            or self.created_before
            or self.has_relationship_with
            or self.relationship_types
            or self.custom_filter
        )


@dataclass
class SearchOptions:
    query: str = ""
    filter: Optional[EntityFilter] = None
    sort_by: Optional[EntitySort] = None  # relevance with a query, insertion order without
    descending: bool = False
    limit: Optional[int] = None
    include_relationships: bool = False


@dataclass
class SearchResult:
    entity: BaseEntity
    tier: MatchTier = MatchTier.NONE
    score: float = 0.0
    matched_fields: list[str] = field(default_factory=list)
    relationships: list[EntityRelationship] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.entity.id,
            "name": self.entity.name,
            "type": self.entity.type.value,
            "tier": self.tier.name.lower(),
            "score": self.score,
            "matched_fields": self.matched_fields,
            "relationships": [r.id for r in self.relationships],
        }


@dataclass
class ReferenceSite:
    """One place where another entity points at the referenced entity."""

    entity_id: str
    context: str
    field_name: str


@dataclass
class CrossReference:
    entity_id: str
    referenced_in: list[ReferenceSite] = field(default_factory=list)

    @property
    def referencing_ids(self) -> list[str]:
        return list(dict.fromkeys(site.entity_id for site in self.referenced_in))

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "referenced_in": [
                {"entity_id": s.entity_id, "context": s.context, "field_name": s.field_name}
                for s in self.referenced_in
            ],
        }

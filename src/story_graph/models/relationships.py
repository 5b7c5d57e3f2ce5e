"""Typed edges between entities."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from story_graph.models.entities import EntityReference, utcnow


class RelationshipType(str, Enum):
    """Vocabulary of edge types."""

    # Structure
    CONTAINS = "contains"
    PART_OF = "part_of"
    PARENT_OF = "parent_of"
    CHILD_OF = "child_of"
    MEMBER_OF = "member_of"
    LOCATED_IN = "located_in"

    # Social
    KNOWS = "knows"
    ALLY_OF = "ally_of"
    ENEMY_OF = "enemy_of"
    LEADS = "leads"

    # Narrative
    PARTICIPATES = "participates"
    PREREQUISITE = "prerequisite"
    REFERENCES = "references"
    INSPIRED_BY = "inspired_by"

    # Possession / crafting
    OWNS = "owns"
    PRODUCES = "produces"

    CUSTOM = "custom"


class EntityRelationship(BaseModel):
    """A directed, weighted edge.

    A ``bidirectional`` edge is stored once and is also traversable from
    ``to_entity`` back to ``from_entity``. Endpoints may name entities the
    registry has not seen yet.
    """

    id: str = ""
    from_entity: EntityReference
    to_entity: EntityReference
    relationship_type: RelationshipType
    strength: float = Field(default=5.0, ge=0, le=10)
    bidirectional: bool = False
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _default_id(self) -> "EntityRelationship":
        if not self.id:
            self.id = "{}:{}:{}".format(*self.key)
        return self

    @property
    def key(self) -> tuple[str, str, str]:
        """Identity used for upserts: (from id, to id, type)."""
        return (self.from_entity.id, self.to_entity.id, self.relationship_type.value)

    def involves(self, entity_id: str) -> bool:
        return entity_id in (self.from_entity.id, self.to_entity.id)

    def other_end(self, entity_id: str) -> EntityReference:
        if self.from_entity.id == entity_id:
            return self.to_entity
        return self.from_entity

    def reversed(self) -> "EntityRelationship":
        """Synthesize the reverse traversal. Never stored."""
        return self.model_copy(
            update={"from_entity": self.to_entity, "to_entity": self.from_entity}
        )

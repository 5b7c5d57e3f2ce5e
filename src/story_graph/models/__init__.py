"""Data models for entities, relationships, timeline events and world state."""

from story_graph.models.entities import BaseEntity, EntityReference, EntityType
from story_graph.models.relationships import EntityRelationship, RelationshipType
from story_graph.models.timeline import (
    TimelineEvent,
    TimelineScope,
    TimelineTimestamp,
    TimelineView,
)
from story_graph.models.world_state import (
    ConsistencyResult,
    StateChange,
    WorldState,
)

__all__ = [
    "BaseEntity",
    "EntityReference",
    "EntityType",
    "EntityRelationship",
    "RelationshipType",
    "TimelineEvent",
    "TimelineScope",
    "TimelineTimestamp",
    "TimelineView",
    "ConsistencyResult",
    "StateChange",
    "WorldState",
]

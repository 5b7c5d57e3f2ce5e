"""Entity registry: the generic graph of typed entities and relationships."""

from .search import (
    CrossReference,
    EntityFilter,
    EntitySort,
    MatchTier,
    ReferenceSite,
    SearchOptions,
    SearchResult,
)
from .store import EntityRegistry

__all__ = [
    "EntityRegistry",
    "CrossReference",
    "EntityFilter",
    "EntitySort",
    "MatchTier",
    "ReferenceSite",
    "SearchOptions",
    "SearchResult",
]

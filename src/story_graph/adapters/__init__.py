"""Adapters that turn domain records into graph entities and relationships."""

from .domain import ADAPTERS, AdapterOutput, DomainAdapter, adapt, dedupe_relationships
from .records import BookRecord, ChapterRecord, CharacterRecord, SeriesRecord, StoryRecord

__all__ = [
    "ADAPTERS",
    "AdapterOutput",
    "DomainAdapter",
    "adapt",
    "dedupe_relationships",
    "BookRecord",
    "ChapterRecord",
    "CharacterRecord",
    "SeriesRecord",
    "StoryRecord",
]

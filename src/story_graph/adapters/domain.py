"""Adapters from domain records to graph entities and relationships.

One adapter per domain type, looked up in ``ADAPTERS`` by type tag. Each
adapter is pure and total: a record missing a required field yields
``None`` instead of raising, and the same record always produces the same
entity id and the same relationship keys.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, NamedTuple, Optional, Union

from pydantic import BaseModel, ValidationError

from story_graph.adapters.records import (
    BookRecord,
    ChapterRecord,
    CharacterRecord,
    DomainRecord,
    SeriesRecord,
    StoryRecord,
)
from story_graph.models.entities import BaseEntity, EntityReference, EntityType
from story_graph.models.relationships import EntityRelationship, RelationshipType

RawRecord = Union[Mapping[str, Any], BaseModel]
Names = Mapping[str, str]

# Edge weights for structural links implied by the records
STRUCTURAL_STRENGTH = 10.0
PARTICIPATION_STRENGTH = 8.0


def coerce_record(model: type[DomainRecord], record: RawRecord) -> tuple[Optional[DomainRecord], list[str]]:
    """Validate a raw record against its model.

    Returns:
        (record, []) when valid, (None, error messages) otherwise
    """
    if isinstance(record, model):
        return record, []
    if isinstance(record, BaseModel):
        record = record.model_dump(by_alias=True)
    try:
        return model.model_validate(record), []
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<record>'}: {err['msg']}"
            for err in exc.errors()
        ]
        return None, errors


def _ref(entity_id: str, entity_type: EntityType, names: Names | None) -> EntityReference:
    return EntityReference(id=entity_id, type=entity_type, name=(names or {}).get(entity_id, ""))


def _edge(
    source: EntityReference,
    target: EntityReference,
    rel_type: RelationshipType,
    strength: float,
    description: str = "",
) -> EntityRelationship:
    return EntityRelationship(
        from_entity=source,
        to_entity=target,
        relationship_type=rel_type,
        strength=strength,
        bidirectional=False,
        description=description,
    )


def _entity(record: DomainRecord, name: str, entity_type: EntityType, metadata: dict) -> BaseEntity:
    kwargs = {}
    if record.created_at:
        kwargs["created_at"] = record.created_at
    if record.updated_at:
        kwargs["updated_at"] = record.updated_at
    extra = dict(record.model_extra or {})
    return BaseEntity(
        id=record.id,
        name=name,
        type=entity_type,
        description=record.description or "",
        tags=set(record.tags),
        metadata={**extra, **{k: v for k, v in metadata.items() if v is not None}},
        **kwargs,
    )


# ----------------------------------------------------------------------
# Story
# ----------------------------------------------------------------------


def story_to_entity(record: RawRecord) -> Optional[BaseEntity]:
    story, _ = coerce_record(StoryRecord, record)
    if story is None:
        return None
    return _entity(
        story,
        story.title,
        EntityType.STORY,
        {
            "genre": story.genre,
            "status": story.status,
            "chapter_count": len(story.chapters),
            "character_count": len(story.character_ids),
        },
    )


def story_relationships(record: RawRecord, names: Names | None = None) -> list[EntityRelationship]:
    """Chapters are part of the story; listed characters participate in it."""
    story, _ = coerce_record(StoryRecord, record)
    if story is None:
        return []
    story_ref = _ref(story.id, EntityType.STORY, {**(names or {}), story.id: story.title})

    edges = []
    for chapter in story_chapters(story):
        edges.append(
            _edge(
                _ref(chapter.id, EntityType.CHAPTER, {chapter.id: chapter.title}),
                story_ref,
                RelationshipType.PART_OF,
                STRUCTURAL_STRENGTH,
                f"Chapter {chapter.order}" if chapter.order else "",
            )
        )
    for character_id in story.character_ids:
        edges.append(
            _edge(
                _ref(character_id, EntityType.CHARACTER, names),
                story_ref,
                RelationshipType.PARTICIPATES,
                PARTICIPATION_STRENGTH,
            )
        )
    return edges


def story_chapters(story: StoryRecord) -> list[ChapterRecord]:
    """Valid nested chapters, each stamped with the owning story id."""
    chapters = []
    for raw in story.chapters:
        chapter, _ = coerce_record(ChapterRecord, raw)
        if chapter is None:
            continue
        if not chapter.story_id:
            chapter = chapter.model_copy(update={"story_id": story.id})
        chapters.append(chapter)
    return chapters


# ----------------------------------------------------------------------
# Chapter
# ----------------------------------------------------------------------


def chapter_to_entity(record: RawRecord) -> Optional[BaseEntity]:
    chapter, _ = coerce_record(ChapterRecord, record)
    if chapter is None:
        return None
    return _entity(
        chapter,
        chapter.title,
        EntityType.CHAPTER,
        {
            "story_id": chapter.story_id,
            "order": chapter.order,
            "word_count": chapter.word_count,
            "status": chapter.status,
        },
    )


def chapter_relationships(record: RawRecord, names: Names | None = None) -> list[EntityRelationship]:
    chapter, _ = coerce_record(ChapterRecord, record)
    if chapter is None or not chapter.story_id:
        return []
    return [
        _edge(
            _ref(chapter.id, EntityType.CHAPTER, {chapter.id: chapter.title}),
            _ref(chapter.story_id, EntityType.STORY, names),
            RelationshipType.PART_OF,
            STRUCTURAL_STRENGTH,
            f"Chapter {chapter.order}" if chapter.order else "",
        )
    ]


# ----------------------------------------------------------------------
# Character
# ----------------------------------------------------------------------


def character_to_entity(record: RawRecord) -> Optional[BaseEntity]:
    character, _ = coerce_record(CharacterRecord, record)
    if character is None:
        return None
    return _entity(
        character,
        character.name,
        EntityType.CHARACTER,
        {
            "class": character.character_class,
            "race": character.race,
            "level": character.level,
        },
    )


def character_relationships(record: RawRecord, names: Names | None = None) -> list[EntityRelationship]:
    character, _ = coerce_record(CharacterRecord, record)
    if character is None:
        return []
    source = _ref(character.id, EntityType.CHARACTER, {character.id: character.name})
    return [
        _edge(source, _ref(story_id, EntityType.STORY, names), RelationshipType.PARTICIPATES, PARTICIPATION_STRENGTH)
        for story_id in character.story_ids
    ]


# ----------------------------------------------------------------------
# Series and books
# ----------------------------------------------------------------------


def series_to_entity(record: RawRecord) -> Optional[BaseEntity]:
    series, _ = coerce_record(SeriesRecord, record)
    if series is None:
        return None
    books = series_books(series)
    return _entity(
        series,
        series.name,
        EntityType.SERIES,
        {
            "genre": series.genre,
            "status": series.status,
            "book_count": len(books),
            "story_ids": [b.story_id for b in books if b.story_id],
        },
    )


def series_relationships(record: RawRecord, names: Names | None = None) -> list[EntityRelationship]:
    """A series is parent of every story one of its books points at."""
    series, _ = coerce_record(SeriesRecord, record)
    if series is None:
        return []
    series_ref = _ref(series.id, EntityType.SERIES, {series.id: series.name})
    return [
        _edge(
            series_ref,
            _ref(book.story_id, EntityType.STORY, names),
            RelationshipType.PARENT_OF,
            STRUCTURAL_STRENGTH,
            f"Book {book.book_number}" if book.book_number else "",
        )
        for book in series_books(series)
        if book.story_id
    ]


def series_books(series: SeriesRecord) -> list[BookRecord]:
    books = []
    for raw in series.books:
        book, _ = coerce_record(BookRecord, raw)
        if book is None:
            continue
        if not book.series_id:
            book = book.model_copy(update={"series_id": series.id})
        books.append(book)
    return books


def book_to_entity(record: RawRecord) -> Optional[BaseEntity]:
    book, _ = coerce_record(BookRecord, record)
    if book is None:
        return None
    return _entity(
        book,
        book.title,
        EntityType.BOOK,
        {
            "series_id": book.series_id,
            "story_id": book.story_id,
            "book_number": book.book_number,
        },
    )


def book_relationships(record: RawRecord, names: Names | None = None) -> list[EntityRelationship]:
    book, _ = coerce_record(BookRecord, record)
    if book is None:
        return []
    book_ref = _ref(book.id, EntityType.BOOK, {book.id: book.title})
    edges = []
    if book.series_id:
        edges.append(
            _edge(book_ref, _ref(book.series_id, EntityType.SERIES, names), RelationshipType.PART_OF, STRUCTURAL_STRENGTH)
        )
    if book.story_id:
        edges.append(
            _edge(book_ref, _ref(book.story_id, EntityType.STORY, names), RelationshipType.REFERENCES, STRUCTURAL_STRENGTH)
        )
    return edges


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------


class DomainAdapter(NamedTuple):
    entity_type: EntityType
    record_model: type[DomainRecord]
    to_entity: Callable[[RawRecord], Optional[BaseEntity]]
    relationships: Callable[..., list[EntityRelationship]]


ADAPTERS: dict[str, DomainAdapter] = {
    "story": DomainAdapter(EntityType.STORY, StoryRecord, story_to_entity, story_relationships),
    "chapter": DomainAdapter(EntityType.CHAPTER, ChapterRecord, chapter_to_entity, chapter_relationships),
    "character": DomainAdapter(EntityType.CHARACTER, CharacterRecord, character_to_entity, character_relationships),
    "series": DomainAdapter(EntityType.SERIES, SeriesRecord, series_to_entity, series_relationships),
    "book": DomainAdapter(EntityType.BOOK, BookRecord, book_to_entity, book_relationships),
}


@dataclass
class AdapterOutput:
    """What one record contributes to the graph."""

    domain_type: str
    entity: Optional[BaseEntity] = None
    relationships: list[EntityRelationship] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.entity is not None


def adapt(record: RawRecord, domain_type: str, names: Names | None = None) -> AdapterOutput:
    """Run the adapter registered for ``domain_type`` over one record."""
    adapter = ADAPTERS.get(domain_type)
    if adapter is None:
        return AdapterOutput(domain_type=domain_type, errors=[f"no adapter for domain type '{domain_type}'"])

    _, errors = coerce_record(adapter.record_model, record)
    if errors:
        return AdapterOutput(domain_type=domain_type, errors=errors)

    return AdapterOutput(
        domain_type=domain_type,
        entity=adapter.to_entity(record),
        relationships=adapter.relationships(record, names),
    )


def dedupe_relationships(edges: list[EntityRelationship]) -> list[EntityRelationship]:
    """Keep the first edge for each (from id, to id, type)."""
    seen: dict[tuple[str, str, str], EntityRelationship] = {}
    for edge in edges:
        seen.setdefault(edge.key, edge)
    return list(seen.values())

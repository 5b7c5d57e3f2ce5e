"""The unified system: bootstrap glue plus the operations the UI calls.

Bootstrap takes an explicit, read-only ``DomainSnapshot`` of the host's
stories, characters and series, runs the domain adapters over it and fills
the registry and timeline. Re-running it over the same snapshot changes
nothing but ``updated_at`` stamps.

Usage:
    system = UnifiedSystem()
    report = system.bootstrap(DomainSnapshot.from_dict(data))
    system.find_related_entities("s1")
    system.validate_system_consistency().to_dict()
"""

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from story_graph.adapters.domain import adapt, coerce_record, dedupe_relationships
from story_graph.adapters.records import BookRecord, ChapterRecord, SeriesRecord, StoryRecord
from story_graph.config import Settings, get_settings
from story_graph.consistency.engine import ConsistencyEngine
from story_graph.models.entities import BaseEntity, EntityReference, EntityType
from story_graph.models.relationships import EntityRelationship
from story_graph.models.timeline import (
    DetailLevel,
    GroupBy,
    PlotImpact,
    SortBy,
    StoryContext,
    TimelineEvent,
    TimelineEventType,
    TimelineScope,
    TimelineTimestamp,
    TimelineView,
    ZoomLevel,
)
from story_graph.registry.search import EntityFilter, EntitySort, SearchOptions
from story_graph.registry.store import EntityRegistry
from story_graph.timeline.engine import TimelineEngine

log = logger.bind(component="system")

STORY_TIMELINE_VIEW = "view-story-timeline"

DEFAULT_VIEWS = [
    TimelineView(
        id=STORY_TIMELINE_VIEW,
        name="Story Timeline",
        description="Events of the stories in reading order",
        scope=TimelineScope.STORY,
        zoom_level=ZoomLevel.SCENES,
        group_by=GroupBy.STORY,
        sort_by=SortBy.CHRONOLOGICAL,
        color_scheme="type",
    ),
    TimelineView(
        id="view-character-arcs",
        name="Character Arcs",
        description="How each character develops across stories",
        scope=TimelineScope.CHARACTER,
        zoom_level=ZoomLevel.DAYS,
        group_by=GroupBy.ENTITY,
        sort_by=SortBy.CHRONOLOGICAL,
        color_scheme="entity",
        show_details=DetailLevel.FULL,
        allow_reordering=False,
    ),
    TimelineView(
        id="view-world-history",
        name="World History",
        description="Changes to the world itself",
        scope=TimelineScope.WORLD,
        zoom_level=ZoomLevel.DAYS,
        group_by=GroupBy.TYPE,
        sort_by=SortBy.CHRONOLOGICAL,
        color_scheme="importance",
    ),
]


@dataclass(frozen=True)
class DomainSnapshot:
    """Read-only copy of the host's domain stores at bootstrap time."""

    stories: Sequence[Mapping[str, Any]] = ()
    characters: Sequence[Mapping[str, Any]] = ()
    series: Sequence[Mapping[str, Any]] = ()

    @classmethod
    def from_dict(cls, d: dict) -> "DomainSnapshot":
        return cls(
            stories=tuple(d.get("stories", [])),
            characters=tuple(d.get("characters", [])),
            series=tuple(d.get("series", [])),
        )

    @classmethod
    def from_json_file(cls, path: Path) -> "DomainSnapshot":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


@dataclass
class SkippedRecord:
    domain_type: str
    record_id: str
    errors: list[str] = field(default_factory=list)


@dataclass
class BootstrapReport:
    entities: int = 0
    relationships: int = 0
    views_created: int = 0
    skipped: list[SkippedRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "entities": self.entities,
            "relationships": self.relationships,
            "views_created": self.views_created,
            "skipped": [
                {"domain_type": s.domain_type, "record_id": s.record_id, "errors": s.errors}
                for s in self.skipped
            ],
        }


@dataclass
class SystemConsistencyReport:
    is_valid: bool
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "issues": self.issues, "suggestions": self.suggestions}


def _record_id(record: Any) -> str:
    if isinstance(record, Mapping):
        return str(record.get("id") or "<missing id>")
    return str(getattr(record, "id", None) or "<missing id>")


class UnifiedSystem:
    """Registry, timeline and consistency engine wired together."""

    def __init__(
        self,
        registry: Optional[EntityRegistry] = None,
        timeline: Optional[TimelineEngine] = None,
        consistency: Optional[ConsistencyEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or EntityRegistry(fuzzy_threshold=self.settings.fuzzy_threshold)
        self.timeline = timeline or TimelineEngine()
        self.consistency = consistency or ConsistencyEngine(
            max_correction_passes=self.settings.max_correction_passes,
            auto_fix_enabled=self.settings.auto_fix_enabled,
            rule_overrides=self.settings.rule_overrides,
        )

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def bootstrap(self, snapshot: DomainSnapshot) -> BootstrapReport:
        """Populate registry and timeline views from a domain snapshot.

        Invalid records are skipped with a warning; the rest still load.
        """
        report = BootstrapReport()
        names = self._collect_names(snapshot)
        entities: list[BaseEntity] = []
        edges: list[EntityRelationship] = []

        def run(record: Any, domain_type: str) -> None:
            out = adapt(record, domain_type, names)
            if not out.ok:
                skipped = SkippedRecord(domain_type, _record_id(record), out.errors)
                log.warning(
                    "Skipping {} record {}: {}", domain_type, skipped.record_id, "; ".join(out.errors)
                )
                report.skipped.append(skipped)
                return
            entities.append(out.entity)
            edges.extend(out.relationships)

        # 1. stories and their chapters
        for raw in snapshot.stories:
            run(raw, "story")
            story, _ = coerce_record(StoryRecord, raw)
            if story is None:
                continue
            for raw_chapter in story.chapters:
                chapter, _ = coerce_record(ChapterRecord, raw_chapter)
                if chapter is not None and not chapter.story_id:
                    chapter = chapter.model_copy(update={"story_id": story.id})
                run(chapter if chapter is not None else raw_chapter, "chapter")

        # 2. characters
        for raw in snapshot.characters:
            run(raw, "character")

        # 3. series and their books
        for raw in snapshot.series:
            run(raw, "series")
            series, _ = coerce_record(SeriesRecord, raw)
            if series is None:
                continue
            for raw_book in series.books:
                book, _ = coerce_record(BookRecord, raw_book)
                if book is not None and not book.series_id:
                    book = book.model_copy(update={"series_id": series.id})
                run(book if book is not None else raw_book, "book")

        # 4. entities, then de-duplicated edges
        report.entities = self.registry.add_entities(entities)
        for edge in dedupe_relationships(edges):
            self.registry.add_relationship(edge)
            report.relationships += 1

        # 5. default views, once
        if self.settings.create_default_views:
            report.views_created = self._seed_default_views()

        log.info(
            "Bootstrap loaded {} entities and {} relationships ({} records skipped)",
            report.entities,
            report.relationships,
            len(report.skipped),
        )
        return report

    @staticmethod
    def _collect_names(snapshot: DomainSnapshot) -> dict[str, str]:
        names: dict[str, str] = {}
        for raw in snapshot.stories:
            story, _ = coerce_record(StoryRecord, raw)
            if story is not None:
                names[story.id] = story.title
        for raw in snapshot.characters:
            if isinstance(raw, Mapping) and raw.get("id") and raw.get("name"):
                names[str(raw["id"])] = str(raw["name"])
        for raw in snapshot.series:
            series, _ = coerce_record(SeriesRecord, raw)
            if series is not None:
                names[series.id] = series.name
        return names

    def _seed_default_views(self) -> int:
        created = 0
        for view in DEFAULT_VIEWS:
            if self.timeline.get_view(view.id) is None:
                self.timeline.create_view(view)
                created += 1
        if self.timeline.active_view_id is None:
            self.timeline.set_active_view(STORY_TIMELINE_VIEW)
        return created

    # ------------------------------------------------------------------
    # UI-facing operations
    # ------------------------------------------------------------------

    def find_entity(self, entity_id: str) -> Optional[BaseEntity]:
        return self.registry.get_entity(entity_id)

    def find_entities_by_name(self, name: str, limit: int | None = None) -> list[BaseEntity]:
        results = self.registry.search_entities(
            SearchOptions(
                query=name,
                sort_by=EntitySort.RELEVANCE,
                limit=limit or self.settings.search_limit,
            )
        )
        return [r.entity for r in results]

    def find_related_entities(self, entity_id: str) -> list[BaseEntity]:
        """Entities linked to ``entity_id`` by an edge in either direction."""
        results = self.registry.search_entities(
            SearchOptions(
                filter=EntityFilter(has_relationship_with=entity_id),
                include_relationships=True,
            )
        )
        return [r.entity for r in results if r.entity.id != entity_id]

    def create_story_event(
        self,
        story_id: str,
        name: str,
        description: str = "",
        character_ids: Sequence[str] = (),
        location_id: str | None = None,
        chapter_id: str | None = None,
        story_day: float = 1,
        importance: int = 3,
        event_type: TimelineEventType = TimelineEventType.STORY_EVENT,
        tags: Sequence[str] = (),
    ) -> str:
        """Create a draft event on a story's timeline. Returns the event id."""
        involved = [self._reference(story_id, EntityType.STORY)]
        involved += [self._reference(cid, EntityType.CHARACTER) for cid in character_ids]
        if location_id:
            involved.append(self._reference(location_id, EntityType.LOCATION))

        event = TimelineEvent(
            name=name,
            description=description,
            type=event_type,
            scope=TimelineScope.STORY,
            timestamp=TimelineTimestamp(story_day=story_day, is_approximate=True),
            involved_entities=involved,
            primary_entity=involved[1] if len(involved) > 1 else involved[0],
            story_context=StoryContext(story_id=story_id, chapter_id=chapter_id),
            plot_impact=PlotImpact(importance=importance),
            tags=list(tags),
            is_canon=False,
        )
        return self.timeline.add_event(event)

    def _reference(self, entity_id: str, fallback_type: EntityType) -> EntityReference:
        entity = self.registry.get_entity(entity_id)
        if entity is not None:
            return entity.reference()
        return EntityReference(id=entity_id, type=fallback_type)

    def get_events_by_entity(self, entity_id: str) -> list[TimelineEvent]:
        return self.timeline.get_events_by_entity(entity_id)

    def validate_system_consistency(self) -> SystemConsistencyReport:
        """Cross-check registry, timeline and snapshot history."""
        issues: list[str] = []
        suggestions: list[str] = []

        for rel in self.registry.find_dangling_relationships():
            missing = [
                ref.id for ref in (rel.from_entity, rel.to_entity) if ref.id not in self.registry
            ]
            issues.append(
                f"Relationship {rel.id} ({rel.relationship_type.value}) points to missing "
                f"entit{'ies' if len(missing) > 1 else 'y'} {', '.join(missing)}"
            )

        for event in self.timeline.all_events():
            for ref in event.involved_entities:
                if ref.id not in self.registry:
                    issues.append(f"Event '{event.name}' references missing entity {ref.id}")
            validation = self.timeline.validate_event(event)
            issues.extend(f"Event '{event.name}': {err}" for err in validation.errors)
            suggestions.extend(f"Event '{event.name}': {warn}" for warn in validation.warnings)

        _, invalid = self.registry.validate_all_entities()
        issues.extend(f"Entity {e.id} ({e.type.value}) has a blank name" for e in invalid)

        for group in self.registry.find_duplicate_entities():
            issues.append(
                f"Duplicate {group[0].type.value} entities named '{group[0].name}': "
                + ", ".join(e.id for e in group)
            )

        for story_id in self.consistency.stories():
            latest = self.consistency.get_latest(story_id)
            for result in latest.errors:
                if not result.auto_fixable:
                    issues.append(
                        f"Story {story_id} chapter {latest.chapter_number}: {result.description}"
                    )

        orphans = self.registry.find_orphaned_entities()
        if orphans:
            suggestions.append(
                f"{len(orphans)} entities have no relationships: "
                + ", ".join(e.name for e in orphans[:5])
                + ("..." if len(orphans) > 5 else "")
            )
        for story in self.registry.get_entities_by_type(EntityType.STORY):
            if not self.timeline.get_events_by_entity(story.id):
                suggestions.append(f"Story '{story.name}' has no timeline events yet")

        return SystemConsistencyReport(is_valid=not issues, issues=issues, suggestions=suggestions)

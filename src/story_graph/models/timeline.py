"""Timeline events and the views projected over them."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from story_graph.models.entities import EntityReference, utcnow


class TimelineEventType(str, Enum):
    STORY_EVENT = "story_event"
    CHARACTER_ARC = "character_arc"
    WORLD_CHANGE = "world_change"
    SERIES_EVENT = "series_event"
    WRITING_MILESTONE = "writing_milestone"
    PLOT_POINT = "plot_point"
    CHAPTER_BOUNDARY = "chapter_boundary"
    FLASHBACK = "flashback"
    FORESHADOWING = "foreshadowing"
    CUSTOM = "custom"


class TimelineScope(str, Enum):
    """Which timeline an event lives on. ``GLOBAL`` views see every scope."""

    STORY = "story"
    SERIES = "series"
    CHARACTER = "character"
    WORLD = "world"
    WRITING = "writing"
    GLOBAL = "global"


class EventStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class DependencyType(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    CAUSES = "causes"
    ENABLES = "enables"
    PREVENTS = "prevents"


class DisplayMode(str, Enum):
    LINEAR = "linear"
    BRANCHING = "branching"
    CIRCULAR = "circular"
    GANTT = "gantt"
    CALENDAR = "calendar"


class ZoomLevel(str, Enum):
    YEARS = "years"
    MONTHS = "months"
    DAYS = "days"
    HOURS = "hours"
    SCENES = "scenes"


class GroupBy(str, Enum):
    ENTITY = "entity"
    TYPE = "type"
    STORY = "story"
    CHARACTER = "character"
    NONE = "none"


class SortBy(str, Enum):
    CHRONOLOGICAL = "chronological"
    IMPORTANCE = "importance"
    ENTITY = "entity"
    CUSTOM = "custom"


class DetailLevel(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    FULL = "full"


class TimelineTimestamp(BaseModel):
    """When an event happens.

    An exact event carries ``absolute_time``; an approximate one is placed
    by ``story_day`` relative to the story start. Both may be present, in
    which case the event anchors the two scales to each other.
    """

    absolute_time: Optional[datetime] = None

    # Story-relative
    story_day: Optional[float] = None
    story_chapter: Optional[int] = None
    story_scene: Optional[int] = None

    # Series-relative
    series_book: Optional[int] = None
    series_day: Optional[float] = None

    # In-world calendar
    world_year: Optional[int] = None
    world_month: Optional[int] = None
    world_day: Optional[int] = None
    world_age: Optional[str] = None

    time_description: str | None = None
    is_approximate: bool = False
    uncertainty_range: float | None = None  # +/- days


class StoryContext(BaseModel):
    story_id: str
    chapter_id: str | None = None
    scene_id: str | None = None
    word_position: int | None = None


class PlotImpact(BaseModel):
    importance: int = Field(default=3, ge=1, le=5)
    plot_threads: list[str] = Field(default_factory=list)
    consequences: list[str] = Field(default_factory=list)
    foreshadowing: list[str] = Field(default_factory=list)  # event ids
    callbacks: list[str] = Field(default_factory=list)  # event ids


class EventDependency(BaseModel):
    """This event depends on ``event_id`` in the given way."""

    event_id: str
    dependency_type: DependencyType = DependencyType.AFTER
    description: str = ""


class TimelineEvent(BaseModel):
    id: str = ""
    name: str
    description: str = ""
    type: TimelineEventType = TimelineEventType.STORY_EVENT
    scope: TimelineScope = TimelineScope.STORY

    timestamp: TimelineTimestamp = Field(default_factory=TimelineTimestamp)
    duration: float | None = None  # days

    involved_entities: list[EntityReference] = Field(default_factory=list)
    primary_entity: EntityReference | None = None

    story_context: StoryContext | None = None
    plot_impact: PlotImpact | None = None

    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    dependencies: list[EventDependency] = Field(default_factory=list)

    status: EventStatus = EventStatus.DRAFT
    is_canon: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def importance(self) -> int:
        return self.plot_impact.importance if self.plot_impact else 3

    @property
    def entity_ids(self) -> list[str]:
        return [ref.id for ref in self.involved_entities]

    def involves(self, entity_id: str) -> bool:
        return any(ref.id == entity_id for ref in self.involved_entities)


class TimeRange(BaseModel):
    """Inclusive story-day window."""

    start_day: float | None = None
    end_day: float | None = None

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.start_day is not None and self.end_day is not None and self.start_day > self.end_day:
            raise ValueError("start_day must not be after end_day")
        return self

    def contains(self, day: float | None) -> bool:
        if day is None:
            return False
        if self.start_day is not None and day < self.start_day:
            return False
        if self.end_day is not None and day > self.end_day:
            return False
        return True


class TimelineView(BaseModel):
    """Named projection over the shared event set. Holds configuration only."""

    id: str = ""
    name: str
    description: str = ""
    scope: TimelineScope = TimelineScope.GLOBAL

    # Filters
    entity_filter: list[str] = Field(default_factory=list)
    type_filter: list[TimelineEventType] = Field(default_factory=list)
    tag_filter: list[str] = Field(default_factory=list)
    time_range: TimeRange | None = None

    # Presentation
    display_mode: DisplayMode = DisplayMode.LINEAR
    zoom_level: ZoomLevel = ZoomLevel.DAYS
    group_by: GroupBy = GroupBy.NONE
    sort_by: SortBy = SortBy.CHRONOLOGICAL
    custom_order: list[str] = Field(default_factory=list)
    color_scheme: str = "type"

    show_dependencies: bool = True
    show_conflicts: bool = True
    show_details: DetailLevel = DetailLevel.MINIMAL

    allow_editing: bool = True
    allow_reordering: bool = True

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

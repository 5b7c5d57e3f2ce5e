"""World-state snapshots and the audit records attached to them."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from story_graph.models.entities import new_id, utcnow


class CharacterStatus(str, Enum):
    ALIVE = "alive"
    DEAD = "dead"
    MISSING = "missing"
    UNKNOWN = "unknown"


class ItemLocation(str, Enum):
    CHARACTER = "character"
    LOCATION = "location"
    DESTROYED = "destroyed"
    LOST = "lost"


class EventStateStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChangeType(str, Enum):
    CHARACTER = "character"
    LOCATION = "location"
    ITEM = "item"
    EVENT = "event"
    PROPERTY = "property"


class ResultType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ResultCategory(str, Enum):
    CHARACTER = "character"
    LOCATION = "location"
    ITEM = "item"
    TIMELINE = "timeline"
    LOGIC = "logic"
    RULE_ERROR = "rule-error"


class CharacterState(BaseModel):
    character_id: str
    name: str = ""
    level: int = 1
    experience: int = 0
    stats: dict[str, float] = Field(default_factory=dict)
    location: Optional[str] = None  # location id
    status: CharacterStatus = CharacterStatus.ALIVE
    inventory: list[str] = Field(default_factory=list)  # item ids
    relationships: dict[str, str] = Field(default_factory=dict)  # character id -> standing
    flags: dict[str, bool] = Field(default_factory=dict)


class LocationState(BaseModel):
    location_id: str
    name: str = ""
    current_occupants: list[str] = Field(default_factory=list)  # character ids
    properties: dict[str, Any] = Field(default_factory=dict)
    accessible_from: list[str] = Field(default_factory=list)
    time_of_day: str | None = None
    weather: str | None = None
    flags: dict[str, bool] = Field(default_factory=dict)


class ItemState(BaseModel):
    item_id: str
    name: str = ""
    location: ItemLocation = ItemLocation.LOST
    owner_id: Optional[str] = None
    location_id: Optional[str] = None
    properties: dict[str, Any] = Field(default_factory=dict)
    flags: dict[str, bool] = Field(default_factory=dict)


class EventState(BaseModel):
    event_id: str
    name: str = ""
    status: EventStateStatus = EventStateStatus.PENDING
    start_chapter: int | None = None
    end_chapter: int | None = None
    participants: list[str] = Field(default_factory=list)
    consequences: list[str] = Field(default_factory=list)
    flags: dict[str, bool] = Field(default_factory=dict)


class WorldProperty(BaseModel):
    key: str
    value: Any = None
    type: str = "string"
    description: str = ""
    last_changed: int | None = None  # chapter number
    change_reason: str = ""


class NarrativeState(BaseModel):
    """Everything tracked at one chapter boundary, keyed by id."""

    characters: dict[str, CharacterState] = Field(default_factory=dict)
    locations: dict[str, LocationState] = Field(default_factory=dict)
    items: dict[str, ItemState] = Field(default_factory=dict)
    events: dict[str, EventState] = Field(default_factory=dict)
    world_properties: dict[str, WorldProperty] = Field(default_factory=dict)


class StateChange(BaseModel):
    """One field-level mutation. Part of the audit trail, so frozen."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("change"))
    timestamp: datetime = Field(default_factory=utcnow)
    chapter_number: int
    change_type: ChangeType
    target_id: str
    property: str
    old_value: Any = None
    new_value: Any = None
    reason: str = ""
    automatic: bool = False


class ConsistencyResult(BaseModel):
    """A finding produced by rule evaluation. Never edited after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("check"))
    type: ResultType
    category: ResultCategory
    rule_id: str | None = None
    description: str
    details: str = ""
    affected_elements: list[str] = Field(default_factory=list)
    severity: int = Field(default=3, ge=1, le=5)
    auto_fixable: bool = False
    suggested_fix: str | None = None
    detected_at: datetime = Field(default_factory=utcnow)
    resolves: str | None = None  # id of the finding this one resolves


class WorldState(BaseModel):
    """Snapshot of narrative state at a chapter boundary."""

    id: str = Field(default_factory=lambda: new_id("world"))
    story_id: str
    chapter_id: str | None = None
    chapter_number: int
    timestamp: datetime = Field(default_factory=utcnow)
    state: NarrativeState = Field(default_factory=NarrativeState)
    change_log: list[StateChange] = Field(default_factory=list)
    consistency_checks: list[ConsistencyResult] = Field(default_factory=list)

    @property
    def resolved_ids(self) -> set[str]:
        return {r.resolves for r in self.consistency_checks if r.resolves}

    @property
    def errors(self) -> list[ConsistencyResult]:
        """Error findings that no later result has resolved."""
        resolved = self.resolved_ids
        return [r for r in self.consistency_checks if r.type == ResultType.ERROR and r.id not in resolved]


class SavedSnapshot(BaseModel):
    """A named copy of a world state, kept outside the chapter sequence."""

    id: str = Field(default_factory=lambda: new_id("saved"))
    world_state: WorldState
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

"""Timeline engine: the shared event set and the named views over it.

Views hold configuration only. Resolving a view filters, sorts and groups
the live event set on every call, so there is no cached ordering to go
stale when events change.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from loguru import logger
from rapidfuzz import fuzz

from story_graph.models.entities import EntityType, new_id, utcnow
from story_graph.models.timeline import (
    DependencyType,
    EventDependency,
    EventStatus,
    GroupBy,
    SortBy,
    TimelineEvent,
    TimelineEventType,
    TimelineScope,
    TimelineTimestamp,
    TimelineView,
)
from story_graph.timeline.ordering import as_utc, sort_chronologically, story_day_positions

log = logger.bind(component="timeline")

UNASSIGNED = "unassigned"


@dataclass
class EventValidation:
    """Problems found with a single event."""

    event_id: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
        }


class TimelineEngine:
    """Owns timeline events and the views projected over them."""

    def __init__(self):
        self._events: dict[str, TimelineEvent] = {}
        self._views: dict[str, TimelineView] = {}
        self.active_view_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event(self, event: Union[TimelineEvent, Mapping[str, Any]]) -> str:
        """Store an event, assigning an id when it has none. Returns the id."""
        if not isinstance(event, TimelineEvent):
            event = TimelineEvent.model_validate(event)
        event_id = event.id or new_id("event")

        existing = self._events.get(event_id)
        update: dict[str, Any] = {"id": event_id, "updated_at": utcnow()}
        if existing is not None:
            update["created_at"] = existing.created_at
        self._events[event_id] = event.model_copy(update=update, deep=True)
        return event_id

    def get_event(self, event_id: str) -> Optional[TimelineEvent]:
        return self._events.get(event_id)

    def all_events(self) -> list[TimelineEvent]:
        return list(self._events.values())

    def update_event(self, event_id: str, **changes) -> Optional[TimelineEvent]:
        existing = self._events.get(event_id)
        if existing is None:
            return None
        changes.pop("id", None)
        updated = TimelineEvent.model_validate({**existing.model_dump(), **changes})
        self.add_event(updated)
        return self._events[event_id]

    def remove_event(self, event_id: str) -> bool:
        """Remove an event and every dependency or custom ordering that names it."""
        if self._events.pop(event_id, None) is None:
            return False
        for other in self._events.values():
            if any(d.event_id == event_id for d in other.dependencies):
                other.dependencies = [d for d in other.dependencies if d.event_id != event_id]
        for view in self._views.values():
            if event_id in view.custom_order:
                view.custom_order = [eid for eid in view.custom_order if eid != event_id]
        return True

    def duplicate_event(self, event_id: str) -> Optional[str]:
        original = self._events.get(event_id)
        if original is None:
            return None
        copy = original.model_copy(
            update={
                "id": "",
                "name": f"{original.name} (Copy)",
                "status": EventStatus.DRAFT,
                "created_at": utcnow(),
            },
            deep=True,
        )
        return self.add_event(copy)

    def move_event(self, event_id: str, timestamp: TimelineTimestamp) -> bool:
        return self.update_event(event_id, timestamp=timestamp) is not None

    def merge_events(self, keep_id: str, merge_id: str) -> Optional[TimelineEvent]:
        """Fold ``merge_id`` into ``keep_id`` and re-point dependencies at it."""
        keep = self._events.get(keep_id)
        merge = self._events.get(merge_id)
        if keep is None or merge is None or keep_id == merge_id:
            return None

        entities = {ref.id: ref for ref in keep.involved_entities}
        for ref in merge.involved_entities:
            entities.setdefault(ref.id, ref)
        dependencies = {d.event_id: d for d in keep.dependencies}
        for dep in merge.dependencies:
            dependencies.setdefault(dep.event_id, dep)
        for dead in (keep_id, merge_id):
            dependencies.pop(dead, None)

        description = "\n\n".join(d for d in (keep.description, merge.description) if d)
        for other in self._events.values():
            if other.id in (keep_id, merge_id):
                continue
            if any(dep.event_id == merge_id for dep in other.dependencies):
                repointed: dict[str, EventDependency] = {}
                for dep in other.dependencies:
                    if dep.event_id == merge_id:
                        dep = dep.model_copy(update={"event_id": keep_id})
                    repointed.setdefault(dep.event_id, dep)
                other.dependencies = list(repointed.values())
        self.remove_event(merge_id)

        return self.update_event(
            keep_id,
            involved_entities=list(entities.values()),
            tags=list(dict.fromkeys(keep.tags + merge.tags)),
            description=description,
            dependencies=list(dependencies.values()),
        )

    def positions(self) -> dict[str, Optional[float]]:
        """Story-day position of every event (None when unplaceable)."""
        return story_day_positions(self._events.values())

    def get_events_by_entity(self, entity_id: str, view_id: str | None = None) -> list[TimelineEvent]:
        """Events involving the entity, sorted the way the given (or active) view sorts."""
        events = [e for e in self._events.values() if e.involves(entity_id)]
        view = self._views.get(view_id or self.active_view_id or "")
        return self._sort(events, view)

    def get_events_by_scope(self, scope: TimelineScope) -> list[TimelineEvent]:
        if scope == TimelineScope.GLOBAL:
            events = list(self._events.values())
        else:
            events = [e for e in self._events.values() if e.scope == scope]
        return self._sort(events, None)

    def get_events_by_type(self, event_type: TimelineEventType) -> list[TimelineEvent]:
        return self._sort([e for e in self._events.values() if e.type == event_type], None)

    def get_events_in_range(self, start_day: float | None, end_day: float | None) -> list[TimelineEvent]:
        positions = self.positions()
        selected = []
        for event in self._events.values():
            day = positions.get(event.id)
            if day is None:
                continue
            if start_day is not None and day < start_day:
                continue
            if end_day is not None and day > end_day:
                continue
            selected.append(event)
        return sort_chronologically(selected, positions)

    def search_events(
        self,
        query: str,
        scopes: Optional[list[TimelineScope]] = None,
        types: Optional[list[TimelineEventType]] = None,
        entity_ids: Optional[list[str]] = None,
    ) -> list[TimelineEvent]:
        query = query.strip().lower()
        matches = []
        for event in self._events.values():
            if scopes and TimelineScope.GLOBAL not in scopes and event.scope not in scopes:
                continue
            if types and event.type not in types:
                continue
            if entity_ids and not any(event.involves(eid) for eid in entity_ids):
                continue
            if query:
                haystack = " ".join([event.name, event.description, event.notes, *event.tags]).lower()
                if query not in haystack:
                    continue
            matches.append(event)
        return self._sort(matches, None)

    def find_similar_events(self, event_id: str, limit: int = 5) -> list[TimelineEvent]:
        target = self._events.get(event_id)
        if target is None:
            return []
        target_entities = set(target.entity_ids)

        scored = []
        for i, event in enumerate(self._events.values()):
            if event.id == event_id:
                continue
            score = 3 * len(target_entities & set(event.entity_ids))
            if event.type == target.type:
                score += 2
            score += len(set(target.tags) & set(event.tags))
            if fuzz.token_set_ratio(target.name.lower(), event.name.lower()) >= 85:
                score += 2
            if score > 0:
                scored.append((score, i, event))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [event for _, _, event in scored[:limit]]

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(
        self,
        event_id: str,
        depends_on: str,
        dependency_type: DependencyType = DependencyType.AFTER,
        description: str = "",
    ) -> bool:
        event = self._events.get(event_id)
        if event is None or event_id == depends_on:
            return False
        deps = [d for d in event.dependencies if d.event_id != depends_on]
        deps.append(EventDependency(event_id=depends_on, dependency_type=dependency_type, description=description))
        return self.update_event(event_id, dependencies=deps) is not None

    def remove_dependency(self, event_id: str, depends_on: str) -> bool:
        event = self._events.get(event_id)
        if event is None or not any(d.event_id == depends_on for d in event.dependencies):
            return False
        self.update_event(event_id, dependencies=[d for d in event.dependencies if d.event_id != depends_on])
        return True

    def get_dependent_events(self, event_id: str) -> list[TimelineEvent]:
        """Events that list ``event_id`` among their dependencies."""
        return [e for e in self._events.values() if any(d.event_id == event_id for d in e.dependencies)]

    def get_dependency_chain(self, event_id: str) -> list[str]:
        """Every event id ``event_id`` transitively depends on, nearest first."""
        chain: list[str] = []
        seen = {event_id}
        frontier = [event_id]
        while frontier:
            next_frontier = []
            for current in frontier:
                event = self._events.get(current)
                if event is None:
                    continue
                for dep in event.dependencies:
                    if dep.event_id not in seen:
                        seen.add(dep.event_id)
                        chain.append(dep.event_id)
                        next_frontier.append(dep.event_id)
            frontier = next_frontier
        return chain

    def validate_event(self, event: Union[str, TimelineEvent]) -> EventValidation:
        if isinstance(event, str):
            found = self._events.get(event)
            if found is None:
                return EventValidation(event_id=event, errors=[f"Event {event} does not exist"])
            event = found

        result = EventValidation(event_id=event.id)
        if not event.name.strip():
            result.errors.append("Event name is required")
        if not event.involved_entities:
            result.warnings.append("Event has no involved entities")

        positions = self.positions()
        own_day = positions.get(event.id)
        for dep in event.dependencies:
            if dep.event_id == event.id:
                result.errors.append("Event depends on itself")
                continue
            target = self._events.get(dep.event_id)
            if target is None:
                result.errors.append(f"Dependency {dep.event_id} does not exist")
                continue
            their_day = positions.get(target.id)
            if own_day is None or their_day is None:
                continue
            if dep.dependency_type in (DependencyType.AFTER, DependencyType.CAUSES, DependencyType.ENABLES):
                if own_day < their_day:
                    result.warnings.append(f"Event is placed before '{target.name}' it depends on")
            elif dep.dependency_type == DependencyType.BEFORE and own_day > their_day:
                result.warnings.append(f"Event is placed after '{target.name}' it must precede")
        return result

    def validate_all_events(self) -> dict[str, EventValidation]:
        """Validation results for events with at least one error or warning."""
        results = {}
        for event in self._events.values():
            validation = self.validate_event(event)
            if validation.errors or validation.warnings:
                results[event.id] = validation
        return results

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def create_view(self, config: Union[TimelineView, Mapping[str, Any]]) -> str:
        view = config if isinstance(config, TimelineView) else TimelineView.model_validate(config)
        view_id = view.id or new_id("view")
        self._views[view_id] = view.model_copy(update={"id": view_id}, deep=True)
        return view_id

    def get_view(self, view_id: str) -> Optional[TimelineView]:
        return self._views.get(view_id)

    def all_views(self) -> list[TimelineView]:
        return list(self._views.values())

    def get_view_by_name(self, name: str) -> Optional[TimelineView]:
        for view in self._views.values():
            if view.name == name:
                return view
        return None

    @property
    def active_view(self) -> Optional[TimelineView]:
        return self._views.get(self.active_view_id) if self.active_view_id else None

    def update_view(self, view_id: str, **changes) -> Optional[TimelineView]:
        existing = self._views.get(view_id)
        if existing is None:
            return None
        changes.pop("id", None)
        changes["updated_at"] = utcnow()
        self._views[view_id] = TimelineView.model_validate({**existing.model_dump(), **changes})
        return self._views[view_id]

    def remove_view(self, view_id: str) -> bool:
        if self._views.pop(view_id, None) is None:
            return False
        if self.active_view_id == view_id:
            self.active_view_id = None
        return True

    def duplicate_view(self, view_id: str, name: str | None = None) -> Optional[str]:
        original = self._views.get(view_id)
        if original is None:
            return None
        return self.create_view(
            original.model_copy(update={"id": "", "name": name or f"{original.name} (Copy)"}, deep=True)
        )

    def set_active_view(self, view_id: str | None) -> bool:
        """Make ``view_id`` the active view. ``None`` clears it."""
        if view_id is not None and view_id not in self._views:
            log.warning("Unknown timeline view {}; active view unchanged", view_id)
            return False
        self.active_view_id = view_id
        return True

    def reorder_events(self, view_id: str, ordered_ids: list[str]) -> bool:
        """Pin a hand-made ordering on a view that allows reordering."""
        view = self._views.get(view_id)
        if view is None:
            return False
        if not view.allow_reordering:
            log.warning("View '{}' does not allow reordering", view.name)
            return False
        known = [eid for eid in ordered_ids if eid in self._events]
        self.update_view(view_id, custom_order=known, sort_by=SortBy.CUSTOM)
        return True

    def resolve_view(self, view_id: str | None = None) -> list[TimelineEvent]:
        """Filter and sort the event set through a view (the active one by default)."""
        view = self._views.get(view_id or self.active_view_id or "")
        if view is None:
            return []

        positions = self.positions()
        entity_filter = set(view.entity_filter)
        tag_filter = set(view.tag_filter)

        selected = []
        for event in self._events.values():
            if view.scope != TimelineScope.GLOBAL and event.scope != view.scope:
                continue
            if entity_filter and not entity_filter & set(event.entity_ids):
                continue
            if view.type_filter and event.type not in view.type_filter:
                continue
            if tag_filter and not tag_filter & set(event.tags):
                continue
            if view.time_range and not view.time_range.contains(positions.get(event.id)):
                continue
            selected.append(event)
        return self._sort(selected, view, positions)

    def group_view(self, view_id: str | None = None) -> dict[str, list[TimelineEvent]]:
        """Resolve a view and bucket the result by its ``group_by`` key.

        Events keep the view's sort order inside each group. With entity or
        character grouping an event appears once per matching entity.
        """
        view = self._views.get(view_id or self.active_view_id or "")
        if view is None:
            return {}
        events = self.resolve_view(view.id)

        if view.group_by == GroupBy.NONE:
            return {"all": events} if events else {}

        groups: dict[str, list[TimelineEvent]] = defaultdict(list)
        for event in events:
            for key in self._group_keys(event, view.group_by):
                groups[key].append(event)
        return dict(groups)

    @staticmethod
    def _group_keys(event: TimelineEvent, group_by: GroupBy) -> list[str]:
        if group_by == GroupBy.TYPE:
            return [event.type.value]
        if group_by == GroupBy.STORY:
            return [event.story_context.story_id if event.story_context else UNASSIGNED]
        if group_by == GroupBy.ENTITY:
            refs = event.involved_entities
        else:
            refs = [r for r in event.involved_entities if r.type == EntityType.CHARACTER]
        return [ref.name or ref.id for ref in refs] or [UNASSIGNED]

    def _sort(
        self,
        events: list[TimelineEvent],
        view: Optional[TimelineView],
        positions: Optional[dict[str, Optional[float]]] = None,
    ) -> list[TimelineEvent]:
        if positions is None:
            positions = self.positions()
        ordered = sort_chronologically(events, positions)
        sort_by = view.sort_by if view else SortBy.CHRONOLOGICAL

        if sort_by == SortBy.IMPORTANCE:
            # Stable sort keeps chronological order within an importance level
            ordered.sort(key=lambda e: -e.importance)
        elif sort_by == SortBy.ENTITY:
            def entity_key(event: TimelineEvent) -> tuple[bool, str]:
                ref = event.primary_entity or (event.involved_entities[0] if event.involved_entities else None)
                return (ref is None, (ref.name or ref.id).lower() if ref else "")

            ordered.sort(key=entity_key)
        elif sort_by == SortBy.CUSTOM:
            rank = {eid: i for i, eid in enumerate(view.custom_order)}
            ordered.sort(key=lambda e: rank.get(e.id, len(rank)))
        return ordered

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_timeline_bounds(self, scope: TimelineScope | None = None) -> dict:
        events = self.get_events_by_scope(scope) if scope else list(self._events.values())
        positions = self.positions()
        days = [positions[e.id] for e in events if positions.get(e.id) is not None]
        times = [as_utc(e.timestamp.absolute_time) for e in events if e.timestamp.absolute_time is not None]
        return {
            "earliest_day": min(days) if days else None,
            "latest_day": max(days) if days else None,
            "earliest_time": min(times) if times else None,
            "latest_time": max(times) if times else None,
        }

    def get_event_statistics(self) -> dict:
        events = list(self._events.values())
        entity_counts = Counter(eid for e in events for eid in dict.fromkeys(e.entity_ids))
        most_active = entity_counts.most_common(1)

        bounds = self.get_timeline_bounds()
        placed = sum(1 for day in self.positions().values() if day is not None)
        span = None
        if bounds["earliest_day"] is not None:
            span = bounds["latest_day"] - bounds["earliest_day"] + 1

        return {
            "total_events": len(events),
            "by_scope": dict(Counter(e.scope.value for e in events)),
            "by_type": dict(Counter(e.type.value for e in events)),
            "by_status": dict(Counter(e.status.value for e in events)),
            "canon_events": sum(1 for e in events if e.is_canon),
            "most_active_entity": most_active[0][0] if most_active else None,
            "most_active_entity_events": most_active[0][1] if most_active else 0,
            "average_events_per_day": round(placed / span, 3) if span else 0.0,
            "total_views": len(self._views),
        }

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "events": [e.model_dump(mode="json") for e in self._events.values()],
            "views": [v.model_dump(mode="json") for v in self._views.values()],
            "active_view_id": self.active_view_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TimelineEngine":
        """Rebuild verbatim, keeping stored timestamps."""
        engine = cls()
        for data in d.get("events", []):
            event = TimelineEvent.model_validate(data)
            engine._events[event.id] = event
        for data in d.get("views", []):
            view = TimelineView.model_validate(data)
            engine._views[view.id] = view
        active = d.get("active_view_id")
        engine.active_view_id = active if active in engine._views else None
        return engine

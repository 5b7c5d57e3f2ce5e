"""Chronological ordering of timeline events.

Every event is placed on a single story-day axis:

- events carrying ``story_day`` sit at that day;
- exact events carrying only ``absolute_time`` are projected through the
  nearest anchor (an event that carries both values), or, with no anchors
  at all, measured in days from the earliest absolute time (which becomes
  day 1);
- events with neither have no position and sort after everything else.

On equal positions exact events come before approximate ones, then the
chapter and scene numbers decide, then insertion order.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from story_graph.models.timeline import TimelineEvent

SECONDS_PER_DAY = 86400.0


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def story_day_positions(events: Iterable[TimelineEvent]) -> dict[str, Optional[float]]:
    """Map each event id to its position on the story-day axis (or None)."""
    events = list(events)

    anchors = [
        (as_utc(e.timestamp.absolute_time), e.timestamp.story_day)
        for e in events
        if e.timestamp.absolute_time is not None and e.timestamp.story_day is not None
    ]
    absolute_times = [
        as_utc(e.timestamp.absolute_time) for e in events if e.timestamp.absolute_time is not None
    ]
    earliest = min(absolute_times) if absolute_times else None

    positions: dict[str, Optional[float]] = {}
    for event in events:
        ts = event.timestamp
        if ts.story_day is not None:
            positions[event.id] = ts.story_day
        elif ts.absolute_time is not None:
            when = as_utc(ts.absolute_time)
            if anchors:
                anchor_time, anchor_day = min(
                    anchors, key=lambda a: abs((when - a[0]).total_seconds())
                )
                positions[event.id] = anchor_day + (when - anchor_time).total_seconds() / SECONDS_PER_DAY
            else:
                positions[event.id] = 1.0 + (when - earliest).total_seconds() / SECONDS_PER_DAY
        else:
            positions[event.id] = None
    return positions


def sort_chronologically(
    events: Sequence[TimelineEvent],
    positions: Optional[dict[str, Optional[float]]] = None,
) -> list[TimelineEvent]:
    """Sort events on the story-day axis. ``events`` order breaks final ties."""
    if positions is None:
        positions = story_day_positions(events)

    def key(item: tuple[int, TimelineEvent]):
        index, event = item
        position = positions.get(event.id)
        ts = event.timestamp
        return (
            position is None,
            position if position is not None else 0.0,
            ts.is_approximate,
            ts.story_chapter if ts.story_chapter is not None else float("inf"),
            ts.story_scene if ts.story_scene is not None else float("inf"),
            index,
        )

    return [event for _, event in sorted(enumerate(events), key=key)]

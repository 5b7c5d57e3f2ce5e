"""Timeline engine: chronological events and the views projected over them."""

from .engine import EventValidation, TimelineEngine
from .ordering import sort_chronologically, story_day_positions

__all__ = [
    "TimelineEngine",
    "EventValidation",
    "sort_chronologically",
    "story_day_positions",
]

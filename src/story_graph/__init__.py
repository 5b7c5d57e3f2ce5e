"""Story Graph - unified entity registry, timeline and continuity checking for story worlds."""

__version__ = "0.1.0"

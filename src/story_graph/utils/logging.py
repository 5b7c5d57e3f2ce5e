"""Loguru setup for command-line runs.

Library modules bind a ``component`` (and, where known, ``story_id``,
``chapter`` and ``rule_id``) on their logger; the sink format prints
whichever of those are present and a dash for the rest.
"""

import sys

from loguru import logger

CONTEXT_KEYS = ("component", "story_id", "chapter", "rule_id")

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level:<7}</level> "
    "<cyan>{extra[component]}</cyan> "
    "[{extra[story_id]}/{extra[chapter]}/{extra[rule_id]}] {message}"
)


def _fill_context(record: dict) -> None:
    for key in CONTEXT_KEYS:
        record["extra"].setdefault(key, "-")


def setup_logging(level: str = "INFO") -> None:
    """Send story_graph logs to stderr at ``level``."""
    logger.remove()
    logger.configure(patcher=_fill_context)
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, diagnose=False)

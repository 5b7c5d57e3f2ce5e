"""JSON persistence for state that cannot be rebuilt from domain records.

The entity graph is always recomputed by bootstrapping from the domain
snapshot. Authored timeline events, views, the active view and the full
world-state history (change logs and findings) are saved verbatim.
"""

import json
from pathlib import Path

from loguru import logger

from story_graph.system import UnifiedSystem
from story_graph.timeline.engine import TimelineEngine

FORMAT_VERSION = 1

log = logger.bind(component="storage")


def dump_state(system: UnifiedSystem) -> dict:
    return {
        "version": FORMAT_VERSION,
        "timeline": system.timeline.to_dict(),
        "consistency": system.consistency.to_dict(),
    }


def restore_state(system: UnifiedSystem, data: dict) -> None:
    version = data.get("version", FORMAT_VERSION)
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported state format version {version}")
    system.timeline = TimelineEngine.from_dict(data.get("timeline", {}))
    system.consistency.load_dict(data.get("consistency", {}))


def save_state(system: UnifiedSystem, path: Path) -> Path:
    """Write the persistent state of ``system`` to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(dump_state(system), f, indent=2)
    log.info("Saved {} events and {} snapshot histories to {}",
             len(system.timeline), len(system.consistency.stories()), path)
    return path


def load_state(system: UnifiedSystem, path: Path) -> bool:
    """Load saved state into ``system``. Returns False when ``path`` is missing."""
    path = Path(path)
    if not path.exists():
        return False
    with open(path, encoding="utf-8") as f:
        restore_state(system, json.load(f))
    return True

"""Tests for saving and restoring system state."""

import json

import pytest

from story_graph.models.world_state import CharacterState, NarrativeState, WorldState
from story_graph.storage import FORMAT_VERSION, dump_state, load_state, restore_state, save_state
from story_graph.system import DomainSnapshot, UnifiedSystem

DOMAIN = DomainSnapshot(
    stories=[{"id": "s1", "title": "The Rift", "characters": ["c1"]}],
    characters=[{"id": "c1", "name": "Kara"}],
)


def build_system() -> UnifiedSystem:
    system = UnifiedSystem()
    system.bootstrap(DOMAIN)
    return system


class TestStateFile:
    def test_round_trip(self, tmp_path):
        system = build_system()
        event_id = system.create_story_event("s1", "Kara arrives", character_ids=["c1"], story_day=2)
        system.timeline.set_active_view("view-world-history")
        system.consistency.add_snapshot(
            WorldState(
                story_id="s1",
                chapter_number=1,
                state=NarrativeState(characters={"c1": CharacterState(character_id="c1", level=3)}),
            )
        )
        system.consistency.check_story("s1")
        path = save_state(system, tmp_path / "nested" / "state.json")

        restored = build_system()
        assert load_state(restored, path) is True

        assert restored.timeline.get_event(event_id) == system.timeline.get_event(event_id)
        assert restored.timeline.active_view_id == "view-world-history"
        assert len(restored.timeline.all_views()) == 3
        assert restored.consistency.get_latest("s1") == system.consistency.get_latest("s1")

    def test_rule_toggles_survive(self, tmp_path):
        system = build_system()
        system.consistency.configure_rule("monotonic-level", enabled=False)
        path = save_state(system, tmp_path / "state.json")

        restored = build_system()
        load_state(restored, path)
        assert restored.consistency.get_rule("monotonic-level").enabled is False

    def test_missing_file(self, tmp_path):
        assert load_state(build_system(), tmp_path / "nope.json") is False

    def test_file_is_versioned_json(self, tmp_path):
        path = save_state(build_system(), tmp_path / "state.json")
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == FORMAT_VERSION
        assert set(data) == {"version", "timeline", "consistency"}

    def test_unknown_version_is_rejected(self):
        system = build_system()
        data = dump_state(system)
        data["version"] = FORMAT_VERSION + 1
        with pytest.raises(ValueError):
            restore_state(system, data)

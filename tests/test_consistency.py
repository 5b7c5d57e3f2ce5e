"""Tests for the consistency engine and its rules."""

import pytest

from story_graph.config import RuleOverride
from story_graph.consistency import ConsistencyEngine, ValidationRule, compare_world_states
from story_graph.consistency.editing import destroy_item, set_character_location, transfer_item
from story_graph.consistency.rules import (
    CharacterLocationConflictRule,
    DestroyedItemReferenceRule,
    MonotonicLevelRule,
)
from story_graph.models.world_state import (
    ChangeType,
    CharacterState,
    CharacterStatus,
    EventState,
    EventStateStatus,
    ItemLocation,
    ItemState,
    LocationState,
    NarrativeState,
    ResultCategory,
    ResultType,
    WorldState,
)


def snapshot(chapter: int, story_id: str = "s1", **state) -> WorldState:
    return WorldState(story_id=story_id, chapter_number=chapter, state=NarrativeState(**state))


def kara(level: int = 5, **kwargs) -> dict[str, CharacterState]:
    return {"c1": CharacterState(character_id="c1", name="Kara", level=level, **kwargs)}


class ExplodingRule(ValidationRule):
    id = "exploding"
    name = "Exploding rule"
    category = ResultCategory.LOGIC
    message = "never seen"
    default_priority = 200

    def condition(self, current, previous):
        raise RuntimeError("boom")


class AlwaysFiresRule(ValidationRule):
    id = "always"
    name = "Always fires"
    category = ResultCategory.LOGIC
    severity = 2
    result_type = ResultType.WARNING
    message = "Something looks off"
    default_priority = 10

    def condition(self, current, previous):
        return True


class TestMonotonicLevel:
    """Level regression between chapters."""

    def test_regression_is_reported_for_chapter_three(self):
        engine = ConsistencyEngine(rules=[MonotonicLevelRule()], auto_fix_enabled=False, rule_overrides={})
        engine.add_snapshot(snapshot(2, characters=kara(5)))
        engine.add_snapshot(snapshot(3, characters=kara(4)))

        outcome = engine.check_snapshot("s1", 3)

        assert len(outcome.results) == 1
        result = outcome.results[0]
        assert result.category == ResultCategory.CHARACTER
        assert result.severity >= 3
        assert result.type == ResultType.ERROR
        assert result.affected_elements == ["c1"]
        assert "5 -> 4" in result.details
        assert engine.get_snapshot("s1", 3).consistency_checks == [result]
        assert engine.get_snapshot("s1", 2).consistency_checks == []

    def test_first_chapter_has_nothing_to_compare(self):
        engine = ConsistencyEngine(rules=[MonotonicLevelRule()], rule_overrides={})
        engine.add_snapshot(snapshot(1, characters=kara(5)))

        assert engine.check_snapshot("s1", 1).results == []

    def test_auto_fix_records_exactly_one_automatic_change(self):
        engine = ConsistencyEngine(rules=[MonotonicLevelRule()], auto_fix_enabled=True, rule_overrides={})
        previous = snapshot(2, characters=kara(5))
        current = snapshot(3, characters=kara(4))

        outcome = engine.evaluate(previous, current)

        automatic = [c for c in outcome.state.change_log if c.automatic]
        assert len(automatic) == 1
        change = automatic[0]
        assert change.change_type == ChangeType.CHARACTER
        assert change.target_id == "c1"
        assert change.property == "level"
        assert change.old_value == 4
        assert change.new_value == 5
        assert change.reason == "Auto-fix: Monotonic character level"

        assert outcome.state.state.characters["c1"].level == 5
        assert outcome.results[0].auto_fixable is True
        # The input snapshot is left untouched
        assert current.state.characters["c1"].level == 4

    def test_results_are_appended_not_overwritten(self):
        engine = ConsistencyEngine(rules=[MonotonicLevelRule()], auto_fix_enabled=False, rule_overrides={})
        engine.add_snapshot(snapshot(2, characters=kara(5)))
        engine.add_snapshot(snapshot(3, characters=kara(4)))

        engine.check_snapshot("s1", 3)
        engine.check_snapshot("s1", 3)

        assert len(engine.get_snapshot("s1", 3).consistency_checks) == 2


class TestEvaluationOrder:
    """Priorities, rule errors and the correction ceiling."""

    def test_rule_error_does_not_stop_later_rules(self, log_records):
        engine = ConsistencyEngine(rules=[ExplodingRule(), AlwaysFiresRule()], rule_overrides={})

        outcome = engine.evaluate(None, snapshot(1))

        errors = [r for r in outcome.results if r.category == ResultCategory.RULE_ERROR]
        assert len(errors) == 1
        assert errors[0].type == ResultType.INFO
        assert errors[0].rule_id == "exploding"
        assert "boom" in errors[0].details
        assert [r.rule_id for r in outcome.results] == ["exploding", "always"]
        assert any(r["extra"].get("rule_id") == "exploding" for r in log_records)

    def test_priority_descending_with_stable_ties(self):
        class First(AlwaysFiresRule):
            id = "first"

        class Second(AlwaysFiresRule):
            id = "second"

        engine = ConsistencyEngine(rules=[First(), Second(), ExplodingRule(priority=5)], rule_overrides={})
        assert [r.id for r in engine.rules] == ["first", "second", "exploding"]

    def test_disabled_rules_are_skipped(self):
        engine = ConsistencyEngine(
            rules=[AlwaysFiresRule()],
            rule_overrides={"always": RuleOverride(enabled=False)},
        )
        assert engine.evaluate(None, snapshot(1)).results == []

    def test_configure_unknown_rule(self, log_records):
        engine = ConsistencyEngine(rules=[], rule_overrides={})
        assert engine.configure_rule("ghost", enabled=False) is False
        assert log_records

    def test_correction_ceiling(self):
        state = snapshot(
            3,
            characters=kara(4, inventory=["sword"]),
            items={"sword": ItemState(item_id="sword", name="Sword", location=ItemLocation.DESTROYED)},
        )
        engine = ConsistencyEngine(
            rules=[MonotonicLevelRule(), DestroyedItemReferenceRule()],
            max_correction_passes=1,
            auto_fix_enabled=True,
            rule_overrides={},
        )

        outcome = engine.evaluate(snapshot(2, characters=kara(5)), state)

        assert outcome.fixes_applied == 1
        assert [r.auto_fixable for r in outcome.results] == [True, False]
        assert outcome.state.state.characters["c1"].inventory == ["sword"]

    def test_later_rules_see_corrected_state(self):
        class LevelWatcher(AlwaysFiresRule):
            id = "level-watcher"

            def condition(self, current, previous):
                return current.state.characters["c1"].level < 5

        engine = ConsistencyEngine(rules=[MonotonicLevelRule(), LevelWatcher()], rule_overrides={})
        outcome = engine.evaluate(snapshot(2, characters=kara(5)), snapshot(3, characters=kara(4)))

        assert [r.rule_id for r in outcome.results] == ["monotonic-level"]

    def test_fix_that_does_not_hold_is_reported(self):
        class LevelFloor(AlwaysFiresRule):
            id = "level-floor"
            result_type = ResultType.ERROR

            def condition(self, current, previous):
                return current.state.characters["c1"].level < 5

            def auto_fix(self, current, previous):
                current.state.characters["c1"].level += 1
                return current

        engine = ConsistencyEngine(rules=[LevelFloor()], auto_fix_enabled=True, rule_overrides={})
        outcome = engine.evaluate(None, snapshot(1, characters=kara(3)))

        assert outcome.fixes_applied == 1
        assert outcome.state.state.characters["c1"].level == 4
        assert [r.description for r in outcome.results] == [
            "Something looks off",
            "Auto-fix did not resolve: Something looks off",
        ]
        assert outcome.results[1].type == ResultType.WARNING


class TestBuiltinRules:
    """The other built-in continuity rules."""

    @pytest.fixture
    def engine(self):
        return ConsistencyEngine(max_correction_passes=3, auto_fix_enabled=True, rule_overrides={})

    def test_character_in_two_places_is_fixed(self, engine):
        state = snapshot(
            1,
            characters=kara(location="tower"),
            locations={
                "tower": LocationState(location_id="tower", current_occupants=["c1"]),
                "village": LocationState(location_id="village", current_occupants=["c1"]),
            },
        )
        outcome = engine.evaluate(None, state)

        assert outcome.results[0].rule_id == "character-location-conflict"
        assert outcome.results[0].severity == 4
        assert outcome.state.state.locations["village"].current_occupants == []
        assert outcome.state.state.locations["tower"].current_occupants == ["c1"]

    def test_conflict_without_home_location_is_not_counted_as_fixed(self):
        engine = ConsistencyEngine(
            rules=[CharacterLocationConflictRule(priority=200), MonotonicLevelRule()],
            max_correction_passes=1,
            auto_fix_enabled=True,
            rule_overrides={},
        )
        state = snapshot(
            2,
            characters=kara(4),
            locations={
                "tower": LocationState(location_id="tower", current_occupants=["c1"]),
                "village": LocationState(location_id="village", current_occupants=["c1"]),
            },
        )
        outcome = engine.evaluate(snapshot(1, characters=kara(5)), state)

        conflict, regression = outcome.results
        assert conflict.rule_id == "character-location-conflict"
        assert conflict.type == ResultType.ERROR
        assert conflict.auto_fixable is False
        # The no-op repair did not use up the single correction pass
        assert regression.auto_fixable is True
        assert outcome.fixes_applied == 1
        assert [c.property for c in outcome.changes] == ["level"]

    def test_destroyed_item_is_removed_from_inventory(self, engine):
        state = snapshot(
            1,
            characters=kara(inventory=["ring"]),
            items={"ring": ItemState(item_id="ring", location=ItemLocation.DESTROYED, owner_id="c1")},
        )
        outcome = engine.evaluate(None, state)

        assert outcome.results[0].category == ResultCategory.ITEM
        assert outcome.state.state.characters["c1"].inventory == []
        assert outcome.state.state.items["ring"].owner_id is None

    def test_dead_character_comes_back(self, engine):
        previous = snapshot(1, characters=kara(status=CharacterStatus.DEAD))
        current = snapshot(2, characters=kara(status=CharacterStatus.ALIVE))

        outcome = engine.evaluate(previous, current)
        assert [r.rule_id for r in outcome.results] == ["dead-character-active"]

    def test_resurrection_flag_allows_return(self, engine):
        previous = snapshot(1, characters=kara(status=CharacterStatus.DEAD))
        current = snapshot(2, characters=kara(status=CharacterStatus.ALIVE, flags={"resurrected": True}))

        assert engine.evaluate(previous, current).results == []

    def test_finished_event_reopened(self, engine):
        previous = snapshot(1, events={"siege": EventState(event_id="siege", status=EventStateStatus.COMPLETED)})
        current = snapshot(2, events={"siege": EventState(event_id="siege", status=EventStateStatus.ACTIVE)})

        outcome = engine.evaluate(previous, current)
        assert outcome.results[0].category == ResultCategory.TIMELINE
        assert outcome.results[0].affected_elements == ["siege"]

    def test_owned_item_added_to_inventory(self, engine):
        state = snapshot(
            1,
            characters=kara(),
            items={"map": ItemState(item_id="map", location=ItemLocation.CHARACTER, owner_id="c1")},
        )
        outcome = engine.evaluate(None, state)

        assert outcome.results[0].type == ResultType.WARNING
        assert outcome.state.state.characters["c1"].inventory == ["map"]

    def test_clean_state_has_no_findings(self, engine):
        assert engine.evaluate(None, snapshot(1, characters=kara())).results == []


class TestSnapshots:
    """The append-only snapshot sequence."""

    @pytest.fixture
    def engine(self):
        return ConsistencyEngine(rule_overrides={})

    def test_chapter_numbers_must_increase(self, engine):
        engine.add_snapshot(snapshot(2))
        with pytest.raises(ValueError):
            engine.add_snapshot(snapshot(2))
        with pytest.raises(ValueError):
            engine.add_snapshot(snapshot(1))

    def test_stories_are_independent(self, engine):
        engine.add_snapshot(snapshot(2, story_id="a"))
        engine.add_snapshot(snapshot(1, story_id="b"))
        assert engine.stories() == ["a", "b"]

    def test_change_log_filled_from_predecessor(self, engine):
        engine.add_snapshot(snapshot(1, characters=kara(3)))
        stored = engine.add_snapshot(snapshot(2, characters=kara(4)))

        assert len(stored.change_log) == 1
        change = stored.change_log[0]
        assert (change.property, change.old_value, change.new_value, change.automatic) == ("level", 3, 4, False)

    def test_create_world_state_carries_state_forward(self, engine):
        engine.add_snapshot(snapshot(1, characters=kara(3)))
        draft = engine.create_world_state("s1", 2, chapter_id="ch2")
        draft.state.characters["c1"].level = 7

        assert draft.chapter_id == "ch2"
        assert engine.get_latest("s1").state.characters["c1"].level == 3

    def test_missing_snapshot(self, engine):
        assert engine.check_snapshot("s1", 9) is None
        assert engine.get_latest("nope") is None
        assert engine.get_history("nope") == []

    def test_check_story(self, engine):
        engine.add_snapshot(snapshot(1, characters=kara(5)))
        engine.add_snapshot(snapshot(2, characters=kara(4)))
        outcomes = engine.check_story("s1")

        assert [o.state.chapter_number for o in outcomes] == [1, 2]
        assert outcomes[1].results[0].rule_id == "monotonic-level"

    def test_fixing_a_chapter_refreshes_the_next_transition(self, engine):
        engine.add_snapshot(snapshot(1, characters=kara(5)))
        engine.add_snapshot(snapshot(2, characters=kara(4)))
        engine.add_snapshot(snapshot(3, characters=kara(4)))
        assert engine.get_snapshot("s1", 3).change_log == []

        engine.check_snapshot("s1", 2)

        assert engine.get_snapshot("s1", 2).state.characters["c1"].level == 5
        changes = engine.get_snapshot("s1", 3).change_log
        assert [(c.property, c.old_value, c.new_value, c.reason) for c in changes] == [
            ("level", 5, 4, "chapter transition")
        ]

    def test_authored_change_log_is_kept_after_fix(self, engine):
        engine.add_snapshot(snapshot(1, characters=kara(5)))
        engine.add_snapshot(snapshot(2, characters=kara(4)))
        chapter_three = snapshot(3, characters=kara(4))
        set_character_location(chapter_three, "c1", "tower")
        authored = list(chapter_three.change_log)
        engine.add_snapshot(chapter_three)

        engine.check_snapshot("s1", 2)

        assert engine.get_snapshot("s1", 3).change_log == authored

    def test_compare_world_states(self):
        a = snapshot(1, characters=kara(3))
        b = snapshot(2, characters=kara(3, location="tower"))
        changes = compare_world_states(a, b)

        assert [(c.target_id, c.property, c.new_value) for c in changes] == [("c1", "location", "tower")]


class TestEditing:
    """Authored edits on draft snapshots."""

    @pytest.fixture
    def draft(self):
        return snapshot(
            1,
            characters={
                **kara(location="tower"),
                "c2": CharacterState(character_id="c2", name="Bob", inventory=["ring"]),
            },
            locations={
                "tower": LocationState(location_id="tower", current_occupants=["c1"]),
                "village": LocationState(location_id="village"),
            },
            items={"ring": ItemState(item_id="ring", location=ItemLocation.CHARACTER, owner_id="c2")},
        )

    def test_set_character_location_syncs_occupants(self, draft):
        set_character_location(draft, "c1", "village")

        assert draft.state.locations["tower"].current_occupants == []
        assert draft.state.locations["village"].current_occupants == ["c1"]
        assert draft.state.characters["c1"].location == "village"
        assert all(not c.automatic for c in draft.change_log)
        assert CharacterLocationConflictRule().condition(draft, None) is False

    def test_transfer_item(self, draft):
        transfer_item(draft, "ring", "c1")

        assert draft.state.characters["c1"].inventory == ["ring"]
        assert draft.state.characters["c2"].inventory == []
        assert draft.state.items["ring"].owner_id == "c1"

    def test_destroy_item(self, draft):
        destroy_item(draft, "ring", reason="Thrown into the fire")

        assert draft.state.items["ring"].location == ItemLocation.DESTROYED
        assert draft.state.characters["c2"].inventory == []
        assert {c.reason for c in draft.change_log} == {"Thrown into the fire"}
        assert DestroyedItemReferenceRule().condition(draft, None) is False

    def test_unknown_character(self, draft):
        with pytest.raises(KeyError):
            set_character_location(draft, "ghost", "tower")


class TestResolutionAndSnapshots:
    """Resolving findings, reverting chapters and saved snapshots."""

    @pytest.fixture
    def engine(self):
        engine = ConsistencyEngine(rules=[MonotonicLevelRule()], auto_fix_enabled=False, rule_overrides={})
        engine.add_snapshot(snapshot(1, characters=kara(5)))
        engine.add_snapshot(snapshot(2, characters=kara(4)))
        return engine

    def test_resolve_appends_info_result(self, engine):
        finding = engine.check_snapshot("s1", 2).results[0]
        assert [r.id for r in engine.get_snapshot("s1", 2).errors] == [finding.id]

        resolution = engine.resolve_consistency_issue("s1", 2, finding.id, "Kara was cursed")

        stored = engine.get_snapshot("s1", 2)
        assert stored.consistency_checks == [finding, resolution]
        assert resolution.type == ResultType.INFO
        assert resolution.resolves == finding.id
        assert resolution.details == "Kara was cursed"
        assert stored.errors == []

    def test_resolve_twice_or_unknown(self, engine, log_records):
        finding = engine.check_snapshot("s1", 2).results[0]
        engine.resolve_consistency_issue("s1", 2, finding.id, "fine")

        assert engine.resolve_consistency_issue("s1", 2, finding.id, "again") is None
        assert engine.resolve_consistency_issue("s1", 2, "missing", "x") is None
        assert engine.resolve_consistency_issue("s1", 7, finding.id, "x") is None
        assert len(log_records) == 3

    def test_revert_appends_new_chapter(self, engine):
        reverted = engine.revert_to_world_state("s1", 1, chapter_id="ch3")

        assert reverted.chapter_number == 3
        assert reverted.chapter_id == "ch3"
        assert reverted.state.characters["c1"].level == 5
        assert [s.chapter_number for s in engine.get_history("s1")] == [1, 2, 3]
        assert engine.get_snapshot("s1", 2).state.characters["c1"].level == 4
        change = reverted.change_log[0]
        assert (change.old_value, change.new_value, change.reason) == (4, 5, "Reverted to chapter 1")

    def test_revert_to_missing_chapter(self, engine):
        assert engine.revert_to_world_state("s1", 9) is None
        with pytest.raises(ValueError):
            engine.revert_to_world_state("s1", 1, new_chapter_number=2)

    def test_saved_snapshot_lifecycle(self, engine):
        snapshot_id = engine.create_snapshot("s1", 1, description="before the fall", tags=["draft"])
        saved = engine.get_saved_snapshot(snapshot_id)
        assert saved.world_state.chapter_number == 1
        assert saved.tags == ["draft"]
        assert engine.saved_snapshots("s1") == [saved]
        assert engine.saved_snapshots("other") == []

        restored = engine.restore_from_snapshot(snapshot_id, chapter_number=5)
        assert restored.chapter_number == 5
        assert restored.state.characters["c1"].level == 5
        assert restored.change_log[0].reason == "Restored from snapshot before the fall"

        assert engine.delete_snapshot(snapshot_id) is True
        assert engine.delete_snapshot(snapshot_id) is False
        assert engine.restore_from_snapshot(snapshot_id) is None
        assert engine.create_snapshot("s1", 9) is None

    def test_saved_snapshots_survive_serialization(self, engine):
        snapshot_id = engine.create_snapshot("s1", 2, description="midpoint")

        copy = ConsistencyEngine(rules=[MonotonicLevelRule()], rule_overrides={})
        copy.load_dict(engine.to_dict())

        saved = copy.get_saved_snapshot(snapshot_id)
        assert saved.description == "midpoint"
        assert saved.world_state.state.characters["c1"].level == 4

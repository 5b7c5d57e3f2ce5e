"""Consistency engine: rule evaluation over the world-state sequence.

Snapshots are kept per story in chapter order and are append-only. Every
chapter transition is evaluated by running the enabled rules, highest
priority first. A rule that fires and can repair itself is applied to a
copy of the state; the repair is recorded as automatic StateChanges and
the remaining rules see the corrected state.

Usage:
    engine = ConsistencyEngine()
    engine.add_snapshot(chapter_2)
    engine.add_snapshot(chapter_3)
    outcome = engine.check_snapshot("story-1", 3)
    for result in outcome.results:
        print(result.description)
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from loguru import logger

from story_graph.config import RuleOverride, get_settings
from story_graph.consistency.diff import compare_world_states, diff_states
from story_graph.consistency.rules import ValidationRule, default_rules
from story_graph.models.world_state import (
    ConsistencyResult,
    ResultCategory,
    ResultType,
    SavedSnapshot,
    StateChange,
    WorldState,
)

log = logger.bind(component="consistency")

TRANSITION_REASON = "chapter transition"


@dataclass
class EvaluationOutcome:
    """Result of evaluating one chapter transition."""

    state: WorldState
    results: list[ConsistencyResult] = field(default_factory=list)
    changes: list[StateChange] = field(default_factory=list)
    fixes_applied: int = 0

    @property
    def has_errors(self) -> bool:
        return any(r.type == ResultType.ERROR for r in self.results)

    def to_dict(self) -> dict:
        return {
            "story_id": self.state.story_id,
            "chapter_number": self.state.chapter_number,
            "fixes_applied": self.fixes_applied,
            "results": [r.model_dump(mode="json") for r in self.results],
            "changes": [c.model_dump(mode="json") for c in self.changes],
        }


class ConsistencyEngine:
    """Owns world-state snapshots and the registered validation rules."""

    def __init__(
        self,
        rules: Optional[Iterable[ValidationRule]] = None,
        max_correction_passes: int | None = None,
        auto_fix_enabled: bool | None = None,
        rule_overrides: Optional[Mapping[str, RuleOverride]] = None,
    ):
        settings = get_settings()
        self.max_correction_passes = (
            settings.max_correction_passes if max_correction_passes is None else max_correction_passes
        )
        self.auto_fix_enabled = settings.auto_fix_enabled if auto_fix_enabled is None else auto_fix_enabled

        self._rules: dict[str, ValidationRule] = {}
        self._snapshots: dict[str, list[WorldState]] = defaultdict(list)
        self._saved: dict[str, SavedSnapshot] = {}

        for rule in default_rules() if rules is None else rules:
            self.register_rule(rule)

        overrides = settings.rule_overrides if rule_overrides is None else rule_overrides
        for rule_id, override in overrides.items():
            self.configure_rule(rule_id, enabled=override.enabled, priority=override.priority)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def register_rule(self, rule: ValidationRule) -> None:
        """Register a rule. Re-registering an id replaces it in place."""
        self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> Optional[ValidationRule]:
        return self._rules.get(rule_id)

    def configure_rule(self, rule_id: str, enabled: bool | None = None, priority: int | None = None) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            log.warning("Cannot configure unknown rule {}", rule_id)
            return False
        if enabled is not None:
            rule.enabled = enabled
        if priority is not None:
            rule.priority = priority
        return True

    @property
    def rules(self) -> list[ValidationRule]:
        """Enabled rules in evaluation order (priority desc, then registration)."""
        enabled = [r for r in self._rules.values() if r.enabled]
        return sorted(enabled, key=lambda r: -r.priority)

    def all_rules(self) -> list[ValidationRule]:
        return list(self._rules.values())

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, previous: Optional[WorldState], current: WorldState) -> EvaluationOutcome:
        """Run every enabled rule over the transition ``previous`` -> ``current``.

        ``current`` is not modified; the (possibly corrected) state comes back
        in the outcome with the new results and automatic changes appended.
        """
        state = current.model_copy(deep=True)
        outcome = EvaluationOutcome(state=state)
        slog = log.bind(story_id=current.story_id, chapter=current.chapter_number)

        for rule in self.rules:
            rlog = slog.bind(rule_id=rule.id)
            try:
                violated = rule.condition(state, previous)
            except Exception as exc:
                rlog.warning("Rule {} raised while evaluating: {}", rule.id, exc)
                outcome.results.append(self._rule_error(rule, exc, "condition"))
                continue
            if not violated:
                continue

            fixable = rule.can_auto_fix and self.auto_fix_enabled
            if fixable and outcome.fixes_applied >= self.max_correction_passes:
                rlog.warning(
                    "Auto-fix limit of {} reached; reporting {} without fixing",
                    self.max_correction_passes,
                    rule.id,
                )
                fixable = False

            fixed: Optional[WorldState] = None
            changes: list[StateChange] = []
            fix_error: Optional[Exception] = None
            if fixable:
                try:
                    fixed = rule.auto_fix(state.model_copy(deep=True), previous)
                except Exception as exc:
                    rlog.warning("Auto-fix for {} raised: {}", rule.id, exc)
                    fix_error = exc
                else:
                    changes = diff_states(
                        state.state,
                        fixed.state,
                        chapter_number=state.chapter_number,
                        reason=f"Auto-fix: {rule.name}",
                        automatic=True,
                    )
                    if not changes:
                        rlog.info("Auto-fix for {} changed nothing; reporting without fixing", rule.id)

            # Only a fix that altered the state counts against the ceiling
            applied = bool(changes)
            outcome.results.append(self._finding(rule, state, previous, applied))
            if fix_error is not None:
                outcome.results.append(self._rule_error(rule, fix_error, "auto-fix"))
            if not applied:
                continue

            state = state.model_copy(update={"state": fixed.state})
            outcome.state = state
            outcome.changes.extend(changes)
            outcome.fixes_applied += 1
            rlog.info("Auto-fix applied ({} field changes)", len(changes))

            # One verification pass; a fix that did not hold is reported, not retried
            try:
                still_violated = rule.condition(state, previous)
            except Exception as exc:
                rlog.warning("Rule {} raised while verifying its fix: {}", rule.id, exc)
                outcome.results.append(self._rule_error(rule, exc, "verification"))
                continue
            if still_violated:
                outcome.results.append(
                    ConsistencyResult(
                        type=ResultType.WARNING,
                        category=rule.category,
                        rule_id=rule.id,
                        description=f"Auto-fix did not resolve: {rule.message}",
                        details=self._safe_details(rule, state, previous),
                        affected_elements=self._safe_affected(rule, state, previous),
                        severity=rule.severity,
                        auto_fixable=False,
                        suggested_fix=rule.suggested_fix,
                    )
                )

        state.change_log = state.change_log + outcome.changes
        state.consistency_checks = state.consistency_checks + outcome.results
        slog.info(
            "Evaluated {} rules: {} findings, {} fixes",
            len(self.rules),
            len(outcome.results),
            outcome.fixes_applied,
        )
        return outcome

    def _finding(
        self,
        rule: ValidationRule,
        state: WorldState,
        previous: Optional[WorldState],
        fixable: bool,
    ) -> ConsistencyResult:
        return ConsistencyResult(
            type=rule.result_type,
            category=rule.category,
            rule_id=rule.id,
            description=rule.message,
            details=self._safe_details(rule, state, previous),
            affected_elements=self._safe_affected(rule, state, previous),
            severity=rule.severity,
            auto_fixable=fixable,
            suggested_fix=rule.suggested_fix,
        )

    @staticmethod
    def _safe_affected(rule: ValidationRule, state: WorldState, previous: Optional[WorldState]) -> list[str]:
        try:
            return list(rule.affected_elements(state, previous))
        except Exception as exc:
            log.bind(rule_id=rule.id).warning("Could not list affected elements: {}", exc)
            return []

    @staticmethod
    def _safe_details(rule: ValidationRule, state: WorldState, previous: Optional[WorldState]) -> str:
        try:
            return rule.details(state, previous)
        except Exception as exc:
            log.bind(rule_id=rule.id).warning("Could not describe finding: {}", exc)
            return ""

    @staticmethod
    def _rule_error(rule: ValidationRule, exc: Exception, stage: str) -> ConsistencyResult:
        return ConsistencyResult(
            type=ResultType.INFO,
            category=ResultCategory.RULE_ERROR,
            rule_id=rule.id,
            description=f"Rule '{rule.name}' failed during {stage}",
            details=f"{type(exc).__name__}: {exc}",
            severity=1,
            auto_fixable=False,
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def add_snapshot(self, state: WorldState) -> WorldState:
        """Append a snapshot to its story's sequence.

        Chapter numbers must strictly increase per story. A snapshot without
        a change log gets the diff from its predecessor recorded.
        """
        history = self._snapshots[state.story_id]
        if history and state.chapter_number <= history[-1].chapter_number:
            raise ValueError(
                f"Chapter {state.chapter_number} does not follow chapter "
                f"{history[-1].chapter_number} for story {state.story_id}"
            )
        stored = state.model_copy(deep=True)
        if history and not stored.change_log:
            stored.change_log = diff_states(
                history[-1].state,
                stored.state,
                chapter_number=stored.chapter_number,
                reason=TRANSITION_REASON,
            )
        history.append(stored)
        return stored

    def create_world_state(
        self,
        story_id: str,
        chapter_number: int,
        chapter_id: str | None = None,
    ) -> WorldState:
        """Start a draft snapshot carrying over the latest state of the story.

        The draft is not stored until passed to ``add_snapshot``.
        """
        latest = self.get_latest(story_id)
        state = latest.state.model_copy(deep=True) if latest else None
        kwargs = {"state": state} if state is not None else {}
        return WorldState(story_id=story_id, chapter_id=chapter_id, chapter_number=chapter_number, **kwargs)

    def stories(self) -> list[str]:
        return [story_id for story_id, history in self._snapshots.items() if history]

    def get_history(self, story_id: str) -> list[WorldState]:
        return list(self._snapshots.get(story_id, []))

    def get_latest(self, story_id: str) -> Optional[WorldState]:
        history = self._snapshots.get(story_id)
        return history[-1] if history else None

    def get_snapshot(self, story_id: str, chapter_number: int) -> Optional[WorldState]:
        for snapshot in self._snapshots.get(story_id, []):
            if snapshot.chapter_number == chapter_number:
                return snapshot
        return None

    def check_snapshot(self, story_id: str, chapter_number: int) -> Optional[EvaluationOutcome]:
        """Evaluate a stored snapshot against its predecessor and keep the result.

        When auto-fixes changed the snapshot, the next chapter's recorded
        transition diff is recomputed against the corrected state.
        """
        history = self._snapshots.get(story_id, [])
        for index, snapshot in enumerate(history):
            if snapshot.chapter_number == chapter_number:
                previous = history[index - 1] if index > 0 else None
                outcome = self.evaluate(previous, snapshot)
                history[index] = outcome.state
                if outcome.changes:
                    self._refresh_transition(history, index)
                return outcome
        return None

    @staticmethod
    def _refresh_transition(history: list[WorldState], index: int) -> None:
        if index + 1 >= len(history):
            return
        successor = history[index + 1]
        transition = [c for c in successor.change_log if c.reason == TRANSITION_REASON and not c.automatic]
        if successor.change_log and not transition:
            # Authored change log; leave it alone
            return
        kept = [c for c in successor.change_log if c not in transition]
        fresh = diff_states(
            history[index].state,
            successor.state,
            chapter_number=successor.chapter_number,
            reason=TRANSITION_REASON,
        )
        history[index + 1] = successor.model_copy(update={"change_log": fresh + kept})

    def check_story(self, story_id: str) -> list[EvaluationOutcome]:
        """Evaluate every chapter of a story in order."""
        return [
            self.check_snapshot(story_id, snapshot.chapter_number)
            for snapshot in self.get_history(story_id)
        ]

    def compare_world_states(self, a: WorldState, b: WorldState) -> list[StateChange]:
        return compare_world_states(a, b)

    def resolve_consistency_issue(
        self,
        story_id: str,
        chapter_number: int,
        result_id: str,
        resolution: str,
    ) -> Optional[ConsistencyResult]:
        """Record how a finding was dealt with.

        The finding itself is never edited. A new INFO result pointing at it
        is appended to the same snapshot, and the finding no longer counts in
        ``WorldState.errors``. Returns the new result, or None when the
        finding does not exist or was already resolved.
        """
        history = self._snapshots.get(story_id, [])
        for index, snapshot in enumerate(history):
            if snapshot.chapter_number != chapter_number:
                continue
            finding = next((r for r in snapshot.consistency_checks if r.id == result_id), None)
            if finding is None:
                break
            if result_id in snapshot.resolved_ids:
                log.warning("Finding {} is already resolved", result_id)
                return None
            resolved = ConsistencyResult(
                type=ResultType.INFO,
                category=finding.category,
                rule_id=finding.rule_id,
                description=f"Resolved: {finding.description}",
                details=resolution,
                affected_elements=list(finding.affected_elements),
                severity=1,
                resolves=result_id,
            )
            history[index] = snapshot.model_copy(
                update={"consistency_checks": snapshot.consistency_checks + [resolved]}
            )
            return resolved
        log.warning("No finding {} on chapter {} of story {}", result_id, chapter_number, story_id)
        return None

    def revert_to_world_state(
        self,
        story_id: str,
        chapter_number: int,
        new_chapter_number: int | None = None,
        chapter_id: str | None = None,
    ) -> Optional[WorldState]:
        """Append a snapshot whose narrative state copies an earlier chapter.

        History is never rewritten; the reverted state becomes a new chapter,
        one past the latest unless ``new_chapter_number`` is given.
        """
        source = self.get_snapshot(story_id, chapter_number)
        if source is None:
            log.warning("No chapter {} to revert to for story {}", chapter_number, story_id)
            return None
        return self._append_copy(source, new_chapter_number, chapter_id, f"Reverted to chapter {chapter_number}")

    def _append_copy(
        self,
        source: WorldState,
        chapter_number: int | None,
        chapter_id: str | None,
        reason: str,
    ) -> WorldState:
        latest = self.get_latest(source.story_id)
        if chapter_number is None:
            chapter_number = latest.chapter_number + 1 if latest else source.chapter_number
        draft = WorldState(
            story_id=source.story_id,
            chapter_id=chapter_id,
            chapter_number=chapter_number,
            state=source.state.model_copy(deep=True),
        )
        if latest is not None:
            draft.change_log = diff_states(latest.state, draft.state, chapter_number=chapter_number, reason=reason)
        return self.add_snapshot(draft)

    # ------------------------------------------------------------------
    # Saved snapshots
    # ------------------------------------------------------------------

    def create_snapshot(
        self,
        story_id: str,
        chapter_number: int,
        description: str = "",
        tags: Iterable[str] = (),
    ) -> Optional[str]:
        """Keep a named copy of a chapter's world state. Returns its id."""
        source = self.get_snapshot(story_id, chapter_number)
        if source is None:
            log.warning("No chapter {} to save for story {}", chapter_number, story_id)
            return None
        saved = SavedSnapshot(world_state=source.model_copy(deep=True), description=description, tags=list(tags))
        self._saved[saved.id] = saved
        return saved.id

    def get_saved_snapshot(self, snapshot_id: str) -> Optional[SavedSnapshot]:
        return self._saved.get(snapshot_id)

    def saved_snapshots(self, story_id: str | None = None) -> list[SavedSnapshot]:
        return [s for s in self._saved.values() if story_id is None or s.world_state.story_id == story_id]

    def restore_from_snapshot(
        self,
        snapshot_id: str,
        chapter_number: int | None = None,
        chapter_id: str | None = None,
    ) -> Optional[WorldState]:
        """Append the saved state to its story as a new chapter."""
        saved = self._saved.get(snapshot_id)
        if saved is None:
            log.warning("Unknown saved snapshot {}", snapshot_id)
            return None
        label = saved.description or saved.id
        return self._append_copy(saved.world_state, chapter_number, chapter_id, f"Restored from snapshot {label}")

    def delete_snapshot(self, snapshot_id: str) -> bool:
        return self._saved.pop(snapshot_id, None) is not None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "snapshots": {
                story_id: [s.model_dump(mode="json") for s in history]
                for story_id, history in self._snapshots.items()
                if history
            },
            "saved_snapshots": [s.model_dump(mode="json") for s in self._saved.values()],
            "rules": {rule.id: {"enabled": rule.enabled, "priority": rule.priority} for rule in self._rules.values()},
        }

    def load_dict(self, d: dict) -> None:
        """Restore snapshots verbatim and reapply stored rule toggles."""
        self._snapshots.clear()
        for story_id, history in d.get("snapshots", {}).items():
            self._snapshots[story_id] = [WorldState.model_validate(s) for s in history]
        self._saved = {
            s.id: s for s in (SavedSnapshot.model_validate(raw) for raw in d.get("saved_snapshots", []))
        }
        for rule_id, cfg in d.get("rules", {}).items():
            if rule_id in self._rules:
                self.configure_rule(rule_id, enabled=cfg.get("enabled"), priority=cfg.get("priority"))

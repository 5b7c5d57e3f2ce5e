"""Continuity rules evaluated over world-state transitions.

Each rule is a named strategy object. The engine only ever calls
``condition``, ``affected_elements``, ``details`` and, for rules that
override it, ``auto_fix``. Rules are looked up by id in ``RULE_TYPES`` so
configuration can enable or reprioritize them without touching code.
"""

from abc import ABC, abstractmethod
from typing import ClassVar, Optional

from story_graph.models.world_state import (
    CharacterStatus,
    EventStateStatus,
    ItemLocation,
    ResultCategory,
    ResultType,
    WorldState,
)


class ValidationRule(ABC):
    """Base class for continuity rules.

    ``condition`` answers "is a violation present?" for the transition from
    ``previous`` (None for the first chapter) to ``current``.
    """

    id: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str] = ""
    category: ClassVar[ResultCategory]
    severity: ClassVar[int] = 3
    result_type: ClassVar[ResultType] = ResultType.ERROR
    message: ClassVar[str]
    suggested_fix: ClassVar[Optional[str]] = None
    default_priority: ClassVar[int] = 50

    def __init__(self, enabled: bool = True, priority: int | None = None):
        self.enabled = enabled
        self.priority = self.default_priority if priority is None else priority

    @abstractmethod
    def condition(self, current: WorldState, previous: Optional[WorldState]) -> bool:
        ...

    def affected_elements(self, current: WorldState, previous: Optional[WorldState]) -> list[str]:
        return []

    def details(self, current: WorldState, previous: Optional[WorldState]) -> str:
        return ""

    def auto_fix(self, current: WorldState, previous: Optional[WorldState]) -> WorldState:
        """Return a corrected copy of ``current``. Only some rules implement this."""
        raise NotImplementedError(f"Rule {self.id} has no auto-fix")

    @property
    def can_auto_fix(self) -> bool:
        return type(self).auto_fix is not ValidationRule.auto_fix

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "severity": self.severity,
            "enabled": self.enabled,
            "priority": self.priority,
            "auto_fix": self.can_auto_fix,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} priority={self.priority} enabled={self.enabled}>"


class MonotonicLevelRule(ValidationRule):
    """Character levels never go down between chapters."""

    id = "monotonic-level"
    name = "Monotonic character level"
    description = "A character's level must not decrease from one chapter to the next."
    category = ResultCategory.CHARACTER
    severity = 3
    message = "Character level decreased between chapters"
    suggested_fix = "Restore the level from the previous chapter"
    default_priority = 100

    def _regressions(self, current: WorldState, previous: Optional[WorldState]) -> list[tuple[str, int, int]]:
        if previous is None:
            return []
        found = []
        for cid, char in current.state.characters.items():
            before = previous.state.characters.get(cid)
            if before is not None and char.level < before.level:
                found.append((cid, before.level, char.level))
        return found

    def condition(self, current, previous):
        return bool(self._regressions(current, previous))

    def affected_elements(self, current, previous):
        return [cid for cid, _, _ in self._regressions(current, previous)]

    def details(self, current, previous):
        return "; ".join(
            f"{current.state.characters[cid].name or cid}: level {old} -> {new}"
            for cid, old, new in self._regressions(current, previous)
        )

    def auto_fix(self, current, previous):
        for cid, old, _ in self._regressions(current, previous):
            current.state.characters[cid].level = old
        return current


class CharacterLocationConflictRule(ValidationRule):
    """A character is in exactly one place at a time."""

    id = "character-location-conflict"
    name = "Character in two places"
    description = "A character's own location and the occupant lists of locations must agree."
    category = ResultCategory.LOCATION
    severity = 4
    message = "Character appears in more than one location at once"
    suggested_fix = "Keep the character only in the location recorded on the character"
    default_priority = 90

    def _places(self, current: WorldState) -> dict[str, set[str]]:
        places: dict[str, set[str]] = {}
        for cid, char in current.state.characters.items():
            listed = {
                lid for lid, loc in current.state.locations.items() if cid in loc.current_occupants
            }
            if char.location:
                listed.add(char.location)
            if len(listed) > 1:
                places[cid] = listed
        return places

    def condition(self, current, previous):
        return bool(self._places(current))

    def affected_elements(self, current, previous):
        affected = []
        for cid, places in self._places(current).items():
            affected.append(cid)
            affected.extend(sorted(places))
        return list(dict.fromkeys(affected))

    def details(self, current, previous):
        return "; ".join(
            f"{cid} in {', '.join(sorted(places))}" for cid, places in self._places(current).items()
        )

    def auto_fix(self, current, previous):
        for cid in self._places(current):
            home = current.state.characters[cid].location
            if home is None:
                # Nothing says where the character really is
                continue
            for lid, loc in current.state.locations.items():
                if lid != home and cid in loc.current_occupants:
                    loc.current_occupants = [o for o in loc.current_occupants if o != cid]
            home_loc = current.state.locations.get(home)
            if home_loc is not None and cid not in home_loc.current_occupants:
                home_loc.current_occupants = home_loc.current_occupants + [cid]
        return current


class DestroyedItemReferenceRule(ValidationRule):
    """Destroyed items are not carried or owned by anyone."""

    id = "destroyed-item-reference"
    name = "Destroyed item still referenced"
    description = "An item marked destroyed must not appear in an inventory or keep an owner."
    category = ResultCategory.ITEM
    severity = 3
    message = "A destroyed item is still referenced"
    suggested_fix = "Remove the item from inventories and clear its owner"
    default_priority = 80

    def _references(self, current: WorldState) -> dict[str, list[str]]:
        refs: dict[str, list[str]] = {}
        for iid, item in current.state.items.items():
            if item.location != ItemLocation.DESTROYED:
                continue
            holders = [
                cid for cid, char in current.state.characters.items() if iid in char.inventory
            ]
            if item.owner_id and item.owner_id not in holders:
                holders.append(item.owner_id)
            if holders:
                refs[iid] = holders
        return refs

    def condition(self, current, previous):
        return bool(self._references(current))

    def affected_elements(self, current, previous):
        affected = []
        for iid, holders in self._references(current).items():
            affected.append(iid)
            affected.extend(holders)
        return list(dict.fromkeys(affected))

    def details(self, current, previous):
        return "; ".join(
            f"{current.state.items[iid].name or iid} held by {', '.join(holders)}"
            for iid, holders in self._references(current).items()
        )

    def auto_fix(self, current, previous):
        for iid in self._references(current):
            for char in current.state.characters.values():
                if iid in char.inventory:
                    char.inventory = [i for i in char.inventory if i != iid]
            item = current.state.items[iid]
            item.owner_id = None
            item.location_id = None
        return current


class DeadCharacterActiveRule(ValidationRule):
    """Dead characters stay dead and do not take part in active events."""

    id = "dead-character-active"
    name = "Dead character active"
    description = "A dead character must not come back without being flagged as resurrected, nor join active events."
    category = ResultCategory.CHARACTER
    severity = 4
    message = "A dead character is acting in the story"
    suggested_fix = "Mark the character as resurrected or remove them from the scene"
    default_priority = 70

    def _offenders(self, current: WorldState, previous: Optional[WorldState]) -> list[str]:
        offenders = []
        for cid, char in current.state.characters.items():
            before = previous.state.characters.get(cid) if previous else None
            revived = (
                before is not None
                and before.status == CharacterStatus.DEAD
                and char.status != CharacterStatus.DEAD
                and not char.flags.get("resurrected", False)
            )
            acting = char.status == CharacterStatus.DEAD and any(
                cid in event.participants
                for event in current.state.events.values()
                if event.status == EventStateStatus.ACTIVE
            )
            if revived or acting:
                offenders.append(cid)
        return offenders

    def condition(self, current, previous):
        return bool(self._offenders(current, previous))

    def affected_elements(self, current, previous):
        return self._offenders(current, previous)


class CompletedEventReopenedRule(ValidationRule):
    """Finished events do not become pending or active again."""

    id = "completed-event-reopened"
    name = "Finished event reopened"
    description = "An event that completed, failed or was cancelled must stay finished."
    category = ResultCategory.TIMELINE
    severity = 3
    message = "A finished event was reopened"
    suggested_fix = "Create a new event instead of reopening the finished one"
    default_priority = 60

    FINISHED = {EventStateStatus.COMPLETED, EventStateStatus.FAILED, EventStateStatus.CANCELLED}
    OPEN = {EventStateStatus.PENDING, EventStateStatus.ACTIVE}

    def _reopened(self, current: WorldState, previous: Optional[WorldState]) -> list[str]:
        if previous is None:
            return []
        return [
            eid
            for eid, event in current.state.events.items()
            if eid in previous.state.events
            and previous.state.events[eid].status in self.FINISHED
            and event.status in self.OPEN
        ]

    def condition(self, current, previous):
        return bool(self._reopened(current, previous))

    def affected_elements(self, current, previous):
        return self._reopened(current, previous)


class ItemOwnerInventoryRule(ValidationRule):
    """An item held by a character shows up in that character's inventory."""

    id = "item-owner-inventory"
    name = "Owned item missing from inventory"
    description = "An item located on a character must be listed in the owner's inventory."
    category = ResultCategory.LOGIC
    severity = 2
    result_type = ResultType.WARNING
    message = "An owned item is missing from its owner's inventory"
    suggested_fix = "Add the item to the owner's inventory"
    default_priority = 40

    def _missing(self, current: WorldState) -> list[tuple[str, str]]:
        missing = []
        for iid, item in current.state.items.items():
            if item.location != ItemLocation.CHARACTER or not item.owner_id:
                continue
            owner = current.state.characters.get(item.owner_id)
            if owner is not None and iid not in owner.inventory:
                missing.append((iid, item.owner_id))
        return missing

    def condition(self, current, previous):
        return bool(self._missing(current))

    def affected_elements(self, current, previous):
        return list(dict.fromkeys(x for pair in self._missing(current) for x in pair))

    def auto_fix(self, current, previous):
        for iid, owner_id in self._missing(current):
            owner = current.state.characters[owner_id]
            owner.inventory = owner.inventory + [iid]
        return current


RULE_TYPES: dict[str, type[ValidationRule]] = {
    rule.id: rule
    for rule in (
        MonotonicLevelRule,
        CharacterLocationConflictRule,
        DestroyedItemReferenceRule,
        DeadCharacterActiveRule,
        CompletedEventReopenedRule,
        ItemOwnerInventoryRule,
    )
}


def default_rules() -> list[ValidationRule]:
    """Fresh instances of every built-in rule, in registration order."""
    return [rule_type() for rule_type in RULE_TYPES.values()]

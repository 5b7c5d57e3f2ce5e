"""Authored edits to a draft world state.

Each helper applies one narrative change to a draft snapshot and records
what it did in the draft's change log (``automatic=False``), so the log
the writer sees matches the edits they made.
"""

from typing import Any

from story_graph.consistency.diff import diff_states
from story_graph.models.entities import utcnow
from story_graph.models.world_state import ItemLocation, WorldProperty, WorldState


def _record(draft: WorldState, before, reason: str) -> WorldState:
    changes = diff_states(before, draft.state, chapter_number=draft.chapter_number, reason=reason)
    draft.change_log = draft.change_log + changes
    return draft


def set_character_location(draft: WorldState, character_id: str, location_id: str | None, reason: str = "") -> WorldState:
    """Move a character, keeping location occupant lists in sync."""
    character = draft.state.characters.get(character_id)
    if character is None:
        raise KeyError(f"Unknown character {character_id}")
    before = draft.state.model_copy(deep=True)

    for lid, loc in draft.state.locations.items():
        if lid != location_id and character_id in loc.current_occupants:
            loc.current_occupants = [o for o in loc.current_occupants if o != character_id]
    target = draft.state.locations.get(location_id) if location_id else None
    if target is not None and character_id not in target.current_occupants:
        target.current_occupants = target.current_occupants + [character_id]
    character.location = location_id

    return _record(draft, before, reason or f"{character.name or character_id} moved")


def transfer_item(draft: WorldState, item_id: str, to_character_id: str, reason: str = "") -> WorldState:
    """Hand an item to a character, taking it out of every other inventory."""
    item = draft.state.items.get(item_id)
    receiver = draft.state.characters.get(to_character_id)
    if item is None or receiver is None:
        raise KeyError(f"Unknown item {item_id} or character {to_character_id}")
    before = draft.state.model_copy(deep=True)

    for cid, char in draft.state.characters.items():
        if cid != to_character_id and item_id in char.inventory:
            char.inventory = [i for i in char.inventory if i != item_id]
    if item_id not in receiver.inventory:
        receiver.inventory = receiver.inventory + [item_id]
    item.location = ItemLocation.CHARACTER
    item.owner_id = to_character_id
    item.location_id = None

    return _record(draft, before, reason or f"{item.name or item_id} transferred")


def destroy_item(draft: WorldState, item_id: str, reason: str = "") -> WorldState:
    """Mark an item destroyed and drop it from every inventory."""
    item = draft.state.items.get(item_id)
    if item is None:
        raise KeyError(f"Unknown item {item_id}")
    before = draft.state.model_copy(deep=True)

    for char in draft.state.characters.values():
        if item_id in char.inventory:
            char.inventory = [i for i in char.inventory if i != item_id]
    item.location = ItemLocation.DESTROYED
    item.owner_id = None
    item.location_id = None

    return _record(draft, before, reason or f"{item.name or item_id} destroyed")


def set_world_property(draft: WorldState, key: str, value: Any, reason: str = "") -> WorldState:
    before = draft.state.model_copy(deep=True)
    existing = draft.state.world_properties.get(key)
    draft.state.world_properties[key] = WorldProperty(
        key=key,
        value=value,
        type=type(value).__name__,
        description=existing.description if existing else "",
        last_changed=draft.chapter_number,
        change_reason=reason,
    )
    draft.timestamp = utcnow()
    return _record(draft, before, reason or f"{key} changed")

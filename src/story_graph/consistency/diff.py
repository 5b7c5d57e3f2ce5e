"""Field-level diffs between world states."""

from typing import Any

from pydantic import BaseModel

from story_graph.models.world_state import ChangeType, NarrativeState, StateChange, WorldState

SECTIONS: list[tuple[str, ChangeType]] = [
    ("characters", ChangeType.CHARACTER),
    ("locations", ChangeType.LOCATION),
    ("items", ChangeType.ITEM),
    ("events", ChangeType.EVENT),
    ("world_properties", ChangeType.PROPERTY),
]

# Property name used when a whole record appears or disappears
WHOLE_RECORD = "*"


def _dump(record: BaseModel | None) -> Any:
    return record.model_dump(mode="json") if record is not None else None


def diff_states(
    old: NarrativeState,
    new: NarrativeState,
    chapter_number: int,
    reason: str = "",
    automatic: bool = False,
) -> list[StateChange]:
    """One StateChange per altered field, in section then id order."""
    changes = []
    for section, change_type in SECTIONS:
        before = getattr(old, section)
        after = getattr(new, section)
        for target_id in dict.fromkeys([*before, *after]):
            a = before.get(target_id)
            b = after.get(target_id)
            if a is None or b is None:
                changes.append(
                    StateChange(
                        chapter_number=chapter_number,
                        change_type=change_type,
                        target_id=target_id,
                        property=WHOLE_RECORD,
                        old_value=_dump(a),
                        new_value=_dump(b),
                        reason=reason,
                        automatic=automatic,
                    )
                )
                continue

            a_fields = a.model_dump(mode="json")
            b_fields = b.model_dump(mode="json")
            for name, old_value in a_fields.items():
                new_value = b_fields.get(name)
                if old_value != new_value:
                    changes.append(
                        StateChange(
                            chapter_number=chapter_number,
                            change_type=change_type,
                            target_id=target_id,
                            property=name,
                            old_value=old_value,
                            new_value=new_value,
                            reason=reason,
                            automatic=automatic,
                        )
                    )
    return changes


def compare_world_states(a: WorldState, b: WorldState) -> list[StateChange]:
    """Everything that differs going from snapshot ``a`` to snapshot ``b``."""
    return diff_states(a.state, b.state, chapter_number=b.chapter_number, reason="comparison")

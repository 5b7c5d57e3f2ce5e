"""Consistency checking over chapter-by-chapter world-state snapshots."""

from .diff import compare_world_states, diff_states
from .engine import ConsistencyEngine, EvaluationOutcome
from .rules import RULE_TYPES, ValidationRule, default_rules

__all__ = [
    "ConsistencyEngine",
    "EvaluationOutcome",
    "ValidationRule",
    "RULE_TYPES",
    "default_rules",
    "compare_world_states",
    "diff_states",
]

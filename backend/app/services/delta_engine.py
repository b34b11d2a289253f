"""
delta_engine.py — Field-level diff between two versions of a captured record.

Covers:
  - compute_delta: changed / added / removed fields between two flat snapshots
  - apply_delta: replay a change list on top of a snapshot
  - values_equal: structural (value) equality used by the merge engine as well

Sync metadata (ids, timestamps, retry bookkeeping) never shows up in a delta.
"""

import json
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Fields owned by the sync layer, not by the assessor
DELTA_IGNORED_FIELDS = frozenset({
    "id",
    "created_at",
    "sync_status",
    "retry_count",
    "sync_error",
})

# Marks a key that is absent from a snapshot (distinct from an explicit None)
MISSING = object()


@dataclass
class DeltaChange:
    field: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _numeric_form(value: Any) -> Any:
    # JSON clients send 62.0 as 62; integral floats compare as ints
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {str(k): _numeric_form(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_numeric_form(v) for v in value]
    return value


def _canonical(value: Any) -> str:
    return json.dumps(_numeric_form(value), sort_keys=True, default=str)


def values_equal(a: Any, b: Any) -> bool:
    """
    Value semantics, not identity: two dicts built separately with the same
    content compare equal, and 62 equals 62.0. An absent key never equals a
    present one.
    """
    if a is MISSING or b is MISSING:
        return a is b
    if a is b:
        return True
    return _canonical(a) == _canonical(b)


def union_keys(first: Mapping[str, Any], second: Mapping[str, Any]) -> List[str]:
    """Keys of ``first`` in order, followed by keys only present in ``second``."""
    keys = list(first.keys())
    seen = set(keys)
    for key in second.keys():
        if key not in seen:
            keys.append(key)
            seen.add(key)
    return keys


def compute_delta(
    original: Mapping[str, Any],
    updated: Mapping[str, Any],
) -> List[DeltaChange]:
    """
    Return one DeltaChange per non-metadata field whose value differs.

    A key missing from one side is reported with ``None`` on that side.
    """
    changes: List[DeltaChange] = []
    for key in union_keys(original, updated):
        if key in DELTA_IGNORED_FIELDS:
            continue
        old_value = original.get(key, MISSING)
        new_value = updated.get(key, MISSING)
        if values_equal(old_value, new_value):
            continue
        changes.append(DeltaChange(
            field=key,
            old_value=None if old_value is MISSING else old_value,
            new_value=None if new_value is MISSING else new_value,
        ))
    return changes


def apply_delta(base: Mapping[str, Any], changes: List[DeltaChange]) -> Dict[str, Any]:
    """Copy of ``base`` with every change's new value written in."""
    result = dict(base)
    for change in changes:
        result[change.field] = change.new_value
    return result

"""
merge_engine.py — Reconciles an offline edit with the server's copy of a record.

Three-way merge when the client still holds the version it started editing
from (the "base"); two-way otherwise. Fields edited on both sides are reported
as conflicts and keep the server value in ``merged`` until someone arbitrates.

Nothing in here raises on odd key sets: ambiguity is returned as data.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from app.services.delta_engine import MISSING, union_keys, values_equal

logger = logging.getLogger("bca-sync.merge")

MERGE_IGNORED_FIELDS = frozenset({
    "id",
    "created_at",
    "updated_at",
    "sync_status",
    "retry_count",
})


class ConflictStrategy(str, Enum):
    SERVER_WINS = "server_wins"
    LOCAL_WINS = "local_wins"
    MANUAL = "manual"


@dataclass
class MergeResult:
    merged: Dict[str, Any]
    conflicts: List[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {"merged": dict(self.merged), "conflicts": list(self.conflicts)}


def merge_versions(
    local: Mapping[str, Any],
    server: Mapping[str, Any],
    base: Optional[Mapping[str, Any]] = None,
) -> MergeResult:
    merged: Dict[str, Any] = dict(server)
    conflicts: List[str] = []

    for key in union_keys(local, server):
        if key in MERGE_IGNORED_FIELDS:
            continue

        local_value = local.get(key, MISSING)
        server_value = server.get(key, MISSING)
        if values_equal(local_value, server_value):
            continue

        if base is None:
            conflicts.append(key)
            continue

        base_value = base.get(key, MISSING)
        local_changed = not values_equal(local_value, base_value)
        server_changed = not values_equal(server_value, base_value)

        if local_changed and not server_changed:
            if local_value is MISSING:
                merged.pop(key, None)
            else:
                merged[key] = local_value
        elif server_changed and not local_changed:
            pass
        else:
            conflicts.append(key)

    if conflicts:
        logger.debug("merge left %d conflicted field(s): %s", len(conflicts), conflicts)
    return MergeResult(merged=merged, conflicts=conflicts)


def resolve_conflicts(
    result: MergeResult,
    local: Mapping[str, Any],
    strategy: ConflictStrategy = ConflictStrategy.SERVER_WINS,
    choices: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Settle the conflicted fields of a merge.

    ``choices`` is only read for MANUAL and maps field -> final value; any
    conflicted field without a choice keeps the server value already in
    ``result.merged``.
    """
    resolved = dict(result.merged)
    if strategy == ConflictStrategy.SERVER_WINS:
        return resolved

    for key in result.conflicts:
        if strategy == ConflictStrategy.LOCAL_WINS:
            if key in local:
                resolved[key] = local[key]
            else:
                resolved.pop(key, None)
        elif choices is not None and key in choices:
            resolved[key] = choices[key]
    return resolved

"""
sync_queue_engine.py — Ordering and retry policy for queued offline mutations.

Replay order is priority first (higher first), then age (older first), so an
assessment captured after a photo still reaches the server before it, and two
edits of the same priority replay in the order they were made.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional
import time


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENTITY_PRIORITY: Dict[str, int] = {
    "assessment": 3,
    "deficiency": 2,
    "photo": 1,
}
DEFAULT_PRIORITY: int = 1

INITIAL_RETRY_DELAY_MS: int = 1000
MAX_RETRY_DELAY_MS: int = 60_000
MAX_RETRIES: int = 5

QUEUE_STATUSES = ("pending", "processing", "completed", "failed")


def now_ms() -> int:
    return int(time.time() * 1000)


def priority_for(entity_type: str) -> int:
    return ENTITY_PRIORITY.get(entity_type, DEFAULT_PRIORITY)


def sort_sync_queue(items: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """New list ordered by (-priority, created_at). The input is left untouched."""
    return sorted(items, key=lambda item: (-item["priority"], item["created_at"]))


def next_retry_delay_ms(attempts: int) -> int:
    """Exponential backoff: 1s, 2s, 4s ... capped at 60s."""
    if attempts <= 0:
        return 0
    return min(INITIAL_RETRY_DELAY_MS * 2 ** (attempts - 1), MAX_RETRY_DELAY_MS)


def due_items(
    items: Iterable[Mapping[str, Any]],
    now: Optional[int] = None,
) -> List[Mapping[str, Any]]:
    """Pending items whose backoff window has elapsed, in replay order."""
    now = now_ms() if now is None else now
    ready = [
        item for item in items
        if item.get("status", "pending") == "pending"
        and (item.get("next_retry_at") or 0) <= now
    ]
    return sort_sync_queue(ready)


def register_failure(
    item: Mapping[str, Any],
    error: str,
    now: Optional[int] = None,
    max_retries: int = MAX_RETRIES,
) -> Dict[str, Any]:
    """
    Return an updated copy of a queue item after a failed replay attempt.
    The item goes to ``failed`` once ``max_retries`` attempts are used up.
    """
    now = now_ms() if now is None else now
    updated = dict(item)
    attempts = (item.get("attempts") or 0) + 1
    updated["attempts"] = attempts
    updated["last_attempt_at"] = now
    updated["error"] = error
    if attempts >= max_retries:
        updated["status"] = "failed"
        updated["next_retry_at"] = None
    else:
        updated["status"] = "pending"
        updated["next_retry_at"] = now + next_retry_delay_ms(attempts)
    return updated

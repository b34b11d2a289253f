"""Performance monitoring utilities for the sync API and device store."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("bca-api.perf")


def timed(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for synchronous functions.

    Usage::

        @timed
        def cleanup(self):
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "function timed",
                extra={
                    "function": func.__qualname__,
                    "duration_ms": duration_ms,
                },
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for sync metrics.

    Tracks:
    - Records synced, broken down by outcome (created / updated / conflict)
    - Per-entity sync durations and the slowest entity type seen
    - Error count broken down by entity type
    - Priority recalculation runs
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records_synced: int = 0
        self._total_sync_duration_ms: float = 0.0
        self._by_status: Dict[str, int] = {}
        self._entity_duration_totals: Dict[str, float] = {}
        self._entity_counts: Dict[str, int] = {}
        self._error_counts: Dict[str, int] = {}
        self._slowest_entity: Optional[str] = None
        self._slowest_entity_ms: float = 0.0
        self._recalculations: int = 0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_sync(self, entity_type: str, status: str, duration_ms: float) -> None:
        """Call once per record accepted by a sync endpoint."""
        with self._lock:
            self._records_synced += 1
            self._total_sync_duration_ms += duration_ms
            self._by_status[status] = self._by_status.get(status, 0) + 1
            totals = self._entity_duration_totals
            totals[entity_type] = totals.get(entity_type, 0.0) + duration_ms
            self._entity_counts[entity_type] = self._entity_counts.get(entity_type, 0) + 1
            if duration_ms > self._slowest_entity_ms:
                self._slowest_entity_ms = duration_ms
                self._slowest_entity = entity_type

    def record_sync_error(self, entity_type: str) -> None:
        with self._lock:
            self._error_counts[entity_type] = self._error_counts.get(entity_type, 0) + 1

    def record_recalculation(self) -> None:
        with self._lock:
            self._recalculations += 1

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            records_synced          : int
            avg_sync_duration_ms    : float  (0 if none synced)
            syncs_by_status         : dict  {status: count}
            conflicts_detected      : int
            slowest_entity          : str | None
            slowest_entity_ms       : float
            error_count             : int   (total across all entity types)
            error_count_by_entity   : dict  {entity_type: count}
            entity_avg_durations_ms : dict  {entity_type: avg_ms}
            recalculations          : int
        """
        with self._lock:
            avg = (
                round(self._total_sync_duration_ms / self._records_synced, 2)
                if self._records_synced > 0
                else 0.0
            )
            entity_avgs = {
                entity: round(total / self._entity_counts[entity], 2)
                for entity, total in self._entity_duration_totals.items()
            }
            return {
                "records_synced": self._records_synced,
                "avg_sync_duration_ms": avg,
                "syncs_by_status": dict(self._by_status),
                "conflicts_detected": self._by_status.get("conflict", 0),
                "slowest_entity": self._slowest_entity,
                "slowest_entity_ms": round(self._slowest_entity_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_entity": dict(self._error_counts),
                "entity_avg_durations_ms": entity_avgs,
                "recalculations": self._recalculations,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._records_synced = 0
            self._total_sync_duration_ms = 0.0
            self._by_status.clear()
            self._entity_duration_totals.clear()
            self._entity_counts.clear()
            self._error_counts.clear()
            self._slowest_entity = None
            self._slowest_entity_ms = 0.0
            self._recalculations = 0

"""
cleanup_engine.py — Garbage collection plan for the on-device store.

Pending records are never selected: they are the only copy of unsynced work.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.services.storage_engine import (
    PHOTO_CACHE_TTL_DAYS,
    PROJECT_CACHE_TTL_HOURS,
    SYNC_QUEUE_MAX_AGE_DAYS,
)
from app.services.sync_queue_engine import MAX_RETRIES, now_ms

MS_PER_HOUR: int = 60 * 60 * 1000
MS_PER_DAY: int = 24 * MS_PER_HOUR

ASSESSMENT_TTL_DAYS: int = 30


def get_items_to_cleanup(
    items: Iterable[Mapping[str, Any]],
    max_age_days: float,
    max_retries: int,
    now: Optional[int] = None,
) -> List[str]:
    now = now_ms() if now is None else now
    max_age_ms = max_age_days * MS_PER_DAY
    to_delete: List[str] = []

    for item in items:
        status = item.get("sync_status")
        if status == "synced" and now - (item.get("updated_at") or 0) > max_age_ms:
            to_delete.append(item["id"])
        elif status == "failed" and (item.get("retry_count") or 0) >= max_retries:
            to_delete.append(item["id"])

    return to_delete


@dataclass
class CleanupPlan:
    assessments: List[str] = field(default_factory=list)
    deficiencies: List[str] = field(default_factory=list)
    photos: List[str] = field(default_factory=list)
    sync_items: List[str] = field(default_factory=list)
    cached_projects: List[str] = field(default_factory=list)
    freed_bytes: int = 0

    @property
    def total(self) -> int:
        return (
            len(self.assessments) + len(self.deficiencies) + len(self.photos)
            + len(self.sync_items) + len(self.cached_projects)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted_assessments": len(self.assessments),
            "deleted_deficiencies": len(self.deficiencies),
            "deleted_photos": len(self.photos),
            "deleted_sync_items": len(self.sync_items),
            "deleted_cached_projects": len(self.cached_projects),
            "freed_bytes": self.freed_bytes,
        }


def plan_cleanup(
    assessments: List[Mapping[str, Any]],
    deficiencies: List[Mapping[str, Any]],
    photos: List[Mapping[str, Any]],
    sync_items: List[Mapping[str, Any]],
    cached_projects: List[Mapping[str, Any]],
    max_retries: int = MAX_RETRIES,
    now: Optional[int] = None,
) -> CleanupPlan:
    """
    Apply the per-category retention limits.

    Photos age from ``created_at`` (they are immutable once captured); queue
    items are dropped once finished (completed / failed) and older than the
    queue TTL; project cache entries expire by ``cached_at``.
    """
    now = now_ms() if now is None else now
    plan = CleanupPlan()

    plan.assessments = get_items_to_cleanup(assessments, ASSESSMENT_TTL_DAYS, max_retries, now)
    plan.deficiencies = get_items_to_cleanup(deficiencies, ASSESSMENT_TTL_DAYS, max_retries, now)

    photo_ttl_ms = PHOTO_CACHE_TTL_DAYS * MS_PER_DAY
    for photo in photos:
        status = photo.get("sync_status")
        expired = status == "synced" and now - (photo.get("created_at") or 0) > photo_ttl_ms
        exhausted = status == "failed" and (photo.get("retry_count") or 0) >= max_retries
        if expired or exhausted:
            plan.photos.append(photo["id"])
            plan.freed_bytes += photo.get("size", 0) or 0

    queue_ttl_ms = SYNC_QUEUE_MAX_AGE_DAYS * MS_PER_DAY
    plan.sync_items = [
        item["id"] for item in sync_items
        if item.get("status") in ("completed", "failed")
        and now - (item.get("created_at") or 0) > queue_ttl_ms
    ]

    project_ttl_ms = PROJECT_CACHE_TTL_HOURS * MS_PER_HOUR
    plan.cached_projects = [
        p["id"] for p in cached_projects
        if now - (p.get("cached_at") or 0) > project_ttl_ms
    ]

    return plan

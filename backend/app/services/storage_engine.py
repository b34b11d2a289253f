"""
storage_engine.py — On-device storage budget for offline field capture.

Covers:
  - Storage limits for the device store
  - Per-category byte accounting (assessments / photos / deficiencies / cache)
  - Quota check before accepting new captures
  - LRU photo eviction that never touches photos still waiting for upload
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BYTES_PER_MB: int = 1024 * 1024

MAX_TOTAL_SIZE_MB: int = 500
MAX_PHOTO_SIZE_MB: int = 10
MAX_PHOTOS_COUNT: int = 1000
PHOTO_CACHE_TTL_DAYS: int = 30
PROJECT_CACHE_TTL_HOURS: int = 24
SYNC_QUEUE_MAX_AGE_DAYS: int = 7

STORAGE_LIMITS: Dict[str, int] = {
    "MAX_TOTAL_SIZE_MB": MAX_TOTAL_SIZE_MB,
    "MAX_PHOTO_SIZE_MB": MAX_PHOTO_SIZE_MB,
    "MAX_PHOTOS_COUNT": MAX_PHOTOS_COUNT,
    "PHOTO_CACHE_TTL_DAYS": PHOTO_CACHE_TTL_DAYS,
    "PROJECT_CACHE_TTL_HOURS": PROJECT_CACHE_TTL_HOURS,
    "SYNC_QUEUE_MAX_AGE_DAYS": SYNC_QUEUE_MAX_AGE_DAYS,
}

NEAR_LIMIT_PCT: float = 80.0
QUOTA_BLOCK_PCT: float = 95.0


@dataclass
class StorageUsage:
    total_bytes: int
    assessments_bytes: int
    photos_bytes: int
    deficiencies_bytes: int
    cache_bytes: int
    percent_used: float

    @property
    def is_near_limit(self) -> bool:
        return self.percent_used > NEAR_LIMIT_PCT

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["is_near_limit"] = self.is_near_limit
        return data


def _sum_sizes(items: Iterable[Mapping[str, Any]]) -> int:
    return sum(item.get("size", 0) or 0 for item in items)


def calculate_storage_usage(
    assessments: Iterable[Mapping[str, Any]],
    photos: Iterable[Mapping[str, Any]],
    deficiencies: Iterable[Mapping[str, Any]],
    cache: Iterable[Mapping[str, Any]],
    max_size_mb: float = MAX_TOTAL_SIZE_MB,
) -> StorageUsage:
    """
    Sum the ``size`` of every item per category.

    percent_used is not clamped: > 100 means the device is already
    over budget and eviction / cleanup has work to do.
    """
    assessments_bytes = _sum_sizes(assessments)
    photos_bytes = _sum_sizes(photos)
    deficiencies_bytes = _sum_sizes(deficiencies)
    cache_bytes = _sum_sizes(cache)
    total_bytes = assessments_bytes + photos_bytes + deficiencies_bytes + cache_bytes
    max_bytes = max_size_mb * BYTES_PER_MB
    percent_used = (total_bytes / max_bytes) * 100 if max_bytes > 0 else 0.0

    return StorageUsage(
        total_bytes=total_bytes,
        assessments_bytes=assessments_bytes,
        photos_bytes=photos_bytes,
        deficiencies_bytes=deficiencies_bytes,
        cache_bytes=cache_bytes,
        percent_used=percent_used,
    )


def check_storage_quota(usage: StorageUsage) -> Dict[str, Any]:
    if usage.percent_used >= QUOTA_BLOCK_PCT:
        return {
            "available": False,
            "reason": "Storage is almost full. Please sync or clear old data.",
        }
    return {"available": True, "reason": None}


# ---------------------------------------------------------------------------
# LRU eviction
# ---------------------------------------------------------------------------

def _lru_order(photos: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    synced = [p for p in photos if p.get("sync_status") == "synced"]
    # sorted() is stable: equal timestamps keep their input order
    return sorted(synced, key=lambda p: p.get("last_accessed") or 0)


def get_lru_photos(photos: Iterable[Mapping[str, Any]], count: int) -> List[str]:
    """Ids of the ``count`` least recently accessed synced photos, oldest first."""
    if count <= 0:
        return []
    return [p["id"] for p in _lru_order(photos)[:count]]


def select_photos_to_evict(
    photos: Iterable[Mapping[str, Any]],
    usage: StorageUsage,
    target_free_bytes: int,
    max_size_mb: float = MAX_TOTAL_SIZE_MB,
) -> List[str]:
    """
    Walk the LRU order until enough bytes would be freed to leave
    ``target_free_bytes`` of headroom. Returns [] when there already is.
    """
    max_bytes = max_size_mb * BYTES_PER_MB
    current_free = max_bytes - usage.total_bytes
    if current_free >= target_free_bytes:
        return []

    bytes_to_free = target_free_bytes - current_free
    freed = 0
    to_evict: List[str] = []
    for photo in _lru_order(photos):
        if freed >= bytes_to_free:
            break
        to_evict.append(photo["id"])
        freed += photo.get("size", 0) or 0
    return to_evict


def photo_exceeds_limit(size_bytes: int, max_photo_mb: Optional[float] = None) -> bool:
    limit_mb = MAX_PHOTO_SIZE_MB if max_photo_mb is None else max_photo_mb
    return size_bytes > limit_mb * BYTES_PER_MB

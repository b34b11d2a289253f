"""
local_store.py — Device-side record store for offline field capture.

Covers:
  - Keyed records per store (assessments / deficiencies / photos) with sync metadata
  - Change detection on write (delta engine) feeding the sync queue
  - Transactional batch operations
  - Persistent sync queue with backoff bookkeeping
  - Storage accounting, LRU photo eviction and the cleanup sweep

Backed by SQLAlchemy on a local SQLite file. The store is constructed from an
Engine, so tests hand it an in-memory one.
"""

import json
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.models.local_models import CachedProject, LocalBase, LocalRecord, LocalSyncItem
from app.services.cleanup_engine import CleanupPlan, plan_cleanup
from app.services.delta_engine import compute_delta
from app.services.perf_monitor import timed
from app.services.storage_engine import (
    BYTES_PER_MB,
    MAX_PHOTOS_COUNT,
    MAX_TOTAL_SIZE_MB,
    StorageUsage,
    calculate_storage_usage,
    check_storage_quota,
    photo_exceeds_limit,
    select_photos_to_evict,
)
from app.services.sync_queue_engine import (
    MAX_RETRIES,
    due_items,
    now_ms,
    priority_for,
    register_failure,
)

logger = logging.getLogger("bca-sync.store")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STORE_ENTITY: Dict[str, str] = {
    "assessments": "assessment",
    "deficiencies": "deficiency",
    "photos": "photo",
}
ENTITY_STORE: Dict[str, str] = {v: k for k, v in STORE_ENTITY.items()}

# Columns of LocalRecord surfaced on the record dict, never stored in ``data``
RECORD_METADATA = frozenset({
    "id", "created_at", "updated_at", "sync_status", "retry_count",
    "sync_error", "size", "last_accessed", "access_count", "base",
})

BATCH_OPERATION_TYPES = ("add", "update", "delete")
DEFAULT_EVICTION_HEADROOM_BYTES: int = 50 * BYTES_PER_MB


class LocalStoreError(Exception):
    """Invalid write against the device store (bad batch, unknown store, over quota)."""


def validate_batch_operations(operations: Iterable[Mapping[str, Any]]) -> bool:
    """
    add/update need ``data``, delete needs ``key``, every op needs a ``store``.
    An empty batch is valid.
    """
    for op in operations:
        if not op.get("store"):
            return False
        op_type = op.get("type")
        if op_type not in BATCH_OPERATION_TYPES:
            return False
        if op_type in ("add", "update") and not op.get("data"):
            return False
        if op_type == "delete" and not op.get("key"):
            return False
    return True


def _record_size(data: Mapping[str, Any]) -> int:
    return len(json.dumps(data, default=str).encode("utf-8"))


def _split_data(record: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k not in RECORD_METADATA}


class LocalRecordStore:
    """Offline record store. One instance per device database."""

    def __init__(
        self,
        engine: Engine,
        max_size_mb: float = MAX_TOTAL_SIZE_MB,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.engine = engine
        self.max_size_mb = max_size_mb
        self._clock = clock or now_ms
        self._sessions = sessionmaker(engine, expire_on_commit=False)
        LocalBase.metadata.create_all(engine)
        self._recover_in_flight()

    @classmethod
    def open(cls, path: str, **kwargs) -> "LocalRecordStore":
        return cls(create_engine(f"sqlite:///{path}"), **kwargs)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _recover_in_flight(self) -> None:
        # Items left "processing" by a crashed replay go back to the queue
        with self._session() as session:
            result = session.execute(
                update(LocalSyncItem)
                .where(LocalSyncItem.status == "processing")
                .values(status="pending")
            )
            if result.rowcount:
                logger.info("requeued %d in-flight sync item(s)", result.rowcount)

    @staticmethod
    def _check_store(store: str) -> None:
        if store not in STORE_ENTITY:
            raise LocalStoreError(f"Unknown store: {store}")

    # ------------------------------------------------------------------
    # Row <-> dict
    # ------------------------------------------------------------------

    @staticmethod
    def _to_dict(row: LocalRecord) -> Dict[str, Any]:
        record = dict(row.data or {})
        record.update(
            id=row.id,
            created_at=row.created_at,
            updated_at=row.updated_at,
            sync_status=row.sync_status,
            retry_count=row.retry_count,
            sync_error=row.sync_error,
            size=row.size,
        )
        if row.store == "photos":
            record["last_accessed"] = row.last_accessed
            record["access_count"] = row.access_count
        return record

    @staticmethod
    def _queue_dict(row: LocalSyncItem) -> Dict[str, Any]:
        return {
            "id": row.id,
            "entity_type": row.entity_type,
            "item_id": row.item_id,
            "priority": row.priority,
            "created_at": row.created_at,
            "attempts": row.attempts,
            "last_attempt_at": row.last_attempt_at,
            "next_retry_at": row.next_retry_at,
            "status": row.status,
            "error": row.error,
        }

    def _new_row(self, store: str, record_id: str, record: Mapping[str, Any],
                 data: Dict[str, Any], now: int) -> LocalRecord:
        return LocalRecord(
            store=store,
            id=record_id,
            data=data,
            base=None,
            sync_status="pending",
            retry_count=0,
            sync_error=None,
            created_at=record.get("created_at") or now,
            updated_at=now,
            size=record.get("size") or _record_size(data),
            last_accessed=now if store == "photos" else None,
            access_count=0,
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _check_capacity(self, session: Session, store: str, record: Mapping[str, Any],
                        data: Mapping[str, Any]) -> None:
        quota = check_storage_quota(self._usage(session))
        if not quota["available"]:
            raise LocalStoreError(quota["reason"])
        if store != "photos":
            return
        size = record.get("size") or _record_size(data)
        if photo_exceeds_limit(size):
            raise LocalStoreError(f"Photo exceeds size limit ({size} bytes)")
        count = len(session.scalars(
            select(LocalRecord.id).where(LocalRecord.store == "photos")
        ).all())
        if count >= MAX_PHOTOS_COUNT:
            raise LocalStoreError(f"Photo limit reached ({MAX_PHOTOS_COUNT})")

    def put(self, store: str, record: Mapping[str, Any], enqueue: bool = True) -> Dict[str, Any]:
        """
        Insert or update a captured record.

        An update that changes no field is a no-op. Anything else marks the
        record pending and (unless ``enqueue`` is False) queues it for replay.
        """
        self._check_store(store)
        record_id = record.get("id") or str(uuid.uuid4())
        data = _split_data(record)
        now = self._clock()

        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            if row is None:
                self._check_capacity(session, store, record, data)
                row = self._new_row(store, record_id, record, data, now)
                session.add(row)
                changed = True
            else:
                changes = compute_delta(row.data or {}, data)
                changed = bool(changes)
                if changed:
                    logger.debug(
                        "%s/%s changed: %s", store, record_id, [c.field for c in changes]
                    )
                    row.data = data
                    row.updated_at = now
                    row.sync_status = "pending"
                    row.retry_count = 0
                    row.sync_error = None
                    row.size = record.get("size") or _record_size(data)

            if changed and enqueue:
                self._enqueue(session, STORE_ENTITY[store], record_id, now)
            return self._to_dict(row)

    def get(self, store: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._check_store(store)
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            return self._to_dict(row) if row else None

    def get_base(self, store: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            return dict(row.base) if row and row.base is not None else None

    def delete(self, store: str, record_id: str) -> bool:
        self._check_store(store)
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            if row is None:
                return False
            session.delete(row)
            return True

    def all(self, store: str) -> List[Dict[str, Any]]:
        self._check_store(store)
        with self._session() as session:
            rows = session.scalars(select(LocalRecord).where(LocalRecord.store == store))
            return [self._to_dict(r) for r in rows]

    def list_by_status(self, store: str, status: str) -> List[Dict[str, Any]]:
        self._check_store(store)
        with self._session() as session:
            rows = session.scalars(
                select(LocalRecord)
                .where(LocalRecord.store == store, LocalRecord.sync_status == status)
                .order_by(LocalRecord.created_at)
            )
            return [self._to_dict(r) for r in rows]

    def execute_batch(self, operations: List[Mapping[str, Any]]) -> int:
        """
        Apply add/update/delete operations in one transaction.

        Raw storage writes: nothing is queued for replay. ``add`` fails on an
        existing key, ``update`` upserts. Any failure rolls back the batch.
        """
        if not validate_batch_operations(operations):
            raise LocalStoreError("Invalid batch operations")

        now = self._clock()
        with self._session() as session:
            for op in operations:
                store = op["store"]
                self._check_store(store)
                if op["type"] == "delete":
                    row = session.get(LocalRecord, (store, op["key"]))
                    if row is not None:
                        session.delete(row)
                    continue

                record = op["data"]
                record_id = record.get("id")
                if not record_id:
                    raise LocalStoreError(f"Batch {op['type']} on {store} without data.id")
                data = _split_data(record)
                row = session.get(LocalRecord, (store, record_id))
                if row is None:
                    session.add(self._new_row(store, record_id, record, data, now))
                elif op["type"] == "add":
                    raise LocalStoreError(f"Record already exists: {store}/{record_id}")
                else:
                    row.data = data
                    row.updated_at = now
                    row.size = record.get("size") or _record_size(data)
                    if record.get("sync_status"):
                        row.sync_status = record["sync_status"]
                session.flush()
        logger.debug("batch of %d operation(s) applied", len(operations))
        return len(operations)

    def track_photo_access(self, photo_id: str) -> bool:
        with self._session() as session:
            row = session.get(LocalRecord, ("photos", photo_id))
            if row is None:
                return False
            row.last_accessed = self._clock()
            row.access_count = (row.access_count or 0) + 1
            return True

    # ------------------------------------------------------------------
    # Sync status transitions
    # ------------------------------------------------------------------

    def mark_synced(
        self,
        store: str,
        record_id: str,
        base: Optional[Mapping[str, Any]] = None,
        expected_updated_at: Optional[int] = None,
    ) -> bool:
        """
        Record server acknowledgement. ``base`` defaults to the local data.

        When ``expected_updated_at`` no longer matches, the record was edited
        while the replay was in flight: only the base moves, the record stays
        pending.
        """
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            if row is None:
                return False
            row.base = dict(base) if base is not None else dict(row.data or {})
            if expected_updated_at is None or row.updated_at == expected_updated_at:
                row.sync_status = "synced"
                row.sync_error = None
                row.retry_count = 0
            return True

    def apply_server_version(
        self,
        store: str,
        record_id: str,
        merged: Mapping[str, Any],
        expected_updated_at: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Overlay the server's merged snapshot onto the local copy and mark it synced."""
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            if row is None:
                return None
            row.base = dict(merged)
            if expected_updated_at is None or row.updated_at == expected_updated_at:
                data = {**(row.data or {}), **_split_data(merged)}
                row.data = data
                row.size = _record_size(data) if store != "photos" else row.size
                row.sync_status = "synced"
                row.sync_error = None
                row.retry_count = 0
            return self._to_dict(row)

    def record_attempt_error(self, store: str, record_id: str, error: str) -> bool:
        """A retryable replay failure: count it, keep the record pending."""
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            if row is None:
                return False
            row.retry_count = (row.retry_count or 0) + 1
            row.sync_error = error
            return True

    def mark_failed(self, store: str, record_id: str, error: str,
                    exhausted: bool = False, max_retries: int = MAX_RETRIES) -> bool:
        """
        Flag a record failed. ``exhausted`` marks a permanent rejection: the
        retry count jumps to ``max_retries`` so the retention sweep reclaims it.
        """
        with self._session() as session:
            row = session.get(LocalRecord, (store, record_id))
            if row is None:
                return False
            row.retry_count = (row.retry_count or 0) + 1
            if exhausted:
                row.retry_count = max(row.retry_count, max_retries)
            row.sync_error = error
            row.sync_status = "failed"
            logger.warning("%s/%s marked failed: %s", store, record_id, error)
            return True

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    def _enqueue(self, session: Session, entity_type: str, item_id: str, now: int,
                 priority: Optional[int] = None) -> LocalSyncItem:
        existing = session.scalar(
            select(LocalSyncItem).where(
                LocalSyncItem.entity_type == entity_type,
                LocalSyncItem.item_id == item_id,
                LocalSyncItem.status == "pending",
            )
        )
        if existing is not None:
            return existing
        item = LocalSyncItem(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            item_id=item_id,
            priority=priority if priority is not None else priority_for(entity_type),
            created_at=now,
            attempts=0,
            last_attempt_at=None,
            next_retry_at=None,
            status="pending",
            error=None,
        )
        session.add(item)
        return item

    def enqueue(self, entity_type: str, item_id: str, priority: Optional[int] = None) -> Dict[str, Any]:
        with self._session() as session:
            item = self._enqueue(session, entity_type, item_id, self._clock(), priority)
            session.flush()
            return self._queue_dict(item)

    def queue_items(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._session() as session:
            query = select(LocalSyncItem)
            if status is not None:
                query = query.where(LocalSyncItem.status == status)
            return [self._queue_dict(r) for r in session.scalars(query)]

    def pending_queue(self, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Due pending items in replay order (priority, then age)."""
        now = self._clock() if now is None else now
        return due_items(self.queue_items("pending"), now)

    def claim(self, queue_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.get(LocalSyncItem, queue_id)
            if row is None or row.status != "pending":
                return None
            row.status = "processing"
            row.last_attempt_at = self._clock()
            return self._queue_dict(row)

    def complete(self, queue_id: str) -> bool:
        with self._session() as session:
            row = session.get(LocalSyncItem, queue_id)
            if row is None:
                return False
            row.status = "completed"
            row.error = None
            row.next_retry_at = None
            return True

    def fail(
        self,
        queue_id: str,
        error: str,
        now: Optional[int] = None,
        max_retries: int = MAX_RETRIES,
        permanent: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Count a failed attempt and schedule the retry. ``permanent`` skips
        the backoff and fails the item outright.
        """
        now = self._clock() if now is None else now
        with self._session() as session:
            row = session.get(LocalSyncItem, queue_id)
            if row is None:
                return None
            updated = register_failure(self._queue_dict(row), error, now, max_retries)
            if permanent:
                updated["status"] = "failed"
                updated["next_retry_at"] = None
            row.attempts = updated["attempts"]
            row.last_attempt_at = updated["last_attempt_at"]
            row.next_retry_at = updated["next_retry_at"]
            row.status = updated["status"]
            row.error = updated["error"]
            return updated

    # ------------------------------------------------------------------
    # Project cache
    # ------------------------------------------------------------------

    def cache_project(self, project_id: str, data: Mapping[str, Any]) -> None:
        with self._session() as session:
            row = session.get(CachedProject, project_id)
            if row is None:
                row = CachedProject(id=project_id)
                session.add(row)
            row.data = dict(data)
            row.cached_at = self._clock()
            row.size = _record_size(data)

    def get_cached_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.get(CachedProject, project_id)
            return dict(row.data) if row else None

    # ------------------------------------------------------------------
    # Storage budget
    # ------------------------------------------------------------------

    def _rows_by_store(self, session: Session) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {store: [] for store in STORE_ENTITY}
        for row in session.scalars(select(LocalRecord)):
            grouped.setdefault(row.store, []).append(self._to_dict(row))
        return grouped

    def _usage(self, session: Session) -> StorageUsage:
        grouped = self._rows_by_store(session)
        cache = [{"size": r.size} for r in session.scalars(select(CachedProject))]
        return calculate_storage_usage(
            grouped["assessments"], grouped["photos"], grouped["deficiencies"],
            cache, self.max_size_mb,
        )

    def storage_usage(self) -> StorageUsage:
        with self._session() as session:
            return self._usage(session)

    def check_quota(self) -> Dict[str, Any]:
        return check_storage_quota(self.storage_usage())

    @timed
    def evict_photos_if_needed(
        self, target_free_bytes: int = DEFAULT_EVICTION_HEADROOM_BYTES
    ) -> List[str]:
        """Delete least recently used synced photos until the headroom is met."""
        with self._session() as session:
            usage = self._usage(session)
            photos = self._rows_by_store(session)["photos"]
            evict = select_photos_to_evict(photos, usage, target_free_bytes, self.max_size_mb)
            for photo_id in evict:
                row = session.get(LocalRecord, ("photos", photo_id))
                if row is not None:
                    session.delete(row)
        if evict:
            logger.info("evicted %d photo(s)", len(evict))
        return evict

    @timed
    def cleanup(self, now: Optional[int] = None, max_retries: int = MAX_RETRIES) -> CleanupPlan:
        """Run the retention sweep and delete what it selects."""
        now = self._clock() if now is None else now
        with self._session() as session:
            grouped = self._rows_by_store(session)
            queue = [self._queue_dict(r) for r in session.scalars(select(LocalSyncItem))]
            cached = [
                {"id": r.id, "cached_at": r.cached_at}
                for r in session.scalars(select(CachedProject))
            ]
            plan = plan_cleanup(
                grouped["assessments"], grouped["deficiencies"], grouped["photos"],
                queue, cached, max_retries=max_retries, now=now,
            )
            for store, ids in (
                ("assessments", plan.assessments),
                ("deficiencies", plan.deficiencies),
                ("photos", plan.photos),
            ):
                for record_id in ids:
                    row = session.get(LocalRecord, (store, record_id))
                    if row is not None:
                        session.delete(row)
            for queue_id in plan.sync_items:
                row = session.get(LocalSyncItem, queue_id)
                if row is not None:
                    session.delete(row)
            for project_id in plan.cached_projects:
                row = session.get(CachedProject, project_id)
                if row is not None:
                    session.delete(row)
        if plan.total:
            logger.info("cleanup removed %d item(s)", plan.total, extra={"cleanup": plan.to_dict()})
        return plan

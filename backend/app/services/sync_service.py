"""
sync_service.py — Server side of offline replay.

Covers:
  - Tenant-scoped project ownership checks
  - Create-or-merge of replayed assessments / deficiencies / photos
  - Persisting unresolved field conflicts for manual arbitration
  - Conflict resolution with a ConflictStrategy
  - Project CI / FCI rollup after assessment changes
  - Component history rows for every synced assessment

Functions return Ok / Err; nothing here raises HTTPException.
"""

import base64
import binascii
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.models.orm_models import Assessment, Deficiency, Photo, Project, SyncConflict, User
from app.models.results import Err, ErrorKind, Ok, Result
from app.models.sync_schemas import (
    RECORD_MODELS,
    BatchItemResult,
    BatchSyncResponse,
    ConflictOut,
    PhotoRecord,
    ResolveConflictRequest,
    SyncEnvelope,
    SyncResponse,
    SyncRecordBase,
)
from app.services.component_history import record_assessment_change
from app.services.delta_engine import DeltaChange, compute_delta
from app.services.merge_engine import ConflictStrategy, MergeResult, merge_versions, resolve_conflicts
from app.services.perf_monitor import PerformanceTracker
from app.services.scoring_engine import condition_summary
from app.services.storage_engine import photo_exceeds_limit

logger = logging.getLogger("bca-sync.service")

ENTITY_MODELS = {
    "assessment": Assessment,
    "deficiency": Deficiency,
    "photo": Photo,
}


def _upload_dir() -> Path:
    return Path(os.getenv("UPLOAD_DIR", "uploads"))


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def entity_snapshot(entity: Any, record_model: Type[SyncRecordBase]) -> Dict[str, Any]:
    """Mergeable field set of a server entity, shaped like ``record.data()``."""
    return {name: _plain(getattr(entity, name, None)) for name in record_model.data_fields()}


@lru_cache(maxsize=None)
def _field_adapter(record_model: Type[SyncRecordBase], name: str) -> TypeAdapter:
    return TypeAdapter(record_model.model_fields[name].annotation)


def _coerce_field(record_model: Type[SyncRecordBase], name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        return _field_adapter(record_model, name).validate_python(value)
    except ValidationError:
        # Keep what the device sent; the merge compares it as-is
        return value


def normalize_base(
    base: Optional[Mapping[str, Any]],
    record_model: Type[SyncRecordBase],
) -> Optional[Dict[str, Any]]:
    """
    Restrict a client base snapshot to the entity's data fields (absent -> None)
    and coerce each value to the field's type, the same way the local record
    was validated.
    """
    if base is None:
        return None
    return {
        name: _coerce_field(record_model, name, base.get(name))
        for name in record_model.data_fields()
    }



def apply_snapshot(entity: Any, snapshot: Mapping[str, Any], record_model: Type[SyncRecordBase]) -> None:
    for name in record_model.data_fields():
        setattr(entity, name, snapshot.get(name))


def _parse_uuid(value: str) -> Optional[str]:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def _ms_to_datetime(ms: Optional[int]) -> Optional[datetime]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------

async def load_project(session: AsyncSession, tenant_id: str, project_id: str) -> Result:
    pid = _parse_uuid(project_id)
    if pid is None:
        return Err(ErrorKind.VALIDATION, f"Invalid project id: {project_id}")
    project = await session.get(Project, pid)
    if project is None:
        return Err(ErrorKind.NOT_FOUND, "Project not found")
    if project.tenant_id != tenant_id:
        return Err(ErrorKind.ACCESS_DENIED, "Project belongs to another tenant")
    return Ok(project)


async def _find_existing(session: AsyncSession, entity_cls, record: SyncRecordBase, project_id: str):
    existing = await session.scalar(select(entity_cls).where(entity_cls.offline_id == record.id))
    if existing is None and record.entity_type == "assessment" and record.component_code:
        # One assessment per component: a second device capturing the same
        # component merges into the first one
        existing = await session.scalar(
            select(Assessment)
            .where(Assessment.project_id == project_id, Assessment.component_code == record.component_code)
            .order_by(Assessment.created_at)
            .limit(1)
        )
    return existing


# ---------------------------------------------------------------------------
# Photo bytes
# ---------------------------------------------------------------------------

# session.info key: files written in the current transaction
PENDING_UPLOADS = "pending_uploads"


def _remember_upload(session: AsyncSession, path: Path) -> None:
    session.info.setdefault(PENDING_UPLOADS, []).append(path)


def discard_uploads(info: Dict[str, Any], since: int = 0) -> int:
    """Unlink files written after position ``since`` of the pending list."""
    pending: List[Path] = info.get(PENDING_UPLOADS, [])
    stale = pending[since:]
    for path in stale:
        path.unlink(missing_ok=True)
    del pending[since:]
    removed = len(stale)
    if removed:
        logger.info("removed %d uncommitted photo file(s)", removed)
    return removed


@event.listens_for(Session, "after_commit")
def _keep_committed_uploads(session: Session) -> None:
    # Also fires on savepoint release; only the outer commit makes files permanent
    if not session.in_nested_transaction():
        session.info.pop(PENDING_UPLOADS, None)


@event.listens_for(Session, "after_transaction_end")
def _drop_uncommitted_uploads(session: Session, transaction) -> None:
    # Outermost transaction ending without a commit: rollback or close
    if transaction.parent is None and session.info.get(PENDING_UPLOADS):
        discard_uploads(session.info)


def store_photo_bytes(record: PhotoRecord, project_id: str) -> Result:
    """Decode the base64 payload and write it under UPLOAD_DIR."""
    if not record.photo_blob:
        return Err(ErrorKind.VALIDATION, "photo_blob is required on first upload")
    try:
        content = base64.b64decode(record.photo_blob, validate=True)
    except (binascii.Error, ValueError):
        return Err(ErrorKind.VALIDATION, "photo_blob is not valid base64")
    if photo_exceeds_limit(len(content)):
        return Err(ErrorKind.VALIDATION, "Photo exceeds size limit")

    safe_name = os.path.basename(record.file_name)
    file_key = f"projects/{project_id}/photos/{record.id}-{safe_name}"
    path = _upload_dir() / file_key
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return Ok({"file_key": file_key, "size_bytes": len(content)})


# ---------------------------------------------------------------------------
# Condition rollup
# ---------------------------------------------------------------------------

async def project_condition(session: AsyncSession, project: Project) -> Dict[str, Any]:
    rows = (await session.scalars(
        select(Assessment).where(Assessment.project_id == project.id)
    )).all()
    components = [
        {"condition_percentage": a.condition_percentage, "replacement_value": a.replacement_value}
        for a in rows
    ]
    deferred = sum(a.estimated_repair_cost or 0 for a in rows)
    crv = project.current_replacement_value or sum(a.replacement_value or 0 for a in rows)
    summary = condition_summary(components, deferred, crv)
    summary["project_id"] = project.id
    summary["assessed_components"] = len(rows)
    return summary


async def recalculate_project_condition(session: AsyncSession, project: Project) -> Dict[str, Any]:
    summary = await project_condition(session, project)
    project.ci = summary["ci"]
    project.fci = summary["fci"]
    project.fci_rating = summary["fci_rating"]
    project.deferred_maintenance_cost = summary["deferred_maintenance_cost"]
    project.condition_updated_at = datetime.now(timezone.utc)
    logger.debug("project %s condition: ci=%s fci=%s", project.id, summary["ci"], summary["fci"])
    return summary


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def _creation_kwargs(record: SyncRecordBase, user: User) -> Dict[str, Any]:
    if record.entity_type == "assessment":
        return {"assessed_by": user.id, "assessed_at": _ms_to_datetime(record.created_at)}
    return {"created_by": user.id}


async def sync_record(
    session: AsyncSession,
    user: User,
    envelope: SyncEnvelope,
    tracker: Optional[PerformanceTracker] = None,
) -> Result:
    """
    Accept one replayed record.

    New records are created. Known ones (same offline id, or for assessments
    the same project component) go through a three-way merge against the
    client's base; leftover conflicts are stored as a SyncConflict row and the
    server value is kept until someone resolves it.
    """
    start = time.perf_counter()
    record = envelope.record
    record_model = type(record)
    entity_cls = ENTITY_MODELS[record.entity_type]

    loaded = await load_project(session, user.tenant_id, record.project_id)
    if not loaded.ok:
        if tracker:
            tracker.record_sync_error(record.entity_type)
        return loaded
    project: Project = loaded.value

    local = record.data()
    existing = await _find_existing(session, entity_cls, record, project.id)
    conflicts: List[str] = []
    conflict_id: Optional[str] = None
    changes: List[DeltaChange] = []

    if existing is not None and existing.tenant_id != user.tenant_id:
        return Err(ErrorKind.ACCESS_DENIED, "Record belongs to another tenant")

    if existing is None:
        extra = _creation_kwargs(record, user)
        if isinstance(record, PhotoRecord):
            stored = store_photo_bytes(record, project.id)
            if not stored.ok:
                if tracker:
                    tracker.record_sync_error(record.entity_type)
                return stored
            extra.update(stored.value)
            _remember_upload(session, _upload_dir() / stored.value["file_key"])
        entity = entity_cls(
            tenant_id=user.tenant_id,
            project_id=project.id,
            offline_id=record.id,
            **local,
            **extra,
        )
        session.add(entity)
        await session.flush()
        status = "created"
        merged = entity_snapshot(entity, record_model)
    else:
        entity = existing
        server = entity_snapshot(entity, record_model)
        base = normalize_base(envelope.base, record_model)
        result = merge_versions(local, server, base)
        apply_snapshot(entity, result.merged, record_model)
        merged = result.merged
        conflicts = result.conflicts
        changes = compute_delta(server, merged)
        status = "updated"
        if result.has_conflicts:
            conflict = SyncConflict(
                tenant_id=user.tenant_id,
                entity_type=record.entity_type,
                entity_id=entity.id,
                offline_id=record.id,
                fields=list(result.conflicts),
                local_snapshot=local,
                server_snapshot=server,
                base_snapshot=base,
                status="open",
                created_by=user.id,
            )
            session.add(conflict)
            await session.flush()
            conflict_id = conflict.id
            status = "conflict"
            logger.info(
                "sync conflict on %s %s: %s", record.entity_type, entity.id, conflicts,
                extra={"conflict_id": conflict_id},
            )
        await session.flush()

    if record.entity_type == "assessment":
        record_assessment_change(session, user, entity, status == "created", changes)
        await recalculate_project_condition(session, project)

    if tracker:
        tracker.record_sync(record.entity_type, status, (time.perf_counter() - start) * 1000)

    return Ok(SyncResponse(
        entity_id=entity.id,
        offline_id=record.id,
        status=status,
        merged=merged,
        conflicts=conflicts,
        conflict_id=conflict_id,
    ))


async def sync_batch(
    session: AsyncSession,
    user: User,
    envelopes: List[SyncEnvelope],
    tracker: Optional[PerformanceTracker] = None,
) -> BatchSyncResponse:
    """Per-record outcome; one bad record never rolls back the others."""
    results: List[BatchItemResult] = []
    for envelope in envelopes:
        offline_id = envelope.record.id
        written = len(session.info.get(PENDING_UPLOADS, []))
        try:
            async with session.begin_nested():
                outcome = await sync_record(session, user, envelope, tracker)
        except SQLAlchemyError as exc:
            logger.error("batch sync of %s failed: %s", offline_id, exc)
            discard_uploads(session.info, since=written)
            if tracker:
                tracker.record_sync_error(envelope.record.entity_type)
            results.append(BatchItemResult(offline_id=offline_id, success=False, error="Database error"))
            continue

        if outcome.ok:
            results.append(BatchItemResult(
                offline_id=offline_id,
                success=True,
                status=outcome.value.status,
                entity_id=outcome.value.entity_id,
            ))
        else:
            results.append(BatchItemResult(offline_id=offline_id, success=False, error=outcome.message))

    success_count = sum(1 for r in results if r.success)
    return BatchSyncResponse(
        results=results,
        success_count=success_count,
        failure_count=len(results) - success_count,
    )


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

def conflict_out(conflict: SyncConflict) -> ConflictOut:
    return ConflictOut(
        id=conflict.id,
        entity_type=conflict.entity_type,
        entity_id=conflict.entity_id,
        offline_id=conflict.offline_id,
        fields=list(conflict.fields or []),
        local_snapshot=dict(conflict.local_snapshot or {}),
        server_snapshot=dict(conflict.server_snapshot or {}),
        status=conflict.status,
        created_at=conflict.created_at.isoformat() if conflict.created_at else None,
    )


async def list_conflicts(session: AsyncSession, tenant_id: str, status: str = "open") -> List[ConflictOut]:
    rows = await session.scalars(
        select(SyncConflict)
        .where(SyncConflict.tenant_id == tenant_id, SyncConflict.status == status)
        .order_by(SyncConflict.created_at)
    )
    return [conflict_out(c) for c in rows]


async def resolve_conflict(
    session: AsyncSession,
    user: User,
    conflict_id: str,
    request: ResolveConflictRequest,
) -> Result:
    cid = _parse_uuid(conflict_id)
    if cid is None:
        return Err(ErrorKind.VALIDATION, f"Invalid conflict id: {conflict_id}")
    conflict = await session.get(SyncConflict, cid)
    if conflict is None or conflict.tenant_id != user.tenant_id:
        return Err(ErrorKind.NOT_FOUND, "Conflict not found")
    if conflict.status != "open":
        return Err(ErrorKind.CONFLICT, f"Conflict already {conflict.status}")

    record_model = RECORD_MODELS[conflict.entity_type]
    entity = await session.get(ENTITY_MODELS[conflict.entity_type], conflict.entity_id)
    if entity is None:
        return Err(ErrorKind.NOT_FOUND, f"{conflict.entity_type} no longer exists")

    fields = list(conflict.fields or [])
    if request.strategy == ConflictStrategy.MANUAL:
        missing = [f for f in fields if f not in request.choices]
        if missing:
            return Err(ErrorKind.VALIDATION, f"Missing choices for: {', '.join(missing)}")

    current = MergeResult(merged=entity_snapshot(entity, record_model), conflicts=fields)
    resolved = resolve_conflicts(current, conflict.local_snapshot or {}, request.strategy, request.choices)
    try:
        validated = record_model.model_validate({
            **resolved,
            "id": conflict.offline_id or entity.id,
            "project_id": entity.project_id,
        })
    except ValidationError as exc:
        return Err(ErrorKind.VALIDATION, f"Resolved values are invalid: {exc.error_count()} error(s)")

    final = validated.data()
    apply_snapshot(entity, final, record_model)
    conflict.status = "resolved"
    conflict.resolution = request.strategy.value
    conflict.resolved_by = user.id
    conflict.resolved_at = datetime.now(timezone.utc)
    await session.flush()

    if conflict.entity_type == "assessment":
        project = await session.get(Project, entity.project_id)
        if project is not None:
            await recalculate_project_condition(session, project)

    logger.info("conflict %s resolved with %s", conflict.id, request.strategy.value)
    return Ok({
        "conflict_id": conflict.id,
        "entity_type": conflict.entity_type,
        "entity_id": entity.id,
        "resolution": request.strategy.value,
        "merged": final,
    })

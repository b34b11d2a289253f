"""
Offline sync routes.

Field devices replay queued captures here once connectivity returns. Each
record is merged against the server copy; unresolved field conflicts are
parked in sync_conflicts for a manager to arbitrate.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_db
from app.api.deps import get_current_user, get_tenant_id, get_tracker, raise_for_error, require_role
from app.models.orm_models import User
from app.models.sync_schemas import (
    BatchSyncRequest,
    BatchSyncResponse,
    DeltaRequest,
    MergeRequest,
    ResolveConflictRequest,
    SyncEnvelope,
    SyncResponse,
)
from app.services import sync_service
from app.services.delta_engine import compute_delta
from app.services.merge_engine import merge_versions
from app.services.perf_monitor import PerformanceTracker

router = APIRouter(prefix="/api/v1/sync", tags=["Offline Sync"])
logger = logging.getLogger("bca-api.sync")


async def _sync_one(
    envelope: SyncEnvelope,
    expected_type: str,
    user: User,
    db: AsyncSession,
    tracker: PerformanceTracker,
) -> SyncResponse:
    if envelope.record.entity_type != expected_type:
        raise HTTPException(
            status_code=422,
            detail=f"Expected a {expected_type} record, got {envelope.record.entity_type}",
        )
    result = await sync_service.sync_record(db, user, envelope, tracker)
    if not result.ok:
        raise_for_error(result)
    return result.value


@router.post("/assessments", response_model=SyncResponse)
async def sync_assessment(
    envelope: SyncEnvelope,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: PerformanceTracker = Depends(get_tracker),
):
    """Create or merge an assessment captured offline. Recalculates project CI/FCI."""
    return await _sync_one(envelope, "assessment", user, db, tracker)


@router.post("/deficiencies", response_model=SyncResponse)
async def sync_deficiency(
    envelope: SyncEnvelope,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: PerformanceTracker = Depends(get_tracker),
):
    return await _sync_one(envelope, "deficiency", user, db, tracker)


@router.post("/photos", response_model=SyncResponse)
async def sync_photo(
    envelope: SyncEnvelope,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: PerformanceTracker = Depends(get_tracker),
):
    """First upload must carry photo_blob; later replays only update metadata."""
    return await _sync_one(envelope, "photo", user, db, tracker)


@router.post("/batch", response_model=BatchSyncResponse)
async def sync_batch(
    req: BatchSyncRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: PerformanceTracker = Depends(get_tracker),
):
    """Mixed batch of records; each one succeeds or fails on its own."""
    response = await sync_service.sync_batch(db, user, req.records, tracker)
    logger.info(
        "batch sync: %d ok, %d failed", response.success_count, response.failure_count,
        extra={"tenant_id": user.tenant_id},
    )
    return response


@router.post("/delta")
async def delta(req: DeltaRequest, user: User = Depends(get_current_user)):
    changes = compute_delta(req.original, req.updated)
    return {"changes": [c.to_dict() for c in changes], "count": len(changes)}


@router.post("/merge")
async def merge(req: MergeRequest, user: User = Depends(get_current_user)):
    return merge_versions(req.local, req.server, req.base).to_dict()


@router.get("/conflicts")
async def list_conflicts(
    status: str = "open",
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    conflicts = await sync_service.list_conflicts(db, tenant_id, status)
    return {"total": len(conflicts), "items": [c.model_dump() for c in conflicts]}


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    req: ResolveConflictRequest,
    user: User = Depends(require_role("Manager")),
    db: AsyncSession = Depends(get_db),
):
    result = await sync_service.resolve_conflict(db, user, conflict_id, req)
    if not result.ok:
        raise_for_error(result)
    return result.value

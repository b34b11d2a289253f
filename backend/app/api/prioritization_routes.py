"""
Capital planning routes — priority rankings, building condition (CI / FCI)
and per-component assessment history.
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_db
from app.api.deps import get_tenant_id, get_tracker, raise_for_error, require_role
from app.models.orm_models import User
from app.services import component_history, prioritization_service, sync_service
from app.services.perf_monitor import PerformanceTracker

router = APIRouter(prefix="/api/v1", tags=["Prioritization"])
logger = logging.getLogger("bca-api.prioritization")


@router.get("/prioritization/rankings")
async def get_rankings(
    live: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Cached ranking from the last recalculation. ``live=true`` computes a
    fresh ranking without storing it.
    """
    if live:
        ranked = await prioritization_service.compute_rankings(db, tenant_id)
        items = [r.to_dict() for r in ranked]
    else:
        items = await prioritization_service.cached_rankings(db, tenant_id)
    return {"total": len(items), "items": items}


@router.post("/prioritization/recalculate")
async def recalculate(
    user: User = Depends(require_role("Manager")),
    db: AsyncSession = Depends(get_db),
    tracker: PerformanceTracker = Depends(get_tracker),
):
    ranked = await prioritization_service.recalculate_priority_scores(db, user.tenant_id)
    tracker.record_recalculation()
    return {"total": len(ranked), "items": [r.to_dict() for r in ranked]}


@router.get("/projects/{project_id}/condition")
async def project_condition(
    project_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    loaded = await sync_service.load_project(db, tenant_id, project_id)
    if not loaded.ok:
        raise_for_error(loaded)
    return await sync_service.project_condition(db, loaded.value)


@router.get("/projects/{project_id}/components/{component_code}/history")
async def get_component_history(
    project_id: str,
    component_code: str,
    limit: int = 100,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail of synced assessments for one building component, newest first."""
    loaded = await sync_service.load_project(db, tenant_id, project_id)
    if not loaded.ok:
        raise_for_error(loaded)
    items = await component_history.component_history(db, tenant_id, loaded.value.id, component_code, limit)
    return {"total": len(items), "items": items}

"""
Celery Tasks — periodic maintenance of sync and scoring state.

Each task opens its own Database for the duration of the run; nothing is
shared with the API process.
"""
import os
import logging
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from sqlalchemy import delete, select
from app.db import Database
from app.workers.celery_app import celery_app

logger = logging.getLogger("bca-celery")

CONFLICT_RETENTION_DAYS = int(os.getenv("CONFLICT_RETENTION_DAYS", "90"))


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _purge_stale_conflicts(max_age_days: int) -> int:
    from app.models.orm_models import SyncConflict

    db = Database()
    await db.connect()
    if not db.connected:
        return 0
    cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
    try:
        async with db.session() as session:
            result = await session.execute(
                delete(SyncConflict).where(
                    SyncConflict.status == "resolved",
                    SyncConflict.resolved_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount or 0
    finally:
        await db.disconnect()


async def _recalculate_priority_scores(tenant_id: Optional[str]) -> dict:
    from app.models.orm_models import Tenant
    from app.services.prioritization_service import recalculate_priority_scores

    db = Database()
    await db.connect()
    if not db.connected:
        return {}
    summary = {}
    try:
        async with db.session() as session:
            if tenant_id:
                tenant_ids: List[str] = [tenant_id]
            else:
                tenant_ids = list((await session.scalars(select(Tenant.id))).all())
            for tid in tenant_ids:
                ranked = await recalculate_priority_scores(session, tid)
                summary[tid] = len(ranked)
            await session.commit()
    finally:
        await db.disconnect()
    return summary


async def _recalculate_project_condition(project_id: str) -> dict:
    from app.models.orm_models import Project
    from app.services.sync_service import recalculate_project_condition

    db = Database()
    await db.connect()
    if not db.connected:
        return {}
    try:
        async with db.session() as session:
            project = await session.get(Project, project_id)
            if project is None:
                return {}
            summary = await recalculate_project_condition(session, project)
            await session.commit()
            return summary
    finally:
        await db.disconnect()


@celery_app.task(name="tasks.purge_stale_conflicts")
def purge_stale_conflicts(max_age_days: int = CONFLICT_RETENTION_DAYS):
    """Delete resolved sync conflicts older than the retention window."""
    deleted = _run_async(_purge_stale_conflicts(max_age_days))
    logger.info(f"Purged {deleted} resolved conflict(s) older than {max_age_days} days")
    return {"status": "success", "deleted": deleted}


@celery_app.task(bind=True, name="tasks.recalculate_priority_scores")
def recalculate_priority_scores(self, tenant_id: Optional[str] = None):
    """Refresh cached rankings for one tenant, or all tenants when none is given."""
    self.update_state(state="PROGRESS", meta={"step": "Scoring projects", "pct": 10})
    try:
        summary = _run_async(_recalculate_priority_scores(tenant_id))
    except Exception as e:
        logger.error(f"Priority recalculation failed: {e}")
        raise
    return {"status": "success", "projects_ranked": summary}


@celery_app.task(name="tasks.recalculate_project_condition")
def recalculate_project_condition(project_id: str):
    summary = _run_async(_recalculate_project_condition(project_id))
    return {"status": "success" if summary else "not_found", "condition": summary}

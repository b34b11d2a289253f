"""
prioritization_service.py — Loads criteria / scores for a tenant, runs the
scoring engine and caches the ranking in project_priority_scores.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm_models import PrioritizationCriteria, Project, ProjectPriorityScore, ProjectScore
from app.services.scoring_engine import RankedProject, calculate_composite_score, rank_projects

logger = logging.getLogger("bca-scoring.service")


async def load_active_criteria(session: AsyncSession, tenant_id: str) -> List[Dict[str, Any]]:
    rows = await session.scalars(
        select(PrioritizationCriteria)
        .where(PrioritizationCriteria.tenant_id == tenant_id, PrioritizationCriteria.is_active.is_(True))
        .order_by(PrioritizationCriteria.display_order)
    )
    return [{"id": c.id, "name": c.name, "weight": c.weight} for c in rows]


async def compute_rankings(session: AsyncSession, tenant_id: str) -> List[RankedProject]:
    """Rank every tenant project that has at least one criterion scored."""
    criteria = await load_active_criteria(session, tenant_id)
    if not criteria:
        return []

    result = await session.execute(
        select(ProjectScore, Project)
        .join(Project, ProjectScore.project_id == Project.id)
        .where(Project.tenant_id == tenant_id, ProjectScore.score.is_not(None))
    )
    scores_by_project: Dict[str, Dict[int, Dict[str, Any]]] = defaultdict(dict)
    projects: Dict[str, Project] = {}
    for score, project in result.all():
        projects[project.id] = project
        scores_by_project[project.id][score.criteria_id] = {
            "score": score.score,
            "justification": score.justification,
        }

    inputs = [
        {
            "project_id": pid,
            "project_name": projects[pid].name,
            "composite": calculate_composite_score(criteria, scores_by_project[pid], project_id=pid),
            "total_cost": projects[pid].deferred_maintenance_cost,
        }
        for pid in sorted(projects, key=lambda p: projects[p].name)
    ]
    return rank_projects(inputs)


async def recalculate_priority_scores(session: AsyncSession, tenant_id: str) -> List[RankedProject]:
    """Recompute the ranking and replace the tenant's cached rows."""
    ranked = await compute_rankings(session, tenant_id)
    await session.execute(
        delete(ProjectPriorityScore).where(ProjectPriorityScore.tenant_id == tenant_id)
    )
    now = datetime.now(timezone.utc)
    for project in ranked:
        session.add(ProjectPriorityScore(
            tenant_id=tenant_id,
            project_id=project.project_id,
            composite_score=project.composite_score,
            rank=project.rank,
            total_cost=project.total_cost,
            cost_effectiveness_score=project.cost_effectiveness_score,
            calculated_at=now,
            **project.criteria,
        ))
    await session.flush()
    logger.info("priority scores recalculated for tenant %s: %d project(s)", tenant_id, len(ranked))
    return ranked


async def cached_rankings(session: AsyncSession, tenant_id: str) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(ProjectPriorityScore, Project.name)
        .join(Project, ProjectPriorityScore.project_id == Project.id)
        .where(ProjectPriorityScore.tenant_id == tenant_id)
        .order_by(ProjectPriorityScore.rank)
    )
    return [
        {
            "project_id": row.project_id,
            "project_name": name,
            "composite_score": row.composite_score,
            "rank": row.rank,
            "urgency_score": row.urgency_score,
            "mission_criticality_score": row.mission_criticality_score,
            "safety_score": row.safety_score,
            "compliance_score": row.compliance_score,
            "energy_savings_score": row.energy_savings_score,
            "total_cost": row.total_cost,
            "cost_effectiveness_score": row.cost_effectiveness_score,
            "calculated_at": row.calculated_at.isoformat() if row.calculated_at else None,
        }
        for row, name in result.all()
    ]

"""
component_history.py — Audit trail of synced assessments, per building component.

Every assessment accepted by the sync endpoints writes one event row; updates
also write one row per field the sync changed on the server copy.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm_models import Assessment, ComponentHistory, User
from app.services.delta_engine import DeltaChange

logger = logging.getLogger("bca-sync.history")

ASSESSMENT_CREATED = "assessment_created"
ASSESSMENT_UPDATED = "assessment_updated"


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def summarize(change_type: str, component: str, field_name: Optional[str] = None) -> str:
    if change_type == ASSESSMENT_CREATED:
        return f"Created new assessment for {component}"
    if field_name:
        return f"Updated {field_name} for {component}"
    return f"Updated assessment for {component}"


def record_assessment_change(
    session: AsyncSession,
    user: User,
    assessment: Assessment,
    is_new: bool,
    changes: List[DeltaChange],
) -> List[ComponentHistory]:
    """Queue history rows for one synced assessment. Uncoded components are not tracked."""
    if not assessment.component_code:
        return []
    change_type = ASSESSMENT_CREATED if is_new else ASSESSMENT_UPDATED
    component = assessment.component_name or assessment.component_code

    def row(field_name=None, old_value=None, new_value=None) -> ComponentHistory:
        return ComponentHistory(
            tenant_id=assessment.tenant_id,
            project_id=assessment.project_id,
            component_code=assessment.component_code,
            component_name=assessment.component_name,
            change_type=change_type,
            field_name=field_name,
            old_value=_as_text(old_value),
            new_value=_as_text(new_value),
            assessment_id=assessment.id,
            user_id=user.id,
            summary=summarize(change_type, component, field_name),
        )

    rows = [row()]
    if not is_new:
        rows.extend(row(c.field, c.old_value, c.new_value) for c in changes)
    session.add_all(rows)
    logger.debug("%s on %s: %d history row(s)", change_type, assessment.component_code, len(rows))
    return rows


def history_out(entry: ComponentHistory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "component_code": entry.component_code,
        "component_name": entry.component_name,
        "change_type": entry.change_type,
        "field_name": entry.field_name,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "assessment_id": entry.assessment_id,
        "user_id": entry.user_id,
        "summary": entry.summary,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def component_history(
    session: AsyncSession,
    tenant_id: str,
    project_id: str,
    component_code: str,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Newest first."""
    rows = await session.scalars(
        select(ComponentHistory)
        .where(
            ComponentHistory.tenant_id == tenant_id,
            ComponentHistory.project_id == project_id,
            ComponentHistory.component_code == component_code,
        )
        .order_by(ComponentHistory.created_at.desc())
        .limit(limit)
    )
    return [history_out(r) for r in rows]

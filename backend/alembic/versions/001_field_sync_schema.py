"""field_sync_schema

Revision ID: 001_field_sync
Revises:
Create Date: 2026-10-17

Creates the tables for:
- tenants / roles / users (JWT auth, tenant scoping)
- projects with the CI / FCI condition rollup columns
- assessments, deficiencies, photos (offline_id for replay matching)
- sync_conflicts (manual resolution queue)
- component_history (per-component audit trail of synced assessments)
- prioritization_criteria, project_scores, project_priority_scores

All DDL is guarded by _table_exists so the migration is idempotent — safe to
run even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy import text

revision = '001_field_sync'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

TABLES = [
    'project_priority_scores',
    'project_scores',
    'prioritization_criteria',
    'component_history',
    'sync_conflicts',
    'photos',
    'deficiencies',
    'assessments',
    'projects',
    'users',
    'roles',
    'tenants',
]


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _uuid_pk():
    return sa.Column('id', UUID(as_uuid=False), primary_key=True)


def _tenant_fk():
    return sa.Column('tenant_id', UUID(as_uuid=False), sa.ForeignKey('tenants.id'), index=True)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _create(conn, name: str, *columns, **kwargs) -> None:
    if _table_exists(conn, name):
        logger.info(f"Table {name} already exists — skipping create")
        return
    op.create_table(name, *columns, **kwargs)
    logger.info(f"Created table: {name}")


def upgrade() -> None:
    conn = op.get_bind()

    # ── auth ──────────────────────────────────────────────────────────────────
    _create(
        conn, 'tenants',
        _uuid_pk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'roles',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(50), unique=True, nullable=False),
    )
    _create(
        conn, 'users',
        _uuid_pk(),
        sa.Column('tenant_id', UUID(as_uuid=False), sa.ForeignKey('tenants.id')),
        sa.Column('email', sa.String(255), unique=True, nullable=False),
        sa.Column('hashed_password', sa.Text, nullable=False),
        sa.Column('full_name', sa.String(255)),
        sa.Column('role_id', sa.Integer, sa.ForeignKey('roles.id')),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── projects ──────────────────────────────────────────────────────────────
    _create(
        conn, 'projects',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('client_name', sa.String(255)),
        sa.Column('address', sa.Text),
        sa.Column('building_type', sa.String(100)),
        sa.Column('year_built', sa.Integer),
        sa.Column('gross_floor_area', sa.Numeric(14, 2)),
        sa.Column('status', sa.String(50), server_default='Active'),
        sa.Column('current_replacement_value', sa.Numeric(16, 2)),
        sa.Column('deferred_maintenance_cost', sa.Numeric(16, 2)),
        sa.Column('ci', sa.Numeric(5, 2)),
        sa.Column('fci', sa.Numeric(8, 4)),
        sa.Column('fci_rating', sa.String(20)),
        sa.Column('condition_updated_at', sa.DateTime(timezone=True)),
        sa.Column('created_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── field capture ─────────────────────────────────────────────────────────
    _create(
        conn, 'assessments',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('project_id', UUID(as_uuid=False), sa.ForeignKey('projects.id'), index=True),
        sa.Column('offline_id', sa.String(64), unique=True),
        sa.Column('asset_id', sa.String(64)),
        sa.Column('component_code', sa.String(50)),
        sa.Column('component_name', sa.String(255)),
        sa.Column('component_location', sa.String(255)),
        sa.Column('condition', sa.String(20)),
        sa.Column('status', sa.String(20)),
        sa.Column('condition_percentage', sa.Numeric(5, 2)),
        sa.Column('observations', sa.Text),
        sa.Column('recommendations', sa.Text),
        sa.Column('remaining_useful_life', sa.Integer),
        sa.Column('expected_useful_life', sa.Integer),
        sa.Column('review_year', sa.Integer),
        sa.Column('last_time_action', sa.Integer),
        sa.Column('estimated_repair_cost', sa.Numeric(14, 2)),
        sa.Column('replacement_value', sa.Numeric(14, 2)),
        sa.Column('action_year', sa.Integer),
        sa.Column('assessed_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        sa.Column('assessed_at', sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.Index('ix_assessments_project_component', 'project_id', 'component_code'),
    )
    _create(
        conn, 'deficiencies',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('project_id', UUID(as_uuid=False), sa.ForeignKey('projects.id'), index=True),
        sa.Column('offline_id', sa.String(64), unique=True),
        sa.Column('assessment_id', sa.String(64)),
        sa.Column('component_code', sa.String(50)),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('location', sa.String(255)),
        sa.Column('severity', sa.String(20), server_default='medium'),
        sa.Column('priority', sa.String(20), server_default='medium_term'),
        sa.Column('estimated_cost', sa.Numeric(14, 2)),
        sa.Column('status', sa.String(20), server_default='open'),
        sa.Column('created_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        *_timestamps(),
    )
    _create(
        conn, 'photos',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('project_id', UUID(as_uuid=False), sa.ForeignKey('projects.id'), index=True),
        sa.Column('offline_id', sa.String(64), unique=True),
        sa.Column('assessment_id', sa.String(64)),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_key', sa.Text),
        sa.Column('mime_type', sa.String(100), server_default='image/jpeg'),
        sa.Column('size_bytes', sa.BigInteger, server_default='0'),
        sa.Column('caption', sa.Text),
        sa.Column('latitude', sa.Float),
        sa.Column('longitude', sa.Float),
        sa.Column('altitude', sa.Float),
        sa.Column('location_accuracy', sa.Float),
        sa.Column('ocr_text', sa.Text),
        sa.Column('ocr_confidence', sa.Float),
        sa.Column('created_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        *_timestamps(),
    )

    # ── sync_conflicts ────────────────────────────────────────────────────────
    _create(
        conn, 'sync_conflicts',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', UUID(as_uuid=False), nullable=False),
        sa.Column('offline_id', sa.String(64)),
        sa.Column('fields', JSONB, server_default='[]'),
        sa.Column('local_snapshot', JSONB, server_default='{}'),
        sa.Column('server_snapshot', JSONB, server_default='{}'),
        sa.Column('base_snapshot', JSONB),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('resolution', sa.String(20)),
        sa.Column('created_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        sa.Column('resolved_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.Index('ix_sync_conflicts_tenant_status', 'tenant_id', 'status'),
    )

    # ── component_history ─────────────────────────────────────────────────────
    _create(
        conn, 'component_history',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('project_id', UUID(as_uuid=False), sa.ForeignKey('projects.id')),
        sa.Column('component_code', sa.String(50), nullable=False),
        sa.Column('component_name', sa.String(255)),
        sa.Column('change_type', sa.String(30), nullable=False),
        sa.Column('field_name', sa.String(100)),
        sa.Column('old_value', sa.Text),
        sa.Column('new_value', sa.Text),
        sa.Column('assessment_id', UUID(as_uuid=False)),
        sa.Column('user_id', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        sa.Column('summary', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Index('ix_component_history_project_component', 'project_id', 'component_code'),
    )

    # ── prioritization ────────────────────────────────────────────────────────

    _create(
        conn, 'prioritization_criteria',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('weight', sa.Numeric(5, 2), server_default='0'),
        sa.Column('display_order', sa.Integer, server_default='0'),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
    )
    _create(
        conn, 'project_scores',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('project_id', UUID(as_uuid=False), sa.ForeignKey('projects.id'), index=True),
        sa.Column('criteria_id', sa.Integer, sa.ForeignKey('prioritization_criteria.id')),
        sa.Column('score', sa.Numeric(4, 2)),
        sa.Column('justification', sa.Text),
        sa.Column('scored_by', UUID(as_uuid=False), sa.ForeignKey('users.id')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('project_id', 'criteria_id', name='uq_project_criteria'),
    )
    _create(
        conn, 'project_priority_scores',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        _tenant_fk(),
        sa.Column('project_id', UUID(as_uuid=False), sa.ForeignKey('projects.id'), unique=True),
        sa.Column('composite_score', sa.Numeric(8, 4), server_default='0'),
        sa.Column('rank', sa.Integer, server_default='0'),
        sa.Column('urgency_score', sa.Numeric(4, 2)),
        sa.Column('mission_criticality_score', sa.Numeric(4, 2)),
        sa.Column('safety_score', sa.Numeric(4, 2)),
        sa.Column('compliance_score', sa.Numeric(4, 2)),
        sa.Column('energy_savings_score', sa.Numeric(4, 2)),
        sa.Column('total_cost', sa.Numeric(16, 2)),
        sa.Column('cost_effectiveness_score', sa.Float),
        sa.Column('calculated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Default roles used by the auth and conflict-resolution guards
    conn.execute(text(
        "INSERT INTO roles (name) VALUES ('Admin'), ('Manager'), ('Assessor'), ('Viewer') "
        "ON CONFLICT (name) DO NOTHING"
    ))


def downgrade() -> None:
    conn = op.get_bind()
    for name in TABLES:
        if _table_exists(conn, name):
            op.drop_table(name)
            logger.info(f"Dropped table: {name}")

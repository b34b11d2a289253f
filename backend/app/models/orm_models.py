"""ORM Models for BCA Field Sync — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, BigInteger, Numeric, Float, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── TENANTS ──────────────────────────────────────────────────────────────────
class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    users: Mapped[list["User"]] = relationship("User", back_populates="tenant")
    projects: Mapped[list["Project"]] = relationship("Project", back_populates="tenant")


# ── AUTH ──────────────────────────────────────────────────────────────────────
class Role(Base):
    __tablename__ = "roles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    users: Mapped[list["User"]] = relationship("User", back_populates="role")


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"))
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("roles.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    tenant: Mapped[Optional["Tenant"]] = relationship("Tenant", back_populates="users")
    role: Mapped[Optional["Role"]] = relationship("Role", back_populates="users")


# ── PROJECTS (BUILDINGS UNDER ASSESSMENT) ────────────────────────────────────
class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_name: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(Text)
    building_type: Mapped[Optional[str]] = mapped_column(String(100))
    year_built: Mapped[Optional[int]] = mapped_column(Integer)
    gross_floor_area: Mapped[Optional[float]] = mapped_column(Numeric(14, 2, asdecimal=False))
    status: Mapped[str] = mapped_column(String(50), default="Active")
    # Condition rollup, recalculated after every assessment sync
    current_replacement_value: Mapped[Optional[float]] = mapped_column(Numeric(16, 2, asdecimal=False))
    deferred_maintenance_cost: Mapped[Optional[float]] = mapped_column(Numeric(16, 2, asdecimal=False))
    ci: Mapped[Optional[float]] = mapped_column(Numeric(5, 2, asdecimal=False))
    fci: Mapped[Optional[float]] = mapped_column(Numeric(8, 4, asdecimal=False))
    fci_rating: Mapped[Optional[str]] = mapped_column(String(20))
    condition_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="projects")
    assessments: Mapped[list["Assessment"]] = relationship("Assessment", back_populates="project")
    deficiencies: Mapped[list["Deficiency"]] = relationship("Deficiency", back_populates="project")
    photos: Mapped[list["Photo"]] = relationship("Photo", back_populates="project")


# ── FIELD CAPTURE ────────────────────────────────────────────────────────────
class Assessment(Base):
    __tablename__ = "assessments"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"), index=True)
    offline_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    asset_id: Mapped[Optional[str]] = mapped_column(String(64))
    component_code: Mapped[Optional[str]] = mapped_column(String(50))
    component_name: Mapped[Optional[str]] = mapped_column(String(255))
    component_location: Mapped[Optional[str]] = mapped_column(String(255))
    condition: Mapped[Optional[str]] = mapped_column(String(20))       # good|fair|poor|not_assessed
    status: Mapped[Optional[str]] = mapped_column(String(20))          # initial|active|completed
    condition_percentage: Mapped[Optional[float]] = mapped_column(Numeric(5, 2, asdecimal=False))
    observations: Mapped[Optional[str]] = mapped_column(Text)
    recommendations: Mapped[Optional[str]] = mapped_column(Text)
    remaining_useful_life: Mapped[Optional[int]] = mapped_column(Integer)
    expected_useful_life: Mapped[Optional[int]] = mapped_column(Integer)
    review_year: Mapped[Optional[int]] = mapped_column(Integer)
    last_time_action: Mapped[Optional[int]] = mapped_column(Integer)
    estimated_repair_cost: Mapped[Optional[float]] = mapped_column(Numeric(14, 2, asdecimal=False))
    replacement_value: Mapped[Optional[float]] = mapped_column(Numeric(14, 2, asdecimal=False))
    action_year: Mapped[Optional[int]] = mapped_column(Integer)
    assessed_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    assessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="assessments")
    __table_args__ = (Index("ix_assessments_project_component", "project_id", "component_code"),)


class Deficiency(Base):
    __tablename__ = "deficiencies"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"), index=True)
    offline_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    # Server id or device id of the parent assessment (the parent may not be synced yet)
    assessment_id: Mapped[Optional[str]] = mapped_column(String(64))
    component_code: Mapped[Optional[str]] = mapped_column(String(50))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    severity: Mapped[str] = mapped_column(String(20), default="medium")
    priority: Mapped[str] = mapped_column(String(20), default="medium_term")
    estimated_cost: Mapped[Optional[float]] = mapped_column(Numeric(14, 2, asdecimal=False))
    status: Mapped[str] = mapped_column(String(20), default="open")
    created_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="deficiencies")


class Photo(Base):
    __tablename__ = "photos"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"), index=True)
    offline_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    assessment_id: Mapped[Optional[str]] = mapped_column(String(64))
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_key: Mapped[Optional[str]] = mapped_column(Text)
    mime_type: Mapped[str] = mapped_column(String(100), default="image/jpeg")
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    caption: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    altitude: Mapped[Optional[float]] = mapped_column(Float)
    location_accuracy: Mapped[Optional[float]] = mapped_column(Float)
    ocr_text: Mapped[Optional[str]] = mapped_column(Text)
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float)
    created_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="photos")


# ── SYNC CONFLICTS (MANUAL RESOLUTION QUEUE) ─────────────────────────────────
class SyncConflict(Base):
    __tablename__ = "sync_conflicts"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)   # assessment|deficiency|photo
    entity_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    offline_id: Mapped[Optional[str]] = mapped_column(String(64))
    fields: Mapped[list] = mapped_column(JSONB, default=list)
    local_snapshot: Mapped[dict] = mapped_column(JSONB, default=dict)
    server_snapshot: Mapped[dict] = mapped_column(JSONB, default=dict)
    base_snapshot: Mapped[Optional[dict]] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(String(20), default="open")        # open|resolved
    resolution: Mapped[Optional[str]] = mapped_column(String(20))          # ConflictStrategy value
    created_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    resolved_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    __table_args__ = (Index("ix_sync_conflicts_tenant_status", "tenant_id", "status"),)


# ── COMPONENT HISTORY (AUDIT TRAIL PER BUILDING COMPONENT) ──────────────────
class ComponentHistory(Base):
    __tablename__ = "component_history"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"))
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    component_name: Mapped[Optional[str]] = mapped_column(String(255))
    change_type: Mapped[str] = mapped_column(String(30), nullable=False)   # assessment_created|assessment_updated
    field_name: Mapped[Optional[str]] = mapped_column(String(100))
    old_value: Mapped[Optional[str]] = mapped_column(Text)
    new_value: Mapped[Optional[str]] = mapped_column(Text)
    assessment_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    summary: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (Index("ix_component_history_project_component", "project_id", "component_code"),)


# ── PRIORITIZATION ───────────────────────────────────────────────────────────

class PrioritizationCriteria(Base):
    __tablename__ = "prioritization_criteria"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    weight: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), default=0.0)  # sums to 100
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ProjectScore(Base):
    __tablename__ = "project_scores"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"), index=True)
    criteria_id: Mapped[int] = mapped_column(Integer, ForeignKey("prioritization_criteria.id"))
    score: Mapped[Optional[float]] = mapped_column(Numeric(4, 2, asdecimal=False))  # 0-10
    justification: Mapped[Optional[str]] = mapped_column(Text)
    scored_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    __table_args__ = (UniqueConstraint("project_id", "criteria_id", name="uq_project_criteria"),)


class ProjectPriorityScore(Base):
    __tablename__ = "project_priority_scores"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenants.id"), index=True)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("projects.id"), unique=True)
    composite_score: Mapped[float] = mapped_column(Numeric(8, 4, asdecimal=False), default=0.0)
    rank: Mapped[int] = mapped_column(Integer, default=0)
    urgency_score: Mapped[Optional[float]] = mapped_column(Numeric(4, 2, asdecimal=False))
    mission_criticality_score: Mapped[Optional[float]] = mapped_column(Numeric(4, 2, asdecimal=False))
    safety_score: Mapped[Optional[float]] = mapped_column(Numeric(4, 2, asdecimal=False))
    compliance_score: Mapped[Optional[float]] = mapped_column(Numeric(4, 2, asdecimal=False))
    energy_savings_score: Mapped[Optional[float]] = mapped_column(Numeric(4, 2, asdecimal=False))
    total_cost: Mapped[Optional[float]] = mapped_column(Numeric(16, 2, asdecimal=False))
    cost_effectiveness_score: Mapped[Optional[float]] = mapped_column(Float)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

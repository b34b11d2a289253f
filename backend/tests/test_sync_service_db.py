"""
test_sync_service_db.py — Server sync service against a real database.

Runs on SQLite through aiosqlite; JSONB columns are compiled as plain JSON.
Every step uses its own session so nothing is served from a stale identity map.

Tests cover:
  - Create, replay and three-way merge of assessments
  - Conflict persistence, listing and resolution with each strategy
  - Tenant scoping of projects and conflicts
  - Batch sync with per-record savepoints
  - Photo files removed when their transaction does not commit
  - Component history rows for synced assessments
  - Priority ranking recalculation and the cached ranking table
"""

import base64
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from app.db import Base
from app.models.orm_models import (
    Assessment,
    ComponentHistory,
    Deficiency,
    Photo,
    PrioritizationCriteria,
    Project,
    ProjectPriorityScore,
    ProjectScore,
    SyncConflict,
    Tenant,
    User,
)
from app.models.results import ErrorKind
from app.models.sync_schemas import ResolveConflictRequest, SyncEnvelope
from app.services import component_history, prioritization_service, sync_service
from app.services.merge_engine import ConflictStrategy
from app.services.perf_monitor import PerformanceTracker

pytestmark = pytest.mark.asyncio


@compiles(JSONB, "sqlite")
def _jsonb_as_json(element, compiler, **kw):
    return "JSON"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'server.db'}")

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest properly
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(sessions):
    """Two tenants, one assessor each, one project each."""
    async with sessions() as session:
        acme = Tenant(name="Acme Facilities")
        other = Tenant(name="Other Estates")
        session.add_all([acme, other])
        await session.flush()
        assessor = User(tenant_id=acme.id, email="field@acme.test", hashed_password="x")
        outsider = User(tenant_id=other.id, email="field@other.test", hashed_password="x")
        tower = Project(tenant_id=acme.id, name="HQ Tower", current_replacement_value=1_000_000.0)
        depot = Project(tenant_id=other.id, name="North Depot")
        session.add_all([assessor, outsider, tower, depot])
        await session.flush()
        ns = SimpleNamespace(
            tenant_id=acme.id,
            user=SimpleNamespace(id=assessor.id, tenant_id=acme.id),
            outsider=SimpleNamespace(id=outsider.id, tenant_id=other.id),
            project_id=tower.id,
            other_project_id=depot.id,
        )
        await session.commit()
    return ns


@pytest.fixture
def uploads(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setenv("UPLOAD_DIR", str(path))
    return path


def _envelope(record, entity_type="assessment", base=None) -> SyncEnvelope:
    return SyncEnvelope.model_validate({
        "record": {**record, "entity_type": entity_type},
        "base": base,
    })


async def _sync(sessions, user, envelope, tracker=None):
    async with sessions() as session:
        result = await sync_service.sync_record(session, user, envelope, tracker)
        await session.commit()
    return result


async def _assessment(sessions, offline_id="a-roof-1"):
    async with sessions() as session:
        return await session.scalar(select(Assessment).where(Assessment.offline_id == offline_id))


async def _edit_on_server(sessions, **changes):
    async with sessions() as session:
        entity = await session.scalar(select(Assessment).where(Assessment.offline_id == "a-roof-1"))
        for name, value in changes.items():
            setattr(entity, name, value)
        await session.commit()


# ===========================================================================
# Create and merge
# ===========================================================================

class TestSyncRecord:

    async def test_new_assessment_is_created(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id}
        tracker = PerformanceTracker()
        result = await _sync(sessions, seeded.user, _envelope(record), tracker)

        assert result.ok
        assert result.value.status == "created"
        assert result.value.offline_id == "a-roof-1"
        assert result.value.merged["condition"] == "fair"

        stored = await _assessment(sessions)
        assert stored.id == result.value.entity_id
        assert stored.tenant_id == seeded.tenant_id
        assert stored.assessed_by == seeded.user.id
        assert tracker.get_metrics()["syncs_by_status"] == {"created": 1}

    async def test_assessment_rolls_up_project_condition(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id}
        await _sync(sessions, seeded.user, _envelope(record))

        async with sessions() as session:
            project = await session.get(Project, seeded.project_id)
        assert project.ci == pytest.approx(62.0)
        assert project.fci == pytest.approx(0.0185)
        assert project.fci_rating == "Good"
        assert project.deferred_maintenance_cost == pytest.approx(18_500.0)

    async def test_unchanged_replay_updates_without_conflict(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id}
        await _sync(sessions, seeded.user, _envelope(record))
        result = await _sync(sessions, seeded.user, _envelope(record, base=record))

        assert result.value.status == "updated"
        assert result.value.conflicts == []

    async def test_local_edit_is_applied(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id}
        await _sync(sessions, seeded.user, _envelope(record))
        edited = {**record, "condition": "poor", "condition_percentage": 35.0}
        result = await _sync(sessions, seeded.user, _envelope(edited, base=record))

        assert result.value.status == "updated"
        stored = await _assessment(sessions)
        assert stored.condition == "poor"
        assert stored.condition_percentage == pytest.approx(35.0)

    async def test_server_only_edit_survives_int_base(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id, "condition_percentage": 62}
        await _sync(sessions, seeded.user, _envelope(record))
        await _edit_on_server(sessions, condition_percentage=70.0)

        result = await _sync(sessions, seeded.user, _envelope(record, base=record))

        assert result.value.status == "updated"
        assert result.value.conflicts == []
        assert result.value.merged["condition_percentage"] == 70.0
        assert (await _assessment(sessions)).condition_percentage == pytest.approx(70.0)

    async def test_second_device_merges_into_same_component(self, sessions, seeded, sample_assessment):
        first = await _sync(sessions, seeded.user, _envelope({**sample_assessment, "project_id": seeded.project_id}))
        second = await _sync(sessions, seeded.user, _envelope({
            **sample_assessment, "id": "a-roof-2", "project_id": seeded.project_id,
        }))

        assert second.value.status == "updated"
        assert second.value.entity_id == first.value.entity_id

    async def test_unknown_project(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": "00000000-0000-0000-0000-000000000000"}
        result = await _sync(sessions, seeded.user, _envelope(record))
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_invalid_project_id(self, sessions, seeded, sample_assessment):
        result = await _sync(sessions, seeded.user, _envelope(sample_assessment))
        assert result.kind is ErrorKind.VALIDATION

    async def test_other_tenants_project_is_denied(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.other_project_id}
        tracker = PerformanceTracker()
        result = await _sync(sessions, seeded.user, _envelope(record), tracker)

        assert result.kind is ErrorKind.ACCESS_DENIED
        assert tracker.get_metrics()["error_count_by_entity"] == {"assessment": 1}
        assert await _assessment(sessions) is None

    async def test_deficiency_is_created(self, sessions, seeded, sample_deficiency):
        record = {**sample_deficiency, "project_id": seeded.project_id}
        result = await _sync(sessions, seeded.user, _envelope(record, "deficiency"))

        assert result.value.status == "created"
        async with sessions() as session:
            stored = await session.scalar(select(Deficiency).where(Deficiency.offline_id == "d-roof-1"))
        assert stored.title == "Failed membrane seam"
        assert stored.created_by == seeded.user.id


# ===========================================================================
# Conflicts
# ===========================================================================

@pytest_asyncio.fixture
async def conflict(sessions, seeded, sample_assessment):
    """Observations edited on the server and on the device since the base."""
    record = {**sample_assessment, "project_id": seeded.project_id}
    await _sync(sessions, seeded.user, _envelope(record))
    await _edit_on_server(sessions, observations="Membrane resealed in March")
    local = {**record, "observations": "Membrane split at the seam", "condition": "poor"}
    result = await _sync(sessions, seeded.user, _envelope(local, base=record))
    return result.value


class TestConflicts:

    async def test_divergent_edit_is_stored_as_conflict(self, sessions, seeded, conflict):
        assert conflict.status == "conflict"
        assert conflict.conflicts == ["observations"]
        assert conflict.conflict_id is not None

        async with sessions() as session:
            row = await session.get(SyncConflict, conflict.conflict_id)
        assert row.status == "open"
        assert row.fields == ["observations"]
        assert row.local_snapshot["observations"] == "Membrane split at the seam"
        assert row.server_snapshot["observations"] == "Membrane resealed in March"
        assert row.base_snapshot["observations"] == "Ponding near the north drain"
        assert row.created_by == seeded.user.id

    async def test_server_value_kept_and_local_only_edit_taken(self, sessions, conflict):
        stored = await _assessment(sessions)
        assert stored.observations == "Membrane resealed in March"
        assert stored.condition == "poor"

    async def test_list_conflicts_is_tenant_scoped(self, sessions, seeded, conflict):
        async with sessions() as session:
            mine = await sync_service.list_conflicts(session, seeded.tenant_id)
            theirs = await sync_service.list_conflicts(session, seeded.outsider.tenant_id)
            resolved = await sync_service.list_conflicts(session, seeded.tenant_id, status="resolved")

        assert [c.id for c in mine] == [conflict.conflict_id]
        assert mine[0].entity_type == "assessment"
        assert mine[0].offline_id == "a-roof-1"
        assert theirs == []
        assert resolved == []

    @pytest.mark.parametrize("strategy, choices, expected", [
        (ConflictStrategy.SERVER_WINS, {}, "Membrane resealed in March"),
        (ConflictStrategy.LOCAL_WINS, {}, "Membrane split at the seam"),
        (ConflictStrategy.MANUAL, {"observations": "Split seam over resealed patch"},
         "Split seam over resealed patch"),
    ])
    async def test_resolve(self, sessions, seeded, conflict, strategy, choices, expected):
        request = ResolveConflictRequest(strategy=strategy, choices=choices)
        async with sessions() as session:
            result = await sync_service.resolve_conflict(session, seeded.user, conflict.conflict_id, request)
            await session.commit()

        assert result.ok
        assert result.value["resolution"] == strategy.value
        assert result.value["merged"]["observations"] == expected
        assert (await _assessment(sessions)).observations == expected

        async with sessions() as session:
            row = await session.get(SyncConflict, conflict.conflict_id)
        assert row.status == "resolved"
        assert row.resolution == strategy.value
        assert row.resolved_by == seeded.user.id
        assert row.resolved_at is not None

    async def test_resolving_twice_is_a_conflict(self, sessions, seeded, conflict):
        request = ResolveConflictRequest(strategy=ConflictStrategy.SERVER_WINS)
        async with sessions() as session:
            await sync_service.resolve_conflict(session, seeded.user, conflict.conflict_id, request)
            await session.commit()
        async with sessions() as session:
            again = await sync_service.resolve_conflict(session, seeded.user, conflict.conflict_id, request)
        assert again.kind is ErrorKind.CONFLICT

    async def test_manual_requires_every_choice(self, sessions, seeded, conflict):
        request = ResolveConflictRequest(strategy=ConflictStrategy.MANUAL, choices={})
        async with sessions() as session:
            result = await sync_service.resolve_conflict(session, seeded.user, conflict.conflict_id, request)
            await session.commit()

        assert result.kind is ErrorKind.VALIDATION
        assert "observations" in result.message
        async with sessions() as session:
            assert (await session.get(SyncConflict, conflict.conflict_id)).status == "open"

    async def test_invalid_manual_value_is_rejected(self, sessions, seeded, conflict):
        request = ResolveConflictRequest(strategy=ConflictStrategy.MANUAL, choices={"observations": 12})
        async with sessions() as session:
            result = await sync_service.resolve_conflict(session, seeded.user, conflict.conflict_id, request)
        assert result.kind is ErrorKind.VALIDATION

    async def test_other_tenant_cannot_resolve(self, sessions, seeded, conflict):
        request = ResolveConflictRequest(strategy=ConflictStrategy.LOCAL_WINS)
        async with sessions() as session:
            result = await sync_service.resolve_conflict(session, seeded.outsider, conflict.conflict_id, request)
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_unknown_conflict(self, sessions, seeded):
        request = ResolveConflictRequest()
        async with sessions() as session:
            missing = await sync_service.resolve_conflict(
                session, seeded.user, "00000000-0000-0000-0000-000000000000", request,
            )
            malformed = await sync_service.resolve_conflict(session, seeded.user, "nope", request)
        assert missing.kind is ErrorKind.NOT_FOUND
        assert malformed.kind is ErrorKind.VALIDATION


# ===========================================================================
# Batch
# ===========================================================================

class TestSyncBatch:

    async def test_each_record_has_its_own_outcome(self, sessions, seeded, sample_assessment, sample_deficiency):
        envelopes = [
            _envelope({**sample_assessment, "project_id": seeded.project_id}),
            _envelope({**sample_deficiency, "project_id": seeded.other_project_id}, "deficiency"),
            _envelope({**sample_deficiency, "id": "d-roof-2", "project_id": seeded.project_id}, "deficiency"),
        ]
        async with sessions() as session:
            response = await sync_service.sync_batch(session, seeded.user, envelopes)
            await session.commit()

        assert response.success_count == 2
        assert response.failure_count == 1
        assert [r.success for r in response.results] == [True, False, True]
        assert response.results[0].status == "created"
        assert response.results[1].offline_id == "d-roof-1"

    async def test_database_error_rolls_back_only_that_record(
        self, sessions, seeded, sample_assessment, sample_deficiency, monkeypatch,
    ):
        original = sync_service.sync_record

        async def failing_for_deficiency(session, user, envelope, tracker=None):
            result = await original(session, user, envelope, tracker)
            if envelope.record.id == "d-roof-1":
                raise IntegrityError("INSERT INTO deficiencies", {}, Exception("constraint failed"))
            return result

        monkeypatch.setattr(sync_service, "sync_record", failing_for_deficiency)
        envelopes = [
            _envelope({**sample_assessment, "project_id": seeded.project_id}),
            _envelope({**sample_deficiency, "project_id": seeded.project_id}, "deficiency"),
            _envelope({**sample_deficiency, "id": "d-roof-2", "project_id": seeded.project_id}, "deficiency"),
        ]
        tracker = PerformanceTracker()
        async with sessions() as session:
            response = await sync_service.sync_batch(session, seeded.user, envelopes, tracker)
            await session.commit()

        assert [r.success for r in response.results] == [True, False, True]
        assert response.results[1].error == "Database error"
        assert tracker.get_metrics()["error_count_by_entity"] == {"deficiency": 1}

        async with sessions() as session:
            offline_ids = set(await session.scalars(select(Deficiency.offline_id)))
        assert offline_ids == {"d-roof-2"}
        assert await _assessment(sessions) is not None


# ===========================================================================
# Photo files
# ===========================================================================

class TestPhotoFiles:

    def _photo(self, sample_photo, project_id, **overrides):
        blob = base64.b64encode(b"\xff\xd8jpeg-bytes").decode()
        return _envelope({**sample_photo, "project_id": project_id, "photo_blob": blob, **overrides}, "photo")

    async def test_committed_photo_keeps_its_file(self, sessions, seeded, sample_photo, uploads):
        result = await _sync(sessions, seeded.user, self._photo(sample_photo, seeded.project_id))

        assert result.value.status == "created"
        async with sessions() as session:
            photo = await session.scalar(select(Photo).where(Photo.offline_id == "ph-1"))
        assert photo.size_bytes == 12
        assert (uploads / photo.file_key).read_bytes() == b"\xff\xd8jpeg-bytes"

    async def test_rolled_back_photo_leaves_no_file(self, sessions, seeded, sample_photo, uploads):
        async with sessions() as session:
            result = await sync_service.sync_record(
                session, seeded.user, self._photo(sample_photo, seeded.project_id),
            )
            assert result.ok
            assert any(uploads.rglob("*.jpg"))
            await session.rollback()

        assert not any(uploads.rglob("*.jpg"))

    async def test_failed_batch_record_removes_its_file(self, sessions, seeded, sample_photo, uploads, monkeypatch):
        original = sync_service.sync_record

        async def failing_for_second_photo(session, user, envelope, tracker=None):
            result = await original(session, user, envelope, tracker)
            if envelope.record.id == "ph-2":
                raise IntegrityError("INSERT INTO photos", {}, Exception("constraint failed"))
            return result

        monkeypatch.setattr(sync_service, "sync_record", failing_for_second_photo)
        envelopes = [
            self._photo(sample_photo, seeded.project_id),
            self._photo(sample_photo, seeded.project_id, id="ph-2", file_name="roof-south.jpg"),
        ]
        async with sessions() as session:
            response = await sync_service.sync_batch(session, seeded.user, envelopes)
            await session.commit()

        assert [r.success for r in response.results] == [True, False]
        names = sorted(p.name for p in uploads.rglob("*.jpg"))
        assert names == ["ph-1-roof-north.jpg"]


# ===========================================================================
# Component history
# ===========================================================================

class TestComponentHistory:

    async def test_create_then_update_is_recorded(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id}
        await _sync(sessions, seeded.user, _envelope(record))
        await _sync(sessions, seeded.user, _envelope({**record, "condition": "poor"}, base=record))

        async with sessions() as session:
            entries = await component_history.component_history(
                session, seeded.tenant_id, seeded.project_id, "B3010",
            )

        assert len(entries) == 3
        created = [e for e in entries if e["change_type"] == "assessment_created"]
        assert [e["summary"] for e in created] == ["Created new assessment for Roof Coverings"]
        fields = [e for e in entries if e["field_name"]]
        assert len(fields) == 1
        assert fields[0]["field_name"] == "condition"
        assert (fields[0]["old_value"], fields[0]["new_value"]) == ("fair", "poor")
        assert fields[0]["summary"] == "Updated condition for Roof Coverings"
        assert all(e["user_id"] == seeded.user.id for e in entries)

    async def test_conflicted_field_is_not_logged_as_changed(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id}
        await _sync(sessions, seeded.user, _envelope(record))
        await _edit_on_server(sessions, observations="Membrane resealed in March")
        await _sync(sessions, seeded.user, _envelope({**record, "observations": "Split"}, base=record))

        async with sessions() as session:
            rows = list(await session.scalars(select(ComponentHistory)))
        assert sorted(r.change_type for r in rows) == ["assessment_created", "assessment_updated"]
        assert all(r.field_name is None for r in rows)

    async def test_assessment_without_component_code_has_no_history(self, sessions, seeded, sample_assessment):
        record = {**sample_assessment, "project_id": seeded.project_id, "component_code": None}
        await _sync(sessions, seeded.user, _envelope(record))

        async with sessions() as session:
            assert list(await session.scalars(select(ComponentHistory))) == []

    async def test_history_is_tenant_scoped(self, sessions, seeded, sample_assessment):
        await _sync(sessions, seeded.user, _envelope({**sample_assessment, "project_id": seeded.project_id}))
        async with sessions() as session:
            entries = await component_history.component_history(
                session, seeded.outsider.tenant_id, seeded.project_id, "B3010",
            )
        assert entries == []


# ===========================================================================
# Prioritization
# ===========================================================================

@pytest_asyncio.fixture
async def scored(sessions, seeded):
    """Two scored projects for the tenant, one for another tenant."""
    async with sessions() as session:
        annex = Project(tenant_id=seeded.tenant_id, name="Annex", deferred_maintenance_cost=50_000.0)
        session.add(annex)
        urgency = PrioritizationCriteria(tenant_id=seeded.tenant_id, name="Urgency", weight=60, display_order=1)
        safety = PrioritizationCriteria(tenant_id=seeded.tenant_id, name="Safety", weight=40, display_order=2)
        retired = PrioritizationCriteria(
            tenant_id=seeded.tenant_id, name="Heritage", weight=50, display_order=3, is_active=False,
        )
        foreign = PrioritizationCriteria(tenant_id=seeded.outsider.tenant_id, name="Urgency", weight=100)
        session.add_all([urgency, safety, retired, foreign])
        await session.flush()
        session.add_all([
            ProjectScore(project_id=seeded.project_id, criteria_id=urgency.id, score=8),
            ProjectScore(project_id=seeded.project_id, criteria_id=safety.id, score=5),
            ProjectScore(project_id=seeded.project_id, criteria_id=retired.id, score=10),
            ProjectScore(project_id=annex.id, criteria_id=urgency.id, score=4),
            ProjectScore(project_id=annex.id, criteria_id=safety.id, score=9),
            ProjectScore(project_id=seeded.other_project_id, criteria_id=foreign.id, score=10),
        ])
        await session.commit()
        return SimpleNamespace(tower_id=seeded.project_id, annex_id=annex.id)


class TestPrioritization:

    async def test_rankings_by_composite_score(self, sessions, seeded, scored):
        async with sessions() as session:
            ranked = await prioritization_service.compute_rankings(session, seeded.tenant_id)

        assert [r.project_id for r in ranked] == [scored.tower_id, scored.annex_id]
        assert [r.rank for r in ranked] == [1, 2]
        assert ranked[0].composite_score == pytest.approx(6.8)
        assert ranked[1].composite_score == pytest.approx(6.0)
        assert ranked[0].criteria["urgency_score"] == 8.0
        assert ranked[0].criteria["mission_criticality_score"] is None
        assert ranked[0].cost_effectiveness_score is None
        assert ranked[1].cost_effectiveness_score == pytest.approx(6.0 / 50)

    async def test_recalculate_replaces_cached_rows(self, sessions, seeded, scored):
        for _ in range(2):
            async with sessions() as session:
                await prioritization_service.recalculate_priority_scores(session, seeded.tenant_id)
                await session.commit()

        async with sessions() as session:
            rows = list(await session.scalars(select(ProjectPriorityScore)))
            cached = await prioritization_service.cached_rankings(session, seeded.tenant_id)

        assert len(rows) == 2
        assert [c["project_name"] for c in cached] == ["HQ Tower", "Annex"]
        assert [c["rank"] for c in cached] == [1, 2]
        assert cached[0]["safety_score"] == pytest.approx(5.0)
        assert cached[1]["total_cost"] == pytest.approx(50_000.0)
        assert cached[0]["calculated_at"] is not None

    async def test_tenant_without_criteria_has_no_ranking(self, sessions, seeded):
        async with sessions() as session:
            assert await prioritization_service.compute_rankings(session, seeded.tenant_id) == []
            assert await prioritization_service.cached_rankings(session, seeded.tenant_id) == []

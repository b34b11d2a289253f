"""
conftest.py — Shared pytest fixtures for the BCA Field Sync backend test suite.

The engines are pure functions and need no fixtures. The device store runs on
an in-memory SQLite engine (StaticPool keeps the single connection alive
across sessions) driven by a fake millisecond clock, so retry windows and
retention ages are deterministic.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# 2026-01-01T00:00:00Z in epoch ms
T0 = 1_767_225_600_000
DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Callable epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


# ---------------------------------------------------------------------------
# Device store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_engine():
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(sqlite_engine, clock):
    """LocalRecordStore on a fresh in-memory database."""
    from app.services.local_store import LocalRecordStore
    return LocalRecordStore(sqlite_engine, clock=clock)


# ---------------------------------------------------------------------------
# Sample records
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_assessment():
    """A roof assessment as captured in the field (no sync metadata yet)."""
    return {
        "id": "a-roof-1",
        "project_id": "p-1",
        "component_code": "B3010",
        "component_name": "Roof Coverings",
        "condition": "fair",
        "condition_percentage": 62.0,
        "observations": "Ponding near the north drain",
        "estimated_repair_cost": 18_500.0,
        "replacement_value": 240_000.0,
    }


@pytest.fixture
def sample_deficiency():
    return {
        "id": "d-roof-1",
        "project_id": "p-1",
        "assessment_id": "a-roof-1",
        "title": "Failed membrane seam",
        "severity": "high",
        "priority": "short_term",
        "estimated_cost": 4_200.0,
    }


@pytest.fixture
def sample_photo():
    return {
        "id": "ph-1",
        "project_id": "p-1",
        "assessment_id": "a-roof-1",
        "file_name": "roof-north.jpg",
        "mime_type": "image/jpeg",
        "size": 2 * 1024 * 1024,
    }


@pytest.fixture
def queue_items():
    """
    Queue items deliberately out of replay order.

    Expected replay order: a-2 (assessment, older), a-1, d-1, p-1.
    """
    return [
        {"id": "q-photo", "entity_type": "photo", "item_id": "p-1",
         "priority": 1, "created_at": T0, "status": "pending", "attempts": 0},
        {"id": "q-def", "entity_type": "deficiency", "item_id": "d-1",
         "priority": 2, "created_at": T0 + 10, "status": "pending", "attempts": 0},
        {"id": "q-a1", "entity_type": "assessment", "item_id": "a-1",
         "priority": 3, "created_at": T0 + 20, "status": "pending", "attempts": 0},
        {"id": "q-a2", "entity_type": "assessment", "item_id": "a-2",
         "priority": 3, "created_at": T0 + 5, "status": "pending", "attempts": 0},
    ]


@pytest.fixture
def prioritization_criteria():
    """The five headline criteria with weights summing to 100."""
    return [
        {"id": 1, "name": "Urgency", "weight": 30},
        {"id": 2, "name": "Safety", "weight": 25},
        {"id": 3, "name": "Mission Criticality", "weight": 20},
        {"id": 4, "name": "Code Compliance", "weight": 15},
        {"id": 5, "name": "Energy Savings", "weight": 10},
    ]

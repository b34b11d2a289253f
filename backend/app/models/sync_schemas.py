"""
Offline sync wire models.

Every replayed record carries an ``entity_type`` tag; the envelope validates it
as a discriminated union so the merge engine only ever sees the field set of a
known entity. Client-side bookkeeping (sync_status, retry_count, size ...) is
accepted and dropped.
"""
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.services.merge_engine import ConflictStrategy


# Identity and bookkeeping fields, never merged into a server entity
RECORD_IDENTITY_FIELDS: FrozenSet[str] = frozenset({
    "entity_type",
    "id",
    "project_id",
    "created_at",
    "updated_at",
})


class SyncRecordBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, description="Offline id assigned on the device")
    project_id: str
    created_at: Optional[int] = Field(None, description="Epoch ms on the device clock")
    updated_at: Optional[int] = None

    # Carried on the wire but not part of the mergeable snapshot
    transport_only: ClassVar[FrozenSet[str]] = frozenset()

    @classmethod
    def data_fields(cls) -> List[str]:
        skip = RECORD_IDENTITY_FIELDS | cls.transport_only
        return [name for name in cls.model_fields if name not in skip]

    def data(self) -> Dict[str, Any]:
        """Mergeable snapshot: every data field, unset ones as None."""
        return self.model_dump(include=set(self.data_fields()))


class AssessmentRecord(SyncRecordBase):
    entity_type: Literal["assessment"] = "assessment"
    asset_id: Optional[str] = None
    component_code: Optional[str] = None
    component_name: Optional[str] = None
    component_location: Optional[str] = None
    condition: Optional[Literal["good", "fair", "poor", "not_assessed"]] = None
    status: Optional[Literal["initial", "active", "completed"]] = None
    condition_percentage: Optional[float] = Field(None, ge=0, le=100)
    observations: Optional[str] = None
    recommendations: Optional[str] = None
    remaining_useful_life: Optional[int] = None
    expected_useful_life: Optional[int] = None
    review_year: Optional[int] = None
    last_time_action: Optional[int] = None
    estimated_repair_cost: Optional[float] = Field(None, ge=0)
    replacement_value: Optional[float] = Field(None, ge=0)
    action_year: Optional[int] = None


class DeficiencyRecord(SyncRecordBase):
    entity_type: Literal["deficiency"] = "deficiency"
    assessment_id: Optional[str] = None
    component_code: Optional[str] = None
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    priority: Literal["immediate", "short_term", "medium_term", "long_term"] = "medium_term"
    estimated_cost: Optional[float] = Field(None, ge=0)
    status: Literal["open", "in_progress", "resolved", "deferred"] = "open"


class PhotoRecord(SyncRecordBase):
    entity_type: Literal["photo"] = "photo"
    assessment_id: Optional[str] = None
    file_name: str = Field(..., min_length=1)
    mime_type: str = "image/jpeg"
    caption: Optional[str] = None
    photo_blob: Optional[str] = Field(None, description="Base64 image bytes, required on first upload")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    location_accuracy: Optional[float] = None
    ocr_text: Optional[str] = None
    ocr_confidence: Optional[float] = None

    transport_only: ClassVar[FrozenSet[str]] = frozenset({"photo_blob"})


SyncRecord = Annotated[
    Union[AssessmentRecord, DeficiencyRecord, PhotoRecord],
    Field(discriminator="entity_type"),
]

RECORD_MODELS = {
    "assessment": AssessmentRecord,
    "deficiency": DeficiencyRecord,
    "photo": PhotoRecord,
}


# ── REQUESTS ─────────────────────────────────────────────────────────────────
class SyncEnvelope(BaseModel):
    """One replayed record plus the server version the device last saw."""
    record: SyncRecord
    base: Optional[Dict[str, Any]] = None


class BatchSyncRequest(BaseModel):
    records: List[SyncEnvelope] = Field(..., max_length=500)


class ResolveConflictRequest(BaseModel):
    strategy: ConflictStrategy = ConflictStrategy.SERVER_WINS
    choices: Dict[str, Any] = {}


class DeltaRequest(BaseModel):
    original: Dict[str, Any]
    updated: Dict[str, Any]


class MergeRequest(BaseModel):
    local: Dict[str, Any]
    server: Dict[str, Any]
    base: Optional[Dict[str, Any]] = None


# ── RESPONSES ────────────────────────────────────────────────────────────────
class SyncResponse(BaseModel):
    entity_id: str
    offline_id: str
    status: Literal["created", "updated", "conflict"]
    merged: Dict[str, Any] = {}
    conflicts: List[str] = []
    conflict_id: Optional[str] = None


class BatchItemResult(BaseModel):
    offline_id: str
    success: bool
    status: Optional[str] = None
    entity_id: Optional[str] = None
    error: Optional[str] = None


class BatchSyncResponse(BaseModel):
    results: List[BatchItemResult]
    success_count: int
    failure_count: int


class ConflictOut(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    offline_id: Optional[str] = None
    fields: List[str]
    local_snapshot: Dict[str, Any]
    server_snapshot: Dict[str, Any]
    status: str
    created_at: Optional[str] = None

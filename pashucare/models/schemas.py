"""
Pydantic Schemas

Defines the data model shared by the pipeline and the HTTP endpoints:
- SymptomInput, ImagePayload for submissions
- CandidateCondition, AnalysisResult, RiskAssessment for results
- FacilityRecord, Hospital, Coordinates, LocationInput for facility ranking
- QueuedRequest, SyncReport, CachedContent for offline operation
- DiagnosisResponse, NearbyRequest for the HTTP boundary
"""

from __future__ import annotations

import base64
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, field_validator


class AnimalType(str, Enum):
    BOVINE = "bovine"
    GOAT = "goat"
    BUFFALO = "buffalo"


class CandidateSource(str, Enum):
    AI = "ai"
    FALLBACK_KEYWORD = "fallback_keyword"


class Provenance(str, Enum):
    NORMAL = "normal"
    CIRCUIT_BROKEN_FALLBACK = "circuit_broken_fallback"
    PARTIAL_KB_DEGRADED = "partial_knowledge_base_degraded"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class ImagePayload(BaseModel):
    """A photo of the animal.  ``data`` travels base64-encoded over JSON."""

    data: bytes
    mime_type: str

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value):
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except ValueError as exc:
                raise ValueError("image data is not valid base64") from exc
        return value

    @field_serializer("data", when_used="json")
    def _encode_base64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class SymptomInput(BaseModel):
    """One user submission.

    Shape only; semantic checks (text/image presence, size, encoding) are
    applied by ``pashucare.core.validation`` so that direct callers and the
    HTTP layer get the same InputValidationError.
    """

    animal_type: AnimalType
    text: Optional[str] = None
    image: Optional[ImagePayload] = None
    language: str = "en"
    idempotency_key: str = Field(min_length=1, max_length=128)


class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LocationInput(BaseModel):
    """GPS coordinates, or a manually selected administrative region."""

    coordinates: Optional[Coordinates] = None
    region_code: Optional[str] = None


# ---------------------------------------------------------------------------
# Analysis and risk
# ---------------------------------------------------------------------------

class CandidateCondition(BaseModel):
    """A disease hypothesis mapped onto the knowledge base."""

    condition_id: str
    name: str
    confidence: float = Field(ge=0.0, le=1.0)
    severity: int
    source: CandidateSource


class AnalysisResult(BaseModel):
    """Ordered candidate list plus provenance of how it was produced."""

    candidates: list[CandidateCondition] = []
    overall_confidence: float = 0.0
    latency_ms: float = 0.0
    ai_latency_ms: float = 0.0
    provenance: Provenance = Provenance.NORMAL
    notes: list[str] = []
    language: str = "en"
    knowledge_base_version: str = ""


class Recommendation(BaseModel):
    """A single actionable step shown to the farmer."""

    kind: str
    text: str


class RiskAssessment(BaseModel):
    tier: RiskTier
    factors: list[str] = []
    recommendations: list[Recommendation] = []
    disclaimer: str
    reassess_within_hours: int


# ---------------------------------------------------------------------------
# Facilities
# ---------------------------------------------------------------------------

class FacilityRecord(BaseModel):
    """A veterinary facility as loaded from the directory file.

    ``operating_hours`` maps lower-case weekday abbreviations (mon..sun) to
    ``"HH:MM-HH:MM"`` windows; a window whose end precedes its start runs
    past midnight.
    """

    facility_id: str
    name: dict[str, str]
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    contacts: list[str] = Field(min_length=1)
    operating_hours: dict[str, list[str]]
    emergency_capable: bool = False
    facility_type: str
    last_updated: datetime

    model_config = {"frozen": True}

    def localized_name(self, language: str) -> str:
        return self.name.get(language) or self.name.get("en") or next(iter(self.name.values()))


class Region(BaseModel):
    """Administrative region centroid used when GPS is unavailable."""

    code: str
    name: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    model_config = {"frozen": True}


class Hospital(BaseModel):
    """A facility ranked against the user's location."""

    facility_id: str
    name: str
    distance_km: float
    contacts: list[str]
    operating_hours: dict[str, list[str]]
    open_now: bool
    emergency_available: bool
    facility_type: str


# ---------------------------------------------------------------------------
# Offline operation
# ---------------------------------------------------------------------------

class QueuedRequest(BaseModel):
    """A submission waiting for connectivity (or for the AI to recover)."""

    sequence: int
    enqueued_at: datetime
    input: SymptomInput
    location: Optional[LocationInput] = None
    reason: str = "offline"
    attempts: int = 0
    status: str = "pending"
    last_error: Optional[str] = None


class SyncReport(BaseModel):
    """Outcome of one drain pass over the offline queue."""

    attempted: int = 0
    succeeded: int = 0
    requeued: int = 0
    expired: int = 0
    duplicates: int = 0
    failed: list[QueuedRequest] = []
    skipped: bool = False


class CachedGuidance(BaseModel):
    condition_id: str
    name: str
    home_care: list[str]


class CachedContent(BaseModel):
    """Home-care content usable without reaching the pipeline."""

    animal_type: AnimalType
    guidance: list[CachedGuidance] = []
    general_advice: list[str] = []
    knowledge_base_version: str = ""


# ---------------------------------------------------------------------------
# HTTP boundary
# ---------------------------------------------------------------------------

class DiagnoseRequest(BaseModel):
    """Incoming payload for POST /diagnose."""

    symptoms: SymptomInput
    location: Optional[LocationInput] = None
    device_id: Optional[str] = None


class DiagnosisResponse(BaseModel):
    """Full response for the /diagnose endpoint."""

    request_id: str
    status: str
    language: str = "en"
    analysis: Optional[AnalysisResult] = None
    risk: Optional[RiskAssessment] = None
    hospitals: Optional[list[Hospital]] = None
    queued: Optional[QueuedRequest] = None
    cached_guidance: Optional[CachedContent] = None


class NearbyRequest(BaseModel):
    """Incoming payload for POST /hospitals/nearby."""

    location: LocationInput
    max_distance_km: Optional[float] = Field(default=None, gt=0)
    language: str = "en"


class ConnectivityUpdate(BaseModel):
    online: bool


class ReloadResponse(BaseModel):
    """Response from the /admin/reload endpoints."""

    status: str
    version: str
    records: int

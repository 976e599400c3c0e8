"""
DermaAI Analysis Service - Data Models

Pydantic contracts for:
- Provider results, failures and raw payload variants
- Consensus output and case lifecycle
- Lesion tracking and comparison
- API request/response payloads

Attributes are snake_case in Python; the wire format is camelCase.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ENUMS
# =============================================================================


class CaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ProviderName(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


class FailureCode(str, Enum):
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_REQUEST = "INVALID_REQUEST"
    AUTH_ERROR = "AUTH_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    DISABLED = "DISABLED"


TRANSIENT_FAILURE_CODES = frozenset({FailureCode.TIMEOUT, FailureCode.RATE_LIMIT})


class AnalysisState(str, Enum):
    STARTED = "started"
    PROVIDERS_RUNNING = "providers_running"
    MERGING = "merging"
    PARTIAL_FAILED = "partial_failed"
    ALL_FAILED = "all_failed"
    FILTERED = "filtered"
    PERSISTED = "persisted"


class TraceStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class OverallProgression(str, Enum):
    STABLE = "stable"
    IMPROVED = "improved"
    WORSENED = "worsened"
    SIGNIFICANT_CHANGE = "significant_change"


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    ELEVATED = "elevated"
    HIGH = "high"


class TrackingStatus(str, Enum):
    ACTIVE = "active"
    URGENT = "urgent"
    ARCHIVED = "archived"


# =============================================================================
# CLINICAL INPUT MODELS
# =============================================================================


def _split_text_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class ImageInput(ApiModel):
    url: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None

    @model_validator(mode="after")
    def _require_source(self) -> "ImageInput":
        if not (self.url or "").strip() and not (self.data or "").strip():
            raise ValueError("Each image requires either `url` or base64 `data`.")
        return self


class ClinicalContext(ApiModel):
    symptoms: List[str] = Field(default_factory=list)
    lesion_location: Optional[str] = None
    medical_history: List[str] = Field(default_factory=list)
    duration: Optional[str] = None
    patient_age: Optional[int] = Field(default=None, ge=0, le=130)
    patient_sex: Optional[str] = None
    skin_type: Optional[str] = None
    additional_notes: Optional[str] = None

    @field_validator("symptoms", "medical_history", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        return _split_text_list(value)

    def is_empty(self) -> bool:
        return not (
            self.symptoms
            or (self.lesion_location or "").strip()
            or self.medical_history
            or (self.duration or "").strip()
            or (self.additional_notes or "").strip()
        )


# =============================================================================
# PROVIDER MODELS
# =============================================================================


class Diagnosis(ApiModel):
    name: str
    confidence: int = Field(ge=0, le=100)
    description: str = ""
    key_features: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    urgency_signal: bool = False


class ProviderResult(ApiModel):
    provider: ProviderName
    model: Optional[str] = None
    diagnoses: List[Diagnosis] = Field(default_factory=list)
    analysis_time_seconds: float = Field(default=0.0, ge=0.0)


class ProviderFailure(ApiModel):
    provider: ProviderName
    code: FailureCode
    message: str
    hint: Optional[str] = None
    attempts: int = Field(default=1, ge=0)


class RawProviderPayload(BaseModel):
    """
    Decoded JSON returned by a model. Validated at the adapter boundary;
    nothing past the normalizer sees it.
    """

    model_config = ConfigDict(extra="allow")

    error: bool = False
    message: Optional[str] = None


class RawDiagnosisPayload(RawProviderPayload):
    diagnoses: List[Any] = Field(default_factory=list)

    @field_validator("diagnoses", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


# =============================================================================
# CONSENSUS / CASE MODELS
# =============================================================================


class FinalDiagnosis(ApiModel):
    rank: int = Field(ge=1)
    name: str
    confidence: int = Field(ge=0, le=100)
    description: str = ""
    key_features: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    is_urgent: bool = False
    sources: List[ProviderName] = Field(default_factory=list)
    # Carried from merge to urgency classification only.
    urgency_signal: bool = Field(default=False, exclude=True)


class ConsensusIndicator(ApiModel):
    top_diagnosis: str
    supporting_providers: int = Field(ge=1)
    total_providers: int = Field(default=2, ge=1)
    agreement: float = Field(ge=0.0, le=1.0)


class ProviderTrace(ApiModel):
    agent: str
    status: TraceStatus
    started_at: datetime
    completed_at: datetime
    notes: Optional[str] = None


class CaseRecord(ApiModel):
    id: str
    case_id: str
    owner_id: str
    patient_id: Optional[str] = None
    images: List[ImageInput] = Field(default_factory=list)
    context: ClinicalContext = Field(default_factory=ClinicalContext)
    language: str = "en"
    status: CaseStatus = CaseStatus.PENDING
    gemini_analysis: Optional[ProviderResult] = None
    openai_analysis: Optional[ProviderResult] = None
    final_diagnoses: Optional[List[FinalDiagnosis]] = None
    consensus: Optional[ConsensusIndicator] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    analyzed_at: Optional[datetime] = None
    traces: List[ProviderTrace] = Field(default_factory=list)


class UserSettings(ApiModel):
    confidence_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    language: str = "en"
    is_health_professional: bool = False

    @field_validator("language")
    @classmethod
    def _known_language(cls, value: str) -> str:
        value = (value or "en").strip().lower()
        if value not in {"en", "tr"}:
            raise ValueError("language must be 'en' or 'tr'.")
        return value


# =============================================================================
# LESION TRACKING MODELS
# =============================================================================


class LesionTracking(ApiModel):
    id: str
    owner_id: str
    name: str
    body_location: Optional[str] = None
    description: Optional[str] = None
    status: TrackingStatus = TrackingStatus.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class LesionSnapshot(ApiModel):
    id: str
    tracking_id: str
    case_id: Optional[str] = None
    images: List[ImageInput] = Field(default_factory=list)
    notes: Optional[str] = None
    captured_at: datetime = Field(default_factory=utc_now)


class LesionComparisonAnalysis(ApiModel):
    change_detected: bool
    size_change: Optional[str] = None
    color_change: Optional[str] = None
    border_change: Optional[str] = None
    texture_change: Optional[str] = None
    overall_progression: OverallProgression
    risk_level: RiskLevel
    recommendations: List[str] = Field(default_factory=list)
    detailed_analysis: str = ""
    time_elapsed: str = ""
    analysis_time_seconds: float = Field(default=0.0, ge=0.0)


class LesionComparison(ApiModel):
    id: str
    tracking_id: str
    previous_snapshot_id: str
    current_snapshot_id: str
    analysis: LesionComparisonAnalysis
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# API MODELS
# =============================================================================


class AnalyzeCaseRequest(ApiModel):
    images: List[ImageInput] = Field(default_factory=list)
    image_urls: List[str] = Field(default_factory=list)
    context: Optional[ClinicalContext] = None
    patient_id: Optional[str] = None
    language: Optional[str] = None

    def resolved_images(self) -> List[ImageInput]:
        extra = [ImageInput(url=url) for url in self.image_urls if (url or "").strip()]
        return list(self.images) + extra


class AnalyzeCaseResponse(CaseRecord):
    analysis_errors: List[ProviderFailure] = Field(default_factory=list)
    analysis_state: AnalysisState
    message: str = ""


class UpdateSettingsRequest(ApiModel):
    confidence_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    language: Optional[str] = None
    is_health_professional: Optional[bool] = None


class PushTokenRequest(ApiModel):
    token: str = Field(min_length=1)


class PushTokenResponse(ApiModel):
    success: bool
    registered: bool


class DeleteResponse(ApiModel):
    success: bool
    message: str


class CreateLesionTrackingRequest(ApiModel):
    name: str = Field(min_length=1)
    body_location: Optional[str] = None
    description: Optional[str] = None
    initial_case_id: Optional[str] = None


class UpdateLesionTrackingRequest(ApiModel):
    name: Optional[str] = None
    body_location: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TrackingStatus] = None


class LesionTrackingDetailResponse(ApiModel):
    tracking: LesionTracking
    snapshots: List[LesionSnapshot] = Field(default_factory=list)
    comparisons: List[LesionComparison] = Field(default_factory=list)


class AddSnapshotRequest(ApiModel):
    images: List[ImageInput] = Field(default_factory=list)
    image_urls: List[str] = Field(default_factory=list)
    case_id: Optional[str] = None
    notes: Optional[str] = None
    run_comparison: bool = True
    time_elapsed: Optional[str] = None
    language: Optional[str] = None

    def resolved_images(self) -> List[ImageInput]:
        extra = [ImageInput(url=url) for url in self.image_urls if (url or "").strip()]
        return list(self.images) + extra


class AddSnapshotResponse(ApiModel):
    snapshot: LesionSnapshot
    comparison: Optional[LesionComparison] = None


class CompareSnapshotsRequest(ApiModel):
    previous_snapshot_id: str
    current_snapshot_id: str
    time_elapsed: Optional[str] = None
    language: Optional[str] = None


class ComparisonFailureResponse(ProviderFailure):
    error: str = "comparison_failed"
    tracking_id: str
    snapshot_id: Optional[str] = None


class ComparisonDetailResponse(ApiModel):
    comparison: LesionComparison
    previous_snapshot: Optional[LesionSnapshot] = None
    current_snapshot: Optional[LesionSnapshot] = None
    tracking: LesionTracking


class HealthResponse(ApiModel):
    status: str
    service: str
    case_store_backend: str
    providers: Dict[str, bool] = Field(default_factory=dict)
    push_mode: str
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# SCHEMA CHECK HELPERS
# =============================================================================


def validate_structured_output(model_cls: Any, payload: Dict[str, Any]) -> Any:
    """
    Strict schema gate used after any model output.
    Raises pydantic ValidationError on mismatches.
    """
    return model_cls.model_validate(payload)

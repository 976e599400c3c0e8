"""
DermaAI Analysis Service - FastAPI Application

Endpoints:
  GET    /health
  POST   /api/cases/analyze
  POST   /api/cases/{case_id}/analyze
  GET    /api/cases
  GET    /api/cases/{case_id}
  DELETE /api/cases/{case_id}
  GET    /api/settings
  PUT    /api/settings
  POST   /api/push-tokens
  GET    /api/lesion-trackings
  POST   /api/lesion-trackings
  GET    /api/lesion-trackings/{tracking_id}
  PATCH  /api/lesion-trackings/{tracking_id}
  DELETE /api/lesion-trackings/{tracking_id}
  POST   /api/lesion-trackings/{tracking_id}/snapshots
  POST   /api/lesion-trackings/{tracking_id}/compare
  GET    /api/lesion-comparisons/{comparison_id}
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from env_loader import env_bool, env_float
from errors import AnalysisValidationError, CaseBusyError, PersistenceError
from models import (
    AddSnapshotRequest,
    AddSnapshotResponse,
    AnalyzeCaseRequest,
    AnalyzeCaseResponse,
    CaseRecord,
    CompareSnapshotsRequest,
    ComparisonDetailResponse,
    ComparisonFailureResponse,
    CreateLesionTrackingRequest,
    DeleteResponse,
    FailureCode,
    HealthResponse,
    LesionComparison,
    LesionTracking,
    LesionTrackingDetailResponse,
    ProviderFailure,
    PushTokenRequest,
    PushTokenResponse,
    UpdateLesionTrackingRequest,
    UpdateSettingsRequest,
    UserSettings,
)
from orchestrator import AnalysisOutcome, ComparisonOutcome, orchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="DermaAI Analysis Service",
    description="Dual-provider dermatology differential diagnosis with consensus merge and lesion tracking",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ANALYZE_TIMEOUT_SECONDS = max(30.0, env_float("DERMA_ANALYZE_TIMEOUT_SECONDS", 180.0))

FAILURE_STATUS_CODES = {
    FailureCode.RATE_LIMIT: 429,
    FailureCode.TIMEOUT: 504,
}


def _error_detail(prefix: str, exc: Exception) -> str:
    if not env_bool("DERMA_EXPOSE_ERRORS", False):
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    # Keep payload concise for UI.
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def current_owner(x_user_id: Optional[str] = Header(default=None)) -> str:
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return owner_id


def _analysis_response(outcome: AnalysisOutcome) -> Union[AnalyzeCaseResponse, JSONResponse]:
    response = outcome.to_response()
    if outcome.all_failed:
        return JSONResponse(
            status_code=502,
            content=response.model_dump(mode="json", by_alias=True),
        )
    return response


def _comparison_failure(
    failure: ProviderFailure,
    tracking_id: str,
    snapshot_id: Optional[str] = None,
) -> JSONResponse:
    body = ComparisonFailureResponse(
        **failure.model_dump(),
        tracking_id=tracking_id,
        snapshot_id=snapshot_id,
    )
    return JSONResponse(
        status_code=FAILURE_STATUS_CODES.get(failure.code, 502),
        content=body.model_dump(mode="json", by_alias=True),
    )


async def _run_analysis(coro, label: str) -> AnalysisOutcome:
    try:
        return await asyncio.wait_for(coro, timeout=ANALYZE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as exc:
        timeout_seconds = max(1, int(round(ANALYZE_TIMEOUT_SECONDS)))
        logger.error("Analyze %s timed out after %.1fs", label, ANALYZE_TIMEOUT_SECONDS)
        raise HTTPException(
            status_code=504,
            detail=f"Failed to analyze case. Timed out after {timeout_seconds}s.",
        ) from exc
    except asyncio.CancelledError:
        logger.info("Analyze request cancelled for %s (shutdown or client disconnect).", label)
        raise HTTPException(status_code=499, detail="Analyze request cancelled.")


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="dermaai-service",
        case_store_backend=orchestrator.case_store_backend,
        providers=orchestrator.provider_status(),
        push_mode=orchestrator.notifier.mode,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# CASES
# =============================================================================


@app.post("/api/cases/analyze", response_model=AnalyzeCaseResponse)
async def analyze_new_case(
    request: AnalyzeCaseRequest,
    owner_id: str = Depends(current_owner),
):
    try:
        outcome = await _run_analysis(orchestrator.analyze_case(request, owner_id), "new case")
        return _analysis_response(outcome)
    except HTTPException:
        raise
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.exception("Failed to persist case analysis: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to analyze case: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to analyze case.", exc),
        ) from exc


@app.post("/api/cases/{case_id}/analyze", response_model=AnalyzeCaseResponse)
async def reanalyze_case(
    case_id: str,
    language: Optional[str] = None,
    owner_id: str = Depends(current_owner),
):
    try:
        outcome = await _run_analysis(
            orchestrator.reanalyze_case(case_id, owner_id, language=language),
            f"case {case_id}",
        )
        return _analysis_response(outcome)
    except HTTPException:
        raise
    except CaseBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.exception("Failed to persist analysis for case %s: %s", case_id, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to analyze case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to analyze case.", exc),
        ) from exc


@app.get("/api/cases", response_model=List[CaseRecord])
async def list_cases(limit: int = 100, owner_id: str = Depends(current_owner)) -> List[CaseRecord]:
    try:
        return orchestrator.list_cases(owner_id, limit=max(1, min(500, int(limit))))
    except Exception as exc:
        logger.exception("Failed to list cases for %s: %s", owner_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to list cases.", exc),
        ) from exc


@app.get("/api/cases/{case_id}", response_model=CaseRecord)
async def get_case(case_id: str, owner_id: str = Depends(current_owner)) -> CaseRecord:
    try:
        return orchestrator.get_case(case_id, owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/api/cases/{case_id}", response_model=DeleteResponse)
async def delete_case(case_id: str, owner_id: str = Depends(current_owner)) -> DeleteResponse:
    try:
        if not orchestrator.delete_case(case_id, owner_id):
            raise HTTPException(status_code=404, detail=f"Case not found: {case_id}")
        return DeleteResponse(success=True, message=f"Deleted case {case_id}.")
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to delete case %s: %s", case_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to delete case.", exc),
        ) from exc


# =============================================================================
# SETTINGS / PUSH TOKENS
# =============================================================================


@app.get("/api/settings", response_model=UserSettings)
async def get_settings(owner_id: str = Depends(current_owner)) -> UserSettings:
    return orchestrator.get_settings(owner_id)


@app.put("/api/settings", response_model=UserSettings)
async def update_settings(
    request: UpdateSettingsRequest,
    owner_id: str = Depends(current_owner),
) -> UserSettings:
    try:
        return orchestrator.update_settings(owner_id, request)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to update settings for %s: %s", owner_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to update settings.", exc),
        ) from exc


@app.post("/api/push-tokens", response_model=PushTokenResponse)
async def register_push_token(
    request: PushTokenRequest,
    owner_id: str = Depends(current_owner),
) -> PushTokenResponse:
    try:
        registered = orchestrator.register_push_token(owner_id, request.token)
        return PushTokenResponse(success=True, registered=registered)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# =============================================================================
# LESION TRACKING
# =============================================================================


@app.get("/api/lesion-trackings", response_model=List[LesionTracking])
async def list_trackings(owner_id: str = Depends(current_owner)) -> List[LesionTracking]:
    return orchestrator.list_trackings(owner_id)


@app.post("/api/lesion-trackings", response_model=LesionTrackingDetailResponse)
async def create_tracking(
    request: CreateLesionTrackingRequest,
    owner_id: str = Depends(current_owner),
) -> LesionTrackingDetailResponse:
    try:
        return orchestrator.create_tracking(request, owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to create lesion tracking: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to create lesion tracking.", exc),
        ) from exc


@app.get("/api/lesion-trackings/{tracking_id}", response_model=LesionTrackingDetailResponse)
async def get_tracking(tracking_id: str, owner_id: str = Depends(current_owner)) -> LesionTrackingDetailResponse:
    try:
        return orchestrator.get_tracking_detail(tracking_id, owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/api/lesion-trackings/{tracking_id}", response_model=LesionTracking)
async def update_tracking(
    tracking_id: str,
    request: UpdateLesionTrackingRequest,
    owner_id: str = Depends(current_owner),
) -> LesionTracking:
    try:
        return orchestrator.update_tracking(tracking_id, request, owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/lesion-trackings/{tracking_id}", response_model=DeleteResponse)
async def delete_tracking(tracking_id: str, owner_id: str = Depends(current_owner)) -> DeleteResponse:
    if not orchestrator.delete_tracking(tracking_id, owner_id):
        raise HTTPException(status_code=404, detail=f"Lesion tracking not found: {tracking_id}")
    return DeleteResponse(success=True, message=f"Deleted lesion tracking {tracking_id}.")


@app.post("/api/lesion-trackings/{tracking_id}/snapshots", response_model=AddSnapshotResponse)
async def add_snapshot(
    tracking_id: str,
    request: AddSnapshotRequest,
    owner_id: str = Depends(current_owner),
):
    try:
        outcome: ComparisonOutcome = await orchestrator.add_snapshot(tracking_id, request, owner_id)
        if outcome.failure is not None:
            return _comparison_failure(
                outcome.failure,
                tracking_id,
                outcome.snapshot.id if outcome.snapshot else None,
            )
        return AddSnapshotResponse(snapshot=outcome.snapshot, comparison=outcome.comparison)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to add snapshot to tracking %s: %s", tracking_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to add lesion snapshot.", exc),
        ) from exc


@app.post("/api/lesion-trackings/{tracking_id}/compare", response_model=LesionComparison)
async def compare_snapshots(
    tracking_id: str,
    request: CompareSnapshotsRequest,
    owner_id: str = Depends(current_owner),
):
    try:
        outcome = await orchestrator.compare_snapshots(tracking_id, request, owner_id)
        if outcome.failure is not None:
            return _comparison_failure(outcome.failure, tracking_id, request.current_snapshot_id)
        return outcome.comparison
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AnalysisValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to compare snapshots for tracking %s: %s", tracking_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to compare lesion snapshots.", exc),
        ) from exc


@app.get("/api/lesion-comparisons/{comparison_id}", response_model=ComparisonDetailResponse)
async def get_comparison(comparison_id: str, owner_id: str = Depends(current_owner)) -> ComparisonDetailResponse:
    try:
        return orchestrator.get_comparison_detail(comparison_id, owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

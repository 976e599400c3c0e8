"""
DermaAI Analysis Service - Orchestration

Runs one case analysis end to end:
  STARTED -> PROVIDERS_RUNNING -> {MERGING | PARTIAL_FAILED | ALL_FAILED}
          -> FILTERED -> PERSISTED

Both providers run concurrently and the merge starts only after both settle.
Provider failures are returned as data; a total failure leaves the case
untouched in `pending`. The case row is written once per successful run.

Also coordinates lesion tracking: snapshots, comparisons and the urgent
escalation of a tracking after a high-risk comparison.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from case_repository import CaseRepository, InMemoryCaseRepository, SqliteCaseRepository
from consensus import DEFAULT_MAX_DISPLAY_ITEMS, compute_consensus, merge_diagnoses
from env_loader import env_float, env_int, env_list, env_str, load_service_env
from errors import AnalysisValidationError, CaseBusyError, PersistenceError
from lesion_comparison import ComparisonContext, LesionComparisonEngine
from models import (
    AddSnapshotRequest,
    AnalysisState,
    AnalyzeCaseRequest,
    AnalyzeCaseResponse,
    CaseRecord,
    CaseStatus,
    ClinicalContext,
    CompareSnapshotsRequest,
    ComparisonDetailResponse,
    CreateLesionTrackingRequest,
    Diagnosis,
    FailureCode,
    ImageInput,
    LesionComparison,
    LesionSnapshot,
    LesionTracking,
    LesionTrackingDetailResponse,
    ProviderFailure,
    ProviderName,
    ProviderResult,
    ProviderTrace,
    RiskLevel,
    TraceStatus,
    TrackingStatus,
    UpdateLesionTrackingRequest,
    UpdateSettingsRequest,
    UserSettings,
)
from notifications import PushNotifier, is_expo_push_token
from provider_clients import FAILURE_HINTS, GeminiProviderAdapter, OpenAIProviderAdapter, ProviderAdapter
from tools import generate_case_number
from triage import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    classify_urgency,
    filter_by_confidence,
    resolve_threshold,
    urgent_keywords,
)

logger = logging.getLogger(__name__)

# Load `.env` / `.env.local` for this service before reading os.environ.
load_service_env()

MAX_IMAGES_PER_REQUEST = 3
DEFAULT_MAX_FINAL_DIAGNOSES = 5

ProviderOutcome = Union[ProviderResult, ProviderFailure]


@dataclass
class AnalysisOutcome:
    record: CaseRecord
    state: AnalysisState
    states: List[AnalysisState] = field(default_factory=list)
    errors: List[ProviderFailure] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.state == AnalysisState.ALL_FAILED

    def message(self) -> str:
        if self.all_failed:
            return "Analysis failed for all providers. The case is still pending; please retry."
        if self.errors:
            failed = ", ".join(f"{e.provider.value} ({e.code.value})" for e in self.errors)
            return f"Partial analysis: results from one provider only. Unavailable: {failed}."
        return "Analysis complete."

    def to_response(self) -> AnalyzeCaseResponse:
        return AnalyzeCaseResponse(
            **{name: getattr(self.record, name) for name in CaseRecord.model_fields},
            analysis_errors=self.errors,
            analysis_state=self.state,
            message=self.message(),
        )


@dataclass
class ComparisonOutcome:
    tracking: LesionTracking
    snapshot: Optional[LesionSnapshot] = None
    comparison: Optional[LesionComparison] = None
    failure: Optional[ProviderFailure] = None


class DermaAnalysisOrchestrator:
    """
    Coordinates both provider adapters and the deterministic merge pipeline.
    """

    def __init__(
        self,
        case_repository: Optional[CaseRepository] = None,
        gemini_adapter: Optional[ProviderAdapter] = None,
        openai_adapter: Optional[ProviderAdapter] = None,
        notifier: Optional[PushNotifier] = None,
        comparison_engine: Optional[LesionComparisonEngine] = None,
    ) -> None:
        self.provider_timeout_seconds = max(1.0, env_float("DERMA_PROVIDER_TIMEOUT_SECONDS", 60.0))
        self.default_confidence_threshold = resolve_threshold(
            env_int("DERMA_DEFAULT_CONFIDENCE_THRESHOLD", DEFAULT_CONFIDENCE_THRESHOLD)
        )
        self.max_display_items = max(1, env_int("DERMA_MAX_DISPLAY_ITEMS", DEFAULT_MAX_DISPLAY_ITEMS))
        self.max_final_diagnoses = max(1, env_int("DERMA_MAX_FINAL_DIAGNOSES", DEFAULT_MAX_FINAL_DIAGNOSES))
        self.urgent_keywords = urgent_keywords(env_list("DERMA_URGENT_CONDITIONS"))
        self.local_data_dir = Path(env_str("DERMA_LOCAL_DATA_DIR", "./local_data")).expanduser().resolve()
        self.sqlite_db_path = env_str("DERMA_SQLITE_DB_PATH", str(self.local_data_dir / "derma_cases.sqlite3"))
        self.case_store_backend = env_str("DERMA_CASE_STORE_BACKEND", "sqlite").lower()

        self.case_repository: CaseRepository = case_repository or self._build_case_repository()
        self.gemini_adapter = gemini_adapter or GeminiProviderAdapter()
        self.openai_adapter = openai_adapter or OpenAIProviderAdapter()
        self.notifier = notifier or PushNotifier()
        self.comparison_engine = comparison_engine or LesionComparisonEngine(
            adapter=self.gemini_adapter,
            timeout_seconds=self.provider_timeout_seconds,
        )

        self.lock = asyncio.Lock()
        self._running: Set[str] = set()
        self._background: Set[asyncio.Future] = set()

        logger.info(
            "DermaAnalysisOrchestrator initialized | store=%s | gemini=%s(%s) | openai=%s(%s) | "
            "provider_timeout=%.1fs | default_threshold=%d | max_display_items=%d | max_final=%d | push_mode=%s",
            self.case_store_backend,
            self.gemini_adapter.model,
            "on" if self.gemini_adapter.available else "off",
            self.openai_adapter.model,
            "on" if self.openai_adapter.available else "off",
            self.provider_timeout_seconds,
            self.default_confidence_threshold,
            self.max_display_items,
            self.max_final_diagnoses,
            self.notifier.mode,
        )

    def _build_case_repository(self) -> CaseRepository:
        if self.case_store_backend == "sqlite":
            return SqliteCaseRepository(db_path=self.sqlite_db_path)
        if self.case_store_backend == "memory":
            return InMemoryCaseRepository()
        raise ValueError(
            f"Unsupported DERMA_CASE_STORE_BACKEND='{self.case_store_backend}'. "
            "Allowed values: sqlite, memory."
        )

    @property
    def adapters(self) -> Tuple[ProviderAdapter, ProviderAdapter]:
        return self.gemini_adapter, self.openai_adapter

    def provider_status(self) -> Dict[str, bool]:
        return {adapter.provider.value: adapter.available for adapter in self.adapters}

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def _track_background(self, future: "asyncio.Future[Any]") -> None:
        self._background.add(future)
        future.add_done_callback(self._on_background_done)

    def _on_background_done(self, future: "asyncio.Future[Any]") -> None:
        self._background.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Background task failed: %s", exc)

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _append_trace(
        self,
        traces: List[ProviderTrace],
        agent_name: str,
        status: TraceStatus,
        started_at: datetime,
        completed_at: datetime,
        notes: Optional[str] = None,
    ) -> None:
        traces.append(
            ProviderTrace(
                agent=agent_name,
                status=status,
                started_at=started_at,
                completed_at=completed_at,
                notes=notes,
            )
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate_inputs(
        self,
        images: Sequence[ImageInput],
        context: Optional[ClinicalContext],
    ) -> Tuple[List[ImageInput], ClinicalContext]:
        images = list(images)
        if not images:
            raise AnalysisValidationError("At least one image is required.")
        if len(images) > MAX_IMAGES_PER_REQUEST:
            logger.warning(
                "Received %d images; analyzing the first %d.",
                len(images),
                MAX_IMAGES_PER_REQUEST,
            )
            images = images[:MAX_IMAGES_PER_REQUEST]
        if context is None or context.is_empty():
            raise AnalysisValidationError(
                "Clinical context is required: provide symptoms, lesion location, "
                "medical history, duration or notes."
            )
        return images, context

    # -------------------------------------------------------------------------
    # Case analysis
    # -------------------------------------------------------------------------

    async def analyze_case(self, request: AnalyzeCaseRequest, owner_id: str) -> AnalysisOutcome:
        """
        Creates a pending case for the request and analyzes it.
        """
        images, context = self._validate_inputs(request.resolved_images(), request.context)
        settings = await asyncio.to_thread(self.case_repository.get_user_settings, owner_id)
        record = CaseRecord(
            id=str(uuid.uuid4()),
            case_id=generate_case_number(),
            owner_id=owner_id,
            patient_id=request.patient_id,
            images=images,
            context=context,
            language=(request.language or settings.language or "en").lower(),
            status=CaseStatus.PENDING,
        )
        try:
            record = await asyncio.to_thread(self.case_repository.create_case, record)
        except Exception as exc:
            logger.exception("Failed to create case for owner %s: %s", owner_id, exc)
            raise PersistenceError("Failed to create the case record.") from exc
        return await self._run_analysis(record, owner_id, settings)

    async def reanalyze_case(
        self,
        case_ref: str,
        owner_id: str,
        language: Optional[str] = None,
    ) -> AnalysisOutcome:
        """
        Re-runs the pipeline on a stored case's images and context.
        """
        record = await asyncio.to_thread(self.case_repository.get_case, case_ref, owner_id)
        images, context = self._validate_inputs(record.images, record.context)
        if language:
            record = record.model_copy(update={"language": language.lower()})
        settings = await asyncio.to_thread(self.case_repository.get_user_settings, owner_id)
        return await self._run_analysis(
            record.model_copy(update={"images": images, "context": context}),
            owner_id,
            settings,
        )

    async def _run_analysis(
        self,
        record: CaseRecord,
        owner_id: str,
        settings: UserSettings,
    ) -> AnalysisOutcome:
        async with self.lock:
            if record.id in self._running:
                raise CaseBusyError(record.case_id)
            self._running.add(record.id)

        states = [AnalysisState.STARTED]
        try:
            states.append(AnalysisState.PROVIDERS_RUNNING)
            traces = list(record.traces)
            outcomes = await self._invoke_providers(record, settings, traces)
            return await self._finish_analysis(record, owner_id, settings, outcomes, traces, states)
        except asyncio.CancelledError:
            logger.info("Analysis cancelled for case %s; provider results will be discarded.", record.case_id)
            raise
        finally:
            async with self.lock:
                self._running.discard(record.id)

    async def _timed_invoke(
        self,
        adapter: ProviderAdapter,
        record: CaseRecord,
        settings: UserSettings,
    ) -> Tuple[ProviderOutcome, datetime, datetime]:
        started = datetime.now(timezone.utc)
        try:
            outcome = await adapter.invoke(
                record.images,
                record.context,
                self.provider_timeout_seconds,
                language=record.language,
                is_health_professional=settings.is_health_professional,
            )
        except Exception as exc:
            logger.exception("%s adapter raised unexpectedly: %s", adapter.provider.value, exc)
            outcome = ProviderFailure(
                provider=adapter.provider,
                code=FailureCode.UPSTREAM_ERROR,
                message=f"Unexpected adapter error: {exc.__class__.__name__}",
                hint=FAILURE_HINTS[FailureCode.UPSTREAM_ERROR],
            )
        return outcome, started, datetime.now(timezone.utc)

    async def _invoke_providers(
        self,
        record: CaseRecord,
        settings: UserSettings,
        traces: List[ProviderTrace],
    ) -> Dict[ProviderName, ProviderOutcome]:
        joined = asyncio.gather(
            *(self._timed_invoke(adapter, record, settings) for adapter in self.adapters)
        )
        try:
            settled = await asyncio.shield(joined)
        except asyncio.CancelledError:
            # Provider calls finish in the background; nothing reads their results.
            self._track_background(joined)
            raise

        outcomes: Dict[ProviderName, ProviderOutcome] = {}
        for adapter, (outcome, started, completed) in zip(self.adapters, settled):
            outcomes[adapter.provider] = outcome
            agent = f"{adapter.provider.value.capitalize()}Provider"
            if isinstance(outcome, ProviderResult):
                notes = f"model={outcome.model} | diagnoses={len(outcome.diagnoses)}"
                self._append_trace(traces, agent, TraceStatus.COMPLETED, started, completed, notes)
            else:
                notes = f"code={outcome.code.value} | attempts={outcome.attempts} | {outcome.message}"
                self._append_trace(traces, agent, TraceStatus.FAILED, started, completed, notes)
        return outcomes

    async def _finish_analysis(
        self,
        record: CaseRecord,
        owner_id: str,
        settings: UserSettings,
        outcomes: Dict[ProviderName, ProviderOutcome],
        traces: List[ProviderTrace],
        states: List[AnalysisState],
    ) -> AnalysisOutcome:
        started = datetime.now(timezone.utc)
        results = {p: o for p, o in outcomes.items() if isinstance(o, ProviderResult)}
        errors = [o for o in outcomes.values() if isinstance(o, ProviderFailure)]

        if not results:
            states.append(AnalysisState.ALL_FAILED)
            logger.warning(
                "All providers failed for case %s: %s",
                record.case_id,
                ", ".join(f"{e.provider.value}={e.code.value}" for e in errors),
            )
            return AnalysisOutcome(
                record=record.model_copy(update={"traces": traces}),
                state=AnalysisState.ALL_FAILED,
                states=states,
                errors=errors,
            )

        states.append(AnalysisState.PARTIAL_FAILED if errors else AnalysisState.MERGING)
        gemini = results.get(ProviderName.GEMINI)
        openai = results.get(ProviderName.OPENAI)
        merged = merge_diagnoses(
            gemini.diagnoses if gemini else [],
            openai.diagnoses if openai else [],
            max_items=self.max_display_items,
        )
        classified = classify_urgency(merged, self.urgent_keywords)
        threshold = resolve_threshold(settings.confidence_threshold, self.default_confidence_threshold)
        final = filter_by_confidence(classified, threshold, max_results=self.max_final_diagnoses)
        states.append(AnalysisState.FILTERED)
        consensus = compute_consensus(final, both_succeeded=len(results) == len(self.adapters))

        completed = datetime.now(timezone.utc)
        self._append_trace(
            traces,
            "DermaAnalysisOrchestrator",
            TraceStatus.COMPLETED,
            started,
            completed,
            f"state={states[2].value} | threshold={threshold} | kept={len(final)}/{len(classified)} | "
            f"urgent={sum(1 for d in final if d.is_urgent)}",
        )
        fields = {
            "gemini_analysis": gemini,
            "openai_analysis": openai,
            "final_diagnoses": final,
            "consensus": consensus,
            "status": CaseStatus.COMPLETED,
            "language": record.language,
            "analyzed_at": completed,
            "traces": traces,
        }
        try:
            updated = await asyncio.to_thread(self.case_repository.update_case, record.id, owner_id, fields)
        except (KeyError, PermissionError):
            raise
        except Exception as exc:
            logger.exception("Failed to persist analysis for case %s: %s", record.case_id, exc)
            raise PersistenceError(
                f"Analysis for case {record.case_id} could not be saved. Retry the request."
            ) from exc
        states.append(AnalysisState.PERSISTED)

        self._track_background(asyncio.ensure_future(self._notify_case(updated, owner_id)))
        return AnalysisOutcome(
            record=updated,
            state=states[2],
            states=states,
            errors=errors,
        )

    async def _notify_case(self, record: CaseRecord, owner_id: str) -> None:
        tokens = await asyncio.to_thread(self.case_repository.list_push_tokens, owner_id)
        if tokens:
            await self.notifier.notify_analysis_completed(record, tokens)

    # -------------------------------------------------------------------------
    # Case CRUD
    # -------------------------------------------------------------------------

    def get_case(self, case_ref: str, owner_id: str) -> CaseRecord:
        return self.case_repository.get_case(case_ref, owner_id)

    def list_cases(self, owner_id: str, limit: int = 100) -> List[CaseRecord]:
        return self.case_repository.list_cases(owner_id, limit=limit)

    def delete_case(self, case_ref: str, owner_id: str) -> bool:
        return self.case_repository.delete_case(case_ref, owner_id)

    # -------------------------------------------------------------------------
    # Settings / push tokens
    # -------------------------------------------------------------------------

    def get_settings(self, owner_id: str) -> UserSettings:
        settings = self.case_repository.get_user_settings(owner_id)
        threshold = resolve_threshold(settings.confidence_threshold, self.default_confidence_threshold)
        return settings.model_copy(update={"confidence_threshold": threshold})

    def update_settings(self, owner_id: str, request: UpdateSettingsRequest) -> UserSettings:
        current = self.case_repository.get_user_settings(owner_id)
        changes = request.model_dump(exclude_unset=True)
        merged = UserSettings.model_validate({**current.model_dump(), **changes})
        self.case_repository.update_user_settings(owner_id, merged)
        return self.get_settings(owner_id)

    def register_push_token(self, owner_id: str, token: str) -> bool:
        token = token.strip()
        if not is_expo_push_token(token):
            raise ValueError("Invalid Expo push token.")
        self.case_repository.register_push_token(owner_id, token)
        return True

    # -------------------------------------------------------------------------
    # Lesion tracking
    # -------------------------------------------------------------------------

    def list_trackings(self, owner_id: str) -> List[LesionTracking]:
        return self.case_repository.list_trackings(owner_id)

    def create_tracking(self, request: CreateLesionTrackingRequest, owner_id: str) -> LesionTrackingDetailResponse:
        name = request.name.strip()
        if not name:
            raise ValueError("Lesion tracking name is required.")
        initial_case = None
        if request.initial_case_id:
            initial_case = self.case_repository.get_case(request.initial_case_id, owner_id)
        tracking = self.case_repository.create_tracking(
            LesionTracking(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                name=name,
                body_location=request.body_location
                or (initial_case.context.lesion_location if initial_case else None),
                description=request.description,
            )
        )
        if initial_case is not None and initial_case.images:
            self.case_repository.add_snapshot(
                LesionSnapshot(
                    id=str(uuid.uuid4()),
                    tracking_id=tracking.id,
                    case_id=initial_case.id,
                    images=initial_case.images,
                    captured_at=initial_case.created_at,
                )
            )
        return self.get_tracking_detail(tracking.id, owner_id)

    def get_tracking_detail(self, tracking_id: str, owner_id: str) -> LesionTrackingDetailResponse:
        tracking = self.case_repository.get_tracking(tracking_id, owner_id)
        return LesionTrackingDetailResponse(
            tracking=tracking,
            snapshots=self.case_repository.list_snapshots(tracking_id),
            comparisons=self.case_repository.list_comparisons(tracking_id),
        )

    def update_tracking(
        self,
        tracking_id: str,
        request: UpdateLesionTrackingRequest,
        owner_id: str,
    ) -> LesionTracking:
        changes = request.model_dump(exclude_unset=True)
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValueError("Lesion tracking name cannot be empty.")
        return self.case_repository.update_tracking(tracking_id, owner_id, changes)

    def delete_tracking(self, tracking_id: str, owner_id: str) -> bool:
        return self.case_repository.delete_tracking(tracking_id, owner_id)

    async def add_snapshot(
        self,
        tracking_id: str,
        request: AddSnapshotRequest,
        owner_id: str,
    ) -> ComparisonOutcome:
        """
        Stores a snapshot and, when requested and a prior snapshot exists,
        compares it with the most recent one.
        """
        tracking = await asyncio.to_thread(self.case_repository.get_tracking, tracking_id, owner_id)
        images = request.resolved_images()
        if not images and request.case_id:
            case = await asyncio.to_thread(self.case_repository.get_case, request.case_id, owner_id)
            images = list(case.images)
        if not images:
            raise AnalysisValidationError("A snapshot requires at least one image or a case with images.")
        images = images[:MAX_IMAGES_PER_REQUEST]

        history = await asyncio.to_thread(self.case_repository.list_snapshots, tracking_id)
        previous = history[-1] if history else None
        snapshot = await asyncio.to_thread(
            self.case_repository.add_snapshot,
            LesionSnapshot(
                id=str(uuid.uuid4()),
                tracking_id=tracking_id,
                case_id=request.case_id,
                images=images,
                notes=request.notes,
            ),
        )
        if not request.run_comparison or previous is None:
            tracking = await asyncio.to_thread(self.case_repository.update_tracking, tracking_id, owner_id, {})
            return ComparisonOutcome(tracking=tracking, snapshot=snapshot)

        outcome = await self._compare(
            tracking,
            previous,
            snapshot,
            owner_id,
            time_elapsed=request.time_elapsed,
            language=request.language,
        )
        outcome.snapshot = snapshot
        return outcome

    async def compare_snapshots(
        self,
        tracking_id: str,
        request: CompareSnapshotsRequest,
        owner_id: str,
    ) -> ComparisonOutcome:
        tracking = await asyncio.to_thread(self.case_repository.get_tracking, tracking_id, owner_id)
        if request.previous_snapshot_id == request.current_snapshot_id:
            raise AnalysisValidationError("Choose two different snapshots to compare.")
        previous = await asyncio.to_thread(self.case_repository.get_snapshot, request.previous_snapshot_id)
        current = await asyncio.to_thread(self.case_repository.get_snapshot, request.current_snapshot_id)
        for snapshot in (previous, current):
            if snapshot.tracking_id != tracking_id:
                raise KeyError(f"Lesion snapshot not found: {snapshot.id}")
        return await self._compare(
            tracking,
            previous,
            current,
            owner_id,
            time_elapsed=request.time_elapsed,
            language=request.language,
        )

    def _previous_diagnosis(self, snapshot: LesionSnapshot, owner_id: str) -> Optional[Diagnosis]:
        if not snapshot.case_id:
            return None
        try:
            case = self.case_repository.get_case(snapshot.case_id, owner_id)
        except KeyError:
            return None
        if not case.final_diagnoses:
            return None
        top = case.final_diagnoses[0]
        return Diagnosis(
            name=top.name,
            confidence=top.confidence,
            description=top.description,
            key_features=top.key_features,
            recommendations=top.recommendations,
        )

    async def _compare(
        self,
        tracking: LesionTracking,
        previous: LesionSnapshot,
        current: LesionSnapshot,
        owner_id: str,
        *,
        time_elapsed: Optional[str],
        language: Optional[str],
    ) -> ComparisonOutcome:
        settings = await asyncio.to_thread(self.case_repository.get_user_settings, owner_id)
        language = (language or settings.language or "en").lower()
        context = ComparisonContext(
            lesion_name=tracking.name,
            body_location=tracking.body_location,
            previous_diagnosis=await asyncio.to_thread(self._previous_diagnosis, previous, owner_id),
            language=language,
        )
        result = await self.comparison_engine.compare(previous, current, time_elapsed, context)
        if isinstance(result, ProviderFailure):
            logger.warning(
                "Comparison failed for tracking %s (%s -> %s): %s",
                tracking.id,
                previous.id,
                current.id,
                result.code.value,
            )
            return ComparisonOutcome(tracking=tracking, failure=result)

        comparison = LesionComparison(
            id=str(uuid.uuid4()),
            tracking_id=tracking.id,
            previous_snapshot_id=previous.id,
            current_snapshot_id=current.id,
            analysis=result,
        )
        try:
            comparison = await asyncio.to_thread(self.case_repository.save_comparison, comparison)
            fields: Dict[str, Any] = {}
            if result.risk_level == RiskLevel.HIGH:
                fields["status"] = TrackingStatus.URGENT
            tracking = await asyncio.to_thread(
                self.case_repository.update_tracking, tracking.id, owner_id, fields
            )
        except Exception as exc:
            logger.exception("Failed to persist comparison for tracking %s: %s", tracking.id, exc)
            raise PersistenceError("Comparison could not be saved. Retry the request.") from exc

        if result.risk_level == RiskLevel.HIGH:
            self._track_background(
                asyncio.ensure_future(self._notify_lesion(tracking, comparison, owner_id, language))
            )
        return ComparisonOutcome(tracking=tracking, comparison=comparison)

    async def _notify_lesion(
        self,
        tracking: LesionTracking,
        comparison: LesionComparison,
        owner_id: str,
        language: str,
    ) -> None:
        tokens = await asyncio.to_thread(self.case_repository.list_push_tokens, owner_id)
        if tokens:
            await self.notifier.notify_lesion_urgent(tracking, comparison, tokens, language)

    def get_comparison_detail(self, comparison_id: str, owner_id: str) -> ComparisonDetailResponse:
        comparison = self.case_repository.get_comparison(comparison_id)
        tracking = self.case_repository.get_tracking(comparison.tracking_id, owner_id)

        def _snapshot(snapshot_id: str) -> Optional[LesionSnapshot]:
            try:
                return self.case_repository.get_snapshot(snapshot_id)
            except KeyError:
                return None

        return ComparisonDetailResponse(
            comparison=comparison,
            previous_snapshot=_snapshot(comparison.previous_snapshot_id),
            current_snapshot=_snapshot(comparison.current_snapshot_id),
            tracking=tracking,
        )


orchestrator = DermaAnalysisOrchestrator()

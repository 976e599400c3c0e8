import asyncio
import threading

import pytest

from case_repository import InMemoryCaseRepository
from errors import AnalysisValidationError, CaseBusyError, PersistenceError
from lesion_comparison import SEEK_EVALUATION_RECOMMENDATION
from models import (
    AddSnapshotRequest,
    AnalysisState,
    AnalyzeCaseRequest,
    CaseStatus,
    ClinicalContext,
    CompareSnapshotsRequest,
    CreateLesionTrackingRequest,
    Diagnosis,
    FailureCode,
    ImageInput,
    ProviderName,
    ProviderResult,
    RiskLevel,
    TrackingStatus,
    UpdateSettingsRequest,
)
from notifications import PushNotifier
from orchestrator import DermaAnalysisOrchestrator

OWNER = "user-1"
IMAGE = ImageInput(data="ZmFrZWltYWdl", mime_type="image/jpeg")
CONTEXT = ClinicalContext(symptoms=["itching"], lesion_location="forearm", duration="2 weeks")


def _result(provider, *items):
    return ProviderResult(
        provider=provider,
        model=f"fake-{provider.value}",
        diagnoses=[Diagnosis(name=name, confidence=confidence) for name, confidence in items],
    )


GEMINI_RESULT = _result(ProviderName.GEMINI, ("Eczema", 85), ("Psoriasis", 35), ("Melanoma", 30))
OPENAI_RESULT = _result(ProviderName.OPENAI, ("eczema", 75), ("Contact dermatitis", 60), ("Lichen planus", 35))


@pytest.fixture
def repository():
    return InMemoryCaseRepository()


@pytest.fixture
def build(repository, fake_adapter):
    def _build(gemini=GEMINI_RESULT, openai=OPENAI_RESULT, compare_outcome=None):
        gemini_adapter = fake_adapter(ProviderName.GEMINI, gemini, compare_outcome=compare_outcome)
        openai_adapter = fake_adapter(ProviderName.OPENAI, openai)
        return DermaAnalysisOrchestrator(
            case_repository=repository,
            gemini_adapter=gemini_adapter,
            openai_adapter=openai_adapter,
            notifier=PushNotifier(mode="off"),
        )

    return _build


def _request(**overrides):
    payload = {"images": [IMAGE], "context": CONTEXT}
    payload.update(overrides)
    return AnalyzeCaseRequest(**payload)


def test_full_success_merges_filters_and_persists(build, repository):
    orch = build()

    outcome = asyncio.run(orch.analyze_case(_request(), OWNER))

    assert outcome.state == AnalysisState.MERGING
    assert outcome.states == [
        AnalysisState.STARTED,
        AnalysisState.PROVIDERS_RUNNING,
        AnalysisState.MERGING,
        AnalysisState.FILTERED,
        AnalysisState.PERSISTED,
    ]
    assert outcome.errors == []
    record = outcome.record
    assert record.status == CaseStatus.COMPLETED
    assert record.case_id.startswith("DR-")
    assert [(d.rank, d.name, d.confidence, d.is_urgent) for d in record.final_diagnoses] == [
        (1, "Eczema", 80, False),
        (2, "Contact dermatitis", 60, False),
        (3, "Melanoma", 30, True),
    ]
    assert record.consensus.top_diagnosis == "Eczema"
    assert record.consensus.supporting_providers == 2
    assert record.gemini_analysis == GEMINI_RESULT
    assert record.openai_analysis == OPENAI_RESULT
    assert [t.agent for t in record.traces] == ["GeminiProvider", "OpenaiProvider", "DermaAnalysisOrchestrator"]
    assert repository.get_case(record.id, OWNER).final_diagnoses == record.final_diagnoses


def test_user_threshold_is_applied(build):
    orch = build()
    orch.update_settings(OWNER, UpdateSettingsRequest(confidence_threshold=70))

    outcome = asyncio.run(orch.analyze_case(_request(), OWNER))

    assert [d.name for d in outcome.record.final_diagnoses] == ["Eczema", "Melanoma"]


def test_partial_failure_completes_with_one_error(build, failure):
    orch = build(openai=failure(ProviderName.OPENAI, code="RATE_LIMIT"))

    outcome = asyncio.run(orch.analyze_case(_request(), OWNER))

    assert outcome.state == AnalysisState.PARTIAL_FAILED
    assert outcome.record.status == CaseStatus.COMPLETED
    assert outcome.record.openai_analysis is None
    assert outcome.record.consensus is None
    assert [e.code for e in outcome.errors] == [FailureCode.RATE_LIMIT]
    assert "openai (RATE_LIMIT)" in outcome.message()
    assert [d.name for d in outcome.record.final_diagnoses] == ["Eczema", "Melanoma"]


def test_total_failure_leaves_case_pending(build, failure, repository):
    orch = build(
        gemini=failure(ProviderName.GEMINI, code="TIMEOUT"),
        openai=failure(ProviderName.OPENAI, code="AUTH_ERROR"),
    )

    outcome = asyncio.run(orch.analyze_case(_request(), OWNER))

    assert outcome.all_failed
    assert {e.provider for e in outcome.errors} == {ProviderName.GEMINI, ProviderName.OPENAI}
    stored = repository.get_case(outcome.record.id, OWNER)
    assert stored.status == CaseStatus.PENDING
    assert stored.final_diagnoses is None
    response = outcome.to_response()
    assert response.analysis_state == AnalysisState.ALL_FAILED
    assert len(response.analysis_errors) == 2


def test_failed_reanalysis_keeps_previous_results(build, failure, repository):
    orch = build()
    first = asyncio.run(orch.analyze_case(_request(), OWNER))
    orch.gemini_adapter.outcome = failure(ProviderName.GEMINI)
    orch.openai_adapter.outcome = failure(ProviderName.OPENAI)

    outcome = asyncio.run(orch.reanalyze_case(first.record.case_id, OWNER))

    assert outcome.all_failed
    stored = repository.get_case(first.record.id, OWNER)
    assert stored.status == CaseStatus.COMPLETED
    assert stored.final_diagnoses == first.record.final_diagnoses


def test_empty_final_list_is_still_completed(build, failure):
    orch = build(gemini=_result(ProviderName.GEMINI, ("Acne", 10)), openai=failure(ProviderName.OPENAI))

    outcome = asyncio.run(orch.analyze_case(_request(), OWNER))

    assert outcome.record.status == CaseStatus.COMPLETED
    assert outcome.record.final_diagnoses == []


def test_input_validation(build):
    orch = build()
    with pytest.raises(AnalysisValidationError):
        asyncio.run(orch.analyze_case(_request(images=[]), OWNER))
    with pytest.raises(AnalysisValidationError):
        asyncio.run(orch.analyze_case(_request(context=ClinicalContext()), OWNER))
    assert orch.gemini_adapter.calls == 0


def test_extra_images_are_truncated(build):
    orch = build()
    outcome = asyncio.run(orch.analyze_case(_request(images=[IMAGE] * 4), OWNER))
    assert len(outcome.record.images) == 3


def test_missing_case_raises_key_error(build):
    orch = build()
    with pytest.raises(KeyError):
        asyncio.run(orch.reanalyze_case("DR-2025-FFFFFF", OWNER))


def test_concurrent_analysis_of_same_case_is_rejected(build):
    orch = build()

    async def scenario():
        first = await orch.analyze_case(_request(), OWNER)
        gate = asyncio.Event()
        orch.gemini_adapter.gate = gate
        expected_calls = orch.gemini_adapter.calls + 1
        running = asyncio.ensure_future(orch.reanalyze_case(first.record.id, OWNER))
        while orch.gemini_adapter.calls < expected_calls:
            await asyncio.sleep(0.01)
        with pytest.raises(CaseBusyError):
            await orch.reanalyze_case(first.record.id, OWNER)
        gate.set()
        return await running

    outcome = asyncio.run(scenario())
    assert outcome.record.status == CaseStatus.COMPLETED


def test_cancelled_analysis_discards_provider_results(build, repository):
    orch = build()

    async def scenario():
        gate = asyncio.Event()
        orch.gemini_adapter.gate = gate
        expected_calls = 1
        task = asyncio.ensure_future(orch.analyze_case(_request(), OWNER))
        while orch.gemini_adapter.calls < expected_calls:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        gate.set()
        await orch.drain_background()

    asyncio.run(scenario())

    assert orch.gemini_adapter.completed == 1
    [stored] = repository.list_cases(OWNER)
    assert stored.status == CaseStatus.PENDING
    assert stored.final_diagnoses is None
    assert orch._running == set()


def test_persistence_failure_is_reported(build, repository, monkeypatch):
    orch = build()

    def broken_update(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(repository, "update_case", broken_update)

    with pytest.raises(PersistenceError):
        asyncio.run(orch.analyze_case(_request(), OWNER))
    [stored] = repository.list_cases(OWNER)
    assert stored.status == CaseStatus.PENDING


def test_settings_and_push_tokens(build):
    orch = build()

    assert orch.get_settings(OWNER).confidence_threshold == 40
    updated = orch.update_settings(OWNER, UpdateSettingsRequest(language="tr", is_health_professional=True))
    assert updated.language == "tr"
    assert updated.is_health_professional is True
    assert updated.confidence_threshold == 40

    assert orch.register_push_token(OWNER, " ExponentPushToken[abc] ") is True
    assert orch.case_repository.list_push_tokens(OWNER) == ["ExponentPushToken[abc]"]
    with pytest.raises(ValueError):
        orch.register_push_token(OWNER, "not-a-token")


def test_high_risk_comparison_marks_tracking_urgent(build):
    orch = build(compare_outcome={"overallProgression": "worsened", "riskLevel": "high"})
    first = asyncio.run(orch.analyze_case(_request(), OWNER))

    detail = orch.create_tracking(
        CreateLesionTrackingRequest(name="Forearm patch", initial_case_id=first.record.case_id),
        OWNER,
    )
    assert detail.tracking.body_location == "forearm"
    assert len(detail.snapshots) == 1

    outcome = asyncio.run(orch.add_snapshot(detail.tracking.id, AddSnapshotRequest(images=[IMAGE]), OWNER))

    assert outcome.failure is None
    assert outcome.tracking.status == TrackingStatus.URGENT
    assert outcome.comparison.analysis.risk_level == RiskLevel.HIGH
    assert outcome.comparison.analysis.recommendations[0] == SEEK_EVALUATION_RECOMMENDATION
    assert "Eczema" in orch.gemini_adapter.instructions[0]
    stored = orch.get_tracking_detail(detail.tracking.id, OWNER)
    assert stored.tracking.status == TrackingStatus.URGENT
    assert [c.id for c in stored.comparisons] == [outcome.comparison.id]


def test_first_snapshot_skips_comparison(build):
    orch = build(compare_outcome={"overallProgression": "stable", "riskLevel": "low"})
    tracking = orch.create_tracking(CreateLesionTrackingRequest(name="Back mole"), OWNER).tracking

    outcome = asyncio.run(orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE]), OWNER))

    assert outcome.comparison is None
    assert outcome.snapshot is not None
    assert orch.gemini_adapter.calls == 0


def test_failed_comparison_is_not_saved(build, failure):
    orch = build(compare_outcome=failure(ProviderName.GEMINI, code="RATE_LIMIT"))
    tracking = orch.create_tracking(CreateLesionTrackingRequest(name="Back mole"), OWNER).tracking
    asyncio.run(orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE], run_comparison=False), OWNER))

    outcome = asyncio.run(orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE]), OWNER))

    assert outcome.failure.code == FailureCode.RATE_LIMIT
    assert outcome.comparison is None
    detail = orch.get_tracking_detail(tracking.id, OWNER)
    assert detail.comparisons == []
    assert len(detail.snapshots) == 2
    assert detail.tracking.status == TrackingStatus.ACTIVE


def test_compare_snapshots_requires_two_snapshots_of_the_tracking(build):
    orch = build(compare_outcome={"overallProgression": "improved", "riskLevel": "low"})
    tracking = orch.create_tracking(CreateLesionTrackingRequest(name="Back mole"), OWNER).tracking
    other = orch.create_tracking(CreateLesionTrackingRequest(name="Scalp"), OWNER).tracking
    first = asyncio.run(orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE]), OWNER)).snapshot
    second = asyncio.run(
        orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE], run_comparison=False), OWNER)
    ).snapshot
    foreign = asyncio.run(orch.add_snapshot(other.id, AddSnapshotRequest(images=[IMAGE]), OWNER)).snapshot

    with pytest.raises(AnalysisValidationError):
        asyncio.run(
            orch.compare_snapshots(
                tracking.id,
                CompareSnapshotsRequest(previous_snapshot_id=first.id, current_snapshot_id=first.id),
                OWNER,
            )
        )
    with pytest.raises(KeyError):
        asyncio.run(
            orch.compare_snapshots(
                tracking.id,
                CompareSnapshotsRequest(previous_snapshot_id=first.id, current_snapshot_id=foreign.id),
                OWNER,
            )
        )

    outcome = asyncio.run(
        orch.compare_snapshots(
            tracking.id,
            CompareSnapshotsRequest(previous_snapshot_id=first.id, current_snapshot_id=second.id),
            OWNER,
        )
    )
    detail = orch.get_comparison_detail(outcome.comparison.id, OWNER)
    assert detail.previous_snapshot.id == first.id
    assert detail.current_snapshot.id == second.id
    assert detail.tracking.status == TrackingStatus.ACTIVE
    with pytest.raises(KeyError):
        orch.get_comparison_detail(outcome.comparison.id, "user-2")


def test_tracking_is_private_to_its_owner(build):
    orch = build()
    tracking = orch.create_tracking(CreateLesionTrackingRequest(name="Back mole"), OWNER).tracking

    with pytest.raises(KeyError):
        orch.get_tracking_detail(tracking.id, "user-2")
    assert orch.list_trackings("user-2") == []
    assert orch.delete_tracking(tracking.id, "user-2") is False
    assert orch.delete_tracking(tracking.id, OWNER) is True


def test_final_list_is_capped_but_keeps_urgent_findings(build):
    orch = build(
        gemini=_result(
            ProviderName.GEMINI,
            ("Eczema", 90),
            ("Psoriasis", 85),
            ("Tinea", 80),
            ("Rosacea", 75),
            ("Acne", 70),
        ),
        openai=_result(ProviderName.OPENAI, ("Urticaria", 65), ("Scabies", 60), ("Melanoma", 20)),
    )

    outcome = asyncio.run(orch.analyze_case(_request(), OWNER))

    assert orch.max_final_diagnoses == 5
    assert [(d.rank, d.name) for d in outcome.record.final_diagnoses] == [
        (1, "Eczema"),
        (2, "Psoriasis"),
        (3, "Tinea"),
        (4, "Rosacea"),
        (5, "Melanoma"),
    ]


class _ThreadRecordingRepository(InMemoryCaseRepository):
    def __init__(self):
        super().__init__()
        self.threads = {}

    def _record(self, name):
        self.threads.setdefault(name, set()).add(threading.get_ident())

    def get_user_settings(self, owner_id):
        self._record("get_user_settings")
        return super().get_user_settings(owner_id)

    def add_snapshot(self, snapshot):
        self._record("add_snapshot")
        return super().add_snapshot(snapshot)

    def list_snapshots(self, tracking_id):
        self._record("list_snapshots")
        return super().list_snapshots(tracking_id)

    def update_tracking(self, tracking_id, owner_id, fields):
        self._record("update_tracking")
        return super().update_tracking(tracking_id, owner_id, fields)


def test_async_flows_keep_repository_calls_off_the_event_loop(build):
    orch = build(compare_outcome={"overallProgression": "stable", "riskLevel": "low"})
    repository = _ThreadRecordingRepository()
    orch.case_repository = repository
    tracking = orch.create_tracking(CreateLesionTrackingRequest(name="Back mole"), OWNER).tracking
    repository.threads.clear()

    async def scenario():
        await orch.analyze_case(_request(), OWNER)
        await orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE]), OWNER)
        await orch.add_snapshot(tracking.id, AddSnapshotRequest(images=[IMAGE]), OWNER)
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert {"get_user_settings", "add_snapshot", "list_snapshots", "update_tracking"} <= set(repository.threads)
    assert all(loop_thread not in idents for idents in repository.threads.values())

import pytest
from fastapi.testclient import TestClient

from case_repository import InMemoryCaseRepository
from main import app
from models import Diagnosis, ProviderName, ProviderResult
from notifications import PushNotifier
from orchestrator import orchestrator


client = TestClient(app)

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}
ANALYZE_BODY = {
    "images": [{"data": "ZmFrZWltYWdl", "mimeType": "image/jpeg"}],
    "context": {"symptoms": ["itching", "scaling"], "lesionLocation": "elbow", "duration": "1 month"},
}


def _result(provider, *items):
    return ProviderResult(
        provider=provider,
        model=f"fake-{provider.value}",
        diagnoses=[Diagnosis(name=name, confidence=confidence) for name, confidence in items],
    )


@pytest.fixture(autouse=True)
def fakes(monkeypatch, fake_adapter):
    gemini = fake_adapter(
        ProviderName.GEMINI,
        _result(ProviderName.GEMINI, ("Psoriasis", 82), ("Eczema", 50), ("Melanoma", 12)),
        compare_outcome={"overallProgression": "stable", "riskLevel": "low"},
    )
    openai = fake_adapter(ProviderName.OPENAI, _result(ProviderName.OPENAI, ("psoriasis", 78), ("Tinea", 20)))
    monkeypatch.setattr(orchestrator, "case_repository", InMemoryCaseRepository())
    monkeypatch.setattr(orchestrator, "gemini_adapter", gemini)
    monkeypatch.setattr(orchestrator, "openai_adapter", openai)
    monkeypatch.setattr(orchestrator, "notifier", PushNotifier(mode="off"))
    monkeypatch.setattr(orchestrator.comparison_engine, "adapter", gemini)
    return gemini, openai


def test_health_reports_provider_status():
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["providers"] == {"gemini": True, "openai": True}
    assert body["pushMode"] == "off"


def test_requests_without_user_are_rejected():
    assert client.post("/api/cases/analyze", json=ANALYZE_BODY).status_code == 401
    assert client.get("/api/cases").status_code == 401
    assert client.get("/api/settings").status_code == 401


def test_analyze_case_end_to_end():
    resp = client.post("/api/cases/analyze", json=ANALYZE_BODY, headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["analysisState"] == "merging"
    assert body["analysisErrors"] == []
    assert [(d["rank"], d["name"], d["confidence"], d["isUrgent"]) for d in body["finalDiagnoses"]] == [
        (1, "Psoriasis", 80, False),
        (2, "Eczema", 50, False),
        (3, "Melanoma", 12, True),
    ]
    assert "urgencySignal" not in body["finalDiagnoses"][0]
    assert body["consensus"]["topDiagnosis"] == "Psoriasis"

    listed = client.get("/api/cases", headers=USER).json()
    assert [c["caseId"] for c in listed] == [body["caseId"]]

    fetched = client.get(f"/api/cases/{body['caseId']}", headers=USER)
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]
    assert client.get(f"/api/cases/{body['id']}", headers=OTHER_USER).status_code == 404


def test_analyze_requires_images_and_context():
    no_images = client.post("/api/cases/analyze", json={**ANALYZE_BODY, "images": []}, headers=USER)
    no_context = client.post("/api/cases/analyze", json={"images": ANALYZE_BODY["images"]}, headers=USER)
    assert no_images.status_code == 400
    assert no_context.status_code == 400


def test_partial_failure_returns_200_with_errors(fakes, failure):
    _, openai = fakes
    openai.outcome = failure(ProviderName.OPENAI, code="TIMEOUT")

    resp = client.post("/api/cases/analyze", json=ANALYZE_BODY, headers=USER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["analysisState"] == "partial_failed"
    assert [(e["provider"], e["code"]) for e in body["analysisErrors"]] == [("openai", "TIMEOUT")]
    assert body["consensus"] is None


def test_total_failure_returns_502_and_case_stays_pending(fakes, failure):
    gemini, openai = fakes
    gemini.outcome = failure(ProviderName.GEMINI, code="RATE_LIMIT")
    openai.outcome = failure(ProviderName.OPENAI, code="INVALID_IMAGE")

    resp = client.post("/api/cases/analyze", json=ANALYZE_BODY, headers=USER)

    assert resp.status_code == 502
    body = resp.json()
    assert body["status"] == "pending"
    assert body["analysisState"] == "all_failed"
    assert {e["code"] for e in body["analysisErrors"]} == {"RATE_LIMIT", "INVALID_IMAGE"}
    assert all(e["hint"] for e in body["analysisErrors"])
    stored = client.get(f"/api/cases/{body['id']}", headers=USER).json()
    assert stored["status"] == "pending"


def test_reanalyze_and_delete_case(fakes):
    created = client.post("/api/cases/analyze", json=ANALYZE_BODY, headers=USER).json()

    again = client.post(f"/api/cases/{created['caseId']}/analyze", headers=USER)
    assert again.status_code == 200
    assert again.json()["id"] == created["id"]
    assert client.post("/api/cases/DR-2025-000000/analyze", headers=USER).status_code == 404

    assert client.delete(f"/api/cases/{created['id']}", headers=OTHER_USER).status_code == 404
    deleted = client.delete(f"/api/cases/{created['id']}", headers=USER)
    assert deleted.status_code == 200
    assert deleted.json()["success"] is True
    assert client.get(f"/api/cases/{created['id']}", headers=USER).status_code == 404


def test_persistence_failure_returns_500(monkeypatch):
    def broken_update(*args, **kwargs):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(orchestrator.case_repository, "update_case", broken_update)

    resp = client.post("/api/cases/analyze", json=ANALYZE_BODY, headers=USER)

    assert resp.status_code == 500
    assert "could not be saved" in resp.json()["detail"]


def test_settings_round_trip_and_threshold_effect():
    assert client.get("/api/settings", headers=USER).json()["confidenceThreshold"] == 40

    updated = client.put("/api/settings", json={"confidenceThreshold": 60, "language": "tr"}, headers=USER)
    assert updated.status_code == 200
    assert updated.json()["confidenceThreshold"] == 60
    assert updated.json()["language"] == "tr"

    body = client.post("/api/cases/analyze", json=ANALYZE_BODY, headers=USER).json()
    assert [d["name"] for d in body["finalDiagnoses"]] == ["Psoriasis", "Melanoma"]
    assert body["language"] == "tr"


def test_settings_validation():
    assert client.put("/api/settings", json={"confidenceThreshold": 140}, headers=USER).status_code == 422
    assert client.put("/api/settings", json={"language": "de"}, headers=USER).status_code == 400


def test_push_token_registration():
    ok = client.post("/api/push-tokens", json={"token": "ExponentPushToken[xyz]"}, headers=USER)
    assert ok.status_code == 200
    assert ok.json() == {"success": True, "registered": True}
    assert client.post("/api/push-tokens", json={"token": "garbage"}, headers=USER).status_code == 400


def test_lesion_tracking_flow(fakes):
    gemini, _ = fakes
    created = client.post(
        "/api/lesion-trackings",
        json={"name": "Right elbow plaque", "bodyLocation": "right elbow"},
        headers=USER,
    )
    assert created.status_code == 200
    tracking_id = created.json()["tracking"]["id"]

    first = client.post(
        f"/api/lesion-trackings/{tracking_id}/snapshots",
        json={"images": ANALYZE_BODY["images"]},
        headers=USER,
    )
    assert first.status_code == 200
    assert first.json()["comparison"] is None

    gemini.compare_outcome = {"overallProgression": "worsened", "riskLevel": "high", "borderChange": "irregular"}
    second = client.post(
        f"/api/lesion-trackings/{tracking_id}/snapshots",
        json={"images": ANALYZE_BODY["images"], "timeElapsed": "6 weeks"},
        headers=USER,
    )
    assert second.status_code == 200
    comparison = second.json()["comparison"]
    assert comparison["analysis"]["riskLevel"] == "high"
    assert comparison["analysis"]["timeElapsed"] == "6 weeks"

    detail = client.get(f"/api/lesion-trackings/{tracking_id}", headers=USER).json()
    assert detail["tracking"]["status"] == "urgent"
    assert len(detail["snapshots"]) == 2
    assert len(detail["comparisons"]) == 1

    fetched = client.get(f"/api/lesion-comparisons/{comparison['id']}", headers=USER)
    assert fetched.status_code == 200
    assert fetched.json()["currentSnapshot"]["id"] == second.json()["snapshot"]["id"]
    assert client.get(f"/api/lesion-comparisons/{comparison['id']}", headers=OTHER_USER).status_code == 404

    renamed = client.patch(
        f"/api/lesion-trackings/{tracking_id}",
        json={"name": "Elbow plaque", "status": "archived"},
        headers=USER,
    )
    assert renamed.status_code == 200
    assert renamed.json()["status"] == "archived"

    assert client.get("/api/lesion-trackings", headers=OTHER_USER).json() == []
    assert client.delete(f"/api/lesion-trackings/{tracking_id}", headers=USER).status_code == 200
    assert client.get(f"/api/lesion-trackings/{tracking_id}", headers=USER).status_code == 404


@pytest.mark.parametrize("code, status", [("RATE_LIMIT", 429), ("TIMEOUT", 504), ("UPSTREAM_ERROR", 502)])
def test_comparison_failure_status_codes(fakes, failure, code, status):
    gemini, _ = fakes
    tracking_id = client.post("/api/lesion-trackings", json={"name": "Mole"}, headers=USER).json()["tracking"]["id"]
    first = client.post(
        f"/api/lesion-trackings/{tracking_id}/snapshots",
        json={"images": ANALYZE_BODY["images"], "runComparison": False},
        headers=USER,
    ).json()["snapshot"]
    second = client.post(
        f"/api/lesion-trackings/{tracking_id}/snapshots",
        json={"images": ANALYZE_BODY["images"], "runComparison": False},
        headers=USER,
    ).json()["snapshot"]
    gemini.compare_outcome = failure(ProviderName.GEMINI, code=code)

    resp = client.post(
        f"/api/lesion-trackings/{tracking_id}/compare",
        json={"previousSnapshotId": first["id"], "currentSnapshotId": second["id"]},
        headers=USER,
    )

    assert resp.status_code == status
    body = resp.json()
    assert body["error"] == "comparison_failed"
    assert body["code"] == code
    assert body["trackingId"] == tracking_id
    assert body["snapshotId"] == second["id"]


def test_compare_rejects_same_snapshot():
    tracking_id = client.post("/api/lesion-trackings", json={"name": "Mole"}, headers=USER).json()["tracking"]["id"]
    snapshot = client.post(
        f"/api/lesion-trackings/{tracking_id}/snapshots",
        json={"images": ANALYZE_BODY["images"]},
        headers=USER,
    ).json()["snapshot"]

    resp = client.post(
        f"/api/lesion-trackings/{tracking_id}/compare",
        json={"previousSnapshotId": snapshot["id"], "currentSnapshotId": snapshot["id"]},
        headers=USER,
    )
    assert resp.status_code == 400

import asyncio
import json

import httpx

from models import CaseRecord, FinalDiagnosis, LesionComparison, LesionComparisonAnalysis, LesionTracking
from notifications import PushNotifier, is_expo_push_token

TOKENS = ["ExponentPushToken[aaa]", "not-a-token"]


def _record(*diagnoses, language="en"):
    return CaseRecord(
        id="case-1",
        case_id="DR-2025-0A0B0C",
        owner_id="user-1",
        language=language,
        final_diagnoses=list(diagnoses),
    )


def _recording_notifier(batches, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        batches.append(json.loads(request.content))
        return httpx.Response(status, json={"data": []})

    return PushNotifier(mode="expo", push_url="https://push.test/send", transport=httpx.MockTransport(handler))


def test_token_format():
    assert is_expo_push_token("ExponentPushToken[abc]")
    assert is_expo_push_token("ExpoPushToken[abc]")
    assert not is_expo_push_token("ExponentPushToken[abc")
    assert not is_expo_push_token("")


def test_completed_analysis_sends_urgent_alert_when_flagged():
    batches = []
    notifier = _recording_notifier(batches)
    record = _record(
        FinalDiagnosis(rank=1, name="Eczema", confidence=80),
        FinalDiagnosis(rank=2, name="Melanoma", confidence=30, is_urgent=True),
    )

    sent = asyncio.run(notifier.notify_analysis_completed(record, TOKENS))

    assert sent == 2
    assert [batch[0]["data"]["type"] for batch in batches] == ["analysis-complete", "urgent-alert"]
    assert all(len(batch) == 1 and batch[0]["to"] == TOKENS[0] for batch in batches)
    assert "Eczema" in batches[0][0]["body"]
    assert batches[1][0]["priority"] == "high"
    assert "priority" not in batches[0][0]


def test_messages_follow_case_language():
    batches = []
    asyncio.run(
        _recording_notifier(batches).notify_analysis_completed(
            _record(FinalDiagnosis(rank=1, name="Egzama", confidence=70), language="tr"),
            TOKENS,
        )
    )
    assert batches[0][0]["title"] == "Analiz Tamamlandı"


def test_lesion_alert_is_high_priority():
    batches = []
    tracking = LesionTracking(id="trk-1", owner_id="user-1", name="Back mole")
    comparison = LesionComparison(
        id="cmp-1",
        tracking_id="trk-1",
        previous_snapshot_id="s1",
        current_snapshot_id="s2",
        analysis=LesionComparisonAnalysis(change_detected=True, overall_progression="worsened", risk_level="high"),
    )

    sent = asyncio.run(_recording_notifier(batches).notify_lesion_urgent(tracking, comparison, TOKENS))

    assert sent == 1
    assert batches[0][0]["data"] == {"type": "urgent-alert", "trackingId": "trk-1", "comparisonId": "cmp-1"}
    assert batches[0][0]["channelId"] == "urgent"


def test_off_mode_and_delivery_errors_do_not_raise():
    batches = []
    off = PushNotifier(mode="off", transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    failing = _recording_notifier(batches, status=500)

    assert asyncio.run(off.send(TOKENS, "t", "b")) == 0
    assert asyncio.run(failing.send(TOKENS, "t", "b")) == 0
    assert len(batches) == 1

"""
Push notification delivery.

Supports runtime modes:
- off: events are logged and dropped
- expo: messages are posted to the Expo push API
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from env_loader import env_float, env_str, load_service_env
from models import CaseRecord, LesionComparison, LesionTracking

logger = logging.getLogger(__name__)

load_service_env()

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_BATCH_SIZE = 100

_MESSAGES = {
    "en": {
        "complete_title": "Analysis Complete",
        "complete_body": "Case {case_id} analysis is ready: {top}",
        "urgent_title": "Urgent Finding",
        "urgent_body": "Case {case_id} flagged {name}. Please review immediately.",
        "lesion_title": "Lesion Change Alert",
        "lesion_body": "{name} shows high-risk changes. Please review immediately.",
    },
    "tr": {
        "complete_title": "Analiz Tamamlandı",
        "complete_body": "{case_id} vakasının analizi hazır: {top}",
        "urgent_title": "Acil Bulgu",
        "urgent_body": "{case_id} vakasında {name} tespit edildi. Lütfen hemen inceleyin.",
        "lesion_title": "Lezyon Değişikliği Uyarısı",
        "lesion_body": "{name} yüksek riskli değişiklik gösteriyor. Lütfen hemen inceleyin.",
    },
}


def is_expo_push_token(token: str) -> bool:
    token = (token or "").strip()
    return token.startswith(("ExponentPushToken[", "ExpoPushToken[")) and token.endswith("]")


class PushNotifier:
    def __init__(
        self,
        mode: Optional[str] = None,
        push_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.mode = (mode or env_str("DERMA_PUSH_MODE", "off")).strip().lower()
        if self.mode not in {"off", "expo"}:
            logger.warning("Unsupported DERMA_PUSH_MODE=%s; defaulting to off.", self.mode)
            self.mode = "off"
        self.push_url = push_url or env_str("DERMA_EXPO_PUSH_URL", EXPO_PUSH_URL)
        self.timeout_seconds = max(1.0, env_float("DERMA_PUSH_TIMEOUT_SECONDS", 10.0))
        self.transport = transport

    async def send(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        urgent: bool = False,
    ) -> int:
        """
        Returns the number of messages handed to the push service.
        Delivery failures are logged and swallowed.
        """
        valid = [t for t in tokens if is_expo_push_token(t)]
        skipped = len(tokens) - len(valid)
        if skipped:
            logger.warning("Skipping %d invalid push token(s).", skipped)
        if self.mode == "off" or not valid:
            logger.info("Push not sent | mode=%s | tokens=%d | title=%s", self.mode, len(valid), title)
            return 0

        messages: List[Dict[str, Any]] = []
        for token in valid:
            message: Dict[str, Any] = {
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": data or {},
            }
            if urgent:
                message["priority"] = "high"
                message["channelId"] = "urgent"
            messages.append(message)

        sent = 0
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout_seconds) as client:
                for start in range(0, len(messages), EXPO_BATCH_SIZE):
                    batch = messages[start : start + EXPO_BATCH_SIZE]
                    resp = await client.post(
                        self.push_url,
                        json=batch,
                        headers={"Accept": "application/json"},
                    )
                    resp.raise_for_status()
                    sent += len(batch)
        except httpx.HTTPError as exc:
            logger.warning("Push delivery failed after %d message(s): %s", sent, exc)
        return sent

    async def notify_analysis_completed(self, record: CaseRecord, tokens: Sequence[str]) -> int:
        text = _MESSAGES.get(record.language, _MESSAGES["en"])
        top = record.final_diagnoses[0].name if record.final_diagnoses else "-"
        sent = await self.send(
            tokens,
            text["complete_title"],
            text["complete_body"].format(case_id=record.case_id, top=top),
            {"type": "analysis-complete", "caseId": record.id},
        )
        urgent = [d for d in record.final_diagnoses or [] if d.is_urgent]
        if urgent:
            sent += await self.send(
                tokens,
                text["urgent_title"],
                text["urgent_body"].format(case_id=record.case_id, name=urgent[0].name),
                {"type": "urgent-alert", "caseId": record.id},
                urgent=True,
            )
        return sent

    async def notify_lesion_urgent(
        self,
        tracking: LesionTracking,
        comparison: LesionComparison,
        tokens: Sequence[str],
        language: str = "en",
    ) -> int:
        text = _MESSAGES.get(language, _MESSAGES["en"])
        return await self.send(
            tokens,
            text["lesion_title"],
            text["lesion_body"].format(name=tracking.name),
            {"type": "urgent-alert", "trackingId": tracking.id, "comparisonId": comparison.id},
            urgent=True,
        )

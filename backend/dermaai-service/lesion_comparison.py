"""
Lesion comparison engine.

Single-provider counterpart of the diagnosis pipeline: one Gemini call compares
two snapshots of a tracked lesion and the decoded payload is normalized into a
`LesionComparisonAnalysis`. A high risk level always leads the recommendations
with an explicit in-person evaluation entry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union

from env_loader import env_float, load_service_env
from models import (
    Diagnosis,
    FailureCode,
    LesionComparisonAnalysis,
    LesionSnapshot,
    OverallProgression,
    ProviderFailure,
    RiskLevel,
)
from normalizer import collapse_whitespace
from prompts import PromptBuilder
from provider_clients import FAILURE_HINTS, GeminiProviderAdapter, ProviderAdapter
from tools import describe_elapsed

logger = logging.getLogger(__name__)

load_service_env()

SEEK_EVALUATION_RECOMMENDATION = (
    "Seek an in-person evaluation by a dermatologist as soon as possible."
)

PROGRESSION_ALIASES = {
    "stable": OverallProgression.STABLE,
    "unchanged": OverallProgression.STABLE,
    "no change": OverallProgression.STABLE,
    "no_change": OverallProgression.STABLE,
    "improved": OverallProgression.IMPROVED,
    "improving": OverallProgression.IMPROVED,
    "worsened": OverallProgression.WORSENED,
    "worsening": OverallProgression.WORSENED,
    "progressed": OverallProgression.WORSENED,
    "significant_change": OverallProgression.SIGNIFICANT_CHANGE,
    "significant change": OverallProgression.SIGNIFICANT_CHANGE,
    "significant": OverallProgression.SIGNIFICANT_CHANGE,
}

RISK_ALIASES = {
    "low": RiskLevel.LOW,
    "moderate": RiskLevel.MODERATE,
    "medium": RiskLevel.MODERATE,
    "elevated": RiskLevel.ELEVATED,
    "high": RiskLevel.HIGH,
    "critical": RiskLevel.HIGH,
    "urgent": RiskLevel.HIGH,
}


@dataclass
class ComparisonContext:
    lesion_name: str
    body_location: Optional[str] = None
    previous_diagnosis: Optional[Diagnosis] = None
    language: Optional[str] = "en"


def _enum_value(raw: Any, aliases: Mapping[str, Any], field_name: str) -> Any:
    key = collapse_whitespace(raw).lower().replace("-", "_")
    if key in aliases:
        return aliases[key]
    spaced = key.replace("_", " ")
    if spaced in aliases:
        return aliases[spaced]
    raise ValueError(f"Unrecognized {field_name}: {raw!r}")


def _optional_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none", "n/a", "no change"}:
        return None
    return text


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "0"}:
        return False
    return None


def ensure_escalation(recommendations: List[str], risk_level: RiskLevel) -> List[str]:
    if risk_level != RiskLevel.HIGH:
        return recommendations
    rest = [r for r in recommendations if r.casefold() != SEEK_EVALUATION_RECOMMENDATION.casefold()]
    return [SEEK_EVALUATION_RECOMMENDATION, *rest]


def normalize_comparison(
    payload: Mapping[str, Any],
    *,
    time_elapsed: str,
    analysis_time_seconds: float = 0.0,
) -> LesionComparisonAnalysis:
    """
    Raises ValueError when progression or risk level is missing or unknown.
    """
    progression = _enum_value(
        payload.get("overallProgression") or payload.get("overall_progression"),
        PROGRESSION_ALIASES,
        "overallProgression",
    )
    risk_level = _enum_value(
        payload.get("riskLevel") or payload.get("risk_level"),
        RISK_ALIASES,
        "riskLevel",
    )
    changes = {
        "size_change": _optional_text(payload.get("sizeChange", payload.get("size_change"))),
        "color_change": _optional_text(payload.get("colorChange", payload.get("color_change"))),
        "border_change": _optional_text(payload.get("borderChange", payload.get("border_change"))),
        "texture_change": _optional_text(payload.get("textureChange", payload.get("texture_change"))),
    }
    change_detected = _as_bool(payload.get("changeDetected", payload.get("change_detected")))
    if change_detected is None:
        change_detected = progression != OverallProgression.STABLE or any(changes.values())

    raw_recommendations = payload.get("recommendations") or []
    if isinstance(raw_recommendations, str):
        raw_recommendations = [raw_recommendations]
    recommendations: List[str] = []
    for item in raw_recommendations if isinstance(raw_recommendations, list) else []:
        text = _optional_text(item)
        if text and text not in recommendations:
            recommendations.append(text)

    detailed = payload.get("detailedAnalysis", payload.get("detailed_analysis"))
    return LesionComparisonAnalysis(
        change_detected=change_detected,
        overall_progression=progression,
        risk_level=risk_level,
        recommendations=ensure_escalation(recommendations, risk_level),
        detailed_analysis=detailed.strip() if isinstance(detailed, str) else "",
        time_elapsed=time_elapsed,
        analysis_time_seconds=round(max(0.0, analysis_time_seconds), 3),
        **changes,
    )


class LesionComparisonEngine:
    def __init__(
        self,
        adapter: Optional[ProviderAdapter] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.adapter = adapter or GeminiProviderAdapter()
        self.timeout_seconds = max(
            1.0,
            timeout_seconds
            if timeout_seconds is not None
            else env_float("DERMA_PROVIDER_TIMEOUT_SECONDS", 60.0),
        )
        self.prompts = PromptBuilder()

    async def compare(
        self,
        previous: LesionSnapshot,
        current: LesionSnapshot,
        time_elapsed: Optional[str],
        context: ComparisonContext,
    ) -> Union[LesionComparisonAnalysis, ProviderFailure]:
        elapsed = (time_elapsed or "").strip() or describe_elapsed(previous.captured_at, current.captured_at)
        instruction = self.prompts.comparison_instruction(
            lesion_name=context.lesion_name,
            body_location=context.body_location,
            time_elapsed=elapsed,
            previous_diagnosis=context.previous_diagnosis,
            language=context.language,
        )
        started = time.perf_counter()
        outcome = await self.adapter.compare(
            previous.images,
            current.images,
            instruction,
            self.timeout_seconds,
        )
        if isinstance(outcome, ProviderFailure):
            return outcome

        try:
            analysis = normalize_comparison(
                outcome,
                time_elapsed=elapsed,
                analysis_time_seconds=time.perf_counter() - started,
            )
        except ValueError as exc:
            logger.warning("Comparison payload rejected for snapshot=%s: %s", current.id, exc)
            return ProviderFailure(
                provider=self.adapter.provider,
                code=FailureCode.INVALID_RESPONSE,
                message=str(exc),
                hint=FAILURE_HINTS[FailureCode.INVALID_RESPONSE],
            )
        return analysis


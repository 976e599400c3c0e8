"""
Diagnosis normalizer.

Maps each provider's raw diagnosis items onto the canonical `Diagnosis` shape:
- confidence clamped to [0, 100] and rounded half-up
- missing list fields become empty lists
- names trimmed for display; `name_key` gives the case-insensitive match key
- items without a usable name are dropped without failing the provider call

Normalizing an already normalized list returns an equal list.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Iterable, List, Mapping, Optional

from models import Diagnosis

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

NAME_KEYS = ("name", "diagnosis", "condition", "label")
CONFIDENCE_KEYS = ("confidence", "confidenceScore", "confidence_score", "score")
PROBABILITY_KEYS = ("probability",)
DESCRIPTION_KEYS = ("description", "summary", "rationale")
FEATURE_KEYS = ("keyFeatures", "key_features", "features")
RECOMMENDATION_KEYS = ("recommendations", "recommendedActions", "recommended_actions")
URGENT_FLAG_KEYS = ("urgencySignal", "urgency_signal", "urgent", "isUrgent", "is_urgent")
URGENT_LEVEL_KEYS = ("severity", "urgency")
URGENT_LEVELS = {"urgent", "high", "critical", "severe", "emergency"}


def collapse_whitespace(text: Any) -> str:
    return _WHITESPACE.sub(" ", str(text or "")).strip()


def name_key(name: Any) -> str:
    return collapse_whitespace(name).casefold()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_confidence(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def parse_confidence(value: Any, *, probability: bool = False) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().rstrip("%").strip()
        try:
            number = float(text)
        except ValueError:
            return 0
    else:
        return 0
    if not math.isfinite(number):
        return 0
    if probability and 0.0 <= number <= 1.0:
        number *= 100.0
    return clamp_confidence(number)


def _first(raw: Mapping[str, Any], keys: Iterable[str]) -> Optional[Any]:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _text_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    seen = set()
    out: List[str] = []
    for item in value:
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            continue
        text = str(item).strip()
        if not text or text.casefold() in seen:
            continue
        seen.add(text.casefold())
        out.append(text)
    return out


def _urgency_signal(raw: Mapping[str, Any]) -> bool:
    for key in URGENT_FLAG_KEYS:
        if raw.get(key) is True:
            return True
    level = _first(raw, URGENT_LEVEL_KEYS)
    return isinstance(level, str) and level.strip().lower() in URGENT_LEVELS


def normalize_diagnosis(raw: Any) -> Optional[Diagnosis]:
    if isinstance(raw, Diagnosis):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, Mapping):
        return None

    name = _first(raw, NAME_KEYS)
    if not isinstance(name, str) or not collapse_whitespace(name):
        return None

    confidence_raw = _first(raw, CONFIDENCE_KEYS)
    if confidence_raw is not None:
        confidence = parse_confidence(confidence_raw)
    else:
        confidence = parse_confidence(_first(raw, PROBABILITY_KEYS), probability=True)

    description = _first(raw, DESCRIPTION_KEYS)
    return Diagnosis(
        name=collapse_whitespace(name),
        confidence=confidence,
        description=description.strip() if isinstance(description, str) else "",
        key_features=_text_list(_first(raw, FEATURE_KEYS)),
        recommendations=_text_list(_first(raw, RECOMMENDATION_KEYS)),
        urgency_signal=_urgency_signal(raw),
    )


def normalize_diagnoses(
    items: Optional[Iterable[Any]],
    *,
    max_items: Optional[int] = None,
    source: str = "provider",
) -> List[Diagnosis]:
    """
    Provider order is preserved; a repeated name keeps its first occurrence.
    """
    out: List[Diagnosis] = []
    seen = set()
    dropped = 0
    for raw in items or []:
        diagnosis = normalize_diagnosis(raw)
        if diagnosis is None:
            dropped += 1
            continue
        key = name_key(diagnosis.name)
        if key in seen:
            continue
        seen.add(key)
        out.append(diagnosis)

    if dropped:
        logger.warning("Dropped %d malformed diagnosis item(s) from %s.", dropped, source)
    if max_items is not None and max_items > 0:
        out = out[:max_items]
    return out

"""
Urgency classification and confidence filtering for merged diagnoses.

Both run after merging and neither looks at ranking: urgency depends only on
the diagnosis name and the providers' explicit urgency markers, and urgent
diagnoses always survive the confidence filter.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from consensus import renumber_ranks
from models import FinalDiagnosis
from normalizer import name_key

DEFAULT_CONFIDENCE_THRESHOLD = 40

# Conditions that warrant expedited dermatology referral.
URGENT_CONDITIONS = (
    "melanoma",
    "basal cell carcinoma",
    "squamous cell carcinoma",
    "merkel cell carcinoma",
    "lentigo maligna",
    "keratoacanthoma",
    "dermatofibrosarcoma",
    "kaposi sarcoma",
    "cutaneous lymphoma",
    "mycosis fungoides",
    "stevens-johnson syndrome",
    "toxic epidermal necrolysis",
    "necrotizing fasciitis",
)


def urgent_keywords(extra: Optional[Iterable[str]] = None) -> tuple[str, ...]:
    keywords = list(URGENT_CONDITIONS)
    for item in extra or []:
        key = name_key(item)
        if key and key not in keywords:
            keywords.append(key)
    return tuple(keywords)


def is_urgent_condition(
    name: str,
    urgency_signal: bool = False,
    keywords: Sequence[str] = URGENT_CONDITIONS,
) -> bool:
    if urgency_signal:
        return True
    key = name_key(name)
    return any(keyword in key for keyword in keywords)


def classify_urgency(
    diagnoses: Sequence[FinalDiagnosis],
    keywords: Sequence[str] = URGENT_CONDITIONS,
) -> List[FinalDiagnosis]:
    return [
        d.model_copy(
            update={"is_urgent": d.is_urgent or is_urgent_condition(d.name, d.urgency_signal, keywords)}
        )
        for d in diagnoses
    ]


def resolve_threshold(value: Optional[int], default: int = DEFAULT_CONFIDENCE_THRESHOLD) -> int:
    if value is None:
        value = default
    return max(0, min(100, int(value)))


def filter_by_confidence(
    diagnoses: Sequence[FinalDiagnosis],
    threshold: int,
    max_results: Optional[int] = None,
) -> List[FinalDiagnosis]:
    """
    Drops diagnoses below `threshold` unless urgent, then renumbers ranks 1..N.

    With `max_results`, only the highest-ranked non-urgent diagnoses are kept
    up to that total. Urgent diagnoses are never cut.
    """
    threshold = resolve_threshold(threshold)
    kept = [d for d in diagnoses if d.is_urgent or d.confidence >= threshold]
    if max_results is not None:
        room = max(0, max_results - sum(1 for d in kept if d.is_urgent))
        capped: List[FinalDiagnosis] = []
        for diagnosis in kept:
            if diagnosis.is_urgent:
                capped.append(diagnosis)
            elif room > 0:
                capped.append(diagnosis)
                room -= 1
        kept = capped
    return renumber_ranks(kept)

"""
Consensus merger.

Combines the two providers' normalized diagnosis lists into one ranked,
deduplicated `FinalDiagnosis` list. A failed provider contributes an empty list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from models import ConsensusIndicator, Diagnosis, FinalDiagnosis, ProviderName
from normalizer import name_key, round_half_up

DEFAULT_MAX_DISPLAY_ITEMS = 8


@dataclass
class _MergeEntry:
    key: str
    order: int
    support: Dict[ProviderName, Diagnosis] = field(default_factory=dict)


def _union(first: Sequence[str], second: Sequence[str], cap: int) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in list(first) + list(second):
        marker = item.casefold()
        if marker in seen:
            continue
        seen.add(marker)
        out.append(item)
    return out[: max(1, cap)]


def _collect(
    lists: Sequence[tuple[ProviderName, Sequence[Diagnosis]]],
) -> List[_MergeEntry]:
    entries: Dict[str, _MergeEntry] = {}
    for provider, diagnoses in lists:
        for diagnosis in diagnoses:
            key = name_key(diagnosis.name)
            if not key:
                continue
            entry = entries.get(key)
            if entry is None:
                entry = _MergeEntry(key=key, order=len(entries))
                entries[key] = entry
            # First occurrence wins within a single provider's list.
            entry.support.setdefault(provider, diagnosis)
    return list(entries.values())


def _merge_entry(
    entry: _MergeEntry,
    providers: Sequence[ProviderName],
    max_items: int,
) -> FinalDiagnosis:
    supporting = [(p, entry.support[p]) for p in providers if p in entry.support]
    first_provider, first = supporting[0]

    if len(supporting) == 1:
        return FinalDiagnosis(
            rank=1,
            name=first.name,
            confidence=first.confidence,
            description=first.description,
            key_features=first.key_features[:max_items],
            recommendations=first.recommendations[:max_items],
            sources=[first_provider],
            urgency_signal=first.urgency_signal,
        )

    second_provider, second = supporting[1]
    preferred, other = (first, second) if first.confidence >= second.confidence else (second, first)
    return FinalDiagnosis(
        rank=1,
        name=first.name,
        confidence=round_half_up((first.confidence + second.confidence) / 2),
        description=preferred.description or other.description,
        key_features=_union(first.key_features, second.key_features, max_items),
        recommendations=_union(first.recommendations, second.recommendations, max_items),
        sources=[first_provider, second_provider],
        urgency_signal=first.urgency_signal or second.urgency_signal,
    )


def renumber_ranks(diagnoses: Sequence[FinalDiagnosis]) -> List[FinalDiagnosis]:
    return [d.model_copy(update={"rank": idx}) for idx, d in enumerate(diagnoses, start=1)]


def merge_diagnoses(
    primary: Sequence[Diagnosis],
    secondary: Sequence[Diagnosis],
    *,
    primary_provider: ProviderName = ProviderName.GEMINI,
    secondary_provider: ProviderName = ProviderName.OPENAI,
    max_items: int = DEFAULT_MAX_DISPLAY_ITEMS,
) -> List[FinalDiagnosis]:
    """
    Matched names take the rounded mean confidence and provider A's casing.
    Sorted by descending confidence; ties keep first appearance (A's list, then B's).
    """
    providers = (primary_provider, secondary_provider)
    entries = _collect([(primary_provider, primary), (secondary_provider, secondary)])
    merged = [(entry, _merge_entry(entry, providers, max_items)) for entry in entries]
    merged.sort(key=lambda pair: (-pair[1].confidence, pair[0].order))
    return renumber_ranks([final for _, final in merged])


def compute_consensus(
    diagnoses: Sequence[FinalDiagnosis],
    *,
    both_succeeded: bool,
    total_providers: int = 2,
) -> Optional[ConsensusIndicator]:
    if not both_succeeded or not diagnoses:
        return None
    top = diagnoses[0]
    supporting = max(1, min(total_providers, len(top.sources)))
    return ConsensusIndicator(
        top_diagnosis=top.name,
        supporting_providers=supporting,
        total_providers=total_providers,
        agreement=supporting / total_providers,
    )

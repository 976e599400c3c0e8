"""
Prompt builders for the dermatology providers.

Provides:
- the differential-diagnosis instruction shared by both providers
- the lesion progression (snapshot comparison) instruction
"""

from __future__ import annotations

from typing import List, Optional

from models import ClinicalContext, Diagnosis

_LANGUAGE_NAMES = {"en": "English", "tr": "Turkish"}

DIAGNOSIS_JSON_EXAMPLE = """{
  "diagnoses": [
    {
      "name": "Diagnosis name",
      "confidence": 85,
      "description": "Brief clinical description",
      "keyFeatures": ["Feature 1", "Feature 2", "Feature 3"],
      "recommendations": ["Recommendation 1", "Recommendation 2"],
      "severity": "low | moderate | high | critical"
    }
  ]
}"""

COMPARISON_JSON_EXAMPLE = """{
  "changeDetected": true,
  "sizeChange": "Description or null",
  "colorChange": "Description or null",
  "borderChange": "Description or null",
  "textureChange": "Description or null",
  "overallProgression": "stable | improved | worsened | significant_change",
  "riskLevel": "low | moderate | elevated | high",
  "recommendations": ["Recommendation 1"],
  "detailedAnalysis": "Narrative comparison"
}"""

NON_LESION_RULE = (
    'If an image does not show human skin, respond only with {"error": true, '
    '"message": "<short reason>"}.'
)


def _language_rule(language: Optional[str]) -> str:
    name = _LANGUAGE_NAMES.get((language or "en").lower(), "English")
    return f"Write all free-text fields in {name}; keep JSON keys and enum values in English."


class PromptBuilder:
    def __init__(self, max_diagnoses: int = 5) -> None:
        self.max_diagnoses = max(1, max_diagnoses)

    def context_lines(self, context: ClinicalContext) -> List[str]:
        lines = [
            f"- Patient symptoms: {', '.join(context.symptoms) or 'Not specified'}",
            f"- Lesion location: {context.lesion_location or 'Not specified'}",
            f"- Medical history: {', '.join(context.medical_history) or 'None specified'}",
        ]
        if context.duration:
            lines.append(f"- Duration: {context.duration}")
        if context.patient_age is not None:
            lines.append(f"- Age: {context.patient_age}")
        if context.patient_sex:
            lines.append(f"- Sex: {context.patient_sex}")
        if context.skin_type:
            lines.append(f"- Fitzpatrick skin type: {context.skin_type}")
        if context.additional_notes:
            lines.append(f"- Notes: {context.additional_notes}")
        return lines

    def diagnosis_instruction(
        self,
        context: ClinicalContext,
        language: Optional[str] = "en",
        is_health_professional: bool = False,
    ) -> str:
        audience = (
            "The reader is a health professional; use clinical terminology."
            if is_health_professional
            else "The reader may not be a clinician; keep descriptions plain."
        )
        return "\n".join(
            [
                "You are an expert dermatologist AI assistant. Analyze the provided skin lesion "
                "image(s) and patient information to provide differential diagnoses.",
                "",
                "Consider:",
                "- Visual characteristics of the lesion (color, shape, size, texture, borders)",
                *self.context_lines(context),
                "",
                f"Provide exactly {self.max_diagnoses} differential diagnoses ranked by confidence, "
                "with confidence scores between 0-100. Mark severity as high or critical for "
                "findings that need expedited referral.",
                audience,
                _language_rule(language),
                NON_LESION_RULE,
                "",
                "Respond with JSON in this exact format:",
                DIAGNOSIS_JSON_EXAMPLE,
            ]
        )

    def comparison_instruction(
        self,
        *,
        lesion_name: str,
        body_location: Optional[str],
        time_elapsed: str,
        previous_diagnosis: Optional[Diagnosis] = None,
        language: Optional[str] = "en",
    ) -> str:
        previous = "No prior AI assessment is available."
        if previous_diagnosis is not None:
            features = ", ".join(previous_diagnosis.key_features) or "none recorded"
            previous = (
                f"Prior top assessment: {previous_diagnosis.name} "
                f"({previous_diagnosis.confidence}% confidence; features: {features})."
            )
        return "\n".join(
            [
                "You are an expert dermatologist AI assistant monitoring a tracked skin lesion.",
                "The first group of images is the PREVIOUS snapshot; the second group is the "
                "CURRENT snapshot of the same lesion.",
                "",
                f"- Lesion: {lesion_name}",
                f"- Body location: {body_location or 'Not specified'}",
                f"- Time between snapshots: {time_elapsed or 'unknown'}",
                f"- {previous}",
                "",
                "Compare size, color, border and texture (ABCDE criteria). Use null for an "
                "aspect with no visible change. Set riskLevel to high when changes suggest "
                "malignant transformation.",
                _language_rule(language),
                NON_LESION_RULE,
                "",
                "Respond with JSON in this exact format:",
                COMPARISON_JSON_EXAMPLE,
            ]
        )

"""
Risk Assessor

Maps an AnalysisResult and the animal type onto a risk tier and a set of
recommendations.  Pure and deterministic: no I/O, no clock, no randomness.

Tier rules (top candidate, severity on a 1-5 scale plus per-animal offset):
  high   - veterinary_required and severity >= HIGH_SEVERITY_THRESHOLD
  high   - severity >= HIGH_SEVERITY_THRESHOLD and confidence below
           LOW_CONFIDENCE_THRESHOLD (uncertainty about danger escalates)
  medium - veterinary_required and severity >= MODERATE_SEVERITY_THRESHOLD
  medium - severity >= HIGH_SEVERITY_THRESHOLD (never low)
  low    - everything else
An empty result is medium: ambiguity never defaults to low.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pashucare.config import settings
from pashucare.core.knowledge_base import KnowledgeBaseSnapshot
from pashucare.models.schemas import (
    AnalysisResult,
    AnimalType,
    Provenance,
    Recommendation,
    RiskAssessment,
    RiskTier,
)

# Treatment tier used for each risk tier; tiers are never mixed.
TREATMENT_TIER_FOR_RISK: dict[RiskTier, str] = {
    RiskTier.LOW: "home_care",
    RiskTier.MEDIUM: "veterinary",
    RiskTier.HIGH: "emergency",
}

_GENERIC_DIRECTIVES: dict[RiskTier, str] = {
    RiskTier.LOW: (
        "Keep the animal in a clean, shaded place with fresh water and feed, "
        "and watch for any worsening."
    ),
    RiskTier.MEDIUM: (
        "Arrange a visit to a veterinarian or the nearest veterinary "
        "dispensary within the next day."
    ),
    RiskTier.HIGH: (
        "Take the animal to the nearest veterinary hospital immediately and "
        "isolate it from the rest of the herd."
    ),
}

UNDETERMINED_TEXT = (
    "We could not determine the likely condition from this description. "
    "Please seek input from a veterinarian or para-vet."
)


@dataclass(frozen=True)
class RiskThresholds:
    high_severity: int = 4
    moderate_severity: int = 3
    low_confidence: float = 0.5
    default_reassess_hours: int = 24
    animal_severity_offsets: dict[str, int] = field(default_factory=dict)
    emergency_contact: str = ""
    disclaimer: str = ""

    @classmethod
    def from_settings(cls) -> "RiskThresholds":
        return cls(
            high_severity=settings.HIGH_SEVERITY_THRESHOLD,
            moderate_severity=settings.MODERATE_SEVERITY_THRESHOLD,
            low_confidence=settings.LOW_CONFIDENCE_THRESHOLD,
            default_reassess_hours=settings.DEFAULT_REASSESS_HOURS,
            animal_severity_offsets=dict(settings.ANIMAL_SEVERITY_OFFSETS),
            emergency_contact=settings.EMERGENCY_CONTACT,
            disclaimer=settings.DISCLAIMER,
        )


def classify_tier(
    severity: int,
    veterinary_required: bool,
    confidence: float,
    thresholds: RiskThresholds,
) -> RiskTier:
    """Tier for a single condition; see module docstring for the rules."""
    if veterinary_required and severity >= thresholds.high_severity:
        return RiskTier.HIGH
    if severity >= thresholds.high_severity and confidence < thresholds.low_confidence:
        return RiskTier.HIGH
    if veterinary_required and severity >= thresholds.moderate_severity:
        return RiskTier.MEDIUM
    if severity >= thresholds.high_severity:
        return RiskTier.MEDIUM
    return RiskTier.LOW


class RiskAssessor:
    """Stateless assessor; holds only its thresholds."""

    def __init__(self, thresholds: Optional[RiskThresholds] = None) -> None:
        self.thresholds = thresholds or RiskThresholds.from_settings()

    def assess(
        self,
        result: AnalysisResult,
        animal_type: AnimalType,
        snapshot: KnowledgeBaseSnapshot,
    ) -> RiskAssessment:
        t = self.thresholds

        if not result.candidates:
            factors = ["no_candidate_conditions"]
            if result.provenance != Provenance.NORMAL:
                factors.append(f"provenance={result.provenance.value}")
            return RiskAssessment(
                tier=RiskTier.MEDIUM,
                factors=factors,
                recommendations=[Recommendation(kind="general", text=UNDETERMINED_TEXT)],
                disclaimer=t.disclaimer,
                reassess_within_hours=t.default_reassess_hours,
            )

        top = result.candidates[0]
        disease = snapshot.disease(top.condition_id)
        veterinary_required = disease.veterinary_required if disease else True
        base_severity = disease.severity if disease else top.severity
        severity = base_severity + t.animal_severity_offsets.get(animal_type.value, 0)

        tier = classify_tier(severity, veterinary_required, top.confidence, t)

        factors = [
            f"top_condition={top.condition_id}",
            f"severity={severity}",
            f"confidence={top.confidence:.2f}",
        ]
        if veterinary_required:
            factors.append("veterinary_required")
        if severity >= t.high_severity and top.confidence < t.low_confidence:
            factors.append("low_confidence_on_severe_condition")
        if top.source.value != "ai":
            factors.append(f"source={top.source.value}")
        if result.provenance != Provenance.NORMAL:
            factors.append(f"provenance={result.provenance.value}")

        treatment_tier = TREATMENT_TIER_FOR_RISK[tier]
        recommendations = [
            Recommendation(kind=treatment_tier, text=step)
            for treatment in snapshot.treatments_for(top.condition_id, treatment_tier, animal_type)
            for step in treatment.steps
        ]
        if not recommendations:
            recommendations.append(Recommendation(kind=treatment_tier, text=_GENERIC_DIRECTIVES[tier]))
        if tier == RiskTier.HIGH:
            recommendations.append(Recommendation(
                kind="emergency_contact",
                text=f"Call the emergency veterinary helpline: {t.emergency_contact}",
            ))

        reassess = (disease.reassess_hours if disease else None) or t.default_reassess_hours
        return RiskAssessment(
            tier=tier,
            factors=factors,
            recommendations=recommendations,
            disclaimer=t.disclaimer,
            reassess_within_hours=reassess,
        )

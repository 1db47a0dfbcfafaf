"""
Symptom Analyzer

Turns one validated submission into an ordered list of candidate conditions.

Pipeline:
  1. validate_symptom_input - reject unusable input before any AI call
  2. AI call through the circuit breaker (text and/or photo + animal type)
  3. map AI condition names onto knowledge-base ids (exact, then fuzzy);
     unmatched names are dropped with a provenance note
  4. keyword pass over the text against symptom keyword lists, with capped
     confidence (source = fallback_keyword)
  5. merge, sort by confidence desc / severity desc / id asc

AI failure never propagates: a bypassed, failed, slow or malformed AI call
leaves only the keyword pass and marks the result circuit_broken_fallback.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from pashucare.config import settings
from pashucare.core.ai_service import AIConditionGuess, AIRequest, AIService
from pashucare.core.circuit_breaker import CircuitBreaker
from pashucare.core.errors import CircuitOpenError, UpstreamUnavailable
from pashucare.core.knowledge_base import KnowledgeBase, KnowledgeBaseSnapshot
from pashucare.core.name_matcher import FuzzyNameMatcher, NameMatcher
from pashucare.core.validation import normalize_mime_type, validate_symptom_input
from pashucare.models.schemas import (
    AnalysisResult,
    AnimalType,
    CandidateCondition,
    CandidateSource,
    Provenance,
    SymptomInput,
)

logger = logging.getLogger(__name__)


def sort_candidates(candidates: Iterable[CandidateCondition]) -> list[CandidateCondition]:
    """Confidence descending, then severity descending, then id ascending."""
    return sorted(candidates, key=lambda c: (-c.confidence, -c.severity, c.condition_id))


def merge_candidates(*groups: Iterable[CandidateCondition]) -> list[CandidateCondition]:
    """Keep one candidate per condition id, the most confident one.

    Earlier groups win ties, so AI-derived candidates should come first.
    """
    best: dict[str, CandidateCondition] = {}
    for group in groups:
        for candidate in group:
            current = best.get(candidate.condition_id)
            if current is None or candidate.confidence > current.confidence:
                best[candidate.condition_id] = candidate
    return sort_candidates(best.values())


class SymptomAnalyzer:
    """Produces AnalysisResults from SymptomInputs.

    Args:
        ai_service: The external diagnosis service.
        breaker: Shared circuit breaker guarding ``ai_service``.
        knowledge_base: Reloadable knowledge base.
        matcher: Name matcher; defaults to FuzzyNameMatcher.
        call_timeout: Per-call AI timeout in seconds.
        fallback_cap: Upper bound on keyword-derived confidence.
    """

    def __init__(
        self,
        ai_service: AIService,
        breaker: CircuitBreaker,
        knowledge_base: KnowledgeBase,
        matcher: Optional[NameMatcher] = None,
        call_timeout: Optional[float] = None,
        fallback_cap: Optional[float] = None,
    ) -> None:
        self.ai_service = ai_service
        self.breaker = breaker
        self.knowledge_base = knowledge_base
        self.matcher = matcher or FuzzyNameMatcher(settings.FUZZY_MATCH_THRESHOLD)
        self.call_timeout = call_timeout if call_timeout is not None else settings.AI_CALL_TIMEOUT_SECONDS
        self.fallback_cap = fallback_cap if fallback_cap is not None else settings.FALLBACK_CONFIDENCE_CAP

    async def analyze(
        self,
        animal_type: AnimalType,
        symptom_input: SymptomInput,
        snapshot: Optional[KnowledgeBaseSnapshot] = None,
    ) -> AnalysisResult:
        """Analyze one submission.

        Raises:
            InputValidationError: the input is unusable.  No AI call is made.
        """
        validate_symptom_input(symptom_input)
        started = time.perf_counter()
        snapshot = snapshot or self.knowledge_base.current()
        language = symptom_input.language

        provenance = Provenance.NORMAL
        notes: list[str] = []
        ai_candidates: list[CandidateCondition] = []
        ai_latency_ms = 0.0

        request = AIRequest(
            animal_type=animal_type,
            text=(symptom_input.text or "").strip() or None,
            image_bytes=symptom_input.image.data if symptom_input.image else None,
            image_mime_type=normalize_mime_type(symptom_input.image.mime_type) if symptom_input.image else None,
            language=language,
        )

        ai_started = time.perf_counter()
        try:
            guesses = await self.breaker.call(
                lambda: self.ai_service.diagnose(request),
                timeout=self.call_timeout,
            )
        except CircuitOpenError:
            provenance = Provenance.CIRCUIT_BROKEN_FALLBACK
            notes.append("AI service bypassed: circuit open")
        except UpstreamUnavailable as exc:
            ai_latency_ms = (time.perf_counter() - ai_started) * 1000
            provenance = Provenance.CIRCUIT_BROKEN_FALLBACK
            notes.append(f"AI service unavailable: {type(exc).__name__}")
        else:
            ai_latency_ms = (time.perf_counter() - ai_started) * 1000
            ai_candidates, unmatched = self._map_guesses(guesses, animal_type, snapshot, language)
            if unmatched:
                provenance = Provenance.PARTIAL_KB_DEGRADED
                notes.extend(f"Discarded unrecognised condition {name!r}" for name in unmatched)

        fallback = self.keyword_candidates(animal_type, symptom_input.text, snapshot, language)
        candidates = merge_candidates(ai_candidates, fallback)

        result = AnalysisResult(
            candidates=candidates,
            overall_confidence=max((c.confidence for c in candidates), default=0.0),
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            ai_latency_ms=round(ai_latency_ms, 2),
            provenance=provenance,
            notes=notes,
            language=language,
            knowledge_base_version=snapshot.version,
        )
        logger.info(
            "analyze: animal=%s provenance=%s candidates=%d ai=%d fallback=%d "
            "latency_ms=%.1f ai_latency_ms=%.1f notes=%s",
            animal_type.value, provenance.value, len(candidates), len(ai_candidates),
            len(fallback), result.latency_ms, result.ai_latency_ms, notes,
        )
        return result

    def fallback_only(
        self,
        animal_type: AnimalType,
        symptom_input: SymptomInput,
        snapshot: KnowledgeBaseSnapshot,
        note: str,
    ) -> AnalysisResult:
        """Keyword-only result, used when the pipeline deadline expires."""
        started = time.perf_counter()
        candidates = sort_candidates(
            self.keyword_candidates(animal_type, symptom_input.text, snapshot, symptom_input.language)
        )
        return AnalysisResult(
            candidates=candidates,
            overall_confidence=max((c.confidence for c in candidates), default=0.0),
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            ai_latency_ms=0.0,
            provenance=Provenance.CIRCUIT_BROKEN_FALLBACK,
            notes=[note],
            language=symptom_input.language,
            knowledge_base_version=snapshot.version,
        )

    def keyword_candidates(
        self,
        animal_type: AnimalType,
        text: Optional[str],
        snapshot: KnowledgeBaseSnapshot,
        language: str = "en",
    ) -> list[CandidateCondition]:
        """Score diseases by the share of their symptoms mentioned in ``text``.

        confidence = cap * matched_symptoms / disease_symptoms, so a keyword
        match can never outrank a confident AI answer.
        """
        if not text or not text.strip():
            return []
        matched = snapshot.match_symptoms(text)
        if not matched:
            return []

        candidates = []
        for disease in snapshot.diseases_for(animal_type):
            if not disease.symptom_ids:
                continue
            overlap = len(matched.intersection(disease.symptom_ids))
            if not overlap:
                continue
            confidence = round(self.fallback_cap * overlap / len(set(disease.symptom_ids)), 4)
            candidates.append(CandidateCondition(
                condition_id=disease.condition_id,
                name=disease.display_name(language),
                confidence=min(confidence, self.fallback_cap),
                severity=disease.severity,
                source=CandidateSource.FALLBACK_KEYWORD,
            ))
        return candidates

    def _map_guesses(
        self,
        guesses: list[AIConditionGuess],
        animal_type: AnimalType,
        snapshot: KnowledgeBaseSnapshot,
        language: str,
    ) -> tuple[list[CandidateCondition], list[str]]:
        choices = dict(snapshot.name_choices(animal_type))
        mapped: dict[str, CandidateCondition] = {}
        unmatched: list[str] = []

        for guess in guesses:
            condition_id = self.matcher.match(guess.condition_name, choices)
            if condition_id is None:
                unmatched.append(guess.condition_name)
                other = self.matcher.match(guess.condition_name, snapshot.all_name_choices())
                logger.info(
                    "analyze: unmatched AI condition name=%r animal=%s known_for_other_species=%s",
                    guess.condition_name, animal_type.value, other is not None,
                )
                continue
            disease = snapshot.diseases[condition_id]
            candidate = CandidateCondition(
                condition_id=condition_id,
                name=disease.display_name(language),
                confidence=guess.confidence,
                severity=disease.severity,
                source=CandidateSource.AI,
            )
            existing = mapped.get(condition_id)
            if existing is None or candidate.confidence > existing.confidence:
                mapped[condition_id] = candidate

        return list(mapped.values()), unmatched

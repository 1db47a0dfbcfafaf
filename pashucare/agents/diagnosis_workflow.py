"""
Diagnosis Workflow

LangGraph workflow: analyze -> assess -> find_hospitals (medium/high only)
Wrapped by DiagnosisOrchestrator, the single entry point used by the HTTP
layer.  The orchestrator validates input, consults the connectivity state,
routes offline submissions through the OfflineQueue, enforces the global
pipeline deadline and attaches ranked facilities when the risk calls for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional, TypedDict

from langgraph.graph import END, StateGraph

from pashucare.agents.risk_assessor import RiskAssessor
from pashucare.agents.symptom_analyzer import SymptomAnalyzer
from pashucare.config import settings
from pashucare.core import distance_ranker
from pashucare.core.ai_service import GeminiDiagnosisService
from pashucare.core.circuit_breaker import CircuitBreaker, CircuitState
from pashucare.core.errors import InputValidationError, QueueExhausted, UpstreamUnavailable
from pashucare.core.facility_directory import FacilityDirectory, FacilitySnapshot
from pashucare.core.gemini_client import gemini_client
from pashucare.core.knowledge_base import KnowledgeBase, KnowledgeBaseSnapshot
from pashucare.core.validation import validate_symptom_input
from pashucare.memory.connectivity import ConnectivityMonitor
from pashucare.memory.offline_queue import OfflineQueue
from pashucare.memory.store import InMemoryStore, JsonFileStore
from pashucare.models.schemas import (
    AnalysisResult,
    Coordinates,
    DiagnosisResponse,
    Hospital,
    LocationInput,
    Provenance,
    QueuedRequest,
    RiskAssessment,
    RiskTier,
    SymptomInput,
    SyncReport,
)

logger = logging.getLogger(__name__)

QUEUE_REASON_OFFLINE = "offline"
QUEUE_REASON_CIRCUIT_OPEN = "circuit_open"


# ---------------------------------------------------------------------------
# State schema
# ---------------------------------------------------------------------------

class DiagnosisState(TypedDict):
    input: SymptomInput
    coordinates: Optional[Coordinates]
    knowledge_base: KnowledgeBaseSnapshot
    facilities: FacilitySnapshot
    analysis: Optional[AnalysisResult]
    risk: Optional[RiskAssessment]
    hospitals: Optional[list[Hospital]]


def _needs_hospitals(risk: RiskAssessment) -> bool:
    return risk.tier in (RiskTier.MEDIUM, RiskTier.HIGH)


# ---------------------------------------------------------------------------
# Build and compile the graph
# ---------------------------------------------------------------------------

def build_diagnosis_graph(orchestrator: "DiagnosisOrchestrator"):
    """Construct the LangGraph StateGraph for one submission.

    Returns:
        A compiled LangGraph graph.
    """

    async def analyze(state: DiagnosisState) -> dict:
        symptom_input = state["input"]
        analysis = await orchestrator.analyzer.analyze(
            symptom_input.animal_type, symptom_input, snapshot=state["knowledge_base"],
        )
        return {"analysis": analysis}

    async def assess(state: DiagnosisState) -> dict:
        risk = orchestrator.assessor.assess(
            state["analysis"], state["input"].animal_type, state["knowledge_base"],
        )
        return {"risk": risk}

    async def find_hospitals(state: DiagnosisState) -> dict:
        hospitals = orchestrator.rank_facilities(
            state["coordinates"], state["facilities"], language=state["input"].language,
        )
        return {"hospitals": hospitals}

    def _route_after_assess(state: DiagnosisState) -> str:
        if state["coordinates"] is not None and _needs_hospitals(state["risk"]):
            return "find_hospitals"
        return "done"

    graph = StateGraph(DiagnosisState)

    graph.add_node("analyze", analyze)
    graph.add_node("assess", assess)
    graph.add_node("find_hospitals", find_hospitals)

    graph.set_entry_point("analyze")

    graph.add_edge("analyze", "assess")
    graph.add_conditional_edges(
        "assess",
        _route_after_assess,
        {"find_hospitals": "find_hospitals", "done": END},
    )
    graph.add_edge("find_hospitals", END)

    return graph.compile()


def _discard_result(task: asyncio.Task) -> None:
    """Done-callback for abandoned work: retrieve and drop the outcome."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("diagnosis: abandoned task finished with %s (discarded)", type(exc).__name__)
    else:
        logger.info("diagnosis: abandoned task finished (result discarded)")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DiagnosisOrchestrator:
    """Composes analyzer, assessor, ranker and offline queue.

    Args:
        analyzer: SymptomAnalyzer sharing ``breaker``.
        assessor: RiskAssessor.
        knowledge_base: Reloadable knowledge base.
        facilities: Reloadable facility directory.
        queue: Offline queue.
        connectivity: Explicit online/offline state.
        breaker: The AI circuit breaker (read for deferral decisions).
        deadline_seconds: Global budget for one submission.
        max_distance_km: Default facility search radius.
        defer_when_circuit_open: Also queue submissions served from the
            fallback path while the breaker is not closed.
        now_fn: Local-time source for the opening-hours check.
    """

    def __init__(
        self,
        analyzer: SymptomAnalyzer,
        assessor: RiskAssessor,
        knowledge_base: KnowledgeBase,
        facilities: FacilityDirectory,
        queue: OfflineQueue,
        connectivity: ConnectivityMonitor,
        breaker: CircuitBreaker,
        deadline_seconds: Optional[float] = None,
        max_distance_km: Optional[float] = None,
        defer_when_circuit_open: Optional[bool] = None,
        now_fn: Callable[[], datetime] = distance_ranker.local_now,
    ) -> None:
        self.analyzer = analyzer
        self.assessor = assessor
        self.knowledge_base = knowledge_base
        self.facilities = facilities
        self.queue = queue
        self.connectivity = connectivity
        self.breaker = breaker
        self.deadline = deadline_seconds if deadline_seconds is not None else settings.PIPELINE_DEADLINE_SECONDS
        self.max_distance_km = max_distance_km if max_distance_km is not None else settings.DEFAULT_MAX_DISTANCE_KM
        self.defer_when_circuit_open = (
            defer_when_circuit_open if defer_when_circuit_open is not None else settings.DEFER_WHEN_CIRCUIT_OPEN
        )
        self.now_fn = now_fn

        self.workflow = build_diagnosis_graph(self)
        self._last_known: dict[str, Coordinates] = {}
        self._background: set[asyncio.Task] = set()
        self.connectivity.on_restored(self.schedule_drain)

    # -- lifecycle ----------------------------------------------------------

    def startup(self) -> None:
        """Load reference data and warm the cached fallback content."""
        self.reload_knowledge_base()
        self.reload_facilities()

    def reload_knowledge_base(self) -> KnowledgeBaseSnapshot:
        snapshot = self.knowledge_base.reload()
        self.queue.refresh_cache(snapshot)
        return snapshot

    def reload_facilities(self) -> FacilitySnapshot:
        return self.facilities.reload()

    # -- submissions ----------------------------------------------------------

    async def submit(
        self,
        symptom_input: SymptomInput,
        location: Optional[LocationInput] = None,
        device_id: Optional[str] = None,
    ) -> DiagnosisResponse:
        """Run one submission end to end.

        Raises:
            InputValidationError: unusable input or unknown region.  Never
                queued, never sent upstream.
        """
        validate_symptom_input(symptom_input)
        key = symptom_input.idempotency_key

        stored = self.queue.accepted_result(key)
        if stored is not None:
            logger.info("submit: returning accepted result key=%s", key)
            return DiagnosisResponse.model_validate(stored)
        # The user is trying again after a permanent failure
        self.queue.dismiss_failed(key)

        facilities = self.facilities.current()
        coordinates = self._resolve_location(location, device_id, facilities)
        queued_location = location
        if coordinates is not None and (location is None or (location.coordinates is None and not location.region_code)):
            # Position came from the device's last report; keep it for the replay
            queued_location = LocationInput(coordinates=coordinates)

        if not self.connectivity.is_online:
            entry = self.queue.enqueue(symptom_input, queued_location)
            return self._queued_response(entry)

        response = await self._run(symptom_input, coordinates, facilities)

        if (
            self.defer_when_circuit_open
            and response.analysis.provenance == Provenance.CIRCUIT_BROKEN_FALLBACK
            and self.breaker.state != CircuitState.CLOSED
        ):
            entry = self.queue.enqueue(symptom_input, queued_location, reason=QUEUE_REASON_CIRCUIT_OPEN)
            response.queued = entry
        else:
            self.queue.record_result(key, response)
        return response

    def status(self, request_id: str) -> DiagnosisResponse:
        """Look up a previously submitted request.

        Raises:
            QueueExhausted: the request failed permanently.  The failure is
                dismissed so the same request can be submitted again.
            KeyError: the request is unknown.
        """
        stored = self.queue.accepted_result(request_id)
        if stored is not None:
            return DiagnosisResponse.model_validate(stored)
        for entry in self.queue.pending():
            if entry.input.idempotency_key == request_id:
                return self._queued_response(entry)
        if self.queue.dismiss_failed(request_id):
            raise QueueExhausted()
        raise KeyError(request_id)

    async def _run(
        self,
        symptom_input: SymptomInput,
        coordinates: Optional[Coordinates],
        facilities: FacilitySnapshot,
    ) -> DiagnosisResponse:
        started = time.monotonic()
        snapshot = self.knowledge_base.current()
        state: DiagnosisState = {
            "input": symptom_input,
            "coordinates": coordinates,
            "knowledge_base": snapshot,
            "facilities": facilities,
            "analysis": None,
            "risk": None,
            "hospitals": None,
        }

        task = asyncio.ensure_future(self.workflow.ainvoke(state))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.deadline)
        except asyncio.CancelledError:
            logger.info(
                "submit: abandoned key=%s, in-flight work will be discarded",
                symptom_input.idempotency_key,
            )
            self._keep_until_done(task)
            raise

        if task in done:
            final = task.result()
            return self._completed_response(symptom_input, final["analysis"], final["risk"], final["hospitals"])

        # Deadline exceeded: serve the keyword fallback, let the task finish unobserved
        self._keep_until_done(task)
        logger.warning(
            "submit: deadline exceeded key=%s elapsed=%.1fs, serving fallback",
            symptom_input.idempotency_key, time.monotonic() - started,
        )
        animal = symptom_input.animal_type
        analysis = self.analyzer.fallback_only(
            animal, symptom_input, snapshot, note="Pipeline deadline exceeded",
        )
        risk = self.assessor.assess(analysis, animal, snapshot)
        hospitals = None
        if coordinates is not None and _needs_hospitals(risk):
            hospitals = self.rank_facilities(coordinates, facilities, language=symptom_input.language)
        return self._completed_response(symptom_input, analysis, risk, hospitals)

    # -- offline sync ---------------------------------------------------------

    async def sync(self, entry: QueuedRequest) -> DiagnosisResponse:
        """Drain function: replay one queued request through the pipeline.

        Raises:
            UpstreamUnavailable: still offline, or a request deferred for the
                AI service came back from the fallback path again.
        """
        if not self.connectivity.is_online:
            raise UpstreamUnavailable("Still offline.")
        facilities = self.facilities.current()
        coordinates = self._resolve_location(entry.location, None, facilities)
        response = await self._run(entry.input, coordinates, facilities)
        if (
            entry.reason == QUEUE_REASON_CIRCUIT_OPEN
            and response.analysis.provenance == Provenance.CIRCUIT_BROKEN_FALLBACK
        ):
            raise UpstreamUnavailable("AI service still unavailable.")
        return response

    async def drain(self) -> SyncReport:
        if not self.connectivity.is_online:
            return SyncReport(skipped=True)
        return await self.queue.drain(self.sync)

    def schedule_drain(self) -> None:
        """Start a background drain; called on connectivity restoration."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("drain: no running event loop, drain not scheduled")
            return
        task = loop.create_task(self.drain())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- facilities -----------------------------------------------------------

    def find_hospitals(
        self,
        location: LocationInput,
        max_distance_km: Optional[float] = None,
        language: str = "en",
    ) -> list[Hospital]:
        """Rank facilities for a location (coordinates or region code).

        Raises:
            InputValidationError: no usable location.
        """
        facilities = self.facilities.current()
        coordinates = self._resolve_location(location, None, facilities)
        if coordinates is None:
            raise InputValidationError("Please share your location or choose your district.")
        return self.rank_facilities(coordinates, facilities, max_distance_km, language)

    def rank_facilities(
        self,
        coordinates: Coordinates,
        facilities: FacilitySnapshot,
        max_distance_km: Optional[float] = None,
        language: str = "en",
    ) -> list[Hospital]:
        return distance_ranker.rank(
            coordinates,
            facilities.all(),
            max_distance=max_distance_km or self.max_distance_km,
            now=self.now_fn(),
            language=language,
        )

    # -- diagnostics ----------------------------------------------------------

    def describe(self) -> dict[str, Any]:
        return {
            "circuit_breaker": self.breaker.describe(),
            "knowledge_base_version": self.knowledge_base.current().version,
            "facility_directory_version": self.facilities.current().version,
            "connectivity": self.connectivity.state.value,
            "queue_pending": len(self.queue.pending()),
            "queue_failed": len(self.queue.failed()),
            "queue_draining": self.queue.is_draining,
        }

    # -- helpers --------------------------------------------------------------

    def _resolve_location(
        self,
        location: Optional[LocationInput],
        device_id: Optional[str],
        facilities: FacilitySnapshot,
    ) -> Optional[Coordinates]:
        coordinates = None
        if location is not None and location.coordinates is not None:
            coordinates = location.coordinates
        elif location is not None and location.region_code:
            coordinates = facilities.region_centroid(location.region_code)
            if coordinates is None:
                raise InputValidationError(
                    "Unknown district. Please choose your district from the list."
                )

        if device_id:
            if coordinates is not None:
                self._last_known[device_id] = coordinates
            else:
                coordinates = self._last_known.get(device_id)
        return coordinates

    def _keep_until_done(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_discard_result)

    def _queued_response(self, entry: QueuedRequest) -> DiagnosisResponse:
        return DiagnosisResponse(
            request_id=entry.input.idempotency_key,
            status="queued",
            language=entry.input.language,
            queued=entry,
            cached_guidance=self.queue.cached_fallback(entry.input.animal_type),
        )

    @staticmethod
    def _completed_response(
        symptom_input: SymptomInput,
        analysis: AnalysisResult,
        risk: RiskAssessment,
        hospitals: Optional[list[Hospital]],
    ) -> DiagnosisResponse:
        return DiagnosisResponse(
            request_id=symptom_input.idempotency_key,
            status="completed",
            language=symptom_input.language,
            analysis=analysis,
            risk=risk,
            hospitals=hospitals,
        )


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

def build_orchestrator() -> DiagnosisOrchestrator:
    """Wire the production pipeline from settings."""
    breaker = CircuitBreaker(
        failure_threshold=settings.FAILURE_THRESHOLD,
        cooldown_seconds=settings.COOLDOWN_SECONDS,
        backoff_multiplier=settings.BACKOFF_MULTIPLIER,
        max_cooldown_seconds=settings.MAX_COOLDOWN_SECONDS,
    )
    knowledge_base = KnowledgeBase(settings.KNOWLEDGE_BASE_PATH)
    store = JsonFileStore(settings.QUEUE_STORE_PATH) if settings.QUEUE_STORE_PATH else InMemoryStore()
    return DiagnosisOrchestrator(
        analyzer=SymptomAnalyzer(GeminiDiagnosisService(gemini_client), breaker, knowledge_base),
        assessor=RiskAssessor(),
        knowledge_base=knowledge_base,
        facilities=FacilityDirectory(settings.FACILITIES_PATH),
        queue=OfflineQueue(store),
        connectivity=ConnectivityMonitor(),
        breaker=breaker,
    )


_orchestrator: Optional[DiagnosisOrchestrator] = None


def get_orchestrator() -> DiagnosisOrchestrator:
    """Return the process-wide orchestrator, building it on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator

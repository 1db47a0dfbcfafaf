"""Shared fixtures: shipped reference data, a scriptable AI service and
pipeline components wired over an in-memory store.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from pashucare.agents.diagnosis_workflow import DiagnosisOrchestrator
from pashucare.agents.risk_assessor import RiskAssessor, RiskThresholds
from pashucare.agents.symptom_analyzer import SymptomAnalyzer
from pashucare.core import facility_directory
from pashucare.core import knowledge_base as kb_module
from pashucare.core.ai_service import AIConditionGuess
from pashucare.core.circuit_breaker import CircuitBreaker
from pashucare.core.facility_directory import FacilityDirectory
from pashucare.core.knowledge_base import KnowledgeBase
from pashucare.memory.connectivity import ConnectivityMonitor
from pashucare.memory.offline_queue import OfflineQueue
from pashucare.memory.store import InMemoryStore

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
KB_PATH = DATA_DIR / "knowledge_base.json"
FACILITIES_PATH = DATA_DIR / "facilities.json"

# Wednesday late morning: government dispensaries are open.
WEDNESDAY_11AM = datetime(2026, 10, 21, 11, 0, tzinfo=ZoneInfo("Asia/Kolkata"))

PUNE = {"latitude": 18.5204, "longitude": 73.8567}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAIService:
    """Scriptable stand-in for the remote diagnosis model."""

    def __init__(self, guesses=None, delay: float = 0.0, error: Exception | None = None) -> None:
        self.guesses = [AIConditionGuess(condition_name=n, confidence=c) for n, c in (guesses or [])]
        self.delay = delay
        self.error = error
        self.calls = []

    async def diagnose(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.guesses)


@pytest.fixture(scope="session")
def kb_snapshot():
    return kb_module.load_snapshot(KB_PATH)


@pytest.fixture(scope="session")
def facility_snapshot():
    return facility_directory.load_snapshot(FACILITIES_PATH)


@pytest.fixture
def knowledge_base(kb_snapshot):
    return KnowledgeBase(KB_PATH, snapshot=kb_snapshot)


@pytest.fixture
def facilities(facility_snapshot):
    return FacilityDirectory(FACILITIES_PATH, snapshot=facility_snapshot)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        failure_threshold=5,
        cooldown_seconds=30,
        backoff_multiplier=2,
        max_cooldown_seconds=300,
        clock=clock,
    )


@pytest.fixture
def thresholds():
    return RiskThresholds(
        emergency_contact="1962",
        disclaimer="Preliminary assessment only. Consult a veterinarian.",
    )


@pytest.fixture
def make_analyzer(breaker, knowledge_base):
    def _make(ai=None, call_timeout: float = 1.0):
        return SymptomAnalyzer(
            ai or FakeAIService(),
            breaker,
            knowledge_base,
            call_timeout=call_timeout,
            fallback_cap=0.4,
        )
    return _make


@pytest.fixture
def make_orchestrator(make_analyzer, knowledge_base, facilities, breaker, thresholds):
    """Factory for orchestrators that share the fixture breaker and data."""

    def _make(ai=None, call_timeout: float = 1.0, deadline: float = 2.0, **kwargs):
        return DiagnosisOrchestrator(
            analyzer=make_analyzer(ai, call_timeout=call_timeout),
            assessor=RiskAssessor(thresholds),
            knowledge_base=knowledge_base,
            facilities=facilities,
            queue=kwargs.pop("queue", None) or OfflineQueue(InMemoryStore(), max_attempts=3),
            connectivity=kwargs.pop("connectivity", None) or ConnectivityMonitor(),
            breaker=breaker,
            deadline_seconds=deadline,
            max_distance_km=50.0,
            now_fn=lambda: WEDNESDAY_11AM,
            **kwargs,
        )
    return _make

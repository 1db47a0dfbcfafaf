"""Tests for the DiagnosisOrchestrator: online, offline, deadline and reload paths.

Run with:  python -m pytest tests/test_diagnosis_workflow.py -v
"""

import asyncio
import json

import pytest

from conftest import KB_PATH, PUNE, FakeAIService
from pashucare.core.circuit_breaker import CircuitState
from pashucare.core.errors import DataIntegrityError, InputValidationError, QueueExhausted
from pashucare.core.knowledge_base import load_snapshot
from pashucare.memory.connectivity import ConnectivityMonitor, ConnectivityState
from pashucare.models.schemas import (
    AnimalType,
    Coordinates,
    LocationInput,
    Provenance,
    RiskTier,
    SymptomInput,
)


def _input(key="req-1", text="not eating, lying down", animal=AnimalType.BOVINE):
    return SymptomInput(animal_type=animal, text=text, idempotency_key=key)


def _gps():
    return LocationInput(coordinates=Coordinates(**PUNE))


# ── Online ───────────────────────────────────────────────────────────────

def test_low_risk_result_has_no_hospitals(make_orchestrator):
    orchestrator = make_orchestrator(FakeAIService(guesses=[("suspected lethargy", 0.4)]))

    response = asyncio.run(orchestrator.submit(_input(), location=_gps()))

    assert response.status == "completed"
    assert response.request_id == "req-1"
    assert response.analysis.candidates[0].condition_id == "general_debility"
    assert response.risk.tier == RiskTier.LOW
    assert response.hospitals is None


def test_high_risk_result_ranks_hospitals(make_orchestrator):
    orchestrator = make_orchestrator(FakeAIService(guesses=[("Foot and mouth disease", 0.9)]))

    response = asyncio.run(orchestrator.submit(_input(text="mouth sores and limping"), location=_gps()))

    assert response.risk.tier == RiskTier.HIGH
    ids = [h.facility_id for h in response.hospitals]
    assert ids[0] == "pun-vd-001"
    distances = [h.distance_km for h in response.hospitals]
    assert distances == sorted(distances)
    assert all(d <= 50 for d in distances)
    assert "sat-vd-001" not in ids


def test_region_code_resolves_to_centroid(make_orchestrator):
    orchestrator = make_orchestrator(FakeAIService(guesses=[("Mastitis", 0.8)]))

    response = asyncio.run(orchestrator.submit(
        _input(text="swollen udder"), location=LocationInput(region_code="mh-sat"),
    ))

    assert response.risk.tier == RiskTier.MEDIUM
    assert [h.facility_id for h in response.hospitals] == ["sat-vd-001"]


def test_device_reuses_last_known_location(make_orchestrator):
    orchestrator = make_orchestrator(FakeAIService(guesses=[("Mastitis", 0.8)]))

    asyncio.run(orchestrator.submit(_input("first", "swollen udder"), location=_gps(), device_id="dev-1"))
    response = asyncio.run(orchestrator.submit(_input("second", "swollen udder"), device_id="dev-1"))

    assert response.hospitals


def test_unknown_region_rejected(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(InputValidationError):
        asyncio.run(orchestrator.submit(_input(), location=LocationInput(region_code="XX-NOWHERE")))


def test_resubmission_returns_stored_result(make_orchestrator):
    ai = FakeAIService(guesses=[("Mastitis", 0.8)])
    orchestrator = make_orchestrator(ai)

    first = asyncio.run(orchestrator.submit(_input(text="swollen udder")))
    second = asyncio.run(orchestrator.submit(_input(text="swollen udder")))

    assert len(ai.calls) == 1
    assert second == first
    assert orchestrator.status("req-1") == first


def test_invalid_input_is_never_queued(make_orchestrator):
    orchestrator = make_orchestrator(connectivity=ConnectivityMonitor(ConnectivityState.OFFLINE))
    with pytest.raises(InputValidationError):
        asyncio.run(orchestrator.submit(_input(text="  ")))
    assert orchestrator.queue.pending() == []


# ── Deadline ─────────────────────────────────────────────────────────────

def test_deadline_serves_keyword_fallback(make_orchestrator):
    ai = FakeAIService(guesses=[("Mastitis", 0.9)], delay=1.0)
    orchestrator = make_orchestrator(ai, call_timeout=5.0, deadline=0.05)

    response = asyncio.run(orchestrator.submit(_input(text="swollen udder")))

    assert response.status == "completed"
    assert response.analysis.provenance == Provenance.CIRCUIT_BROKEN_FALLBACK
    assert response.analysis.ai_latency_ms == 0
    assert response.analysis.notes == ["Pipeline deadline exceeded"]
    assert response.analysis.candidates[0].condition_id == "mastitis"
    assert response.risk is not None


# ── Offline ──────────────────────────────────────────────────────────────

def test_offline_submission_queued_with_cached_guidance(make_orchestrator, kb_snapshot):
    ai = FakeAIService()
    orchestrator = make_orchestrator(ai, connectivity=ConnectivityMonitor(ConnectivityState.OFFLINE))
    orchestrator.queue.refresh_cache(kb_snapshot)

    response = asyncio.run(orchestrator.submit(_input()))

    assert response.status == "queued"
    assert response.queued.sequence == 1
    assert response.cached_guidance.guidance
    assert ai.calls == []
    assert orchestrator.status("req-1").status == "queued"


def test_drained_result_matches_direct_submission(make_orchestrator):
    guesses = [("suspected lethargy", 0.4)]
    offline = make_orchestrator(
        FakeAIService(guesses=guesses),
        connectivity=ConnectivityMonitor(ConnectivityState.OFFLINE),
    )
    asyncio.run(offline.submit(_input(), location=_gps()))

    # Restored outside an event loop: no background drain is scheduled
    assert offline.connectivity.set_state(ConnectivityState.ONLINE)
    report = asyncio.run(offline.drain())
    assert report.succeeded == 1

    drained = offline.status("req-1")
    direct = asyncio.run(make_orchestrator(FakeAIService(guesses=guesses)).submit(_input(), location=_gps()))

    assert drained.status == "completed"
    assert drained.analysis.candidates == direct.analysis.candidates
    assert drained.analysis.provenance == direct.analysis.provenance
    assert drained.risk == direct.risk
    assert drained.hospitals == direct.hospitals


def test_offline_submission_keeps_device_location(make_orchestrator):
    orchestrator = make_orchestrator(FakeAIService(guesses=[("Mastitis", 0.8)]))
    direct = asyncio.run(orchestrator.submit(_input("a", "swollen udder"), location=_gps(), device_id="dev-1"))
    assert direct.hospitals

    orchestrator.connectivity.set_state(ConnectivityState.OFFLINE)
    queued = asyncio.run(orchestrator.submit(_input("b", "swollen udder"), device_id="dev-1"))
    assert queued.queued.location.coordinates == Coordinates(**PUNE)

    orchestrator.connectivity.set_state(ConnectivityState.ONLINE)
    assert asyncio.run(orchestrator.drain()).succeeded == 1

    drained = orchestrator.status("b")
    assert [h.facility_id for h in drained.hospitals] == [h.facility_id for h in direct.hospitals]


def test_restored_connectivity_drains_in_background(make_orchestrator):
    orchestrator = make_orchestrator(
        FakeAIService(guesses=[("Mastitis", 0.8)]),
        connectivity=ConnectivityMonitor(ConnectivityState.OFFLINE),
    )

    async def scenario():
        await orchestrator.submit(_input(text="swollen udder"))
        assert orchestrator.connectivity.set_state(ConnectivityState.ONLINE)
        await asyncio.gather(*list(orchestrator._background))

    asyncio.run(scenario())

    assert orchestrator.queue.pending() == []
    assert orchestrator.status("req-1").status == "completed"


def test_drain_while_offline_is_skipped(make_orchestrator):
    orchestrator = make_orchestrator(connectivity=ConnectivityMonitor(ConnectivityState.OFFLINE))
    asyncio.run(orchestrator.submit(_input()))
    assert asyncio.run(orchestrator.drain()).skipped is True
    assert len(orchestrator.queue.pending()) == 1


def test_failed_request_reported_once_then_forgotten(make_orchestrator):
    orchestrator = make_orchestrator(connectivity=ConnectivityMonitor(ConnectivityState.OFFLINE))
    entry = orchestrator.queue.enqueue(_input())
    orchestrator.queue._mark_failed(entry)

    with pytest.raises(QueueExhausted):
        orchestrator.status("req-1")
    with pytest.raises(KeyError):
        orchestrator.status("req-1")


# ── Deferral while the AI is down ───────────────────────────────────────

def test_deferred_submission_retried_after_recovery(make_orchestrator, breaker, clock):
    ai = FakeAIService(guesses=[("Mastitis", 0.8)])
    orchestrator = make_orchestrator(ai, defer_when_circuit_open=True)
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()

    response = asyncio.run(orchestrator.submit(_input(text="swollen udder")))

    assert response.analysis.provenance == Provenance.CIRCUIT_BROKEN_FALLBACK
    assert response.queued.reason == "circuit_open"
    assert orchestrator.queue.accepted_result("req-1") is None

    still_down = asyncio.run(orchestrator.drain())
    assert still_down.requeued == 1

    clock.advance(30)
    recovered = asyncio.run(orchestrator.drain())

    assert recovered.succeeded == 1
    assert breaker.state == CircuitState.CLOSED
    final = orchestrator.status("req-1")
    assert final.analysis.provenance == Provenance.NORMAL
    assert final.analysis.candidates[0].confidence == 0.8


# ── Reload ───────────────────────────────────────────────────────────────

def test_invalid_reload_keeps_serving(make_orchestrator, tmp_path):
    orchestrator = make_orchestrator()
    bad = tmp_path / "kb.json"
    bad.write_text(json.dumps({"diseases": [], "symptoms": []}), encoding="utf-8")
    orchestrator.knowledge_base.path = bad

    with pytest.raises(DataIntegrityError):
        orchestrator.reload_knowledge_base()

    assert orchestrator.knowledge_base.current().version == "2026.10-1"
    response = asyncio.run(orchestrator.submit(_input()))
    assert response.analysis.knowledge_base_version == "2026.10-1"


def test_in_flight_request_keeps_its_snapshot(make_orchestrator, tmp_path):
    orchestrator = make_orchestrator(FakeAIService(guesses=[("Mastitis", 0.8)], delay=0.05))
    raw = json.loads(KB_PATH.read_text(encoding="utf-8"))
    raw["version"] = "2026.10-2"
    updated = tmp_path / "kb.json"
    updated.write_text(json.dumps(raw), encoding="utf-8")

    async def scenario():
        task = asyncio.ensure_future(orchestrator.submit(_input(text="swollen udder")))
        await asyncio.sleep(0.01)
        orchestrator.knowledge_base.install(load_snapshot(updated))
        return await task

    response = asyncio.run(scenario())

    assert response.analysis.knowledge_base_version == "2026.10-1"
    assert orchestrator.knowledge_base.current().version == "2026.10-2"


def test_describe(make_orchestrator):
    view = make_orchestrator().describe()
    assert view["circuit_breaker"]["state"] == "closed"
    assert view["knowledge_base_version"] == "2026.10-1"
    assert view["connectivity"] == "online"
    assert view["queue_pending"] == 0

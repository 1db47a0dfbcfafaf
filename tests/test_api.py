"""HTTP boundary tests: status codes, error bodies and router wiring.

Run with:  python -m pytest tests/test_api.py -v
"""

import base64

import pytest
from fastapi.testclient import TestClient

from conftest import PUNE, FakeAIService
from pashucare.agents.diagnosis_workflow import get_orchestrator
from pashucare.core.rate_limiter import rate_limiter
from pashucare.main import app
from pashucare.memory.connectivity import ConnectivityState
from pashucare.models.schemas import AnimalType, SymptomInput

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def ai():
    return FakeAIService(guesses=[("Mastitis", 0.8)])


@pytest.fixture
def orchestrator(make_orchestrator, ai, kb_snapshot):
    orch = make_orchestrator(ai)
    orch.queue.refresh_cache(kb_snapshot)
    return orch


@pytest.fixture
def client(orchestrator):
    rate_limiter.reset()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    # Not used as a context manager: the startup hook would load the
    # production orchestrator.
    yield TestClient(app)
    app.dependency_overrides.clear()
    rate_limiter.reset()


def _payload(key="req-1", text="swollen udder and clots in milk", **extra):
    symptoms = {"animal_type": "buffalo", "text": text, "idempotency_key": key}
    symptoms.update(extra)
    return {"symptoms": symptoms, "location": {"coordinates": PUNE}}


# ── POST /diagnose ───────────────────────────────────────────────────────

def test_diagnose_completed(client):
    resp = client.post("/diagnose", json=_payload())
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "completed"
    assert data["analysis"]["candidates"][0]["condition_id"] == "mastitis"
    assert data["analysis"]["provenance"] == "normal"
    assert data["risk"]["tier"] == "medium"
    assert data["risk"]["disclaimer"]
    assert data["hospitals"][0]["facility_id"] == "pun-vd-001"


def test_diagnose_with_photo_only(client, ai):
    body = _payload(text=None, image={
        "data": base64.b64encode(PNG).decode("ascii"),
        "mime_type": "image/png",
    })
    resp = client.post("/diagnose", json=body)
    assert resp.status_code == 200
    assert ai.calls[0].image_bytes == PNG


def test_diagnose_rejects_long_text_with_actionable_message(client, ai):
    resp = client.post("/diagnose", json=_payload(text="x" * 2001))
    assert resp.status_code == 422
    assert resp.json()["error"] == "InputValidationError"
    assert "2000 characters" in resp.json()["detail"]
    assert ai.calls == []


def test_diagnose_rejects_empty_submission(client):
    resp = client.post("/diagnose", json=_payload(text=""))
    assert resp.status_code == 422
    assert resp.json()["detail"] == "Please describe the symptoms or attach a photo of the animal."


def test_diagnose_rejects_unknown_animal(client):
    body = _payload()
    body["symptoms"]["animal_type"] = "camel"
    resp = client.post("/diagnose", json=body)
    assert resp.status_code == 422
    assert resp.json() == {
        "detail": "Please choose the animal: cow (bovine), goat or buffalo.",
        "error": "InputValidationError",
    }


def test_diagnose_rejects_bad_base64(client, ai):
    resp = client.post("/diagnose", json=_payload(image={"data": "***not-a-photo***", "mime_type": "image/png"}))
    assert resp.status_code == 422
    assert resp.json() == {
        "detail": "The photo could not be read. Please attach a JPEG or PNG image.",
        "error": "InputValidationError",
    }
    assert "not-a-photo" not in resp.text
    assert ai.calls == []


def test_diagnose_rejects_missing_idempotency_key(client):
    body = _payload()
    del body["symptoms"]["idempotency_key"]
    resp = client.post("/diagnose", json=body)
    assert resp.status_code == 422
    assert resp.json()["error"] == "InputValidationError"
    assert resp.json()["detail"] == "The request is missing its reference number. Please submit it again."


def test_diagnose_offline_is_accepted_then_completed(client, orchestrator):
    orchestrator.connectivity.set_state(ConnectivityState.OFFLINE)

    resp = client.post("/diagnose", json=_payload())
    assert resp.status_code == 202
    assert resp.json()["status"] == "queued"
    assert resp.json()["cached_guidance"]["animal_type"] == "buffalo"

    assert client.get("/diagnose/req-1").status_code == 202
    assert [e["input"]["idempotency_key"] for e in client.get("/queue").json()] == ["req-1"]

    # Restored from outside the event loop, so the drain is triggered explicitly
    orchestrator.connectivity.set_state(ConnectivityState.ONLINE)
    report = client.post("/queue/sync").json()
    assert report["succeeded"] == 1

    final = client.get("/diagnose/req-1")
    assert final.status_code == 200
    assert final.json()["status"] == "completed"


def test_get_unknown_request_is_404(client):
    assert client.get("/diagnose/nope").status_code == 404


def test_failed_request_is_409_once(client, orchestrator):
    entry = orchestrator.queue.enqueue(SymptomInput(
        animal_type=AnimalType.GOAT, text="pale gums", idempotency_key="req-9",
    ))
    orchestrator.queue._mark_failed(entry)

    resp = client.get("/diagnose/req-9")
    assert resp.status_code == 409
    assert resp.json()["error"] == "QueueExhausted"
    assert client.get("/queue/failed").json() == []
    assert client.get("/diagnose/req-9").status_code == 404


def test_rate_limit(client, monkeypatch):
    monkeypatch.setattr(rate_limiter, "limit", 2)
    headers = {"x-device-id": "dev-1"}
    codes = [
        client.post("/diagnose", json=_payload(key=f"k{i}"), headers=headers).status_code
        for i in range(3)
    ]
    assert codes == [200, 200, 429]
    # A different device has its own window
    assert client.post("/diagnose", json=_payload(key="k9"), headers={"x-device-id": "dev-2"}).status_code == 200


# ── POST /hospitals/nearby ───────────────────────────────────────────────

def test_nearby_by_region(client):
    resp = client.post("/hospitals/nearby", json={"location": {"region_code": "MH-AHM"}})
    assert resp.status_code == 200
    assert [h["facility_id"] for h in resp.json()] == ["ahm-vd-001"]


def test_nearby_larger_radius(client):
    resp = client.post("/hospitals/nearby", json={
        "location": {"coordinates": PUNE},
        "max_distance_km": 150,
    })
    ids = [h["facility_id"] for h in resp.json()]
    assert "sat-vd-001" in ids
    distances = [h["distance_km"] for h in resp.json()]
    assert distances == sorted(distances)


def test_nearby_requires_location(client):
    resp = client.post("/hospitals/nearby", json={"location": {}})
    assert resp.status_code == 422
    resp = client.post("/hospitals/nearby", json={"location": {"region_code": "ZZ"}})
    assert resp.status_code == 422


# ── Queue and admin ─────────────────────────────────────────────────────

def test_connectivity_update(client, orchestrator):
    resp = client.post("/queue/connectivity", json={"online": False})
    assert resp.json() == {"state": "offline", "drain_scheduled": False}
    assert not orchestrator.connectivity.is_online


def test_cached_guidance(client):
    resp = client.get("/queue/guidance/goat")
    assert resp.status_code == 200
    ids = {g["condition_id"] for g in resp.json()["guidance"]}
    assert "haemonchosis" in ids
    assert resp.json()["general_advice"]


def test_admin_reload(client, orchestrator, tmp_path):
    resp = client.post("/admin/reload/knowledge-base")
    assert resp.status_code == 200
    assert resp.json() == {"status": "success", "version": "2026.10-1", "records": 14}

    bad = tmp_path / "kb.json"
    bad.write_text("[]", encoding="utf-8")
    orchestrator.knowledge_base.path = bad
    resp = client.post("/admin/reload/knowledge-base")
    assert resp.status_code == 500
    assert resp.json()["error"] == "DataIntegrityError"
    assert orchestrator.knowledge_base.current().version == "2026.10-1"


def test_admin_reload_facilities(client):
    resp = client.post("/admin/reload/facilities")
    assert resp.status_code == 200
    assert resp.json()["records"] == 8


def test_admin_stats(client):
    data = client.get("/admin/stats").json()
    assert data["circuit_breaker"]["state"] == "closed"
    assert data["diseases_total"] == 14
    assert data["diseases_per_animal"]["goat"] == 9
    assert data["knowledge_base_version"] == "2026.10-1"

"""
Admin Router

Endpoints for managing reference data and inspecting pipeline health:
  POST /admin/reload/knowledge-base - Re-read knowledge_base.json
  POST /admin/reload/facilities     - Re-read facilities.json
  GET  /admin/stats                 - Breaker, snapshot, queue and KB statistics
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from fastapi import APIRouter, Depends

from pashucare.agents.diagnosis_workflow import DiagnosisOrchestrator, get_orchestrator
from pashucare.models.schemas import AnimalType, ReloadResponse

router = APIRouter()


# ── POST /admin/reload/knowledge-base ──────────────────────────────────────

@router.post("/reload/knowledge-base", response_model=ReloadResponse)
async def reload_knowledge_base(
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> ReloadResponse:
    """Swap in a fresh knowledge-base snapshot.

    An invalid file is rejected (DataIntegrityError) and the active
    snapshot keeps serving requests.
    """
    snapshot = orchestrator.reload_knowledge_base()
    return ReloadResponse(status="success", version=snapshot.version, records=len(snapshot))


# ── POST /admin/reload/facilities ──────────────────────────────────────────

@router.post("/reload/facilities", response_model=ReloadResponse)
async def reload_facilities(
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> ReloadResponse:
    snapshot = orchestrator.reload_facilities()
    return ReloadResponse(status="success", version=snapshot.version, records=len(snapshot))


# ── GET /admin/stats ─────────────────────────────────────────────────────────

@router.get("/stats")
async def stats(
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Return pipeline health plus knowledge-base distributions."""
    snapshot = orchestrator.knowledge_base.current()

    severity_counter: Counter[int] = Counter()
    vet_required = 0
    for disease in snapshot.diseases.values():
        severity_counter[disease.severity] += 1
        if disease.veterinary_required:
            vet_required += 1

    return {
        **orchestrator.describe(),
        "diseases_total": len(snapshot),
        "symptoms_total": len(snapshot.symptoms),
        "diseases_per_animal": {
            animal.value: len(snapshot.diseases_for(animal)) for animal in AnimalType
        },
        "severity_distribution": {str(k): v for k, v in sorted(severity_counter.items())},
        "veterinary_required_total": vet_required,
    }

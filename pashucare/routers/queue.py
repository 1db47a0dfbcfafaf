"""
Offline Queue Router

GET  /queue                    - Pending submissions
GET  /queue/failed             - Submissions that exhausted their retries
POST /queue/sync               - Drain the queue now
POST /queue/connectivity       - Report uplink state; online triggers a drain
GET  /queue/guidance/{animal}  - Cached home-care content
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from pashucare.agents.diagnosis_workflow import DiagnosisOrchestrator, get_orchestrator
from pashucare.memory.connectivity import ConnectivityState
from pashucare.models.schemas import (
    AnimalType,
    CachedContent,
    ConnectivityUpdate,
    QueuedRequest,
    SyncReport,
)

router = APIRouter()


@router.get("", response_model=list[QueuedRequest])
async def list_pending(
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> list[QueuedRequest]:
    return orchestrator.queue.pending()


@router.get("/failed", response_model=list[QueuedRequest])
async def list_failed(
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> list[QueuedRequest]:
    """Submissions that could not be completed and need resubmitting."""
    return orchestrator.queue.failed()


@router.post("/sync", response_model=SyncReport)
async def sync(
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> SyncReport:
    """Run a drain pass and report the outcome."""
    return await orchestrator.drain()


@router.post("/connectivity")
async def set_connectivity(
    update: ConnectivityUpdate,
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    state = ConnectivityState.ONLINE if update.online else ConnectivityState.OFFLINE
    restored = orchestrator.connectivity.set_state(state)
    return {"state": state.value, "drain_scheduled": restored}


@router.get("/guidance/{animal_type}", response_model=CachedContent)
async def guidance(
    animal_type: AnimalType,
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> CachedContent:
    """Home-care content for common conditions, available without the AI."""
    return orchestrator.queue.cached_fallback(animal_type)

"""
Hospitals Router

POST /hospitals/nearby - Rank veterinary facilities around a location
"""

from fastapi import APIRouter, Depends

from pashucare.agents.diagnosis_workflow import DiagnosisOrchestrator, get_orchestrator
from pashucare.core.rate_limiter import enforce_rate_limit
from pashucare.models.schemas import Hospital, NearbyRequest

router = APIRouter()


@router.post("/nearby", response_model=list[Hospital], dependencies=[Depends(enforce_rate_limit)])
async def nearby(
    request: NearbyRequest,
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> list[Hospital]:
    """Facilities within range that are open now or emergency-capable.

    Accepts GPS coordinates or a region code (district centroid).
    """
    return orchestrator.find_hospitals(
        request.location,
        max_distance_km=request.max_distance_km,
        language=request.language,
    )

"""
Diagnosis Router

POST /diagnose              - Run the diagnosis pipeline for one submission
GET  /diagnose/{request_id} - Look up a completed, queued or failed submission
"""

from fastapi import APIRouter, Depends, HTTPException, Response

from pashucare.agents.diagnosis_workflow import DiagnosisOrchestrator, get_orchestrator
from pashucare.core.rate_limiter import enforce_rate_limit
from pashucare.models.schemas import DiagnoseRequest, DiagnosisResponse

router = APIRouter()


@router.post("", response_model=DiagnosisResponse, dependencies=[Depends(enforce_rate_limit)])
async def diagnose(
    request: DiagnoseRequest,
    response: Response,
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> DiagnosisResponse:
    """Analyse symptoms and return candidates, risk tier and facilities.

    Returns 200 when completed, 202 when the submission was queued for
    later (offline).  Validation failures are 422 with an actionable message.
    """
    result = await orchestrator.submit(
        request.symptoms,
        location=request.location,
        device_id=request.device_id,
    )
    if result.status == "queued":
        response.status_code = 202
    return result


@router.get("/{request_id}", response_model=DiagnosisResponse)
async def get_diagnosis(
    request_id: str,
    response: Response,
    orchestrator: DiagnosisOrchestrator = Depends(get_orchestrator),
) -> DiagnosisResponse:
    """Return the stored result, or the queued state, for a submission.

    A permanently failed submission answers 409 once, then is forgotten so
    the user can submit it again.
    """
    try:
        result = orchestrator.status(request_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="No submission with this id.")
    if result.status == "queued":
        response.status_code = 202
    return result

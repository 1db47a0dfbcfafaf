"""
PashuCare Livestock Diagnosis - FastAPI Application Entry Point

Registers routers for diagnosis, hospitals, offline queue and admin
endpoints, translates pipeline errors into actionable JSON responses, and
loads the knowledge base and facility directory on startup.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv

# Resolve .env relative to project root (parent of pashucare/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=True)

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pashucare.config import settings
from pashucare.core.errors import DataIntegrityError, InputValidationError, PashuCareError
from pashucare.core.validation import describe_request_errors
from pashucare.routers import admin, diagnose, hospitals, queue

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PashuCare Livestock Diagnosis")

# CORS - allow all origins for the mobile and web clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(diagnose.router, prefix="/diagnose", tags=["diagnose"])
app.include_router(hospitals.router, prefix="/hospitals", tags=["hospitals"])
app.include_router(queue.router, prefix="/queue", tags=["queue"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.exception_handler(PashuCareError)
async def pipeline_error_handler(request: Request, exc: PashuCareError) -> JSONResponse:
    """Return only the user-facing message; details stay in the logs."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def request_shape_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed payloads get the same body as InputValidationError."""
    errors = exc.errors()
    logger.info(
        "Rejected request on %s: %s",
        request.url.path, [(e.get("loc"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": describe_request_errors(errors), "error": InputValidationError.__name__},
    )


@app.on_event("startup")
async def startup_event():
    """Load reference data; keep serving with the fallback path if it fails."""
    from pashucare.agents.diagnosis_workflow import get_orchestrator

    orchestrator = get_orchestrator()
    try:
        orchestrator.startup()
    except DataIntegrityError as exc:
        logger.error("[Startup] Reference data failed to load: %s", exc.message)
        return

    logger.info("PashuCare ready: %s", orchestrator.describe())

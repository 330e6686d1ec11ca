"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import runs
from ..errors import (
    AccessDeniedError,
    ArtifactNotFoundError,
    ConsentRequiredError,
    InvalidMappingSpecError,
    MigrationError,
    MigrationFailedError,
    PhaseInFlightError,
    PhasePreconditionError,
    RunNotFoundError,
    RunPausedError,
    RunTerminalError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (ConsentRequiredError, 400),
    (InvalidMappingSpecError, 400),
    (AccessDeniedError, 403),
    (RunNotFoundError, 404),
    (ArtifactNotFoundError, 404),
    (PhaseInFlightError, 409),
    (PhasePreconditionError, 409),
    (RunPausedError, 409),
    (RunTerminalError, 409),
    (MigrationFailedError, 500),
]

app = FastAPI(
    title="Clinic Migration API",
    description="API for migrating clinic data between practice-management platforms",
    version="1.0.0",
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(runs.router, prefix="/api/migrations/runs", tags=["runs"])


def status_for(error: MigrationError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@app.exception_handler(MigrationError)
async def migration_error_handler(request: Request, exc: MigrationError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")

    content = {"detail": str(exc)}
    if isinstance(exc, MigrationFailedError):
        content["detail"] = exc.error_message
        content["run_id"] = exc.run_id
        content["phase"] = exc.phase
    elif isinstance(exc, InvalidMappingSpecError):
        content["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=content)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

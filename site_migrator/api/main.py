"""
Main FastAPI application for the Site Migrator API.

This module provides the REST endpoints that start, advance, cancel,
roll back and report on export and import jobs. Long jobs are driven by
the client: it calls ``POST /jobs/{job_id}/continue`` repeatedly until the returned
status is terminal.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from site_migrator import __version__
from site_migrator.core.exceptions import (
    ConfigurationError,
    JobAlreadyRunning,
    JobConflict,
    JobNotFound,
    SiteMigratorError,
    StorageUnavailable,
    ValidationError,
)
from site_migrator.models.config import load_settings
from site_migrator.models.job import Direction, JobError, JobStatus, ProgressReport
from site_migrator.orchestrator.orchestrator import MigrationOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)

CONFIG_ENV = "SITE_MIGRATOR_CONFIG"

# Global instances
orchestrator: Optional[MigrationOrchestrator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global orchestrator

    logger.info(f"Starting Site Migrator API v{__version__}")
    try:
        settings = load_settings(os.environ.get(CONFIG_ENV))
        orchestrator = build_orchestrator(settings)
        logger.info(f"Orchestrator ready for site {settings.site_id}")
    except SiteMigratorError as e:
        # Keep serving /health so the misconfiguration is visible
        logger.error(f"Failed to initialize the orchestrator: {e.message}")
        orchestrator = None

    yield

    logger.info("Shutting down Site Migrator API")
    if orchestrator is not None:
        orchestrator.database.close()
    orchestrator = None


app = FastAPI(
    title="Site Migrator API",
    description="Chunked export and import of a site's database, media, plugins and themes",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request and response models
class JobCreateRequest(BaseModel):
    """Body of ``POST /jobs``."""
    direction: Direction
    selection: Dict[str, Any] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    job_id: Optional[str] = None


class JobCreateResponse(BaseModel):
    job_id: str
    status: JobStatus
    percent: float
    message: str


class JobStatusResponse(BaseModel):
    """Progress of one job as seen by a polling client."""
    job_id: str
    direction: Direction
    status: JobStatus
    percent: float
    message: str
    cursor: int
    total_units: int
    warnings: List[str] = Field(default_factory=list)
    error: Optional[JobError] = None
    archive_path: Optional[str] = None
    updated_at: Optional[datetime] = None
    eta_seconds: Optional[int] = None

    @classmethod
    def from_report(cls, report: ProgressReport) -> "JobStatusResponse":
        return cls(**report.model_dump())


class JobListResponse(BaseModel):
    jobs: List[JobStatusResponse]
    total: int


async def get_orchestrator() -> MigrationOrchestrator:
    """Dependency to get the orchestrator instance."""
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized"
        )
    return orchestrator


_STATUS_CODES = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    JobNotFound: status.HTTP_404_NOT_FOUND,
    JobAlreadyRunning: status.HTTP_409_CONFLICT,
    JobConflict: status.HTTP_409_CONFLICT,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(error: SiteMigratorError) -> int:
    for error_type, code in _STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy" if orchestrator is not None else "degraded",
        "version": __version__,
        "service": "Site Migrator API",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "orchestrator": orchestrator is not None,
        }
    }


@app.post("/jobs",
          response_model=JobCreateResponse,
          status_code=status.HTTP_201_CREATED,
          tags=["Jobs"])
async def create_job(
    request: JobCreateRequest,
    orch: MigrationOrchestrator = Depends(get_orchestrator)
):
    """
    Start an export or import job.

    - **direction**: ``export`` or ``import``
    - **selection**: raw selection parameters (``selected_<type>_ids``, ``options_keys``, ``widget_groups``)
    - **options**: categories to include, archive path and target URLs
    - **job_id**: optional idempotency key; an existing job with this id is returned as is
    """
    job = await orch.start_job(
        request.direction,
        selection=request.selection,
        options=request.options,
        job_id=request.job_id
    )
    logger.info(f"Created {job.direction.value} job {job.job_id}")
    return JobCreateResponse(
        job_id=job.job_id,
        status=job.status,
        percent=job.percent_complete,
        message=job.status_message
    )


@app.post("/jobs/{job_id}/continue",
          response_model=JobStatusResponse,
          tags=["Jobs"])
async def continue_job(
    job_id: str,
    orch: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Run the next work unit(s) of a job and return its progress."""
    report = await orch.continue_job(job_id)
    return JobStatusResponse.from_report(report)


@app.get("/jobs/{job_id}/status",
         response_model=JobStatusResponse,
         tags=["Jobs"])
async def get_job_status(
    job_id: str,
    orch: MigrationOrchestrator = Depends(get_orchestrator)
):
    return JobStatusResponse.from_report(orch.status(job_id))


@app.post("/jobs/{job_id}/cancel",
          response_model=JobStatusResponse,
          tags=["Jobs"])
async def cancel_job(
    job_id: str,
    orch: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Cancel a pending or running job. Finished jobs are returned unchanged."""
    report = await orch.cancel_job(job_id)
    return JobStatusResponse.from_report(report)


@app.post("/jobs/{job_id}/rollback",
          response_model=JobStatusResponse,
          tags=["Jobs"])
async def rollback_job(
    job_id: str,
    orch: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Restore the database from the pre-import snapshot of a finished import job."""
    report = await orch.rollback_job(job_id)
    return JobStatusResponse.from_report(report)


@app.get("/jobs",
         response_model=JobListResponse,
         tags=["Jobs"])
async def list_jobs(
    status_filter: Optional[JobStatus] = None,
    orch: MigrationOrchestrator = Depends(get_orchestrator)
):
    reports = orch.list_jobs()
    if status_filter is not None:
        reports = [r for r in reports if r.status == status_filter]
    jobs = [JobStatusResponse.from_report(r) for r in reports]
    return JobListResponse(jobs=jobs, total=len(jobs))


# Error handlers
@app.exception_handler(SiteMigratorError)
async def migrator_exception_handler(request: Request, exc: SiteMigratorError):
    """Map engine errors to HTTP status codes."""
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=code,
        content={
            "error": {
                "code": code,
                "message": exc.message,
                "type": exc.code,
                "details": exc.details,
            }
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.status_code,
                "message": exc.detail,
                "type": "http_error"
            }
        }
    )


def start_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False, log_level: str = "info"):
    """Start the FastAPI server."""
    try:
        uvicorn.run(
            "site_migrator.api.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level=log_level
        )
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    start_server()

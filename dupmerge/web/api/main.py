"""FastAPI application for running deduplication jobs."""

from fastapi import FastAPI, HTTPException, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any
import logging
from datetime import datetime

from ...batch.job_state import RESUMABLE_STATUSES, JobRunState
from ...batch.orchestrator import BatchOrchestrator
from ...config.schema import MAX_BATCH_SIZE
from ...core.errors import DupMergeError, JobStateError
from ...merge.conflict_resolver import build_conflict_report, render_audit_note

logger = logging.getLogger(__name__)


# Pydantic models for API
class JobRequest(BaseModel):
    config_id: str
    is_dry_run: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=MAX_BATCH_SIZE)


class JobResponse(BaseModel):
    job_id: str
    config_id: str
    object_type: str
    status: str
    cursor: Optional[str] = None
    records_processed: int
    duplicates_found: int
    records_merged: int
    groups_found: int
    pages_processed: int
    resume_attempts: int
    start_time: Optional[str] = None
    last_update: Optional[str] = None
    end_time: Optional[str] = None
    is_dry_run: bool
    batch_size: int
    errors: List[str]
    failed_group_ids: List[str]
    duplicate_rate: float
    merge_rate: float
    records_per_minute: float
    is_terminal: bool

    @classmethod
    def from_state(cls, state: JobRunState) -> 'JobResponse':
        return cls(**state.to_dict())


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


def create_app(orchestrator: BatchOrchestrator) -> FastAPI:
    """
    Build the API around an orchestrator.

    Args:
        orchestrator: Orchestrator that owns the jobs

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="DupMerge API",
        description="Record deduplication and merge jobs",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.orchestrator = orchestrator

    def run_job(job_id: str):
        """Run a job in the background."""
        try:
            state = orchestrator.run_job(job_id)
            logger.info(f"Job {job_id} finished: {state.status.value}")
        except DupMergeError as e:
            logger.error(f"Job {job_id} failed: {e}")

    def resume_job(job_id: str):
        """Resume a job in the background."""
        try:
            state = orchestrator.resume_job(job_id)
            logger.info(f"Job {job_id} finished: {state.status.value}")
        except DupMergeError as e:
            logger.error(f"Resuming job {job_id} failed: {e}")

    def get_state(job_id: str) -> JobRunState:
        try:
            return orchestrator.get_job_status(job_id)
        except JobStateError:
            raise HTTPException(status_code=404, detail="Job not found")

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    @app.post("/api/jobs", response_model=JobResponse, status_code=202)
    async def start_job(request: JobRequest, background_tasks: BackgroundTasks):
        """Queue a job and run it in the background."""
        job_id = orchestrator.start_job(
            request.config_id,
            is_dry_run=request.is_dry_run,
            batch_size=request.batch_size,
        )
        background_tasks.add_task(run_job, job_id)
        return JobResponse.from_state(orchestrator.get_job_status(job_id))

    @app.get("/api/jobs", response_model=List[JobResponse])
    async def list_jobs():
        """List all jobs."""
        return [JobResponse.from_state(state) for state in orchestrator.list_jobs()]

    @app.get("/api/jobs/{job_id}", response_model=JobResponse)
    async def get_job(job_id: str):
        """Get job status."""
        return JobResponse.from_state(get_state(job_id))

    @app.post("/api/jobs/{job_id}/cancel", response_model=CancelResponse)
    async def cancel_job(job_id: str):
        """Request cancellation; running jobs stop at the next page boundary."""
        get_state(job_id)
        try:
            cancelled = orchestrator.cancel_job(job_id)
        except JobStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return CancelResponse(job_id=job_id, cancelled=cancelled)

    @app.post("/api/jobs/{job_id}/resume", response_model=JobResponse, status_code=202)
    async def resume(job_id: str, background_tasks: BackgroundTasks):
        """Resume a failed or interrupted job from its last checkpoint."""
        state = get_state(job_id)
        if state.status not in RESUMABLE_STATUSES:
            raise HTTPException(
                status_code=409,
                detail=f"Job is {state.status.value} and cannot be resumed"
            )
        background_tasks.add_task(resume_job, job_id)
        return JobResponse.from_state(state)

    @app.get("/api/jobs/{job_id}/plans")
    async def get_plans(job_id: str) -> List[Dict[str, Any]]:
        """Merge plans collected by a dry run, with their audit artifacts."""
        get_state(job_id)
        try:
            plans = orchestrator.get_dry_run_plans(job_id)
        except JobStateError as e:
            raise HTTPException(status_code=409, detail=str(e))

        return [
            {
                **plan.to_dict(),
                'conflict_report': build_conflict_report(plan),
                'note': render_audit_note(plan),
            }
            for plan in plans
        ]

    return app


if __name__ == "__main__":
    import os
    import uvicorn
    from ...repository.sqlite_adapter import SqliteRepository

    logging.basicConfig(level=logging.INFO)
    repository = SqliteRepository(os.environ.get("DUPMERGE_DB", "dupmerge.db"))
    uvicorn.run(create_app(BatchOrchestrator(repository)), host="0.0.0.0", port=8000)

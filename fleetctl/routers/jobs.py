from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from fleetctl.core.config import get_settings
from fleetctl.dependencies import get_runner_service, get_history_service
from fleetctl.schemas.job import (
    JobRunDetail,
    JobRunPage,
    TriggerJobRequest,
    TriggerJobResponse,
)
from fleetctl.services import RunnerService, HistoryService, SchedulerService, CancelResult

settings_conf = get_settings()
router = APIRouter()


@router.get("/api/health")
async def health_check():
    """Health check endpoint for Docker and monitoring.

    Returns:
        Status, version and whether the scheduler is polling.
    """
    return {
        "status": "ok",
        "app": settings_conf.APP_NAME,
        "version": settings_conf.VERSION,
        "scheduler": "running" if SchedulerService.is_running() else "stopped",
        "active_runs": RunnerService.running_count(),
    }


@router.post(
    "/api/job-templates/{template_id}/runs",
    response_model=TriggerJobResponse,
    status_code=202,
)
async def trigger_job(
    template_id: int,
    payload: Optional[TriggerJobRequest] = None,
    service: RunnerService = Depends(get_runner_service),
):
    """Starts a manual run of a job template.

    The run executes in the background; poll ``GET /api/job-runs/{id}``
    for its progress. Without a target the run covers every enabled host.
    """
    payload = payload or TriggerJobRequest()
    run_id = service.trigger_job(template_id, payload.target, payload.variables)
    if run_id is None:
        raise HTTPException(status_code=404, detail=f"Job template {template_id} not found")
    return TriggerJobResponse(job_run_id=run_id)


@router.get("/api/job-runs", response_model=JobRunPage)
async def list_job_runs(
    status: Optional[str] = None,
    job_template_id: Optional[int] = None,
    schedule_id: Optional[int] = None,
    trigger: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    service: HistoryService = Depends(get_history_service),
):
    limit = min(max(limit, 1), 500)
    return service.list_job_runs(
        status=status,
        job_template_id=job_template_id,
        schedule_id=schedule_id,
        trigger=trigger,
        page=page,
        limit=limit,
    )


@router.get("/api/job-runs/{run_id}", response_model=JobRunDetail)
async def get_job_run(run_id: int, service: HistoryService = Depends(get_history_service)):
    run = service.get_job_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Job run {run_id} not found")
    return run


@router.post("/api/job-runs/{run_id}/cancel")
async def cancel_job_run(run_id: int, service: RunnerService = Depends(get_runner_service)):
    """Cancels a pending or running job run.

    Commands already running on a host are not killed; the run simply stops
    waiting for them and dispatches nothing further.
    """
    result = service.cancel_job_run(run_id)
    if result == CancelResult.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Job run {run_id} not found")
    if result == CancelResult.ALREADY_TERMINAL:
        raise HTTPException(status_code=409, detail=f"Job run {run_id} has already finished")
    return {"id": run_id, "status": "cancelled"}

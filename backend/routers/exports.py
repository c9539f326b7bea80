"""
Export job router

Handles submission, status polling, cancellation and retry of video exports:
- POST /api/exports                  submit a scenario snapshot
- GET  /api/exports/{job_id}         job status
- POST /api/exports/{job_id}/cancel  request cancellation
- POST /api/exports/{job_id}/retry   start a new job from a failed one
"""

import structlog
from fastapi import APIRouter, HTTPException, Depends, Path, Request

from schemas import ScenarioSnapshot, ExportCreateResponse, ExportStatusResponse, ErrorResponse
from pipeline.error_handler import PipelineError, ErrorCode
from pipeline.export_controller import ExportJobController

logger = structlog.get_logger()

router = APIRouter(prefix="/api/exports", tags=["Exports"])


def get_export_controller(request: Request) -> ExportJobController:
    """Dependency returning the controller built at application startup."""
    return request.app.state.export_controller


def _error_detail(error: PipelineError) -> dict:
    return {
        "error": error.code.value,
        "message": error.get_user_friendly_message(),
        "details": error.details or None
    }


def _raise_http(error: PipelineError):
    status_code = 500
    if error.code == ErrorCode.JOB_NOT_FOUND:
        status_code = 404
    elif error.code == ErrorCode.JOB_NOT_RETRYABLE:
        status_code = 409

    logger.warning("export_request_rejected", error_code=error.code.value, status_code=status_code)
    raise HTTPException(status_code=status_code, detail=_error_detail(error))


@router.post(
    "",
    response_model=ExportCreateResponse,
    status_code=202,
    responses={
        202: {"description": "Export job accepted"},
        422: {"description": "Invalid scenario snapshot"},
        500: {"model": ErrorResponse, "description": "Internal server error"}
    },
    summary="Create Export",
    description="Snapshot a scenario and start rendering it into one MP4"
)
async def create_export(
    snapshot: ScenarioSnapshot,
    controller: ExportJobController = Depends(get_export_controller)
):
    """
    Submit a scenario snapshot for export.

    The snapshot is validated once here; the job then runs in the background.
    Poll `GET /api/exports/{job_id}` for progress.

    **Example Response:**
    ```json
    {
      "job_id": "550e8400-e29b-41d4-a716-446655440000",
      "status": "queued",
      "retry_of": null,
      "message": "Export job created successfully"
    }
    ```
    """
    job = await controller.submit(snapshot)

    return ExportCreateResponse(
        job_id=job.job_id,
        status=job.status,
        retry_of=job.retry_of,
        message="Export job created successfully"
    )


@router.get(
    "/{job_id}",
    response_model=ExportStatusResponse,
    status_code=200,
    responses={
        200: {"description": "Export status retrieved successfully"},
        404: {"model": ErrorResponse, "description": "Export job not found"}
    },
    summary="Get Export Status"
)
async def get_export_status(
    job_id: str = Path(..., description="Unique export job identifier"),
    controller: ExportJobController = Depends(get_export_controller)
):
    """
    Get the status of an export job.

    **Status Values:**
    - `queued`, `resolving`, `composing`, `rendering`: in progress
    - `done`: `output_uri` (and `subtitle_uri` when there were cues) is set
    - `failed`: `error_kind`, `failed_stage` and `error_summary` are set
    """
    try:
        return ExportStatusResponse(**controller.get_status(job_id))
    except PipelineError as e:
        _raise_http(e)


@router.post(
    "/{job_id}/cancel",
    response_model=ExportStatusResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Export job not found"}
    },
    summary="Cancel Export"
)
async def cancel_export(
    job_id: str = Path(..., description="Unique export job identifier"),
    controller: ExportJobController = Depends(get_export_controller)
):
    """
    Request cancellation. The job stops before its next stage and then
    reports `failed` with `error_kind = JOB_CANCELLED`.
    """
    try:
        job = controller.cancel(job_id)
    except PipelineError as e:
        _raise_http(e)

    return ExportStatusResponse(**job.status_view())


@router.post(
    "/{job_id}/retry",
    response_model=ExportCreateResponse,
    status_code=202,
    responses={
        404: {"model": ErrorResponse, "description": "Export job not found"},
        409: {"model": ErrorResponse, "description": "Export job has not failed"}
    },
    summary="Retry Export"
)
async def retry_export(
    job_id: str = Path(..., description="Failed export job to retry"),
    controller: ExportJobController = Depends(get_export_controller)
):
    """Start a new export from a failed job's snapshot."""
    try:
        job = await controller.retry(job_id)
    except PipelineError as e:
        _raise_http(e)

    return ExportCreateResponse(
        job_id=job.job_id,
        status=job.status,
        retry_of=job.retry_of,
        message="Export job retry created successfully"
    )

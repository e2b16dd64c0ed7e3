"""
Job Tracking API Router

  POST   /start-job                 upload a document, spawn the job → 202
  GET    /progress-stream/{job_id}  Server-Sent Events progress stream
  DELETE /cancel-job/{job_id}       cancel (idempotent)
  GET    /result?jobID=...          fetch the extraction result once
  POST   /estimate-time             projected duration, side-effect free
  GET    /remote-health             privacy pipeline reachability

Request lifecycle (start-job):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification (401 before any work)               │
  │ 2. Size guard from Content-Length, then read the upload │
  │ 3. job_id = <pipeline>_<millis>_<suffix>                │
  │ 4. openai  → JobRunner.start()     (detached task)      │
  │    privacy → PrivacyBridge.submit() (detached task)     │
  │ 5. 202 with jobID and progressURL                       │
  └─────────────────────────────────────────────────────────┘

SSE stream frames:
  event: progress|complete|error
  data:  {stage, percent, message, error, completed[, result]}
The stream closes after the first complete or error frame. Idle streams get
a ": keepalive" comment line. EventSource clients pass the JWT as ?auth=.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse

from app.auth.token import CurrentUser, StreamUser
from app.jobs.container import JobServices, get_services
from app.jobs.exceptions import (
    ConfigurationError,
    DocumentError,
    RemoteConnectionError,
    RemoteServiceError,
    RemoteTimeoutError,
)
from app.jobs.ids import new_job_id, pipeline_of
from app.schemas.jobs import (
    CancelJobResponse,
    ErrorResponse,
    JobErrors,
    Pipeline,
    ProcessingType,
    StartJobResponse,
    TimeEstimate,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Job Tracking"])

Services = Annotated[JobServices, Depends(get_services)]

# Allowance for multipart boundaries and form fields on top of the file itself
_FORM_OVERHEAD_BYTES = 4096


# ---------------------------------------------------------------------------
# POST /start-job
# ---------------------------------------------------------------------------

@router.post(
    "/start-job",
    response_model=StartJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start processing a document",
    description=(
        "Returns 202 immediately with the job id; processing continues in the "
        "background. Open the progressURL as an EventSource for live updates."
    ),
    responses={
        202: {"model": StartJobResponse, "description": "Job accepted"},
        400: {"model": ErrorResponse, "description": "No file supplied"},
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
    },
)
async def start_job(
    request:         Request,
    user:            CurrentUser,
    services:        Services,
    file:            UploadFile     = File(..., description="Invoice document (PDF)"),
    pipeline:        Pipeline       = Form(Pipeline.OPENAI),
    processing_type: ProcessingType = Form(ProcessingType.TEXT),
) -> JSONResponse:
    document = await _read_upload(request, file, services.max_file_size_bytes)

    job_id = new_job_id(pipeline)
    if pipeline == Pipeline.PRIVACY:
        services.bridge.submit(
            job_id,
            document,
            filename=file.filename or "invoice.pdf",
            content_type=file.content_type or "application/pdf",
        )
    else:
        services.runner.start(job_id, document, processing_type)

    logger.info(
        "Job accepted | job=%s pipeline=%s type=%s user=%s",
        job_id, pipeline.value, processing_type.value, user.sub,
    )

    body = StartJobResponse(
        job_id=job_id,
        progress_url=f"/api/v1/progress-stream/{job_id}",
        pipeline=pipeline,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json", by_alias=True),
        headers={"Location": body.progress_url},
    )


# ---------------------------------------------------------------------------
# GET /progress-stream/{job_id}: SSE stream
# ---------------------------------------------------------------------------

@router.get(
    "/progress-stream/{job_id}",
    summary="Stream job progress via Server-Sent Events",
    response_class=StreamingResponse,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown or expired job"},
    },
)
async def stream_progress(
    job_id:   str,
    request:  Request,
    user:     StreamUser,
    services: Services,
) -> StreamingResponse:
    """
    The first frame is the job's current snapshot (or initializing/0). A
    second connection for the same job replaces this one.
    """
    pipeline = pipeline_of(job_id)
    if pipeline is None or (
        pipeline == Pipeline.OPENAI
        and services.registry.get(job_id) is None
        and not services.runner.is_running(job_id)
    ):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=JobErrors.job_not_found(job_id).model_dump(),
        )

    subscription = services.publisher.subscribe(job_id)
    poller = None
    if pipeline == Pipeline.PRIVACY:
        poller = services.bridge.attach(job_id, subscription, user.token or None)

    logger.info("SSE client connected | job=%s user=%s", job_id, user.sub)

    async def event_generator():
        try:
            async for frame in subscription.frames(services.keepalive_seconds):
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | job=%s", job_id)
                    break
                yield frame
        finally:
            if poller is not None:
                poller.cancel()
            services.publisher.unsubscribe(job_id, subscription)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",   # disable nginx buffering
        },
    )


# ---------------------------------------------------------------------------
# DELETE /cancel-job/{job_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/cancel-job/{job_id}",
    response_model=CancelJobResponse,
    summary="Cancel a running job",
    description="Idempotent: cancelling a finished or already-cancelled job succeeds.",
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse, "description": "Processing service unreachable or not configured"},
        504: {"model": ErrorResponse, "description": "Processing service did not answer in time"},
    },
)
async def cancel_job(
    job_id:   str,
    user:     CurrentUser,
    services: Services,
) -> CancelJobResponse:
    pipeline = pipeline_of(job_id)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=JobErrors.job_not_found(job_id).model_dump(),
        )

    snapshot = services.registry.get(job_id)
    if services.registry.finished(job_id) or job_id in services.results:
        return CancelJobResponse(
            job_id=job_id,
            cancelled=False,
            status="already_finished",
            message=(
                f"Job already finished with stage '{snapshot.stage.value}'."
                if snapshot is not None else "Job already finished."
            ),
        )

    if pipeline == Pipeline.PRIVACY:
        remote = await _forward_cancel(services, job_id)
        logger.info("Job cancel forwarded | job=%s user=%s", job_id, user.sub)
        return CancelJobResponse(
            job_id=job_id,
            cancelled=True,
            status="forwarded",
            message="Cancellation sent to the processing service.",
            remote=remote,
        )

    if not services.runner.cancel(job_id):
        if snapshot is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=JobErrors.job_not_found(job_id).model_dump(),
            )
        # Live snapshot without a task: mark it terminal directly
        services.tracker.fail(job_id, "Processing cancelled", "Job was cancelled by the client")

    logger.info("Job cancelled | job=%s user=%s", job_id, user.sub)
    return CancelJobResponse(
        job_id=job_id,
        cancelled=True,
        status="cancelled",
        message="Job cancelled.",
    )


async def _forward_cancel(services: JobServices, job_id: str) -> dict[str, Any]:
    try:
        return await services.bridge.cancel(job_id)
    except ConfigurationError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=JobErrors.not_configured("The privacy processing service").model_dump(),
        )
    except RemoteTimeoutError:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=JobErrors.remote_timeout("Cancel").model_dump(),
        )
    except RemoteConnectionError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=JobErrors.remote_unavailable("cancellation").model_dump(),
        )
    except RemoteServiceError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=JobErrors.remote_failed("Cancel", str(exc)).model_dump(),
        )


# ---------------------------------------------------------------------------
# GET /result?jobID=...
# ---------------------------------------------------------------------------

@router.get(
    "/result",
    summary="Fetch a job's extraction result (once)",
    responses={
        200: {"description": "Structured invoice payload"},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown, expired or already fetched"},
    },
)
async def get_result(
    user:     CurrentUser,
    services: Services,
    job_id:   str = Query(..., alias="jobID", min_length=1),
) -> JSONResponse:
    payload = services.results.pop(job_id)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=JobErrors.result_not_found(job_id).model_dump(),
        )

    services.registry.evict(job_id)
    logger.info("Result delivered | job=%s user=%s", job_id, user.sub)
    return JSONResponse(status_code=status.HTTP_200_OK, content=payload)


# ---------------------------------------------------------------------------
# POST /estimate-time
# ---------------------------------------------------------------------------

@router.post(
    "/estimate-time",
    response_model=TimeEstimate,
    summary="Estimate processing time for a document",
    responses={
        400: {"model": ErrorResponse, "description": "Missing or unreadable document"},
        401: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
    },
)
async def estimate_time(
    request:  Request,
    user:     CurrentUser,
    services: Services,
    file:     UploadFile = File(...),
) -> TimeEstimate:
    document = await _read_upload(request, file, services.max_file_size_bytes)
    try:
        return await services.estimator.estimate(document)
    except DocumentError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JobErrors.unreadable_document(str(exc)).model_dump(),
        )


# ---------------------------------------------------------------------------
# GET /remote-health
# ---------------------------------------------------------------------------

@router.get(
    "/remote-health",
    summary="Privacy pipeline reachability",
    responses={503: {"model": ErrorResponse, "description": "Down or not configured"}},
)
async def remote_health(user: CurrentUser, services: Services) -> dict:
    try:
        remote = await services.bridge.health()
    except ConfigurationError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=JobErrors.not_configured("The privacy processing service").model_dump(),
        )
    except (RemoteTimeoutError, RemoteConnectionError, RemoteServiceError) as exc:
        logger.warning("Remote health check failed | error=%s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=JobErrors.remote_unavailable("health check").model_dump(),
        )
    return {"status": "healthy", "remote": remote}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _read_upload(request: Request, file: UploadFile, limit_bytes: int) -> bytes:
    """Read the upload, rejecting oversized bodies before reading when possible."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit_bytes + _FORM_OVERHEAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=JobErrors.file_too_large(int(content_length), limit_bytes).model_dump(),
        )

    document = await file.read()
    if not document:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JobErrors.missing_file().model_dump(),
        )
    if len(document) > limit_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=JobErrors.file_too_large(len(document), limit_bytes).model_dump(),
        )
    return document

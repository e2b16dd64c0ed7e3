"""
Job Tracking: Pydantic Request/Response Schemas

Covers the lifecycle of a processing job:
  - POST /start-job response (202 Accepted)
  - ProgressSnapshot, the payload of every SSE progress frame
  - Remote pipeline status documents consumed by the poll bridge
  - Cancel and time-estimate responses
  - Structured error bodies (400, 401, 404, 413, 422, 500, 503, 504)
    and their factories (JobErrors)

Design decisions:
  - job_id is always server-generated; never client-supplied.
  - percent is an integer 0..100; the registry keeps it non-decreasing.
  - Snapshots are immutable: the registry swaps in a new one on each update.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Stage(str, Enum):
    """
    Transitions: initializing → uploading → processing → finalizing → completed
    Any state may move to error.
    """
    INITIALIZING = "initializing"
    UPLOADING    = "uploading"
    PROCESSING   = "processing"
    FINALIZING   = "finalizing"
    COMPLETED    = "completed"
    ERROR        = "error"


class Pipeline(str, Enum):
    """Which processing backend owns the job. Doubles as the job_id prefix."""
    OPENAI  = "openai"     # direct AI path, runs in-process
    PRIVACY = "privacy"    # externally hosted OCR + local LLM, bridged by polling


class ProcessingType(str, Enum):
    TEXT  = "text"     # native PDF text layer via assistant file_search
    IMAGE = "image"    # rendered page images via vision chat completion


# ---------------------------------------------------------------------------
# Progress snapshot: one per job in the registry, one per SSE frame
# ---------------------------------------------------------------------------

class ProgressSnapshot(BaseModel):
    """Latest known progress of one job."""
    model_config = ConfigDict(frozen=True)

    stage:     Stage
    percent:   int        = Field(0, ge=0, le=100)
    message:   str        = ""
    error:     str | None = None
    completed: bool       = False

    @property
    def is_terminal(self) -> bool:
        return self.completed or self.stage == Stage.ERROR

    @classmethod
    def initial(cls) -> "ProgressSnapshot":
        return cls(stage=Stage.INITIALIZING, percent=0, message="Starting processing...")


# ---------------------------------------------------------------------------
# POST /start-job: 202 Accepted
# ---------------------------------------------------------------------------

class StartJobResponse(BaseModel):
    """Returned immediately; processing continues in a detached task."""
    job_id:       str = Field(..., serialization_alias="jobID", description="Server-generated job identifier")
    progress_url: str = Field(..., serialization_alias="progressURL", description="SSE endpoint streaming this job's progress")
    pipeline:     Pipeline
    message:      str = "Processing started. Connect to the progress stream for updates."


# ---------------------------------------------------------------------------
# DELETE /cancel-job/{job_id}
# ---------------------------------------------------------------------------

class CancelJobResponse(BaseModel):
    job_id:    str
    cancelled: bool
    status:    str = Field(..., description="cancelled | already_finished | forwarded")
    message:   str = ""
    remote:    dict[str, Any] | None = Field(
        None,
        description="Body returned by the remote pipeline's cancel endpoint",
    )


# ---------------------------------------------------------------------------
# POST /estimate-time
# ---------------------------------------------------------------------------

class TimeBreakdown(BaseModel):
    """Projected seconds per stage."""
    ocr:                 float
    metadata_extraction: float
    items_extraction:    float


class TimeEstimate(BaseModel):
    char_count:             int
    page_count:             int
    estimated_time_seconds: float
    breakdown:              TimeBreakdown
    note:                   str


# ---------------------------------------------------------------------------
# Remote pipeline status: GET {PRIVACY_API_URL}/progress/{job_id}
# ---------------------------------------------------------------------------

class RemoteProgress(BaseModel):
    """
    Status document published by the externally hosted pipeline.
    status: started | processing | completed | error
    stage:  upload | ocr | llm | postprocess
    """
    model_config = ConfigDict(extra="ignore")

    status:   str
    progress: float            = 0.0
    stage:    str | None       = None
    message:  str              = ""
    error:    str | None       = None
    result:   dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error: may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class JobErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unauthorized(detail: str = "Missing or invalid Authorization header.") -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[ErrorDetail(field=None, message=detail, code="UNAUTHORIZED")],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def unreadable_document(reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNREADABLE_DOCUMENT",
            message="The document could not be read.",
            details=[ErrorDetail(field="file", message=reason, code="UNREADABLE_DOCUMENT")],
        )

    @staticmethod
    def job_not_found(job_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="JOB_NOT_FOUND",
            message=f"Job '{job_id}' was not found or has expired.",
        )

    @staticmethod
    def result_not_found(job_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RESULT_NOT_FOUND",
            message=f"Results for job '{job_id}' were not found or have expired.",
        )

    @staticmethod
    def not_configured(service: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SERVICE_NOT_CONFIGURED",
            message=f"{service} is not configured on this server.",
        )

    @staticmethod
    def remote_timeout(operation: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="TIMEOUT",
            message=f"{operation} request timed out.",
        )

    @staticmethod
    def remote_unavailable(operation: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SERVICE_UNAVAILABLE",
            message=f"Cannot connect to the processing service for {operation}.",
        )

    @staticmethod
    def remote_failed(operation: str, detail: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="REMOTE_ERROR",
            message=f"{operation} failed.",
            details=[ErrorDetail(field=None, message=detail, code="REMOTE_ERROR")],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )

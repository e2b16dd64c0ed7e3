"""
Job Runner: direct AI pipeline, one detached asyncio.Task per job.

  uploading(10) → processing(25..85) → finalizing(90) → completed(100)
  any state     → error(100)

The registry is the source of truth for status. The runner keeps task handles
only to log unexpected exceptions and to cancel.

Failure mapping (message / error pushed to the client):
  no API key or OpenAI AuthenticationError → "Authentication failed"
  OpenAI RateLimitError                    → "Rate limit exceeded"
  timeouts                                 → "Request timed out"
  connection failures                      → "Connection failed"
  empty or oversized document              → "File error"
  anything else                            → "Processing failed"
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time

import httpx
import openai

from app.jobs.exceptions import (
    ConfigurationError,
    DocumentError,
    JobError,
    RateLimitError,
    RemoteConnectionError,
    RemoteTimeoutError,
)
from app.jobs.results import ResultStore
from app.jobs.tracker import ProgressTracker
from app.processing.assistant import InvoiceExtractor
from app.processing.parsing import normalize_dates
from app.schemas.jobs import ProcessingType, Stage

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Processing cancelled"


def classify(exc: BaseException) -> JobError:
    """Map any exception raised inside a job onto the JobError taxonomy."""
    if isinstance(exc, JobError):
        return exc
    if isinstance(exc, openai.AuthenticationError):
        return ConfigurationError(
            "OpenAI API key is invalid or missing",
            user_message="Authentication failed",
        )
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError("OpenAI API rate limit reached. Please try again later.")
    if isinstance(exc, (openai.APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return RemoteTimeoutError("OpenAI API request timed out. Please try again.")
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError)):
        return RemoteConnectionError(f"Could not reach OpenAI: {exc}")
    return JobError(str(exc) or type(exc).__name__)


class JobRunner:
    def __init__(
        self,
        tracker:             ProgressTracker,
        results:             ResultStore,
        extractor:           InvoiceExtractor | None,
        max_file_size_bytes: int = 50 * 1024 * 1024,
    ) -> None:
        self._tracker   = tracker
        self._results   = results
        self._extractor = extractor          # None when OPENAI_API_KEY is unset
        self._max_bytes = max_file_size_bytes
        self._tasks:    dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(
        self,
        job_id:          str,
        document:        bytes,
        processing_type: ProcessingType = ProcessingType.TEXT,
    ) -> asyncio.Task:
        """Spawn the job and return immediately."""
        task = asyncio.create_task(
            self._run(job_id, document, processing_type),
            name=f"job:{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(functools.partial(self._on_done, job_id))
        logger.info(
            "Job started | job=%s pipeline=openai type=%s size=%d",
            job_id, processing_type.value, len(document),
        )
        return task

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a running job. Returns False when no live task exists.

        The error snapshot is written before the task is cancelled so the job
        is terminal even if the task never got to run.
        """
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        self._tracker.fail(job_id, CANCELLED_MESSAGE, "Job was cancelled by the client")
        task.cancel()
        logger.info("Job cancel requested | job=%s", job_id)
        return True

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        """Cancel every live job; used by the application lifespan."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for job_id in list(self._tasks):
            self.cancel(job_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    async def _run(self, job_id: str, document: bytes, processing_type: ProcessingType) -> None:
        t0 = time.monotonic()
        try:
            if self._extractor is None:
                raise ConfigurationError(
                    "OpenAI API key is not configured",
                    user_message="Authentication failed",
                )
            self._validate(document)

            self._tracker.report(job_id, Stage.UPLOADING, 10, "Uploading file to OpenAI...")

            result = await self._extractor.extract(
                document,
                processing_type,
                functools.partial(self._report_processing, job_id),
            )

            self._tracker.report(job_id, Stage.FINALIZING, 90, "Formatting results...")
            result = normalize_dates(result)

            # Stored before the completed frame goes out
            self._results.put(job_id, result)
            self._tracker.complete(job_id, "Processing completed successfully!")

            logger.info(
                "Job completed | job=%s items=%d elapsed_ms=%.0f",
                job_id, len(result.get("invoice_data") or []), (time.monotonic() - t0) * 1000,
            )

        except asyncio.CancelledError:
            self._tracker.fail(job_id, CANCELLED_MESSAGE, "Job was cancelled by the client")
            raise

        except Exception as exc:
            error = classify(exc)
            if error is not exc:
                logger.debug("Job exception classified | job=%s type=%s", job_id, type(exc).__name__)
            self._tracker.fail_with(job_id, error)

    def _report_processing(self, job_id: str, percent: int, message: str) -> None:
        self._tracker.report(job_id, Stage.PROCESSING, percent, message)

    def _validate(self, document: bytes) -> None:
        if not document:
            raise DocumentError("Uploaded file is empty")
        if len(document) > self._max_bytes:
            raise DocumentError(f"File too large (max {self._max_bytes // (1024 * 1024)}MB)")

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Job task crashed | job=%s error=%r", job_id, exc, exc_info=exc)

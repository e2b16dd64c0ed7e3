"""
Poll-to-Push Bridge: externally hosted "privacy" pipeline (OCR + local LLM).

The remote service only exposes a pull API:

  POST   {url}/process-invoice     multipart file + job_id, blocks until done
  GET    {url}/progress/{job_id}   {status, progress, stage, message, error, result}
  DELETE {url}/cancel-job/{job_id}
  GET    {url}/health

The bridge turns that into push events:

  submit()  detached task that posts the document. A failure becomes an error
            snapshot; a successful body is stored as the result and completes
            the job, unless the job is already finished.
  stream()  one poll loop per stream subscription. First poll is immediate,
            then every poll_interval. Each observation goes through the
            ProgressTracker, so the subscriber sees it as an SSE frame.
            Stops on a terminal status, on the first failure (no retries)
            or once the subscription is closed.
  cancel()  relays the cancel request. The poll loop picks up the remote's
            terminal state on its next tick.

Remote stage → local stage:
  upload → uploading    ocr, llm → processing    postprocess → finalizing
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

import httpx

from app.jobs.exceptions import (
    ConfigurationError,
    JobError,
    MalformedResponseError,
    RemoteConnectionError,
    RemoteServiceError,
    RemoteTimeoutError,
)
from app.jobs.publisher import Subscription
from app.jobs.results import ResultStore
from app.jobs.tracker import ProgressTracker
from app.schemas.jobs import RemoteProgress, Stage

logger = logging.getLogger(__name__)

STAGE_MAP: dict[str, Stage] = {
    "upload":      Stage.UPLOADING,
    "ocr":         Stage.PROCESSING,
    "llm":         Stage.PROCESSING,
    "postprocess": Stage.FINALIZING,
}


class PrivacyBridge:
    def __init__(
        self,
        tracker:         ProgressTracker,
        results:         ResultStore,
        client:          httpx.AsyncClient,
        base_url:        str,
        api_key:         str   = "",
        poll_interval:   float = 1.0,
        request_timeout: float = 10.0,
        submit_timeout:  float = 300.0,
        cancel_timeout:  float = 5.0,
        health_timeout:  float = 5.0,
    ) -> None:
        self._tracker         = tracker
        self._results         = results
        self._client          = client
        self._base_url        = base_url.strip().rstrip("/")
        self._api_key         = api_key
        self._poll_interval   = poll_interval
        self._request_timeout = request_timeout
        self._submit_timeout  = submit_timeout
        self._cancel_timeout  = cancel_timeout
        self._health_timeout  = health_timeout
        self._submissions:    dict[str, asyncio.Task] = {}

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        job_id:       str,
        document:     bytes,
        filename:     str = "invoice.pdf",
        content_type: str = "application/pdf",
    ) -> asyncio.Task | None:
        """Post the document in a detached task. Returns None when not configured."""
        if not self.configured:
            self._tracker.fail_with(
                job_id,
                ConfigurationError("Privacy API URL is not configured"),
            )
            return None

        self._tracker.report(job_id, Stage.UPLOADING, 10, "Uploading file to privacy service...")
        task = asyncio.create_task(
            self._submit(job_id, document, filename, content_type),
            name=f"privacy-submit:{job_id}",
        )
        self._submissions[job_id] = task
        task.add_done_callback(functools.partial(self._on_submit_done, job_id))
        logger.info("Job started | job=%s pipeline=privacy size=%d", job_id, len(document))
        return task

    async def _submit(self, job_id: str, document: bytes, filename: str, content_type: str) -> None:
        try:
            response = await self._client.post(
                self._url("/process-invoice"),
                files={"file": (filename, document, content_type)},
                data={"job_id": job_id},
                headers=self._headers(),
                timeout=self._submit_timeout,
            )
        except httpx.TimeoutException as exc:
            self._tracker.fail_with(job_id, RemoteTimeoutError(
                f"Privacy API request timed out after {self._submit_timeout:.0f}s. "
                f"The service might be overloaded or down. ({exc})"
            ))
            return
        except httpx.TransportError as exc:
            self._tracker.fail_with(job_id, RemoteConnectionError(
                f"Cannot connect to privacy API. Please check if the service is running. ({exc})"
            ))
            return

        if not response.is_success:
            logger.error(
                "Privacy submit rejected | job=%s status=%d body=%s",
                job_id, response.status_code, response.text[:500],
            )
            self._tracker.fail_with(job_id, RemoteServiceError(
                f"Privacy API error: {response.text}",
                status_code=response.status_code,
            ))
            return

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            self._tracker.fail_with(job_id, MalformedResponseError(
                f"Invalid submit response: {response.text[:200]}"
            ))
            return

        payload = body.get("result") if isinstance(body.get("result"), dict) else body
        self._complete(job_id, payload, "Processing completed successfully!")
        logger.info("Privacy submit finished | job=%s", job_id)

    def _on_submit_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._submissions.get(job_id) is task:
            del self._submissions[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Privacy submit crashed | job=%s error=%r", job_id, exc, exc_info=exc)
            self._tracker.fail(job_id, "Processing failed", str(exc) or type(exc).__name__)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def attach(
        self,
        job_id:       str,
        subscription: Subscription,
        auth_token:   str | None = None,
    ) -> asyncio.Task | None:
        """Start the poll loop for a freshly opened subscription."""
        if subscription.closed:
            return None
        if not self.configured:
            self._tracker.fail_with(job_id, ConfigurationError("Privacy API URL is not configured"))
            return None
        return asyncio.create_task(
            self.stream(job_id, subscription, auth_token),
            name=f"privacy-poll:{job_id}",
        )

    async def stream(
        self,
        job_id:       str,
        subscription: Subscription,
        auth_token:   str | None = None,
    ) -> None:
        first = True
        polls = 0
        while not subscription.closed:
            if not first:
                await asyncio.sleep(self._poll_interval)
                if subscription.closed:
                    break
            first = False
            polls += 1
            if not await self._poll_once(job_id, auth_token):
                break
        logger.debug("Privacy poll loop ended | job=%s polls=%d", job_id, polls)

    async def _poll_once(self, job_id: str, auth_token: str | None) -> bool:
        """One progress poll. Returns False when the loop must stop."""
        try:
            response = await self._client.get(
                self._url(f"/progress/{job_id}"),
                headers=self._headers(auth_token),
                timeout=self._request_timeout,
            )
        except httpx.TimeoutException as exc:
            self._tracker.fail_with(job_id, RemoteTimeoutError(f"Progress request timed out: {exc}"))
            return False
        except httpx.TransportError as exc:
            self._tracker.fail_with(job_id, RemoteConnectionError(f"Cannot connect to privacy API: {exc}"))
            return False

        if not response.is_success:
            self._tracker.fail_with(job_id, RemoteServiceError(
                f"Failed to fetch progress: {response.status_code}",
                status_code=response.status_code,
            ))
            return False

        try:
            remote = RemoteProgress.model_validate(response.json())
        except ValueError as exc:
            logger.error("Unparsable progress body | job=%s body=%r", job_id, response.text[:500])
            self._tracker.fail_with(job_id, JobError(f"Invalid progress response: {exc}"))
            return False

        return self._apply(job_id, remote)

    def _apply(self, job_id: str, remote: RemoteProgress) -> bool:
        status = remote.status.lower()

        if status == "completed":
            self._complete(job_id, remote.result, remote.message or "Processing completed successfully!")
            return False

        if status == "error":
            error = remote.error or "Processing failed"
            self._tracker.fail(job_id, remote.message or "Processing failed", error)
            return False

        stage = STAGE_MAP.get((remote.stage or "").lower(), Stage.PROCESSING)
        accepted = self._tracker.report(
            job_id,
            stage,
            int(round(remote.progress)),
            remote.message,
        )
        # None means the job went terminal through another path (submit failure)
        return accepted is not None

    # ------------------------------------------------------------------
    # Cancel / health
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> dict[str, Any]:
        """
        Relay a cancel request. Returns the remote body on success.

        Raises RemoteServiceError (remote status), RemoteTimeoutError (→ 504)
        or RemoteConnectionError (→ 503).
        """
        self._require_configured()
        try:
            response = await self._client.delete(
                self._url(f"/cancel-job/{job_id}"),
                headers=self._headers(),
                timeout=self._cancel_timeout,
            )
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(
                f"Request to privacy API timed out after {self._cancel_timeout:.0f} seconds"
            ) from exc
        except httpx.TransportError as exc:
            raise RemoteConnectionError(f"Cannot connect to privacy API for cancellation: {exc}") from exc

        if not response.is_success:
            logger.error(
                "Privacy cancel failed | job=%s status=%d body=%s",
                job_id, response.status_code, response.text[:500],
            )
            raise RemoteServiceError(
                f"Cancel failed: {response.text}",
                status_code=response.status_code,
            )

        logger.info("Privacy cancel forwarded | job=%s", job_id)
        return _json_object(response)

    async def health(self) -> dict[str, Any]:
        self._require_configured()
        try:
            response = await self._client.get(
                self._url("/health"),
                headers=self._headers(),
                timeout=self._health_timeout,
            )
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError("Privacy API health check timed out") from exc
        except httpx.TransportError as exc:
            raise RemoteConnectionError(f"Privacy API is unreachable: {exc}") from exc

        if not response.is_success:
            raise RemoteServiceError("Privacy API is down", status_code=response.status_code)
        return _json_object(response)

    async def shutdown(self) -> None:
        tasks = [t for t in self._submissions.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _complete(self, job_id: str, payload: dict[str, Any] | None, message: str) -> None:
        """Store the result, then publish the complete frame. Dropped once the job is finished."""
        registry = self._tracker.registry
        with registry.lock:
            if registry.finished(job_id):
                logger.info("Completion dropped, job already finished | job=%s", job_id)
                return
            if payload is not None:
                self._results.put(job_id, payload)
            self._tracker.complete(job_id, message, result=payload)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("Privacy API URL is not configured")

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["x-api-key"]     = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text}
    return body if isinstance(body, dict) else {"data": body}

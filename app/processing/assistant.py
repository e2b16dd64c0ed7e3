"""
Invoice Extraction via OpenAI
══════════════════════════════

Two strategies behind one InvoiceExtractor:

  text   Assistants API with file_search. The PDF is uploaded, attached to a
         thread message and a run is polled until it finishes.
           25  file uploaded         35  assistant created
           45  message attached      55  run started
           56..85 one tick per poll  (55 + attempts × 2, capped at 85)

  image  Pages rendered to PNG with PyMuPDF and sent to chat completions as
         base64 data URLs.
           25  rendering   45  preparing   65  model call

Each step reports through the `report(percent, message)` callback the Job
Runner passes in. The extractor never touches the registry directly.

Retry policy (run polling only):
  APIConnectionError / APITimeoutError → counted as an attempt, poll again
  run status failed | cancelled | expired → hard failure, no retry
  attempt budget exhausted → AssistantTimeoutError
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Callable

import openai

from app.jobs.exceptions import AssistantTimeoutError, JobError, MalformedResponseError
from app.processing.ocr import PyMuPDFReader
from app.processing.parsing import extract_invoice_json
from app.processing.prompts import (
    ASSISTANT_INSTRUCTIONS,
    ASSISTANT_NAME,
    image_guidelines,
    text_guidelines,
)
from app.schemas.jobs import ProcessingType

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Any]

TERMINAL_RUN_FAILURES = frozenset({"failed", "cancelled", "expired"})

POLL_BASE_PERCENT = 55
POLL_MAX_PERCENT  = 85


class InvoiceExtractor:
    """
    Turns one invoice document into the structured payload.

    The AsyncOpenAI client is injected so tests can substitute a mock and the
    lifespan can share one connection pool across jobs.
    """

    def __init__(
        self,
        client:            openai.AsyncOpenAI,
        model:             str            = "gpt-4o",
        poll_interval:     float          = 1.0,
        max_poll_attempts: int            = 15,
        reader:            PyMuPDFReader | None = None,
    ) -> None:
        self._client        = client
        self._model         = model
        self._poll_interval = poll_interval
        self._max_attempts  = max_poll_attempts
        self._reader        = reader or PyMuPDFReader()

    async def extract(
        self,
        document:        bytes,
        processing_type: ProcessingType,
        report:          ProgressCallback,
    ) -> dict[str, Any]:
        if processing_type == ProcessingType.IMAGE:
            return await self.extract_from_images(document, report)
        return await self.extract_from_text(document, report)

    # ------------------------------------------------------------------
    # Text path: Assistants + file_search
    # ------------------------------------------------------------------

    async def extract_from_text(self, document: bytes, report: ProgressCallback) -> dict[str, Any]:
        report(25, "Creating OpenAI assistant...")
        uploaded = await self._client.files.create(
            file=("invoice.pdf", document, "application/pdf"),
            purpose="assistants",
        )

        report(35, "Setting up AI assistant...")
        assistant = await self._client.beta.assistants.create(
            name=ASSISTANT_NAME,
            model=self._model,
            instructions=ASSISTANT_INSTRUCTIONS,
            tools=[{"type": "file_search"}],
        )
        thread = await self._client.beta.threads.create()

        report(45, "Uploading document to assistant...")
        await self._client.beta.threads.messages.create(
            thread.id,
            role="user",
            content=text_guidelines(),
            attachments=[{"file_id": uploaded.id, "tools": [{"type": "file_search"}]}],
        )

        report(55, "Starting AI analysis...")
        run = await self._client.beta.threads.runs.create(thread.id, assistant_id=assistant.id)
        logger.info(
            "Assistant run started | thread=%s run=%s file=%s",
            thread.id, run.id, uploaded.id,
        )

        raw = await self._await_run(thread.id, run.id, report)
        return extract_invoice_json(raw)

    async def _await_run(self, thread_id: str, run_id: str, report: ProgressCallback) -> str:
        t0 = time.monotonic()

        for attempt in range(self._max_attempts):
            try:
                status = await self._client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
            except openai.APIConnectionError as exc:
                # APITimeoutError is a subclass; both count against the budget
                logger.warning(
                    "Assistant poll transport error | run=%s attempt=%d error=%s",
                    run_id, attempt + 1, exc,
                )
                await asyncio.sleep(self._poll_interval)
                continue

            report(
                min(POLL_BASE_PERCENT + attempt * 2, POLL_MAX_PERCENT),
                "AI is analyzing the document...",
            )

            if status.status == "completed":
                logger.info(
                    "Assistant run completed | run=%s attempts=%d elapsed_ms=%.0f",
                    run_id, attempt + 1, (time.monotonic() - t0) * 1000,
                )
                messages = await self._client.beta.threads.messages.list(thread_id)
                return _first_text(messages)

            if status.status in TERMINAL_RUN_FAILURES:
                last_error = getattr(status, "last_error", None)
                reason = getattr(last_error, "message", None) or status.status
                logger.error("Assistant run %s | run=%s reason=%s", status.status, run_id, reason)
                raise JobError(f"OpenAI processing failed: {reason}")

            await asyncio.sleep(self._poll_interval)

        raise AssistantTimeoutError("Timed out waiting for response")

    # ------------------------------------------------------------------
    # Image path: vision chat completion
    # ------------------------------------------------------------------

    async def extract_from_images(self, document: bytes, report: ProgressCallback) -> dict[str, Any]:
        report(25, "Converting PDF to images...")
        pages = await self._reader.render_pages(document)

        report(45, "Preparing images for AI analysis...")
        content: list[dict[str, Any]] = [{"type": "text", "text": image_guidelines()}]
        for page in pages:
            encoded = base64.b64encode(page.png).decode("ascii")
            content.append({
                "type":      "image_url",
                "image_url": {"url": f"data:{page.mime_type};base64,{encoded}"},
            })

        report(65, "Analyzing images with AI...")
        t0 = time.monotonic()
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[{"role": "user", "content": content}],
        )
        logger.info(
            "Vision completion | pages=%d api_ms=%.0f",
            len(pages), (time.monotonic() - t0) * 1000,
        )

        if not response.choices:
            raise MalformedResponseError("No response choices returned from OpenAI API")
        return extract_invoice_json(response.choices[0].message.content or "")


def _first_text(messages: Any) -> str:
    """Text of the newest assistant message. Messages are listed newest first."""
    for message in messages.data[:1]:
        for block in message.content:
            if block.type == "text" and block.text.value:
                return block.text.value
    raise MalformedResponseError("No valid message returned from assistant")

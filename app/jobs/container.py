"""
JobServices: the job-tracking object graph for one process.

Built once in the application lifespan and stored on app.state. Routes
receive it through get_services(), which tests replace via
app.dependency_overrides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Request
from openai import AsyncOpenAI

from app.core.config import Settings
from app.jobs.bridge import PrivacyBridge
from app.jobs.publisher import StreamPublisher
from app.jobs.registry import JobRegistry
from app.jobs.results import ResultStore
from app.jobs.runner import JobRunner
from app.jobs.tracker import ProgressTracker
from app.processing.assistant import InvoiceExtractor
from app.services.estimator import TimeEstimator

logger = logging.getLogger(__name__)


@dataclass
class JobServices:
    registry:  JobRegistry
    results:   ResultStore
    publisher: StreamPublisher
    tracker:   ProgressTracker
    runner:    JobRunner
    bridge:    PrivacyBridge
    estimator: TimeEstimator
    http:      httpx.AsyncClient
    keepalive_seconds:   float = 15.0
    max_file_size_bytes: int   = 50 * 1024 * 1024

    async def aclose(self) -> None:
        await self.runner.shutdown()
        await self.bridge.shutdown()
        await self.http.aclose()


def build_services(
    settings:  Settings,
    http:      httpx.AsyncClient | None = None,
    extractor: InvoiceExtractor | None  = None,
) -> JobServices:
    """
    Wire the components from settings. `http` and `extractor` may be passed
    in to substitute fakes; otherwise they are created here.
    """
    registry  = JobRegistry(grace_seconds=settings.progress_grace_seconds)
    results   = ResultStore(ttl_seconds=settings.result_ttl_seconds)
    publisher = StreamPublisher(registry)
    tracker   = ProgressTracker(registry, publisher)

    if extractor is None and settings.openai_api_key:
        extractor = InvoiceExtractor(
            client=AsyncOpenAI(api_key=settings.openai_api_key),
            model=settings.openai_model,
            poll_interval=settings.assistant_poll_interval_seconds,
            max_poll_attempts=settings.assistant_max_poll_attempts,
        )
    if extractor is None:
        logger.warning("OPENAI_API_KEY not set: openai pipeline jobs will fail fast")

    http = http or httpx.AsyncClient()
    if not settings.privacy_configured:
        logger.warning("PRIVACY_API_URL not set: privacy pipeline disabled")

    return JobServices(
        registry=registry,
        results=results,
        publisher=publisher,
        tracker=tracker,
        runner=JobRunner(
            tracker,
            results,
            extractor,
            max_file_size_bytes=settings.max_file_size_bytes,
        ),
        bridge=PrivacyBridge(
            tracker,
            results,
            http,
            base_url=settings.privacy_api_url,
            api_key=settings.privacy_api_key,
            poll_interval=settings.bridge_poll_interval_seconds,
            request_timeout=settings.bridge_request_timeout_seconds,
            submit_timeout=settings.remote_submit_timeout_seconds,
            cancel_timeout=settings.cancel_timeout_seconds,
            health_timeout=settings.health_timeout_seconds,
        ),
        estimator=TimeEstimator(),
        http=http,
        keepalive_seconds=settings.stream_keepalive_seconds,
        max_file_size_bytes=settings.max_file_size_bytes,
    )


def get_services(request: Request) -> JobServices:
    return request.app.state.services

"""
Progress Tracker: the single write path for job progress.

report() updates the registry and publishes the accepted snapshot while
holding the registry lock, so a subscriber observes updates in registry
order: percents never go backwards and a job produces exactly one terminal
frame. Updates rejected by the registry (job already terminal) publish
nothing.
"""

from __future__ import annotations

import logging
from typing import Any

from app.jobs.exceptions import JobError
from app.jobs.publisher import StreamPublisher
from app.jobs.registry import JobRegistry
from app.schemas.jobs import ProgressSnapshot, Stage

logger = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(self, registry: JobRegistry, publisher: StreamPublisher) -> None:
        self.registry  = registry
        self.publisher = publisher

    def report(
        self,
        job_id:    str,
        stage:     Stage,
        percent:   int,
        message:   str,
        error:     str | None           = None,
        completed: bool                 = False,
        result:    dict[str, Any] | None = None,
    ) -> ProgressSnapshot | None:
        with self.registry.lock:
            snapshot = self.registry.update(job_id, stage, percent, message, error, completed)
            if snapshot is not None:
                self.publisher.publish(job_id, snapshot, result)
            return snapshot

    def complete(
        self,
        job_id:  str,
        message: str = "Processing completed successfully",
        result:  dict[str, Any] | None = None,
    ) -> ProgressSnapshot | None:
        return self.report(job_id, Stage.COMPLETED, 100, message, completed=True, result=result)

    def fail(
        self,
        job_id:  str,
        message: str,
        error:   str | None = None,
    ) -> ProgressSnapshot | None:
        snapshot = self.report(job_id, Stage.ERROR, 100, message, error=error or message)
        if snapshot is not None:
            logger.warning("Job failed | job=%s message=%s error=%s", job_id, message, snapshot.error)
        return snapshot

    def fail_with(self, job_id: str, exc: JobError) -> ProgressSnapshot | None:
        return self.fail(job_id, exc.user_message, str(exc))

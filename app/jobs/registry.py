"""
Job Registry: in-memory job_id → ProgressSnapshot table.

Pure data store: no I/O, no awaits. Every public method runs under one
re-entrant lock, so updates for a job are linearized no matter whether they
come from the detached job task, the stream handler or a cancel request.
The same lock is shared with the StreamPublisher and ProgressTracker so an
update and the frame it produces are atomic with respect to subscribe().

Lifecycle of an entry:
  created on the first update for a job_id
  replaced on every accepted update (snapshots are immutable)
  frozen once terminal: later updates are rejected
  evicted `grace_seconds` after the terminal update (purged lazily on the
  next registry access) or immediately by evict()
  remembered as retired after eviction, so finished() still answers for it
  (the most recent `retired_limit` ids are kept)

Single-process only: a multi-instance deployment needs sticky routing by
job_id or a shared store with pub/sub.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable

from app.schemas.jobs import ProgressSnapshot, Stage

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 30.0
DEFAULT_RETIRED_LIMIT = 1024


class JobRegistry:
    """Keyed progress store with terminal-state protection and delayed eviction."""

    def __init__(
        self,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        retired_limit: int = DEFAULT_RETIRED_LIMIT,
    ) -> None:
        self._grace     = grace_seconds
        self._clock     = clock
        self._limit     = retired_limit
        self._snapshots: dict[str, ProgressSnapshot] = {}
        self._expires:   dict[str, float] = {}      # job_id → monotonic eviction deadline
        self._retired:   OrderedDict[str, None] = OrderedDict()
        self.lock       = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(
        self,
        job_id:    str,
        stage:     Stage,
        percent:   int,
        message:   str,
        error:     str | None = None,
        completed: bool       = False,
    ) -> ProgressSnapshot | None:
        """
        Upsert the snapshot for job_id.

        Returns the stored snapshot, or None when the job is already terminal
        (the update is dropped). While not in error, percent never goes down:
        a lower value is clamped to the current one.
        """
        with self.lock:
            self._purge_expired()

            current = self._snapshots.get(job_id)
            if (current is not None and current.is_terminal) or job_id in self._retired:
                logger.debug(
                    "Registry | update rejected, job terminal | job=%s stage=%s",
                    job_id, stage.value,
                )
                return None

            percent = max(0, min(100, int(percent)))
            if current is not None and stage != Stage.ERROR:
                percent = max(percent, current.percent)

            snapshot = ProgressSnapshot(
                stage=stage,
                percent=percent,
                message=message,
                error=error,
                completed=completed,
            )
            self._snapshots[job_id] = snapshot

            if snapshot.is_terminal:
                self._expires[job_id] = self._clock() + self._grace
                logger.info(
                    "Registry | job terminal | job=%s stage=%s evict_in=%.0fs",
                    job_id, stage.value, self._grace,
                )
            return snapshot

    def get(self, job_id: str) -> ProgressSnapshot | None:
        with self.lock:
            self._purge_expired()
            return self._snapshots.get(job_id)

    def finished(self, job_id: str) -> bool:
        """True when the job is terminal, or was terminal and has since been evicted."""
        with self.lock:
            self._purge_expired()
            if job_id in self._retired:
                return True
            snapshot = self._snapshots.get(job_id)
            return snapshot is not None and snapshot.is_terminal

    def evict(self, job_id: str) -> None:
        """Remove the snapshot now and retire the id. No-op for unknown ids."""
        with self.lock:
            self._expires.pop(job_id, None)
            if self._snapshots.pop(job_id, None) is not None:
                self._retire(job_id)

    def __contains__(self, job_id: object) -> bool:
        with self.lock:
            self._purge_expired()
            return job_id in self._snapshots

    def __len__(self) -> int:
        with self.lock:
            self._purge_expired()
            return len(self._snapshots)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expires.items() if deadline <= now]
        for job_id in expired:
            self._snapshots.pop(job_id, None)
            del self._expires[job_id]
            self._retire(job_id)
        if expired:
            logger.debug("Registry | evicted %d terminal job(s)", len(expired))

    def _retire(self, job_id: str) -> None:
        self._retired[job_id] = None
        self._retired.move_to_end(job_id)
        while len(self._retired) > self._limit:
            self._retired.popitem(last=False)

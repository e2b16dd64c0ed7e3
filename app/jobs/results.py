"""
Result Store: finished extraction payloads, handed out once.

A result lands here when a job completes and leaves on the first successful
pop(). Unclaimed entries expire after `ttl_seconds`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600.0


class ResultStore:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl     = ttl_seconds
        self._clock   = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock    = threading.Lock()

    def put(self, job_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._purge_expired()
            self._entries[job_id] = (self._clock() + self._ttl, payload)
        logger.debug("Result stored | job=%s", job_id)

    def pop(self, job_id: str) -> dict[str, Any] | None:
        """Return and remove the payload; None when absent or expired."""
        with self._lock:
            self._purge_expired()
            entry = self._entries.pop(job_id, None)
        return entry[1] if entry is not None else None

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            self._purge_expired()
            return job_id in self._entries

    def _purge_expired(self) -> None:
        now = self._clock()
        for job_id in [k for k, (deadline, _) in self._entries.items() if deadline <= now]:
            del self._entries[job_id]
            logger.info("Result expired unclaimed | job=%s", job_id)

"""
Stream Publisher: at most one live SSE subscription per job.

Frames are pushed onto an unbounded asyncio.Queue, so publish() never awaits
and can be called while holding the registry lock. The HTTP handler drains
the queue through Subscription.frames().

Event names:
  completed snapshot  → event: complete
  error snapshot      → event: error
  anything else       → event: progress

A terminal frame closes the subscription and detaches it from the job.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from app.jobs.registry import JobRegistry
from app.schemas.jobs import ProgressSnapshot, Stage

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

_CLOSE = object()   # queue sentinel


def _sse_event(event_name: str, data: dict) -> str:
    """Format a Server-Sent Event with event name and JSON data."""
    return f"event: {event_name}\ndata: {json.dumps(data)}\n\n"


def event_name_for(snapshot: ProgressSnapshot) -> str:
    if snapshot.completed:
        return "complete"
    if snapshot.stage == Stage.ERROR:
        return "error"
    return "progress"


def encode_frame(snapshot: ProgressSnapshot, result: dict[str, Any] | None = None) -> str:
    data = snapshot.model_dump(mode="json")
    if result is not None:
        data["result"] = result
    return _sse_event(event_name_for(snapshot), data)


class Subscription:
    """One client connection's outbound frame queue."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, frame: str) -> None:
        if not self.closed:
            self._queue.put_nowait(frame)

    def close(self) -> None:
        """Stop accepting frames. Already-queued frames are still delivered."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSE)

    async def frames(self, keepalive_seconds: float = 15.0) -> AsyncIterator[str]:
        """
        Yield queued frames until the subscription is closed.
        Emits a keepalive comment whenever nothing arrives for keepalive_seconds.
        """
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                # Comment line keeps proxies from closing an idle connection
                yield KEEPALIVE_FRAME
                continue

            if item is _CLOSE:
                return
            yield item


class StreamPublisher:
    def __init__(self, registry: JobRegistry) -> None:
        self._registry = registry
        self._lock     = registry.lock
        self._subs:    dict[str, Subscription] = {}

    def subscribe(self, job_id: str) -> Subscription:
        """
        Bind a new subscription to job_id, replacing (and closing) any existing
        one, and push the current snapshot as its first frame. A job that is
        already terminal gets that frame and an immediately closed subscription.
        """
        with self._lock:
            previous = self._subs.pop(job_id, None)
            if previous is not None:
                logger.info("Stream replaced by new subscriber | job=%s", job_id)
                previous.close()

            sub = Subscription(job_id)
            snapshot = self._registry.get(job_id) or ProgressSnapshot.initial()
            sub.push(encode_frame(snapshot))

            if snapshot.is_terminal:
                sub.close()
            else:
                self._subs[job_id] = sub
            return sub

    def publish(
        self,
        job_id:   str,
        snapshot: ProgressSnapshot,
        result:   dict[str, Any] | None = None,
    ) -> bool:
        """Push a frame to the job's subscriber. Returns False when nobody is listening."""
        with self._lock:
            sub = self._subs.get(job_id)
            if sub is None:
                return False

            sub.push(encode_frame(snapshot, result))
            if snapshot.is_terminal:
                sub.close()
                del self._subs[job_id]
            return True

    def unsubscribe(self, job_id: str, subscription: Subscription) -> None:
        with self._lock:
            if self._subs.get(job_id) is subscription:
                del self._subs[job_id]
            subscription.close()

    def has_subscriber(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._subs

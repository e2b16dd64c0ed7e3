"""
Job failure taxonomy.

Every failure a detached job can hit is raised as a JobError subclass.
``user_message`` is the short human-readable text pushed to the client in
the snapshot's ``message`` field; ``str(exc)`` is the diagnostic detail that
goes into the snapshot's ``error`` field.
"""

from __future__ import annotations


class JobError(Exception):
    """Base class for job pipeline failures."""

    user_message: str = "Processing failed"

    def __init__(self, detail: str, *, user_message: str | None = None) -> None:
        super().__init__(detail)
        if user_message is not None:
            self.user_message = user_message


class ConfigurationError(JobError):
    """Required external credentials or endpoints are missing. Never retried."""

    user_message = "Configuration error"


class DocumentError(JobError):
    """The uploaded document is missing, empty or too large."""

    user_message = "File error"


class RateLimitError(JobError):
    user_message = "Rate limit exceeded"


class RemoteTimeoutError(JobError):
    user_message = "Request timed out"


class RemoteConnectionError(JobError):
    user_message = "Connection failed"


class RemoteServiceError(JobError):
    """The remote service answered with a non-2xx status."""

    user_message = "Remote service error"

    def __init__(self, detail: str, *, status_code: int, user_message: str | None = None) -> None:
        super().__init__(detail, user_message=user_message)
        self.status_code = status_code


class MalformedResponseError(JobError):
    """Model or remote output that does not parse into the expected structure."""


class AssistantTimeoutError(JobError):
    """The assistant run did not finish within the poll attempt budget."""

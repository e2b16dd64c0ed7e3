"""Job identifiers: ``<pipeline>_<unix-millis>_<base36 suffix>``."""

from __future__ import annotations

import secrets
import string
import time

from app.schemas.jobs import Pipeline

_ALPHABET     = string.digits + string.ascii_lowercase
_SUFFIX_CHARS = 9


def new_job_id(pipeline: Pipeline) -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(_SUFFIX_CHARS))
    return f"{pipeline.value}_{int(time.time() * 1000)}_{suffix}"


def pipeline_of(job_id: str) -> Pipeline | None:
    """Pipeline encoded in the id prefix, or None for ids this server did not issue."""
    prefix, sep, _ = job_id.partition("_")
    if not sep:
        return None
    try:
        return Pipeline(prefix)
    except ValueError:
        return None

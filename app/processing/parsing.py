"""
Model output → invoice payload.

Parsing is strict: the model must return a JSON object carrying seller,
buyer and invoice_data. Anything else raises MalformedResponseError and the
raw text is logged for diagnosis. Nothing is coerced or defaulted.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from typing import Any

from app.jobs.exceptions import MalformedResponseError

logger = logging.getLogger(__name__)

DATE_FIELDS     = ("issue_date", "due_date", "fulfillment_date")

_FENCE_RE       = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)
_OBJECT_RE      = re.compile(r"\{.*\}", re.DOTALL)
_DATE_CHARS_RE  = re.compile(r"^[\d\s./-]+$")
_DIGIT_GROUP_RE = re.compile(r"\d+")


def extract_invoice_json(raw: str) -> dict[str, Any]:
    """Decode the first {...} block of a model response and validate its shape."""
    text = (raw or "").strip()
    if not text:
        raise MalformedResponseError("Empty response received from the model")

    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    match = _OBJECT_RE.search(text)
    if not match:
        logger.error("Malformed model response | reason=no_json raw=%r", raw)
        raise MalformedResponseError("No JSON object found in model response")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.error("Malformed model response | reason=invalid_json error=%s raw=%r", exc, raw)
        raise MalformedResponseError(f"Failed to parse JSON from model response: {exc}") from exc

    if not isinstance(parsed, dict):
        logger.error("Malformed model response | reason=not_object raw=%r", raw)
        raise MalformedResponseError("Parsed result is not a JSON object")

    missing = [name for name in ("seller", "buyer") if not parsed.get(name)]
    if not isinstance(parsed.get("invoice_data"), list):
        missing.append("invoice_data")
    if missing:
        logger.error("Malformed model response | reason=missing_fields fields=%s raw=%r", missing, raw)
        raise MalformedResponseError(
            "Model response missing required fields (seller, buyer, or invoice_data)"
        )

    return parsed


def normalize_date(value: str) -> str:
    """
    Best-effort YYYY-MM-DD. Handles "2024.06.01.", "2024. 06. 01.",
    "01.06.2024" and "01/06/2024" (day first). Unrecognised values are
    returned unchanged.
    """
    if not isinstance(value, str) or not value.strip():
        return value

    candidate = value.strip()
    if not _DATE_CHARS_RE.match(candidate):
        return value

    groups = _DIGIT_GROUP_RE.findall(candidate)
    if len(groups) != 3:
        return value

    first, second, third = groups
    if len(first) == 4:
        year, month, day = first, second, third
    elif len(third) == 4:
        year, month, day = third, second, first
    else:
        return value

    try:
        return dt.date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return value


def normalize_dates(payload: dict[str, Any]) -> dict[str, Any]:
    for name in DATE_FIELDS:
        if payload.get(name):
            payload[name] = normalize_date(payload[name])
    return payload

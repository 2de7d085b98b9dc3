from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

ASYNC_STATUS_VALUES = frozenset(
    {"queued", "running", "processing", "pending", "in_progress", "in-progress", "started"}
)
ASYNC_MESSAGE_PATTERN = re.compile(
    r"\b(async|asynchronous|queued|processing|running|pending|in progress)\b", re.IGNORECASE
)

_STATUS_KEYS = ("status", "state", "jobStatus", "job_state")
_JOB_ID_KEYS = ("jobId", "job_id", "taskId", "task_id")
_MESSAGE_KEYS = ("currentStep", "message", "statusMessage", "status_message")
_PROGRESS_KEYS = ("progress", "percentage", "percent")
_ETA_KEYS = ("estimatedCompletionMs", "etaMs", "eta_ms")


@dataclass
class AsyncJob:
    progress: Optional[float] = None
    current_step: Optional[str] = None
    estimated_completion_ms: Optional[float] = None


def _first_present(output: Mapping[str, Any], keys) -> Any:
    # First key whose value is not null, mirroring a chain of "??" lookups
    for key in keys:
        value = output.get(key)
        if value is not None:
            return value
    return None


def _as_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def normalize_progress(value: float) -> float:
    """Map a 0-1 or 0-100 progress figure onto [0, 1]."""
    if value <= 0:
        return 0.0
    if value <= 1:
        return float(value)
    if value <= 100:
        return value / 100
    return 1.0


def detect_async_job(output: Any) -> Optional[AsyncJob]:
    """Decide whether an action's output describes a job still in flight.

    True when the status field carries an in-flight marker, or when a job/task
    id appears together with an async-sounding message.
    """
    if not isinstance(output, Mapping):
        return None

    status = _as_string(_first_present(output, _STATUS_KEYS))
    normalized_status = status.lower() if status else None
    is_running_status = normalized_status in ASYNC_STATUS_VALUES if normalized_status else False

    job_id = _as_string(_first_present(output, _JOB_ID_KEYS))
    message = _as_string(_first_present(output, _MESSAGE_KEYS))
    has_async_message = bool(message and ASYNC_MESSAGE_PATTERN.search(message))

    if not is_running_status and not (job_id and has_async_message):
        return None

    raw_progress = _as_number(_first_present(output, _PROGRESS_KEYS))
    current_step = message or (f"Status: {normalized_status}" if normalized_status else None)
    return AsyncJob(
        progress=normalize_progress(raw_progress) if raw_progress is not None else None,
        current_step=current_step,
        estimated_completion_ms=_as_number(_first_present(output, _ETA_KEYS)),
    )


def _nested(output: Mapping[str, Any], *path: str) -> Any:
    value: Any = output
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def extract_usage(output: Any) -> Dict[str, Any]:
    """Pull token, call and credit counters out of an action's output."""
    if not isinstance(output, Mapping):
        return {"tokensUsed": None, "apiCallsMade": 1, "creditsConsumed": None}

    tokens = None
    for path in (("tokens", "total"), ("usage", "total_tokens"), ("cost", "tokens", "total")):
        candidate = _nested(output, *path)
        if _is_number(candidate) and candidate:
            tokens = candidate
            break

    api_calls = _nested(output, "usage", "apiCallsMade")
    credits = _nested(output, "usage", "creditsConsumed")
    if not _is_number(credits):
        credits = _nested(output, "cost", "total")
    return {
        "tokensUsed": tokens,
        "apiCallsMade": api_calls if _is_number(api_calls) else 1,
        "creditsConsumed": credits if _is_number(credits) else None,
    }

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the request currently being served
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REDACTED = "[REDACTED]"

# Parameter names whose values are credentials. Compared after lower-casing and
# dropping "-" and "_" so apiKey, api_key and API-KEY all match.
_CREDENTIAL_KEYS = frozenset({
    'apikey', 'accesstoken', 'refreshtoken', 'bottoken', 'idtoken', 'token',
    'secret', 'clientsecret', 'secretkey', 'webhooksecret', 'signingsecret',
    'password', 'passwd', 'authorization', 'credential', 'credentials',
    'privatekey', 'accesskey', 'accesskeyid', 'secretaccesskey', 'servicekey',
})
_CREDENTIAL_FRAGMENTS = ('apikey', 'secret', 'password', 'privatekey')

# Log fields that identify a person rather than authorize a call
_PERSONAL_LOG_FIELDS = frozenset({'email', 'ipaddress'})


def _normalize_key(key: str) -> str:
    return key.lower().replace('-', '').replace('_', '').replace(' ', '')


def is_credential_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized in _CREDENTIAL_KEYS:
        return True
    return any(fragment in normalized for fragment in _CREDENTIAL_FRAGMENTS)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for every log line of this request."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = get_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Credentials never reach the sink; personal fields keep their edges for debugging."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if is_credential_key(key):
            event_dict[key] = REDACTED
        elif _normalize_key(key) in _PERSONAL_LOG_FIELDS and len(value) > 4:
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _configure_structlog(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines when True, colored console output otherwise
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_id,
        _mask_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_TRUTHY = {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_ERROR_SCRUBBERS = [
    re.compile(r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+'),
    re.compile(r'(?i)bearer\s+[a-z0-9._~+/=-]+'),
    re.compile(r'(?i)traceback\s*\(most recent call last\)'),
    re.compile(r'(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+'),
]
MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip secrets and internal paths from an exception message before it is stored or returned."""
    if not error or not isinstance(error, str):
        return "Unknown error"
    result = error
    for pattern in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_LENGTH:
        result = result[: MAX_ERROR_LENGTH - 3] + "..."
    return result


def redact_api_keys(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Return a copy of ``data`` with credential-shaped values replaced.

    Used for request snapshots written to the execution log. Non-string
    credential values (nested dicts of OAuth material, for instance) are
    replaced wholesale.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: (
                REDACTED
                if isinstance(key, str) and is_credential_key(key) and value not in (None, "")
                else redact_api_keys(value, depth=depth + 1, max_depth=max_depth)
            )
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_api_keys(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data

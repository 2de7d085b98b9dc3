from __future__ import annotations

import re
import unicodedata
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from blockgate.config import get_settings

MAX_METADATA_KEYS = 100
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


class Envelope(BaseModel):
    """Success envelope shared by every endpoint."""

    success: bool = True
    data: Optional[Any] = None


class ErrorBody(BaseModel):
    """Error envelope; ``code`` is one of the stable gateway error codes."""

    error: str
    code: Optional[str] = None
    details: Optional[Any] = None
    retryAfter: Optional[int] = None

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email")
    return normalized


def _validate_uuid(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        raise ValueError("Invalid uuid")
    return value


class ProvisionUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canvasUserId: str
    email: str
    name: Optional[str] = Field(default=None, max_length=255)
    workspaceId: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("canvasUserId", "workspaceId")
    @classmethod
    def _validate_ids(cls, value: Optional[str]) -> Optional[str]:
        return _validate_uuid(value)

    @field_validator("email")
    @classmethod
    def _validate_provision_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("metadata")
    @classmethod
    def _limit_metadata(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None and len(value) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata must have at most {MAX_METADATA_KEYS} keys")
        return value


class ExecutionContextBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workflowId: Optional[str] = None
    executionId: Optional[str] = Field(default=None, min_length=1, max_length=255)
    nodeId: Optional[str] = None


class ExecutionOptionsBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout: Optional[int] = Field(default=None, gt=0)
    retryOnFailure: Optional[bool] = None

    @field_validator("timeout")
    @classmethod
    def _timeout_in_bounds(cls, value: Optional[int]) -> Optional[int]:
        if value is None:
            return None
        settings = get_settings()
        low, high = settings.min_execution_timeout_ms, settings.max_execution_timeout_ms
        if value < low or value > high:
            raise ValueError(f"timeout must be between {low} and {high} ms")
        return value


class ExecuteBlockRequest(BaseModel):
    """Execute body; ``inputs`` is accepted as an alias for ``params``."""

    model_config = ConfigDict(extra="forbid")

    blockType: str = Field(..., min_length=1)
    inputs: Optional[Dict[str, Any]] = None
    # Declared after ``inputs`` so its validator can see the alias
    params: Optional[Dict[str, Any]] = Field(default=None, validate_default=True)
    blockVersion: Optional[str] = None
    context: Optional[ExecutionContextBody] = None
    options: Optional[ExecutionOptionsBody] = None

    @field_validator("params")
    @classmethod
    def _require_params_or_inputs(
        cls, value: Optional[Dict[str, Any]], info: ValidationInfo
    ) -> Optional[Dict[str, Any]]:
        if value is None and info.data.get("inputs") is None:
            raise ValueError("params or inputs is required")
        return value

    @property
    def resolved_params(self) -> Dict[str, Any]:
        if self.params is not None:
            return self.params
        return self.inputs or {}


def parse_list_limit(raw: Optional[str]) -> int:
    """Lenient page size: unparsable or below 1 falls back, above the cap clamps."""
    try:
        value = int(raw) if raw not in (None, "") else DEFAULT_LIST_LIMIT
    except ValueError:
        return DEFAULT_LIST_LIMIT
    if value < 1:
        return DEFAULT_LIST_LIMIT
    return min(value, MAX_LIST_LIMIT)


def parse_list_offset(raw: Optional[str]) -> int:
    try:
        value = int(raw) if raw not in (None, "") else 0
    except ValueError:
        return 0
    return max(value, 0)

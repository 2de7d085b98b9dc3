from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class pins an HTTP ``status_code`` and a stable ``error_code`` that
    callers of the gateway can branch on:

    - UNAUTHORIZED (401)
    - FORBIDDEN / INSUFFICIENT_SCOPE (403)
    - INVALID_PARAMS / INVALID_BLOCK_TYPE / MISSING_CREDENTIALS (400)
    - USER_NOT_PROVISIONED / NOT_FOUND (404)
    - USER_EXISTS (409)
    - RATE_LIMITED (429)
    - EXECUTION_FAILED / INTERNAL_ERROR (500)
    - TIMEOUT (504)
    """

    status_code: int = 400
    error_code: str = "INVALID_PARAMS"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request body or header validation failed (400)."""
    status_code = 400
    error_code = "INVALID_PARAMS"


class AuthenticationError(ServiceError):
    """Service key missing, unknown, expired or inactive (401).

    ``reason`` keeps the precise failure kind for logs; the response body only
    ever carries UNAUTHORIZED.
    """
    status_code = 401
    error_code = "UNAUTHORIZED"

    def __init__(self, message: str, *, reason: str = "invalid_key", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Client address is not on the allow-list (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class InsufficientScopeError(ServiceError):
    """Service key lacks a required scope (403)."""
    status_code = 403
    error_code = "INSUFFICIENT_SCOPE"

    def __init__(self, required: list[str], missing: list[str]) -> None:
        super().__init__(
            "Insufficient permissions",
            detail={"requiredScopes": list(required), "missingScopes": list(missing)},
        )
        self.required = list(required)
        self.missing = list(missing)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class UserNotProvisionedError(NotFoundError):
    """No identity link exists for the external user (404)."""
    error_code = "USER_NOT_PROVISIONED"


class InvalidBlockTypeError(ServiceError):
    """Block type or its executable tool could not be resolved (400)."""
    status_code = 400
    error_code = "INVALID_BLOCK_TYPE"


class MissingCredentialsError(ServiceError):
    """Execution failed because downstream credentials are absent (400)."""
    status_code = 400
    error_code = "MISSING_CREDENTIALS"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "CONFLICT"


class UserExistsError(ConflictError):
    """Provisioning lost a uniqueness race; the caller should retry (409)."""
    error_code = "USER_EXISTS"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(self, message: str = "Rate limit exceeded", *, retry_after_ms: int = 60_000, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_ms = max(0, int(retry_after_ms))

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))


class ServerError(ServiceError):
    """Unclassified internal fault (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class ExecutionFailedError(ServiceError):
    """The block's action reported or raised a failure (500)."""
    status_code = 500
    error_code = "EXECUTION_FAILED"


class ExecutionTimeoutError(ServiceError):
    """The block's action did not finish within its bound (504)."""
    status_code = 504
    error_code = "TIMEOUT"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "InsufficientScopeError",
    "NotFoundError",
    "UserNotProvisionedError",
    "InvalidBlockTypeError",
    "MissingCredentialsError",
    "ConflictError",
    "UserExistsError",
    "RateLimitedError",
    "ServerError",
    "ExecutionFailedError",
    "ExecutionTimeoutError",
]

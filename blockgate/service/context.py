from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from blockgate.logging import get_logger
from blockgate.service.auth import ServiceContext
from blockgate.service.errors import ForbiddenError, ValidationError

logger = get_logger(__name__)

HEADER_SERVICE_KEY = "x-service-key"
HEADER_USER_ID = "x-canvas-user-id"
HEADER_WORKSPACE_ID = "x-canvas-workspace-id"
HEADER_REQUEST_ID = "x-request-id"
HEADER_IDEMPOTENCY_KEY = "x-idempotency-key"
HEADER_FORWARDED_FOR = "x-forwarded-for"
HEADER_REAL_IP = "x-real-ip"
HEADER_USER_AGENT = "user-agent"


@dataclass
class RequestContext:
    """Authenticated service context merged with per-request caller headers."""

    service: ServiceContext
    canvas_user_id: Optional[str] = None
    canvas_workspace_id: Optional[str] = None
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def service_name(self) -> str:
        return self.service.service_name

    @property
    def key_prefix(self) -> str:
        return self.service.key_prefix


@dataclass
class ContextOptions:
    require_user_context: bool = False
    require_workspace_context: bool = False
    scopes: List[str] = field(default_factory=list)


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_client_ip(headers: Mapping[str, str], peer_host: Optional[str]) -> Optional[str]:
    """First hop of X-Forwarded-For, else X-Real-IP, else the transport peer."""
    forwarded = _header(headers, HEADER_FORWARDED_FOR)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = _header(headers, HEADER_REAL_IP)
    if real_ip:
        return real_ip
    return peer_host or None


class RequestContextBuilder:
    """Validates caller headers and enforces the IP allow-list."""

    def __init__(self, ip_allowlist: Sequence[str] = ()) -> None:
        self.ip_allowlist = [ip for ip in ip_allowlist if ip]

    def build(
        self,
        service: ServiceContext,
        headers: Mapping[str, str],
        peer_host: Optional[str] = None,
    ) -> RequestContext:
        field_errors: Dict[str, List[str]] = {}
        user_id = _header(headers, HEADER_USER_ID)
        workspace_id = _header(headers, HEADER_WORKSPACE_ID)
        if user_id is not None and not is_uuid(user_id):
            field_errors["canvasUserId"] = ["Invalid canvas user ID"]
        if workspace_id is not None and not is_uuid(workspace_id):
            field_errors["canvasWorkspaceId"] = ["Invalid canvas workspace ID"]
        if field_errors:
            raise ValidationError("Invalid request headers", detail=field_errors)

        return RequestContext(
            service=service,
            canvas_user_id=user_id,
            canvas_workspace_id=workspace_id,
            request_id=_header(headers, HEADER_REQUEST_ID),
            idempotency_key=_header(headers, HEADER_IDEMPOTENCY_KEY),
            ip_address=resolve_client_ip(headers, peer_host),
            user_agent=_header(headers, HEADER_USER_AGENT),
        )

    def is_ip_allowed(self, ip_address: Optional[str]) -> bool:
        if not self.ip_allowlist:
            return True
        if not ip_address:
            return False
        return ip_address in self.ip_allowlist

    def enforce(self, context: RequestContext, options: ContextOptions) -> None:
        if not self.is_ip_allowed(context.ip_address):
            logger.warning(
                "client_ip_not_allowed",
                ip_address=context.ip_address,
                service_name=context.service_name,
            )
            raise ForbiddenError("IP address not allowed")
        if options.require_user_context and not context.canvas_user_id:
            raise ValidationError("Missing X-Canvas-User-Id header")
        if options.require_workspace_context and not context.canvas_workspace_id:
            raise ValidationError("Missing X-Canvas-Workspace-Id header")

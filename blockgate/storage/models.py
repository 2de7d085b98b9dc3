from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ServiceCredential:
    id: str
    name: str
    key_hash: str
    key_prefix: str
    service_name: str
    scopes: List[str] = field(default_factory=list)
    rate_limit_per_minute: Optional[int] = None
    rate_limit_per_day: Optional[int] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class User:
    id: str
    email: str
    name: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class IdentityLink:
    id: str
    external_id: str
    provider: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Workspace:
    id: str
    name: str
    owner_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkspacePermission:
    id: str
    user_id: str
    workspace_id: str
    permission_type: str = "admin"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageLimit:
    id: str
    user_id: str
    current_usage_limit: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Workflow:
    id: str
    user_id: str
    workspace_id: str
    name: str
    description: str = ""
    color: str = "#3972F6"
    state: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class NewAccount:
    """Rows created together when an external user is provisioned from scratch."""

    user: User
    usage_limit: UsageLimit
    link: IdentityLink
    workspace: Workspace
    permission: WorkspacePermission
    workflow: Workflow

    def rows(self) -> list[tuple[str, Any]]:
        return [
            ("user", self.user),
            ("usage_limit", self.usage_limit),
            ("identity_link", self.link),
            ("workspace", self.workspace),
            ("permission", self.permission),
            ("workflow", self.workflow),
        ]


EXECUTION_RUNNING = "running"
EXECUTION_COMPLETED = "completed"
EXECUTION_FAILED = "failed"


@dataclass
class ExecutionRecord:
    """One block invocation. State is derived from ``ended_at`` and ``level``."""

    id: str
    execution_id: str
    block_type: str
    workflow_id: Optional[str] = None
    block_version: Optional[str] = None
    caller_id: Optional[str] = None
    caller_user_id: Optional[str] = None
    caller_workspace_id: Optional[str] = None
    caller_workflow_id: Optional[str] = None
    caller_node_id: Optional[str] = None
    level: str = "info"
    trigger: str = "api"
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    total_duration_ms: Optional[int] = None
    execution_data: Dict[str, Any] = field(default_factory=dict)
    api_calls_made: int = 0
    credits_consumed: float = 0.0

    @property
    def status(self) -> str:
        if self.ended_at is None:
            return EXECUTION_RUNNING
        if self.level == "error":
            return EXECUTION_FAILED
        return EXECUTION_COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self.ended_at is not None

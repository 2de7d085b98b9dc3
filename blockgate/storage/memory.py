from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from blockgate.logging import get_logger
from blockgate.storage.errors import ConstraintViolation
from blockgate.storage.models import (
    ExecutionRecord,
    IdentityLink,
    NewAccount,
    ServiceCredential,
    UsageLimit,
    User,
    Workflow,
    Workspace,
    WorkspacePermission,
    utcnow,
)


class _AccountStage:
    """Rows written by one provisioning call, visible only after commit."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.usage_limits: Dict[str, UsageLimit] = {}
        self.links: Dict[tuple[str, str], IdentityLink] = {}
        self.workspaces: Dict[str, Workspace] = {}
        self.permissions: Dict[str, WorkspacePermission] = {}
        self.workflows: Dict[str, Workflow] = {}


class MemoryStore:
    """In-process backing store used by tests and local development.

    Mirrors the method surface of ``PostgresStore``. Every mutation happens
    under one re-entrant lock, and account provisioning is staged and then
    committed in a single step so readers never see half an account.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.service_credentials: Dict[str, ServiceCredential] = {}
        self.users: Dict[str, User] = {}
        self.usage_limits: Dict[str, UsageLimit] = {}
        self.identity_links: Dict[tuple[str, str], IdentityLink] = {}
        self.workspaces: Dict[str, Workspace] = {}
        self.permissions: Dict[str, WorkspacePermission] = {}
        self.workflows: Dict[str, Workflow] = {}
        self.executions: Dict[str, ExecutionRecord] = {}
        self._data_lock = threading.RLock()

    # service credentials
    def create_service_credential(self, credential: ServiceCredential) -> ServiceCredential:
        with self._data_lock:
            if any(c.key_hash == credential.key_hash for c in self.service_credentials.values()):
                raise ConstraintViolation("service key already exists", {"field": "key_hash"})
            self.service_credentials[credential.id] = credential
            return credential

    def get_service_credential_by_hash(
        self, key_hash: str, service_name: str
    ) -> Optional[ServiceCredential]:
        with self._data_lock:
            for credential in self.service_credentials.values():
                if credential.key_hash == key_hash and credential.service_name == service_name:
                    return replace(credential, scopes=list(credential.scopes))
            return None

    def touch_service_credential(self, credential_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            credential = self.service_credentials.get(credential_id)
            if credential:
                credential.last_used_at = when or utcnow()

    # users and identity links
    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == normalized), None
            )

    def get_identity_link(self, provider: str, external_id: str) -> Optional[IdentityLink]:
        with self._data_lock:
            return self.identity_links.get((provider, external_id))

    def create_identity_link(self, link: IdentityLink) -> IdentityLink:
        with self._data_lock:
            key = (link.provider, link.external_id)
            if key in self.identity_links:
                raise ConstraintViolation(
                    "identity link already exists", {"field": "external_id"}
                )
            if link.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.identity_links[key] = link
            return link

    def create_account(self, account: NewAccount) -> NewAccount:
        with self._data_lock:
            stage = _AccountStage()
            for kind, row in account.rows():
                self._stage_row(stage, kind, row)
            self.users.update(stage.users)
            self.usage_limits.update(stage.usage_limits)
            self.identity_links.update(stage.links)
            self.workspaces.update(stage.workspaces)
            self.permissions.update(stage.permissions)
            self.workflows.update(stage.workflows)
            return account

    def _stage_row(self, stage: _AccountStage, kind: str, row: Any) -> None:
        if kind == "user":
            if self.get_user_by_email(row.email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stage.users[row.id] = row
        elif kind == "usage_limit":
            stage.usage_limits[row.user_id] = row
        elif kind == "identity_link":
            key = (row.provider, row.external_id)
            if key in self.identity_links or key in stage.links:
                raise ConstraintViolation(
                    "identity link already exists", {"field": "external_id"}
                )
            stage.links[key] = row
        elif kind == "workspace":
            stage.workspaces[row.id] = row
        elif kind == "permission":
            stage.permissions[row.id] = row
        elif kind == "workflow":
            stage.workflows[row.id] = row
        else:
            raise ValueError(f"unknown account row kind: {kind}")

    def get_owned_workspace(self, user_id: str) -> Optional[Workspace]:
        with self._data_lock:
            owned = [w for w in self.workspaces.values() if w.owner_id == user_id]
            if not owned:
                return None
            return min(owned, key=lambda w: w.created_at)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._data_lock:
            return self.workflows.get(workflow_id)

    def seed_workflow_state(self, workflow_id: str, state: Dict[str, Any]) -> None:
        with self._data_lock:
            workflow = self.workflows.get(workflow_id)
            if workflow is None:
                raise ConstraintViolation("workflow does not exist", {"field": "workflow_id"})
            workflow.state = copy.deepcopy(state)
            workflow.updated_at = utcnow()

    # execution log
    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._data_lock:
            record = self.executions.get(execution_id)
            if record is None:
                return None
            return replace(record, execution_data=copy.deepcopy(record.execution_data))

    def insert_execution(self, record: ExecutionRecord) -> bool:
        """Insert ``record`` unless its execution id exists. Returns whether it was written."""
        with self._data_lock:
            if record.execution_id in self.executions:
                return False
            self.executions[record.execution_id] = replace(
                record, execution_data=copy.deepcopy(record.execution_data)
            )
            return True

    def update_execution_progress(self, execution_id: str, execution_data: Dict[str, Any]) -> bool:
        with self._data_lock:
            record = self.executions.get(execution_id)
            if record is None or record.is_terminal:
                return False
            record.execution_data = copy.deepcopy(execution_data)
            return True

    def complete_execution(
        self,
        execution_id: str,
        *,
        level: str,
        ended_at: datetime,
        total_duration_ms: int,
        execution_data: Dict[str, Any],
        api_calls_made: int = 0,
        credits_consumed: float = 0.0,
    ) -> bool:
        """Move a running record to its terminal state. No-op once terminal."""
        with self._data_lock:
            record = self.executions.get(execution_id)
            if record is None or record.is_terminal:
                return False
            record.level = level
            record.ended_at = ended_at
            record.total_duration_ms = total_duration_ms
            record.execution_data = copy.deepcopy(execution_data)
            record.api_calls_made = api_calls_made
            record.credits_consumed = credits_consumed
            return True

    def close(self) -> None:
        return None

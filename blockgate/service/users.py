from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from blockgate.config import Settings
from blockgate.logging import get_logger
from blockgate.service.background import run_detached
from blockgate.service.errors import ServerError, UserExistsError, UserNotProvisionedError
from blockgate.storage.errors import ConstraintViolation
from blockgate.storage.models import (
    IdentityLink,
    NewAccount,
    UsageLimit,
    User,
    Workflow,
    Workspace,
    WorkspacePermission,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_DISPLAY_NAME = "Canvas User"
STARTER_WORKFLOW_NAME = "canvas-workflow"
STARTER_WORKFLOW_DESCRIPTION = "Your first Canvas workflow"
STARTER_WORKFLOW_COLOR = "#3972F6"

_NAME_DELIMITERS = re.compile(r"[._-]+")


def derive_name_from_email(email: str) -> str:
    """``jane.doe-smith@x`` -> ``Jane Doe Smith``; empty local part -> ``Canvas User``."""
    local_part = email.split("@", 1)[0]
    if not local_part:
        return DEFAULT_DISPLAY_NAME
    segments = [s for s in _NAME_DELIMITERS.split(local_part) if s]
    if not segments:
        return DEFAULT_DISPLAY_NAME
    return " ".join(segment[:1].upper() + segment[1:] for segment in segments)


def workspace_name_for(display_name: str) -> str:
    parts = display_name.split()
    first_name = parts[0] if parts else DEFAULT_DISPLAY_NAME.split()[0]
    return f"{first_name}'s Workspace"


def build_default_workflow_state() -> Dict[str, Any]:
    starter_id = new_id()
    return {
        "blocks": {
            starter_id: {
                "id": starter_id,
                "type": "starter",
                "name": "Start",
                "position": {"x": 100, "y": 100},
                "subBlocks": {},
                "outputs": {},
                "enabled": True,
            }
        },
        "edges": [],
        "loops": {},
        "parallels": {},
    }


@dataclass
class ProvisionResult:
    sim_user_id: str
    canvas_user_id: str
    email: str
    created_at: datetime
    link_id: str
    already_existed: bool = False
    workspace_id: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 409 if self.already_existed else 201

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "simUserId": self.sim_user_id,
            "canvasUserId": self.canvas_user_id,
            "email": self.email,
            "createdAt": self.created_at.isoformat(),
            "linkId": self.link_id,
        }
        if self.already_existed:
            payload["alreadyExisted"] = True
        return payload


@dataclass
class LinkedUser:
    canvas_user_id: str
    sim_user_id: str
    sim_workspace_id: Optional[str]
    email: str
    name: str
    linked_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "canvasUserId": self.canvas_user_id,
            "simUserId": self.sim_user_id,
            "simWorkspaceId": self.sim_workspace_id,
            "email": self.email,
            "name": self.name,
            "linkedAt": self.linked_at.isoformat(),
        }


class UserLinkService:
    """Bridges caller-system user ids to internal accounts through identity links."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.provider = settings.identity_provider

    async def find_link(self, canvas_user_id: str) -> Optional[IdentityLink]:
        return await asyncio.to_thread(self.store.get_identity_link, self.provider, canvas_user_id)

    async def lookup(self, canvas_user_id: str) -> LinkedUser:
        link = await self.find_link(canvas_user_id)
        user = await asyncio.to_thread(self.store.get_user, link.user_id) if link else None
        if link is None or user is None:
            raise UserNotProvisionedError("Canvas user not linked to Sim Studio")
        workspace = await asyncio.to_thread(self.store.get_owned_workspace, user.id)
        return LinkedUser(
            canvas_user_id=canvas_user_id,
            sim_user_id=user.id,
            sim_workspace_id=workspace.id if workspace else None,
            email=user.email,
            name=user.name,
            linked_at=link.created_at,
        )

    async def provision(
        self,
        canvas_user_id: str,
        email: str,
        *,
        name: Optional[str] = None,
        canvas_workspace_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        service_name: Optional[str] = None,
    ) -> ProvisionResult:
        display_name = name or derive_name_from_email(email)
        link_metadata = dict(metadata or {})
        if canvas_workspace_id:
            link_metadata["canvasWorkspaceId"] = canvas_workspace_id
        logger.info(
            "user_provision_requested",
            canvas_user_id=canvas_user_id,
            service_name=service_name,
        )
        try:
            return await self._provision(canvas_user_id, email, display_name, link_metadata)
        except ConstraintViolation as exc:
            logger.warning(
                "user_provision_conflict",
                canvas_user_id=canvas_user_id,
                message=exc.message,
                detail=exc.detail,
            )
            raise UserExistsError("User provisioning conflict - please retry") from exc
        except (UserExistsError, UserNotProvisionedError):
            raise
        except Exception as exc:
            logger.error(
                "user_provision_failed",
                canvas_user_id=canvas_user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Failed to provision user") from exc

    async def _provision(
        self,
        canvas_user_id: str,
        email: str,
        display_name: str,
        link_metadata: Dict[str, Any],
    ) -> ProvisionResult:
        existing_link = await self.find_link(canvas_user_id)
        if existing_link is not None:
            linked_user = await asyncio.to_thread(self.store.get_user, existing_link.user_id)
            logger.info(
                "user_already_linked",
                canvas_user_id=canvas_user_id,
                sim_user_id=existing_link.user_id,
            )
            return ProvisionResult(
                sim_user_id=existing_link.user_id,
                canvas_user_id=canvas_user_id,
                email=linked_user.email if linked_user else email,
                created_at=existing_link.created_at,
                link_id=existing_link.id,
                already_existed=True,
            )

        existing_user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if existing_user is not None:
            now = utcnow()
            link = IdentityLink(
                id=new_id(),
                external_id=canvas_user_id,
                provider=self.provider,
                user_id=existing_user.id,
                created_at=now,
                updated_at=now,
                metadata=link_metadata,
            )
            await asyncio.to_thread(self.store.create_identity_link, link)
            logger.info(
                "user_linked_by_email",
                canvas_user_id=canvas_user_id,
                sim_user_id=existing_user.id,
            )
            return ProvisionResult(
                sim_user_id=existing_user.id,
                canvas_user_id=canvas_user_id,
                email=existing_user.email,
                created_at=link.created_at,
                link_id=link.id,
            )

        account = self.build_account(canvas_user_id, email, display_name, link_metadata)
        await asyncio.to_thread(self.store.create_account, account)
        logger.info(
            "user_account_created",
            canvas_user_id=canvas_user_id,
            sim_user_id=account.user.id,
            sim_workspace_id=account.workspace.id,
        )
        self.schedule_workflow_seed(account.workflow.id)
        return ProvisionResult(
            sim_user_id=account.user.id,
            canvas_user_id=canvas_user_id,
            email=email,
            created_at=account.link.created_at,
            link_id=account.link.id,
            workspace_id=account.workspace.id,
        )

    def build_account(
        self,
        canvas_user_id: str,
        email: str,
        display_name: str,
        link_metadata: Dict[str, Any],
    ) -> NewAccount:
        now = utcnow()
        user_id = new_id()
        workspace_id = new_id()
        return NewAccount(
            user=User(
                id=user_id,
                email=email,
                name=display_name,
                email_verified=True,
                created_at=now,
                updated_at=now,
            ),
            usage_limit=UsageLimit(
                id=new_id(),
                user_id=user_id,
                current_usage_limit=self.settings.default_user_credits,
                created_at=now,
            ),
            link=IdentityLink(
                id=new_id(),
                external_id=canvas_user_id,
                provider=self.provider,
                user_id=user_id,
                created_at=now,
                updated_at=now,
                metadata=link_metadata,
            ),
            workspace=Workspace(
                id=workspace_id,
                name=workspace_name_for(display_name),
                owner_id=user_id,
                created_at=now,
                updated_at=now,
            ),
            permission=WorkspacePermission(
                id=new_id(),
                user_id=user_id,
                workspace_id=workspace_id,
                permission_type="admin",
                created_at=now,
            ),
            workflow=Workflow(
                id=new_id(),
                user_id=user_id,
                workspace_id=workspace_id,
                name=STARTER_WORKFLOW_NAME,
                description=STARTER_WORKFLOW_DESCRIPTION,
                color=STARTER_WORKFLOW_COLOR,
                created_at=now,
                updated_at=now,
            ),
        )

    def schedule_workflow_seed(self, workflow_id: str) -> asyncio.Task:
        """Seed the starter workflow's content after the account has committed.

        The account is usable without it, so the provisioning response does not
        wait for this task.
        """
        return run_detached(
            lambda: asyncio.to_thread(
                self.store.seed_workflow_state, workflow_id, build_default_workflow_state()
            ),
            "workflow_seed",
            workflow_id=workflow_id,
        )

    async def resolve_account(self, canvas_user_id: str) -> tuple[User, Workspace]:
        """Linked user and owned workspace for an execution request.

        A linked user without a workspace breaks the provisioning invariant and
        is reported as an internal error.
        """
        link = await self.find_link(canvas_user_id)
        user = await asyncio.to_thread(self.store.get_user, link.user_id) if link else None
        if link is None or user is None:
            raise UserNotProvisionedError(
                "Canvas user not provisioned in Sim Studio. Call /users/provision first."
            )
        workspace = await asyncio.to_thread(self.store.get_owned_workspace, user.id)
        if workspace is None:
            logger.error("user_workspace_missing", sim_user_id=user.id, canvas_user_id=canvas_user_id)
            raise ServerError("User workspace not found")
        return user, workspace

"""User provisioning and lookup through identity links."""

import pytest

from blockgate.config import Settings
from blockgate.service.background import drain_detached
from blockgate.service.errors import ServerError, UserNotProvisionedError
from blockgate.service.users import (
    UserLinkService,
    derive_name_from_email,
    workspace_name_for,
)
from blockgate.storage.memory import MemoryStore

CANVAS_USER = "33333333-3333-3333-3333-333333333333"
OTHER_CANVAS_USER = "44444444-4444-4444-4444-444444444444"


def _service():
    store = MemoryStore()
    return store, UserLinkService(store, Settings())


class _WorkspaceFailsStore(MemoryStore):
    def _stage_row(self, stage, kind, row):
        if kind == "workspace":
            raise RuntimeError("workspace insert failed")
        super()._stage_row(stage, kind, row)


class TestNames:
    def test_derive_name_from_email(self):
        assert derive_name_from_email("jane.doe-smith@example.com") == "Jane Doe Smith"
        assert derive_name_from_email("bob_ross@example.com") == "Bob Ross"
        assert derive_name_from_email("@example.com") == "Canvas User"
        assert derive_name_from_email("...@example.com") == "Canvas User"

    def test_workspace_name(self):
        assert workspace_name_for("Jane Doe") == "Jane's Workspace"


class TestProvision:
    async def test_new_account_creates_every_row(self):
        store, users = _service()
        result = await users.provision(CANVAS_USER, "jane.doe@example.com")
        await drain_detached()

        assert result.status_code == 201
        assert not result.already_existed
        user = store.users[result.sim_user_id]
        assert user.name == "Jane Doe"
        assert user.email_verified is True
        workspace = store.get_owned_workspace(user.id)
        assert workspace.name == "Jane's Workspace"
        assert store.usage_limits[user.id].current_usage_limit == Settings().default_user_credits
        permission = next(iter(store.permissions.values()))
        assert permission.permission_type == "admin"
        assert permission.workspace_id == workspace.id
        workflow = store.get_workflow(next(iter(store.workflows)))
        assert workflow.workspace_id == workspace.id
        assert workflow.state is not None
        assert len(workflow.state["blocks"]) == 1

    async def test_repeat_provision_reports_existing_link(self):
        _, users = _service()
        first = await users.provision(CANVAS_USER, "jane@example.com", name="Jane")
        second = await users.provision(CANVAS_USER, "someone-else@example.com")

        assert second.already_existed
        assert second.status_code == 409
        assert second.sim_user_id == first.sim_user_id
        assert second.link_id == first.link_id
        assert second.email == "jane@example.com"
        assert second.to_payload()["alreadyExisted"] is True

    async def test_existing_email_gets_linked_not_duplicated(self):
        store, users = _service()
        first = await users.provision(CANVAS_USER, "jane@example.com")
        linked = await users.provision(OTHER_CANVAS_USER, "jane@example.com")

        assert linked.status_code == 201
        assert linked.sim_user_id == first.sim_user_id
        assert len(store.users) == 1
        assert len(store.workspaces) == 1
        assert len(store.identity_links) == 2

    async def test_workspace_id_is_stored_on_link_metadata(self):
        store, users = _service()
        workspace_id = "55555555-5555-5555-5555-555555555555"
        await users.provision(
            CANVAS_USER, "jane@example.com", canvas_workspace_id=workspace_id, metadata={"plan": "pro"}
        )
        link = store.get_identity_link("canvas", CANVAS_USER)
        assert link.metadata == {"plan": "pro", "canvasWorkspaceId": workspace_id}

    async def test_failure_mid_account_leaves_nothing_behind(self):
        store = _WorkspaceFailsStore()
        users = UserLinkService(store, Settings())

        with pytest.raises(ServerError) as exc_info:
            await users.provision(CANVAS_USER, "jane@example.com")

        assert exc_info.value.message == "Failed to provision user"
        assert store.users == {}
        assert store.identity_links == {}
        assert store.usage_limits == {}
        assert store.workspaces == {}


class TestLookup:
    async def test_lookup_linked_user(self):
        _, users = _service()
        result = await users.provision(CANVAS_USER, "jane@example.com")
        linked = await users.lookup(CANVAS_USER)

        assert linked.sim_user_id == result.sim_user_id
        assert linked.sim_workspace_id == result.workspace_id
        payload = linked.to_payload()
        assert payload["canvasUserId"] == CANVAS_USER
        assert payload["email"] == "jane@example.com"

    async def test_lookup_unknown_user(self):
        _, users = _service()
        with pytest.raises(UserNotProvisionedError) as exc_info:
            await users.lookup(CANVAS_USER)
        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "USER_NOT_PROVISIONED"

    async def test_resolve_account_requires_provisioning(self):
        _, users = _service()
        with pytest.raises(UserNotProvisionedError):
            await users.resolve_account(CANVAS_USER)

        await users.provision(CANVAS_USER, "jane@example.com")
        user, workspace = await users.resolve_account(CANVAS_USER)
        assert workspace.owner_id == user.id

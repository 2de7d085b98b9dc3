"""Service key authentication: hashing, lifecycle checks and scope enforcement."""

from datetime import timedelta

import pytest

from blockgate.config import Settings
from blockgate.service.auth import (
    SCOPE_BLOCKS_EXECUTE,
    SCOPE_BLOCKS_LIST,
    ServiceKeyAuthenticator,
    hash_key,
    has_all_scopes,
    has_any_scope,
    key_prefix,
    parse_scopes,
)
from blockgate.service.background import drain_detached
from blockgate.service.errors import (
    AuthenticationError,
    InsufficientScopeError,
    ServerError,
)
from blockgate.storage.memory import MemoryStore
from blockgate.storage.models import utcnow


def _authenticator(**settings_overrides):
    store = MemoryStore()
    settings = Settings(**settings_overrides)
    return store, ServiceKeyAuthenticator(store, settings)


class _BrokenStore(MemoryStore):
    def get_service_credential_by_hash(self, key_hash, service_name):
        raise ConnectionError("database unavailable")


class TestScopeHelpers:
    def test_parse_scopes_accepts_list(self):
        assert parse_scopes(["blocks:list", "users:read"]) == ["blocks:list", "users:read"]

    def test_parse_scopes_accepts_json_string(self):
        assert parse_scopes('["blocks:list"]') == ["blocks:list"]

    def test_parse_scopes_accepts_double_encoded_string(self):
        assert parse_scopes('"[\\"blocks:execute\\"]"') == ["blocks:execute"]

    def test_parse_scopes_rejects_garbage(self):
        assert parse_scopes("not json") == []
        assert parse_scopes(None) == []
        assert parse_scopes({"blocks:list": True}) == []

    def test_all_and_any(self):
        granted = ["blocks:list", "users:read"]
        assert has_all_scopes(granted, ["blocks:list"])
        assert not has_all_scopes(granted, ["blocks:list", "blocks:execute"])
        assert has_any_scope(granted, ["blocks:execute", "users:read"])
        assert not has_any_scope(granted, ["blocks:execute"])


class TestIssueKey:
    def test_only_hash_is_stored(self):
        store, auth = _authenticator()
        raw_key, credential = auth.issue_key("canvas", [SCOPE_BLOCKS_LIST])

        assert raw_key.startswith("sim_svc_")
        assert credential.key_hash == hash_key(raw_key)
        assert credential.key_prefix == key_prefix(raw_key)
        stored = store.service_credentials[credential.id]
        assert raw_key not in (stored.key_hash, stored.key_prefix)

    def test_unknown_scope_rejected(self):
        _, auth = _authenticator()
        with pytest.raises(ValueError):
            auth.issue_key("canvas", ["blocks:delete"])

    def test_scopes_from_a_generator_are_kept(self):
        store, auth = _authenticator()
        _, credential = auth.issue_key("canvas", (scope for scope in [SCOPE_BLOCKS_LIST]))

        assert credential.scopes == [SCOPE_BLOCKS_LIST]
        assert store.service_credentials[credential.id].scopes == [SCOPE_BLOCKS_LIST]


class TestAuthenticate:
    async def test_missing_key(self):
        _, auth = _authenticator()
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "UNAUTHORIZED"
        assert exc_info.value.reason == "missing_key"

    async def test_wrong_prefix(self):
        _, auth = _authenticator()
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate("sk_live_abc")
        assert exc_info.value.reason == "invalid_key"

    async def test_unknown_key(self):
        _, auth = _authenticator()
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate("sim_svc_" + "0" * 64)
        assert exc_info.value.message == "Invalid service API key"

    async def test_inactive_key(self):
        store, auth = _authenticator()
        raw_key, credential = auth.issue_key("canvas", [SCOPE_BLOCKS_LIST])
        store.service_credentials[credential.id].is_active = False
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate(raw_key)
        assert exc_info.value.reason == "inactive_key"

    async def test_expired_key(self):
        _, auth = _authenticator()
        raw_key, _ = auth.issue_key(
            "canvas", [SCOPE_BLOCKS_LIST], expires_at=utcnow() - timedelta(seconds=1)
        )
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate(raw_key)
        assert exc_info.value.reason == "expired_key"

    async def test_key_for_other_service_is_invalid(self):
        store, auth = _authenticator()
        raw_key, _ = auth.issue_key("canvas", [SCOPE_BLOCKS_LIST])
        other = ServiceKeyAuthenticator(store, Settings(service_name="ledger"))
        with pytest.raises(AuthenticationError):
            await other.authenticate(raw_key)

    async def test_insufficient_scope(self):
        _, auth = _authenticator()
        raw_key, _ = auth.issue_key("canvas", [SCOPE_BLOCKS_LIST])
        with pytest.raises(InsufficientScopeError) as exc_info:
            await auth.authenticate(raw_key, [SCOPE_BLOCKS_EXECUTE])
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["missingScopes"] == [SCOPE_BLOCKS_EXECUTE]

    async def test_success_applies_default_limits_and_touches_key(self):
        store, auth = _authenticator(default_rate_limit_per_minute=7)
        raw_key, credential = auth.issue_key(
            "canvas", [SCOPE_BLOCKS_LIST, SCOPE_BLOCKS_EXECUTE], rate_limit_per_day=50
        )

        service = await auth.authenticate(raw_key, [SCOPE_BLOCKS_EXECUTE])
        await drain_detached()

        assert service.key_id == credential.id
        assert service.service_name == "canvas"
        assert service.rate_limit_per_minute == 7
        assert service.rate_limit_per_day == 50
        assert service.has_scope(SCOPE_BLOCKS_LIST)
        assert store.service_credentials[credential.id].last_used_at is not None

    async def test_lookup_failure_is_internal_error(self):
        store = _BrokenStore()
        auth = ServiceKeyAuthenticator(store, Settings())
        with pytest.raises(ServerError) as exc_info:
            await auth.authenticate("sim_svc_" + "1" * 64)
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Authentication failed"

"""Caller header validation, the IP allow-list and the four-bucket rate limiter."""

import pytest

from blockgate.service.auth import ServiceContext
from blockgate.service.context import (
    ContextOptions,
    RequestContextBuilder,
    resolve_client_ip,
)
from blockgate.service.errors import ForbiddenError, RateLimitedError, ValidationError
from blockgate.service.rate_limit import (
    FAIL_CLOSED_RETRY_MS,
    LocalTokenBuckets,
    RateLimiter,
    is_unlimited,
    service_bucket_key,
    user_bucket_key,
)
from blockgate.service.runtime import check_rate_limit, get_runtime

USER_ID = "11111111-1111-1111-1111-111111111111"
WORKSPACE_ID = "22222222-2222-2222-2222-222222222222"


def _service(per_minute=10, per_day=1000):
    return ServiceContext(
        service_name="canvas",
        key_id="key-1",
        key_prefix="sim_svc_abcdefgh",
        scopes=["blocks:list"],
        rate_limit_per_minute=per_minute,
        rate_limit_per_day=per_day,
    )


class TestResolveClientIp:
    def test_first_forwarded_hop_wins(self):
        headers = {"x-forwarded-for": "10.0.0.1, 10.0.0.2", "x-real-ip": "10.0.0.9"}
        assert resolve_client_ip(headers, "127.0.0.1") == "10.0.0.1"

    def test_real_ip_then_peer(self):
        assert resolve_client_ip({"x-real-ip": "10.0.0.9"}, "127.0.0.1") == "10.0.0.9"
        assert resolve_client_ip({}, "127.0.0.1") == "127.0.0.1"
        assert resolve_client_ip({}, None) is None


class TestRequestContextBuilder:
    def test_builds_context_from_headers(self):
        builder = RequestContextBuilder()
        ctx = builder.build(
            _service(),
            {
                "x-canvas-user-id": USER_ID,
                "x-canvas-workspace-id": WORKSPACE_ID,
                "x-request-id": "req-1",
                "x-idempotency-key": "idem-1",
                "user-agent": "canvas/1.0",
            },
            "10.1.1.1",
        )
        assert ctx.canvas_user_id == USER_ID
        assert ctx.canvas_workspace_id == WORKSPACE_ID
        assert ctx.request_id == "req-1"
        assert ctx.idempotency_key == "idem-1"
        assert ctx.ip_address == "10.1.1.1"
        assert ctx.service_name == "canvas"

    def test_invalid_uuid_headers_report_field_errors(self):
        builder = RequestContextBuilder()
        with pytest.raises(ValidationError) as exc_info:
            builder.build(
                _service(),
                {"x-canvas-user-id": "not-a-uuid", "x-canvas-workspace-id": "also-bad"},
            )
        assert exc_info.value.message == "Invalid request headers"
        assert set(exc_info.value.detail) == {"canvasUserId", "canvasWorkspaceId"}

    def test_allow_list_blocks_unknown_address(self):
        builder = RequestContextBuilder(["10.0.0.1"])
        ctx = builder.build(_service(), {}, "10.0.0.2")
        with pytest.raises(ForbiddenError):
            builder.enforce(ctx, ContextOptions())

    def test_allow_list_rejects_unknown_origin(self):
        builder = RequestContextBuilder(["10.0.0.1"])
        ctx = builder.build(_service(), {}, None)
        with pytest.raises(ForbiddenError):
            builder.enforce(ctx, ContextOptions())

    def test_empty_allow_list_admits_everyone(self):
        builder = RequestContextBuilder([])
        ctx = builder.build(_service(), {}, "203.0.113.5")
        builder.enforce(ctx, ContextOptions())

    def test_required_headers(self):
        builder = RequestContextBuilder()
        ctx = builder.build(_service(), {"x-canvas-user-id": USER_ID})
        with pytest.raises(ValidationError) as exc_info:
            builder.enforce(ctx, ContextOptions(require_workspace_context=True))
        assert exc_info.value.message == "Missing X-Canvas-Workspace-Id header"

        bare = builder.build(_service(), {})
        with pytest.raises(ValidationError) as exc_info:
            builder.enforce(bare, ContextOptions(require_user_context=True))
        assert exc_info.value.message == "Missing X-Canvas-User-Id header"


class TestRateLimiter:
    def test_unlimited_values(self):
        assert is_unlimited(0)
        assert is_unlimited(-5)
        assert is_unlimited(float("inf"))
        assert is_unlimited(None)
        assert not is_unlimited(10)

    def test_user_buckets_only_with_user_header(self):
        builder = RequestContextBuilder()
        without_user = builder.build(_service(), {})
        with_user = builder.build(_service(), {"x-canvas-user-id": USER_ID})

        assert [b.name for b in RateLimiter.buckets_for(without_user)] == [
            "service_minute",
            "service_day",
        ]
        buckets = RateLimiter.buckets_for(with_user)
        assert [b.name for b in buckets] == [
            "service_minute",
            "service_day",
            "user_minute",
            "user_day",
        ]
        assert buckets[2].key == user_bucket_key("canvas", "sim_svc_abcdefgh", USER_ID)
        assert buckets[0].key == service_bucket_key("canvas", "sim_svc_abcdefgh")

    async def test_nth_allowed_and_next_rejected(self):
        runtime = get_runtime()
        limiter = RateLimiter(lambda key, limit, window: check_rate_limit(runtime, key, limit, window))
        ctx = RequestContextBuilder().build(_service(per_minute=3), {})

        for _ in range(3):
            await limiter.enforce(ctx)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.enforce(ctx)
        assert exc_info.value.retry_after_ms > 0
        assert exc_info.value.retry_after_seconds >= 1

    async def test_first_exhausted_bucket_is_reported(self):
        runtime = get_runtime()
        limiter = RateLimiter(lambda key, limit, window: check_rate_limit(runtime, key, limit, window))
        ctx = RequestContextBuilder().build(_service(per_minute=100, per_day=1), {})

        assert (await limiter.check(ctx)).allowed
        result = await limiter.check(ctx)
        assert not result.allowed
        assert result.bucket == "service_day"

    async def test_backend_failure_fails_closed(self):
        async def broken(key, limit, window):
            raise ConnectionError("redis down")

        limiter = RateLimiter(broken)
        ctx = RequestContextBuilder().build(_service(), {})
        result = await limiter.check(ctx)
        assert not result.allowed
        assert result.retry_after_ms == FAIL_CLOSED_RETRY_MS
        assert result.bucket == "error"

    async def test_unlimited_buckets_skip_backend(self):
        calls = []

        async def counting(key, limit, window):
            calls.append(key)
            return True, limit, 0

        limiter = RateLimiter(counting)
        ctx = RequestContextBuilder().build(_service(per_minute=0, per_day=0), {})
        assert (await limiter.check(ctx)).allowed
        assert calls == []


class TestLocalTokenBuckets:
    async def test_refill_and_retry_after(self):
        now = [1000.0]
        buckets = LocalTokenBuckets(clock=lambda: now[0])

        assert (await buckets.consume("k", 2, 2))[0]
        assert (await buckets.consume("k", 2, 2))[0]
        allowed, remaining, retry_after_ms = await buckets.consume("k", 2, 2)
        assert not allowed
        assert remaining == 0
        assert retry_after_ms == 1000

        now[0] += 1
        assert (await buckets.consume("k", 2, 2))[0]

    async def test_keys_are_independent(self):
        buckets = LocalTokenBuckets(clock=lambda: 0.0)
        assert (await buckets.consume("a", 1, 60))[0]
        assert not (await buckets.consume("a", 1, 60))[0]
        assert (await buckets.consume("b", 1, 60))[0]

    async def test_refilled_buckets_are_pruned(self):
        now = [0.0]
        buckets = LocalTokenBuckets(clock=lambda: now[0], prune_threshold=2)
        assert (await buckets.consume("a", 2, 2))[0]
        assert (await buckets.consume("b", 2, 2))[0]
        assert (await buckets.consume("b", 2, 2))[0]
        assert len(buckets) == 2

        now[0] += 1
        # "a" is full again, "b" has one of two tokens back
        assert (await buckets.consume("c", 2, 2))[0]
        assert len(buckets) == 2
        allowed, remaining, _ = await buckets.consume("b", 2, 2)
        assert allowed
        assert remaining == 0

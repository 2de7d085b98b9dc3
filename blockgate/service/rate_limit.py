from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from blockgate.logging import get_logger
from blockgate.service.context import RequestContext
from blockgate.service.errors import RateLimitedError

logger = get_logger(__name__)

MINUTE_SECONDS = 60
DAY_SECONDS = 60 * 60 * 24
FAIL_CLOSED_RETRY_MS = 60_000

# (key, limit, window_seconds) -> (allowed, remaining, retry_after_ms)
BucketCheck = Callable[[str, int, int], Awaitable[Tuple[bool, int, int]]]


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_ms: int = 0
    bucket: Optional[str] = None
    remaining: Optional[int] = None


@dataclass
class _Bucket:
    name: str
    key: str
    limit: float
    window_seconds: int


def is_unlimited(limit) -> bool:
    try:
        value = float(limit)
    except (TypeError, ValueError):
        return True
    return not math.isfinite(value) or value <= 0


class LocalTokenBuckets:
    """Per-process token buckets for deployments running without Redis.

    Same refill semantics as the Redis script, but each replica counts on its
    own, so the effective quota scales with the replica count. Buckets that
    have refilled to capacity are indistinguishable from absent ones and are
    pruned once the map grows past ``prune_threshold``.
    """

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, *, prune_threshold: int = 10_000
    ) -> None:
        self._clock = clock
        # key -> (tokens, last_refill, capacity, refill_per_second)
        self._buckets: Dict[str, Tuple[float, float, float, float]] = {}
        self._lock = asyncio.Lock()
        self._base_threshold = max(1, prune_threshold)
        self._prune_threshold = self._base_threshold

    def __len__(self) -> int:
        return len(self._buckets)

    def _prune(self, now: float) -> None:
        full = [
            key
            for key, (tokens, last, capacity, rate) in self._buckets.items()
            if tokens + max(0.0, now - last) * rate >= capacity
        ]
        for key in full:
            del self._buckets[key]
        self._prune_threshold = max(self._base_threshold, 2 * len(self._buckets))
        if full:
            logger.debug("local_rate_buckets_pruned", pruned=len(full), remaining=len(self._buckets))

    async def consume(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        capacity = float(limit)
        refill_rate = capacity / float(window_seconds)
        async with self._lock:
            now = self._clock()
            if key not in self._buckets and len(self._buckets) >= self._prune_threshold:
                self._prune(now)
            tokens, last, _, _ = self._buckets.get(key, (capacity, now, capacity, refill_rate))
            tokens = min(capacity, tokens + max(0.0, now - last) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now, capacity, refill_rate)
        if allowed or refill_rate <= 0:
            return allowed, int(tokens), 0
        return False, int(tokens), int(math.ceil((cost - tokens) / refill_rate * 1000))


def service_bucket_key(service_name: str, key_prefix: str) -> str:
    return f"svc:{service_name}:{key_prefix}"


def user_bucket_key(service_name: str, key_prefix: str, canvas_user_id: str) -> str:
    return f"{service_bucket_key(service_name, key_prefix)}:user:{canvas_user_id}"


class RateLimiter:
    """Four token buckets checked cheapest first; the first exhausted bucket wins.

    Quota enforcement is a safety control, so a failing bucket backend is
    treated as "not allowed" rather than letting traffic through.
    """

    def __init__(self, check_bucket: BucketCheck) -> None:
        self._check_bucket = check_bucket

    @staticmethod
    def buckets_for(context: RequestContext) -> List[_Bucket]:
        service = context.service
        base = service_bucket_key(service.service_name, service.key_prefix)
        buckets = [
            _Bucket("service_minute", base, service.rate_limit_per_minute, MINUTE_SECONDS),
            _Bucket("service_day", f"{base}:day", service.rate_limit_per_day, DAY_SECONDS),
        ]
        if context.canvas_user_id:
            user_key = user_bucket_key(service.service_name, service.key_prefix, context.canvas_user_id)
            buckets.extend(
                [
                    _Bucket("user_minute", user_key, service.rate_limit_per_minute, MINUTE_SECONDS),
                    _Bucket("user_day", f"{user_key}:day", service.rate_limit_per_day, DAY_SECONDS),
                ]
            )
        return buckets

    async def check(self, context: RequestContext) -> RateLimitResult:
        try:
            for bucket in self.buckets_for(context):
                if is_unlimited(bucket.limit):
                    continue
                allowed, remaining, retry_after_ms = await self._check_bucket(
                    bucket.key, int(bucket.limit), bucket.window_seconds
                )
                if not allowed:
                    return RateLimitResult(
                        allowed=False,
                        retry_after_ms=max(1, int(retry_after_ms)),
                        bucket=bucket.name,
                        remaining=remaining,
                    )
        except Exception as exc:
            logger.error(
                "rate_limit_check_failed",
                service_name=context.service_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitResult(allowed=False, retry_after_ms=FAIL_CLOSED_RETRY_MS, bucket="error")
        return RateLimitResult(allowed=True)

    async def enforce(self, context: RequestContext) -> None:
        result = await self.check(context)
        if result.allowed:
            return
        logger.warning(
            "rate_limit_exceeded",
            service_name=context.service_name,
            key_prefix=context.key_prefix,
            canvas_user_id=context.canvas_user_id,
            bucket=result.bucket,
            retry_after_ms=result.retry_after_ms,
        )
        raise RateLimitedError(retry_after_ms=result.retry_after_ms)

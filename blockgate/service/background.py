from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Set

from blockgate.logging import get_logger

logger = get_logger(__name__)

# Strong references so detached tasks are not garbage collected mid-flight
_pending: Set[asyncio.Task] = set()


def run_detached(
    factory: Callable[[], Awaitable[Any]], event: str, **log_fields: Any
) -> asyncio.Task:
    """Schedule best-effort work that the current request never awaits.

    Callers must not depend on the task having finished before they return a
    response. A failure is logged as ``{event}_failed`` and goes no further.
    """

    async def _runner() -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                f"{event}_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                **log_fields,
            )

    task = asyncio.create_task(_runner())
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_detached(timeout: float = 5.0) -> None:
    """Wait for outstanding detached tasks, used at shutdown and in tests."""
    if not _pending:
        return
    await asyncio.wait(set(_pending), timeout=timeout)

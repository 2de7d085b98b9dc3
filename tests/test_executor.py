"""Single-action executor: timeout bound, retry and result normalization."""

import asyncio

import pytest

from blockgate.service.executor import (
    ActionResult,
    ExecutionAdapter,
    ExecutionTimedOut,
    build_execution_context,
)


class ScriptedTools:
    """Tool executor that plays back one step per call."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = []

    async def execute(self, tool_id, inputs, context=None):
        self.calls.append((tool_id, inputs))
        step = self.steps.pop(0)
        if isinstance(step, float):
            await asyncio.sleep(step)
            return {"success": True, "output": {"slept": step}}
        if isinstance(step, Exception):
            raise step
        return step


def _context():
    return build_execution_context("exec-1", "ws-1", "user-1")


def test_context_defaults():
    ctx = _context()
    assert ctx.workflow_id == "canvas-exec-1"
    assert ctx.is_deployed_context is False
    assert ctx.decisions == {"router": {}, "condition": {}}
    assert ctx.metadata["triggerType"] == "canvas"
    assert ctx.metadata["isDebugSession"] is False

    assert build_execution_context("exec-1", "ws-1", "user-1", "wf-9").workflow_id == "wf-9"


def test_from_raw_normalizes():
    assert ActionResult.from_raw({"success": True, "output": {"a": 1}}) == ActionResult(
        success=True, output={"a": 1}
    )
    assert ActionResult.from_raw("nope").success is False
    assert ActionResult.from_raw({"success": False, "error": "boom"}).error == "boom"


async def test_success_single_attempt():
    tools = ScriptedTools({"success": True, "output": {"ok": True}})
    result = await ExecutionAdapter(tools).run("t", {"x": 1}, _context(), timeout_ms=1000)
    assert result.success
    assert result.output == {"ok": True}
    assert tools.calls == [("t", {"x": 1})]


async def test_reported_failure_without_retry():
    tools = ScriptedTools({"success": False, "error": "bad input"}, {"success": True})
    result = await ExecutionAdapter(tools).run("t", {}, _context(), timeout_ms=1000)
    assert not result.success
    assert result.error == "bad input"
    assert len(tools.calls) == 1


async def test_reported_failure_retries_once():
    tools = ScriptedTools({"success": False, "error": "flaky"}, {"success": True, "output": {"n": 2}})
    result = await ExecutionAdapter(tools).run(
        "t", {}, _context(), timeout_ms=1000, retry_on_failure=True
    )
    assert result.success
    assert result.output == {"n": 2}
    assert len(tools.calls) == 2


async def test_retry_stops_after_second_failure():
    tools = ScriptedTools(
        {"success": False, "error": "one"},
        {"success": False, "error": "two"},
        {"success": True},
    )
    result = await ExecutionAdapter(tools).run(
        "t", {}, _context(), timeout_ms=1000, retry_on_failure=True
    )
    assert result.error == "two"
    assert len(tools.calls) == 2


async def test_exception_propagates_without_retry():
    tools = ScriptedTools(RuntimeError("kaboom"))
    with pytest.raises(RuntimeError, match="kaboom"):
        await ExecutionAdapter(tools).run("t", {}, _context(), timeout_ms=1000)


async def test_exception_then_success_with_retry():
    tools = ScriptedTools(RuntimeError("kaboom"), {"success": True, "output": {}})
    result = await ExecutionAdapter(tools).run(
        "t", {}, _context(), timeout_ms=1000, retry_on_failure=True
    )
    assert result.success


async def test_timeout_abandons_running_action():
    tools = ScriptedTools(0.5)
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ExecutionTimedOut) as exc_info:
        await ExecutionAdapter(tools).run("t", {}, _context(), timeout_ms=50)
    assert loop.time() - started < 0.4

    abandoned = exc_info.value.abandoned
    assert len(abandoned) == 1
    assert not abandoned[0].done()
    # The abandoned action keeps running to completion
    assert await abandoned[0] == {"success": True, "output": {"slept": 0.5}}


async def test_timeout_then_retry_success():
    tools = ScriptedTools(0.5, {"success": True, "output": {"second": True}})
    result = await ExecutionAdapter(tools).run(
        "t", {}, _context(), timeout_ms=50, retry_on_failure=True
    )
    assert result.output == {"second": True}
    await asyncio.sleep(0.6)


async def test_timeout_fires_at_configured_bound():
    never = asyncio.Event()

    class HangingTools:
        async def execute(self, tool_id, inputs, context=None):
            await never.wait()

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ExecutionTimedOut) as exc_info:
        await ExecutionAdapter(HangingTools()).run("t", {}, _context(), timeout_ms=1000)
    elapsed = loop.time() - started
    assert 0.95 <= elapsed < 1.5
    assert exc_info.value.timeout_ms == 1000
    exc_info.value.abandoned[0].cancel()


async def test_cancelled_run_hands_back_running_attempt():
    tools = ScriptedTools(0.2)
    abandoned = []
    run = asyncio.create_task(
        ExecutionAdapter(tools).run("t", {}, _context(), timeout_ms=1000, abandoned=abandoned)
    )
    await asyncio.sleep(0.05)
    run.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run

    assert len(abandoned) == 1
    assert await abandoned[0] == {"success": True, "output": {"slept": 0.2}}


async def test_exhausted_attempts_return_last_result():
    tools = ScriptedTools(RuntimeError("first"), {"success": False, "error": "second"})
    result = await ExecutionAdapter(tools).run(
        "t", {}, _context(), timeout_ms=1000, retry_on_failure=True
    )
    assert result == ActionResult(success=False, error="second")

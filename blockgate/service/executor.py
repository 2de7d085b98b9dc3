from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from blockgate.logging import get_logger

logger = get_logger(__name__)

TRIGGER_TYPE = "canvas"


@dataclass
class ExecutionContext:
    """Minimal execution context for a single-action invocation.

    No graph is being executed, so every state-tracking collection is empty.
    """

    workflow_id: str
    workspace_id: str
    execution_id: str
    user_id: str
    is_deployed_context: bool = False
    block_states: Dict[str, Any] = field(default_factory=dict)
    executed_blocks: set = field(default_factory=set)
    block_logs: List[Any] = field(default_factory=list)
    environment_variables: Dict[str, str] = field(default_factory=dict)
    workflow_variables: Dict[str, Any] = field(default_factory=dict)
    decisions: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {"router": {}, "condition": {}}
    )
    completed_loops: set = field(default_factory=set)
    loop_executions: Dict[str, Any] = field(default_factory=dict)
    parallel_executions: Dict[str, Any] = field(default_factory=dict)
    active_execution_path: set = field(default_factory=set)

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "duration": 0,
            "workflowId": self.workflow_id,
            "workspaceId": self.workspace_id,
            "executionId": self.execution_id,
            "userId": self.user_id,
            "isDebugSession": False,
            "triggerType": TRIGGER_TYPE,
        }


def build_execution_context(
    execution_id: str,
    workspace_id: str,
    user_id: str,
    workflow_id: Optional[str] = None,
) -> ExecutionContext:
    return ExecutionContext(
        workflow_id=workflow_id or f"canvas-{execution_id}",
        workspace_id=workspace_id,
        execution_id=execution_id,
        user_id=user_id,
    )


class ToolExecutor(Protocol):
    async def execute(
        self, tool_id: str, inputs: Dict[str, Any], context: Optional[ExecutionContext] = None
    ) -> Dict[str, Any]: ...


@dataclass
class ActionResult:
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "ActionResult":
        if isinstance(raw, ActionResult):
            return raw
        if not isinstance(raw, dict):
            return cls(success=False, error="Tool returned an unexpected result")
        output = raw.get("output")
        error = raw.get("error")
        return cls(
            success=bool(raw.get("success")),
            output=output if isinstance(output, dict) else {},
            error=str(error) if error else None,
        )


class ExecutionTimedOut(Exception):
    """No attempt finished within its bound.

    ``abandoned`` holds the still-running attempts; nothing cancels them.
    """

    def __init__(self, timeout_ms: int, abandoned: List[asyncio.Task]) -> None:
        super().__init__("EXECUTION_TIMEOUT")
        self.timeout_ms = timeout_ms
        self.abandoned = abandoned


def _discard_outcome(task: asyncio.Task) -> None:
    # Retrieve the exception so asyncio does not warn about it never being read
    if not task.cancelled():
        task.exception()


class ExecutionAdapter:
    """Runs one tool under a timeout, with at most one retry."""

    def __init__(self, tools: ToolExecutor) -> None:
        self.tools = tools

    async def _attempt(
        self,
        tool_id: str,
        inputs: Dict[str, Any],
        context: ExecutionContext,
        timeout_ms: int,
        abandoned: List[asyncio.Task],
    ) -> ActionResult:
        task = asyncio.ensure_future(self.tools.execute(tool_id, inputs, context))
        try:
            # shield() keeps the action running after we stop waiting for it
            raw = await asyncio.wait_for(asyncio.shield(task), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning(
                "block_execution_timeout",
                tool_id=tool_id,
                execution_id=context.execution_id,
                timeout_ms=timeout_ms,
            )
            abandoned.append(task)
            raise ExecutionTimedOut(timeout_ms, list(abandoned))
        except asyncio.CancelledError:
            # The caller went away; the action itself carries on
            logger.warning(
                "block_execution_caller_cancelled",
                tool_id=tool_id,
                execution_id=context.execution_id,
            )
            abandoned.append(task)
            raise
        return ActionResult.from_raw(raw)

    async def run(
        self,
        tool_id: str,
        inputs: Dict[str, Any],
        context: ExecutionContext,
        *,
        timeout_ms: int,
        retry_on_failure: bool = False,
        abandoned: Optional[List[asyncio.Task]] = None,
    ) -> ActionResult:
        """Execute ``tool_id``; raise ``ExecutionTimedOut`` or the action's own exception.

        With ``retry_on_failure`` a reported failure, an exception or a
        timeout on the first attempt triggers exactly one more attempt.
        Attempts left running by a timeout or by cancellation of this call
        are appended to ``abandoned`` when the caller passes a list.
        """
        if abandoned is None:
            abandoned = []
        attempts = 2 if retry_on_failure else 1
        attempt = 1
        try:
            while True:
                try:
                    result = await self._attempt(tool_id, inputs, context, timeout_ms, abandoned)
                except Exception as exc:
                    if attempt >= attempts:
                        raise
                    logger.info(
                        "block_execution_retry",
                        tool_id=tool_id,
                        execution_id=context.execution_id,
                        reason=type(exc).__name__,
                        error=str(exc),
                    )
                else:
                    if result.success or attempt >= attempts:
                        return result
                    logger.info(
                        "block_execution_retry",
                        tool_id=tool_id,
                        execution_id=context.execution_id,
                        reason="reported_failure",
                        error=result.error,
                    )
                attempt += 1
        finally:
            for task in abandoned:
                task.add_done_callback(_discard_outcome)

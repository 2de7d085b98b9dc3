from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from blockgate.config import Settings
from blockgate.logging import get_logger, redact_api_keys, sanitize_error_message
from blockgate.service.background import run_detached
from blockgate.service.blocks import BlockRegistry, hydrate_params
from blockgate.service.context import RequestContext
from blockgate.service.errors import (
    ExecutionFailedError,
    ExecutionTimeoutError,
    MissingCredentialsError,
    NotFoundError,
    ServerError,
    ServiceError,
)
from blockgate.service.executor import (
    ActionResult,
    ExecutionAdapter,
    ExecutionContext,
    ExecutionTimedOut,
    build_execution_context,
)
from blockgate.service.job_detection import AsyncJob, detect_async_job, extract_usage
from blockgate.service.users import UserLinkService
from blockgate.storage.models import (
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_RUNNING,
    ExecutionRecord,
    new_id,
)

logger = get_logger(__name__)

CREDENTIAL_ERROR_MARKERS = ("credential", "oauth", "api key")
EMPTY_USAGE = {"tokensUsed": None, "apiCallsMade": None, "creditsConsumed": None}


@dataclass
class ExecutionRequest:
    """Validated execute call, independent of the HTTP layer."""

    block_type: str
    params: Dict[str, Any] = field(default_factory=dict)
    block_version: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    node_id: Optional[str] = None
    timeout_ms: Optional[int] = None
    retry_on_failure: bool = False


def classify_failure(message: str) -> type[ServiceError]:
    """Guess whether a failure came from absent downstream credentials.

    Substring matching on the error text; an unrelated message that mentions
    an API key is misclassified.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in CREDENTIAL_ERROR_MARKERS):
        return MissingCredentialsError
    return ExecutionFailedError


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def running_payload(record: ExecutionRecord, poll_url: str) -> Dict[str, Any]:
    data = record.execution_data or {}
    request = data.get("request") or {}
    payload: Dict[str, Any] = {
        "executionId": record.execution_id,
        "blockType": request.get("blockType") or "unknown",
        "status": EXECUTION_RUNNING,
        "progress": data.get("progress") if data.get("progress") is not None else 0,
        "currentStep": data.get("currentStep") or "Running",
        "timing": {"startedAt": _iso(record.started_at)},
        "pollUrl": poll_url,
    }
    if data.get("estimatedCompletionMs") is not None:
        payload["estimatedCompletionMs"] = data["estimatedCompletionMs"]
    return payload


def completed_payload(
    record: ExecutionRecord, *, output: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    data = record.execution_data or {}
    request = data.get("request") or {}
    response = data.get("response") or {}
    return {
        "executionId": record.execution_id,
        "blockType": response.get("blockType") or request.get("blockType") or "unknown",
        "status": EXECUTION_FAILED if record.level == "error" else EXECUTION_COMPLETED,
        "output": output if output is not None else (response.get("output") or {}),
        "timing": {
            "startedAt": _iso(record.started_at),
            "completedAt": _iso(record.ended_at),
            "durationMs": record.total_duration_ms,
        },
        "usage": response.get("usage"),
    }


def stored_failure(record: ExecutionRecord) -> ServiceError:
    """Rebuild the error a failed record was originally answered with."""
    response = (record.execution_data or {}).get("response") or {}
    message = response.get("error") or "Block execution failed"
    details = response.get("details") or {"executionId": record.execution_id}
    error_code = response.get("errorCode")
    status_code = response.get("httpStatus")
    if error_code and status_code:
        return ServiceError(
            message, status_code=int(status_code), error_code=error_code, detail=details
        )
    return classify_failure(message)(message, detail=details)


class ExecutionLog:
    """Execution records through the store, off the event loop.

    Reads and the initial insert propagate store errors. Progress and
    completion writes are logged on failure and never change the outcome
    returned to the caller.
    """

    def __init__(self, store) -> None:
        self.store = store

    async def find(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await asyncio.to_thread(self.store.get_execution, execution_id)

    async def start(self, record: ExecutionRecord) -> bool:
        try:
            inserted = await asyncio.to_thread(self.store.insert_execution, record)
        except Exception as exc:
            logger.error(
                "execution_log_start_failed",
                execution_id=record.execution_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Failed to record execution start") from exc
        if not inserted:
            logger.info("execution_log_start_conflict", execution_id=record.execution_id)
        return inserted

    async def mark_progress(self, execution_id: str, execution_data: Dict[str, Any]) -> bool:
        try:
            return await asyncio.to_thread(
                self.store.update_execution_progress, execution_id, execution_data
            )
        except Exception as exc:
            logger.error(
                "execution_log_progress_failed",
                execution_id=execution_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def complete(self, record: ExecutionRecord) -> bool:
        try:
            return await asyncio.to_thread(
                self.store.complete_execution,
                record.execution_id,
                level=record.level,
                ended_at=record.ended_at,
                total_duration_ms=record.total_duration_ms,
                execution_data=record.execution_data,
                api_calls_made=record.api_calls_made,
                credits_consumed=record.credits_consumed,
            )
        except Exception as exc:
            logger.error(
                "execution_log_complete_failed",
                execution_id=record.execution_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False


class BlockExecutionService:
    """Admits one execute call through the idempotent execution log."""

    def __init__(
        self,
        store,
        registry: BlockRegistry,
        users: UserLinkService,
        adapter: ExecutionAdapter,
        settings: Settings,
    ) -> None:
        self.log = ExecutionLog(store)
        self.registry = registry
        self.users = users
        self.adapter = adapter
        self.settings = settings

    def poll_url(self, execution_id: str) -> str:
        return f"{self.settings.poll_url_prefix.rstrip('/')}/{execution_id}/status"

    def _replay(self, record: ExecutionRecord) -> Tuple[int, Dict[str, Any]]:
        logger.info(
            "block_execution_replayed",
            execution_id=record.execution_id,
            status=record.status,
        )
        if record.status == EXECUTION_RUNNING:
            return 202, running_payload(record, self.poll_url(record.execution_id))
        if record.status == EXECUTION_FAILED:
            raise stored_failure(record)
        return 200, completed_payload(record)

    async def execute(
        self, request: ExecutionRequest, ctx: RequestContext
    ) -> Tuple[int, Dict[str, Any]]:
        """Run ``request`` at most once per execution id.

        Returns ``(status_code, payload)``; failures raise ``ServiceError``.
        """
        execution_id = request.execution_id or ctx.idempotency_key or new_id()
        request_id = ctx.request_id or execution_id

        existing = await self.log.find(execution_id)
        if existing is not None:
            return self._replay(existing)

        resolved = self.registry.require(request.block_type)
        block = resolved.block
        hydrated = hydrate_params(block, request.params)
        tool_id = self.registry.resolve_tool_id(resolved, hydrated)

        user, workspace = await self.users.resolve_account(ctx.canvas_user_id)
        context = build_execution_context(
            execution_id, workspace.id, user.id, workflow_id=request.workflow_id
        )
        tool_inputs = {
            **hydrated,
            "_context": {
                "workflowId": context.workflow_id,
                "workspaceId": workspace.id,
                "executionId": execution_id,
                "userId": user.id,
                "isCanvasExecution": True,
                "canvasWorkspaceId": ctx.canvas_workspace_id,
                "canvasNodeId": request.node_id,
                "canvasWorkflowId": request.workflow_id,
            },
        }
        snapshot = {
            "requestId": request_id,
            "idempotencyKey": ctx.idempotency_key,
            "serviceKeyPrefix": ctx.key_prefix,
            "serviceName": ctx.service_name,
            "ipAddress": ctx.ip_address,
            "userAgent": ctx.user_agent,
            "blockType": block.type,
            "blockVersion": request.block_version,
            "toolId": tool_id,
            "params": redact_api_keys(hydrated),
            "context": {
                "canvasUserId": ctx.canvas_user_id,
                "canvasWorkspaceId": ctx.canvas_workspace_id,
                "canvasWorkflowId": request.workflow_id,
                "canvasNodeId": request.node_id,
            },
        }

        record = ExecutionRecord(
            id=new_id(),
            execution_id=execution_id,
            block_type=block.type,
            block_version=request.block_version,
            caller_id=self.settings.service_name,
            caller_user_id=ctx.canvas_user_id,
            caller_workspace_id=ctx.canvas_workspace_id,
            caller_workflow_id=request.workflow_id,
            caller_node_id=request.node_id,
            execution_data={"request": snapshot, "status": EXECUTION_RUNNING},
        )
        if not await self.log.start(record):
            # Lost the insert race; the winner owns this execution id
            winner = await self.log.find(execution_id)
            if winner is None:
                raise ServerError("Failed to record execution start")
            return self._replay(winner)

        timeout_ms = request.timeout_ms or self.settings.default_execution_timeout_ms
        logger.info(
            "block_execution_started",
            execution_id=execution_id,
            block_type=block.type,
            tool_id=tool_id,
            workspace_id=workspace.id,
            user_id=user.id,
            timeout_ms=timeout_ms,
        )
        started = time.monotonic()
        abandoned: List[asyncio.Task] = []
        try:
            result = await self.adapter.run(
                tool_id,
                tool_inputs,
                context,
                timeout_ms=timeout_ms,
                retry_on_failure=request.retry_on_failure,
                abandoned=abandoned,
            )
        except asyncio.CancelledError:
            logger.warning(
                "block_execution_request_cancelled",
                execution_id=execution_id,
                block_type=block.type,
                pending_attempts=len(abandoned),
            )
            for task in abandoned:
                self._watch_abandoned(task, record, started)
            raise
        except ExecutionTimedOut as exc:
            duration_ms = _elapsed_ms(started)
            for task in exc.abandoned:
                self._watch_abandoned(task, record, started)
            raise ExecutionTimeoutError(
                "Execution exceeded timeout",
                detail={"executionId": execution_id, "durationMs": duration_ms},
            ) from exc
        except Exception as exc:
            duration_ms = _elapsed_ms(started)
            message = sanitize_error_message(str(exc))
            logger.error(
                "block_execution_raised",
                execution_id=execution_id,
                block_type=block.type,
                error_type=type(exc).__name__,
                error=message,
                duration_ms=duration_ms,
            )
            error = ExecutionFailedError(
                message, detail={"executionId": execution_id, "durationMs": duration_ms}
            )
            self._finish(record, ActionResult(success=False, error=message), duration_ms, error)
            await self.log.complete(record)
            raise error from exc

        duration_ms = _elapsed_ms(started)
        return await self._conclude(record, result, duration_ms, context)

    async def _conclude(
        self,
        record: ExecutionRecord,
        result: ActionResult,
        duration_ms: int,
        context: ExecutionContext,
    ) -> Tuple[int, Dict[str, Any]]:
        usage = extract_usage(result.output)
        job = detect_async_job(result.output) if result.success else None
        if job is not None:
            record.execution_data = _running_data(record, result, usage, job, duration_ms)
            await self.log.mark_progress(record.execution_id, record.execution_data)
            logger.info(
                "block_execution_async",
                execution_id=record.execution_id,
                block_type=record.block_type,
                progress=job.progress,
            )
            return 202, running_payload(record, self.poll_url(record.execution_id))

        error: Optional[ServiceError] = None
        if not result.success:
            message = result.error or "Block execution failed"
            error = classify_failure(message)(
                message,
                detail={"executionId": record.execution_id, "blockType": record.block_type},
            )
        self._finish(record, result, duration_ms, error, usage=usage)
        await self.log.complete(record)
        logger.info(
            "block_execution_completed",
            execution_id=record.execution_id,
            block_type=record.block_type,
            success=result.success,
            duration_ms=duration_ms,
            workflow_id=context.workflow_id,
        )
        if error is not None:
            raise error
        return 200, completed_payload(record, output=result.output)

    def _finish(
        self,
        record: ExecutionRecord,
        result: ActionResult,
        duration_ms: int,
        error: Optional[ServiceError],
        *,
        usage: Optional[Dict[str, Any]] = None,
    ) -> None:
        usage = usage or dict(EMPTY_USAGE)
        status = EXECUTION_COMPLETED if result.success else EXECUTION_FAILED
        ended_at = record.started_at + timedelta(milliseconds=duration_ms)
        response: Dict[str, Any] = {
            "blockType": record.block_type,
            "output": redact_api_keys(result.output or {}),
            "error": result.error,
            "usage": usage,
            "success": result.success,
            "status": status,
            "durationMs": duration_ms,
            "completedAt": _iso(ended_at),
        }
        if error is not None:
            response["error"] = error.message
            response["errorCode"] = error.error_code
            response["httpStatus"] = error.status_code
            response["details"] = error.detail
        record.level = "info" if result.success else "error"
        record.ended_at = ended_at
        record.total_duration_ms = duration_ms
        record.execution_data = {
            "request": (record.execution_data or {}).get("request"),
            "response": response,
            "status": status,
        }
        record.api_calls_made = usage.get("apiCallsMade") or 0
        record.credits_consumed = usage.get("creditsConsumed") or 0.0

    def _watch_abandoned(
        self, task: asyncio.Task, record: ExecutionRecord, started: float
    ) -> None:
        """Record whatever an abandoned attempt eventually produces.

        The request has already ended, by timeout or cancellation; the store
        keeps the record running until this callback observes the real outcome.
        """

        def _on_done(done: asyncio.Task) -> None:
            if done.cancelled():
                return
            run_detached(
                lambda: self._record_late_outcome(done, record, started),
                "late_execution_record",
                execution_id=record.execution_id,
            )

        task.add_done_callback(_on_done)

    async def _record_late_outcome(
        self, task: asyncio.Task, record: ExecutionRecord, started: float
    ) -> None:
        duration_ms = _elapsed_ms(started)
        late = replace(record, execution_data=dict(record.execution_data or {}))
        exc = task.exception()
        if exc is not None:
            message = sanitize_error_message(str(exc))
            error: Optional[ServiceError] = ExecutionFailedError(
                message, detail={"executionId": late.execution_id, "durationMs": duration_ms}
            )
            self._finish(late, ActionResult(success=False, error=message), duration_ms, error)
            written = await self.log.complete(late)
        else:
            result = ActionResult.from_raw(task.result())
            usage = extract_usage(result.output)
            job = detect_async_job(result.output) if result.success else None
            if job is not None:
                late.execution_data = _running_data(late, result, usage, job, duration_ms)
                written = await self.log.mark_progress(late.execution_id, late.execution_data)
            else:
                error = None
                if not result.success:
                    message = result.error or "Block execution failed"
                    error = classify_failure(message)(
                        message,
                        detail={"executionId": late.execution_id, "blockType": late.block_type},
                    )
                self._finish(late, result, duration_ms, error, usage=usage)
                written = await self.log.complete(late)
        logger.info(
            "block_execution_late_outcome",
            execution_id=late.execution_id,
            recorded=written,
            duration_ms=duration_ms,
        )

    async def status(self, execution_id: str) -> Dict[str, Any]:
        """Read-only view of a stored execution; any failure reads as not found."""
        try:
            record = await self.log.find(execution_id)
        except Exception as exc:
            logger.error(
                "execution_status_lookup_failed",
                execution_id=execution_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NotFoundError("Execution not found") from exc
        if record is None:
            raise NotFoundError("Execution not found")
        if record.status == EXECUTION_RUNNING:
            return running_payload(record, self.poll_url(execution_id))
        return completed_payload(record)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _running_data(
    record: ExecutionRecord,
    result: ActionResult,
    usage: Dict[str, Any],
    job: AsyncJob,
    duration_ms: int,
) -> Dict[str, Any]:
    return {
        "request": (record.execution_data or {}).get("request"),
        "response": {
            "blockType": record.block_type,
            "output": redact_api_keys(result.output or {}),
            "usage": usage,
            "success": True,
            "status": EXECUTION_RUNNING,
            "durationMs": duration_ms,
        },
        "status": EXECUTION_RUNNING,
        "progress": job.progress,
        "currentStep": job.current_step,
        "estimatedCompletionMs": job.estimated_completion_ms,
    }

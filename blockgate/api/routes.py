from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from blockgate.api.schemas import (
    Envelope,
    ExecuteBlockRequest,
    ProvisionUserRequest,
    parse_list_limit,
    parse_list_offset,
)
from blockgate.logging import get_logger
from blockgate.service.auth import (
    SCOPE_BLOCKS_EXECUTE,
    SCOPE_BLOCKS_LIST,
    SCOPE_EXECUTIONS_READ,
    SCOPE_USERS_PROVISION,
    SCOPE_USERS_READ,
)
from blockgate.service.blocks import block_schema
from blockgate.service.context import ContextOptions, RequestContext, is_uuid
from blockgate.service.errors import ValidationError
from blockgate.service.executions import ExecutionRequest
from blockgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/integrations/canvas", tags=["canvas"])


def require_service(
    *scopes: str, require_user: bool = False, require_workspace: bool = False
):
    """Dependency running admission in order: key, headers, allow-list, quota.

    Nothing after a failing stage runs, so a rejected key never consumes quota.
    """
    options = ContextOptions(
        require_user_context=require_user,
        require_workspace_context=require_workspace,
        scopes=list(scopes),
    )

    async def _admit(
        request: Request,
        x_service_key: Optional[str] = Header(None, alias="X-Service-Key"),
    ) -> RequestContext:
        runtime = get_runtime()
        service = await runtime.authenticator.authenticate(x_service_key, options.scopes)
        ctx = runtime.context_builder.build(
            service,
            request.headers,
            request.client.host if request.client else None,
        )
        runtime.context_builder.enforce(ctx, options)
        await runtime.rate_limiter.enforce(ctx)
        return ctx

    return _admit


def _ok(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=Envelope(data=data).model_dump()
    )


@router.post("/users/provision", response_model=Envelope, status_code=201)
async def provision_user(
    body: ProvisionUserRequest,
    ctx: RequestContext = Depends(require_service(SCOPE_USERS_PROVISION)),
):
    """Create or link the internal account for a caller user.

    201 for a new account or an email match, 409 with ``alreadyExisted`` when
    the caller user was linked before.
    """
    runtime = get_runtime()
    result = await runtime.users.provision(
        body.canvasUserId,
        body.email,
        name=body.name,
        canvas_workspace_id=body.workspaceId,
        metadata=body.metadata,
        service_name=ctx.service_name,
    )
    return _ok(result.to_payload(), status_code=result.status_code)


@router.get("/users/{canvas_user_id}", response_model=Envelope)
async def lookup_user(
    canvas_user_id: str,
    ctx: RequestContext = Depends(require_service(SCOPE_USERS_READ)),
):
    if not is_uuid(canvas_user_id):
        raise ValidationError(
            "Invalid canvas user id", detail={"canvasUserId": ["Invalid uuid"]}
        )
    logger.info(
        "canvas_user_lookup", canvas_user_id=canvas_user_id, service_name=ctx.service_name
    )
    linked = await get_runtime().users.lookup(canvas_user_id)
    return _ok(linked.to_payload())


@router.get("/blocks", response_model=Envelope)
async def list_blocks(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    include_hidden: Optional[str] = Query(None, alias="includeHidden"),
    ctx: RequestContext = Depends(require_service(SCOPE_BLOCKS_LIST)),
):
    page = get_runtime().registry.list_capabilities(
        category=category or None,
        search=search or None,
        include_hidden=include_hidden == "true",
        limit=parse_list_limit(limit),
        offset=parse_list_offset(offset),
    )
    logger.info(
        "blocks_listed",
        service_name=ctx.service_name,
        total=page["total"],
        returned=len(page["blocks"]),
    )
    return _ok(page)


@router.get("/blocks/{block_type}/schema", response_model=Envelope)
async def get_block_schema(
    block_type: str,
    ctx: RequestContext = Depends(require_service(SCOPE_BLOCKS_LIST)),
):
    resolved = get_runtime().registry.require(block_type)
    return _ok(block_schema(resolved.block))


@router.post("/blocks/execute", response_model=Envelope)
async def execute_block(
    body: ExecuteBlockRequest,
    ctx: RequestContext = Depends(require_service(SCOPE_BLOCKS_EXECUTE, require_user=True)),
):
    """Run one block for a provisioned caller user.

    200 with the completed payload, 202 while an asynchronous job is still in
    flight; a repeated execution id replays the stored outcome.
    """
    context = body.context
    options = body.options
    request = ExecutionRequest(
        block_type=body.blockType,
        params=body.resolved_params,
        block_version=body.blockVersion,
        workflow_id=context.workflowId if context else None,
        execution_id=context.executionId if context else None,
        node_id=context.nodeId if context else None,
        timeout_ms=options.timeout if options else None,
        retry_on_failure=bool(options.retryOnFailure) if options else False,
    )
    status_code, payload = await get_runtime().executions.execute(request, ctx)
    return _ok(payload, status_code=status_code)


@router.get("/executions/{execution_id}/status", response_model=Envelope)
async def execution_status(
    execution_id: str,
    ctx: RequestContext = Depends(require_service(SCOPE_EXECUTIONS_READ)),
):
    payload = await get_runtime().executions.status(execution_id)
    return _ok(payload)

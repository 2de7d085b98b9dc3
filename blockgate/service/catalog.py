from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from blockgate.logging import get_logger
from blockgate.service.blocks import (
    BlockDescriptor,
    ComputedDefault,
    InputParam,
    OutputField,
    ParamTransform,
    StaticDefault,
    SubParam,
)

logger = get_logger(__name__)

ToolResult = Dict[str, Any]
Params = Dict[str, Any]

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
STRIPE_SUBSCRIPTIONS_URL = "https://api.stripe.com/v1/subscriptions"

STRIPE_INTERVALS = frozenset({"day", "week", "month", "year"})


class ToolInputError(Exception):
    """A tool rejected its inputs before calling out; reported as a failed result."""


@dataclass
class ToolSpec:
    id: str
    run: Callable[[httpx.AsyncClient, Params], Awaitable[Dict[str, Any]]]
    credential_param: Optional[str] = None
    credential_label: str = "API key"


def _failure(error: str) -> ToolResult:
    return {"success": False, "output": {}, "error": error}


class ToolRunner:
    """Executes catalog tools over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        tools: Iterable[ToolSpec],
        *,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.tools: Dict[str, ToolSpec] = {tool.id: tool for tool in tools}
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def execute(
        self, tool_id: str, inputs: Params, context: Optional[Any] = None
    ) -> ToolResult:
        tool = self.tools.get(tool_id)
        if tool is None:
            return _failure(f"Tool not found: {tool_id}")
        params = {k: v for k, v in inputs.items() if k != "_context"}
        if tool.credential_param and not params.get(tool.credential_param):
            return _failure(
                f"Missing credential: {tool.credential_label} is required for {tool_id}"
            )
        client = await self._get_client()
        try:
            output = await tool.run(client, params)
        except ToolInputError as exc:
            return _failure(str(exc))
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "tool_http_error",
                tool_id=tool_id,
                status_code=exc.response.status_code,
            )
            return _failure(f"{tool_id} request failed with HTTP {exc.response.status_code}")
        return {"success": True, "output": output}

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def _http_request(client: httpx.AsyncClient, params: Params) -> Dict[str, Any]:
    url = params.get("url")
    if not url:
        raise ToolInputError("url is required")
    method = str(params.get("method") or "GET").upper()
    body = params.get("body")
    response = await client.request(
        method,
        url,
        params=params.get("params") or None,
        headers=params.get("headers") or None,
        json=body if isinstance(body, (dict, list)) else None,
        content=body if isinstance(body, str) else None,
    )
    try:
        data: Any = response.json()
    except ValueError:
        data = response.text
    return {"data": data, "status": response.status_code, "headers": dict(response.headers)}


async def _gmail_send(client: httpx.AsyncClient, params: Params) -> Dict[str, Any]:
    if not params.get("to"):
        raise ToolInputError("to is required")
    message = EmailMessage()
    message["To"] = params["to"]
    message["Subject"] = params.get("subject") or ""
    if params.get("cc"):
        message["Cc"] = params["cc"]
    message.set_content(params.get("body") or "")
    raw = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")
    response = await client.post(
        GMAIL_SEND_URL,
        headers={"Authorization": f"Bearer {params['credential']}"},
        json={"raw": raw},
    )
    response.raise_for_status()
    data = response.json()
    return {
        "content": "Email sent successfully",
        "metadata": {"id": data.get("id"), "threadId": data.get("threadId")},
    }


async def _slack_message(client: httpx.AsyncClient, params: Params) -> Dict[str, Any]:
    if not params.get("channel"):
        raise ToolInputError("channel is required")
    response = await client.post(
        SLACK_POST_MESSAGE_URL,
        headers={"Authorization": f"Bearer {params['botToken']}"},
        json={"channel": params["channel"], "text": params.get("text") or ""},
    )
    response.raise_for_status()
    data = response.json()
    if not data.get("ok"):
        error = data.get("error", "unknown_error")
        if error in {"not_authed", "invalid_auth", "token_revoked"}:
            raise ToolInputError(f"Slack rejected the bot token credential: {error}")
        raise ToolInputError(f"Slack API error: {error}")
    return {"ts": data.get("ts"), "channel": data.get("channel")}


async def _openai_chat(client: httpx.AsyncClient, params: Params) -> Dict[str, Any]:
    messages = params.get("messages")
    if not messages:
        raise ToolInputError("content is required")
    payload: Dict[str, Any] = {"model": params.get("model"), "messages": messages}
    if params.get("temperature") is not None:
        payload["temperature"] = params["temperature"]
    if params.get("responseFormat"):
        payload["response_format"] = {"type": "json_schema", "json_schema": params["responseFormat"]}
    response = await client.post(
        OPENAI_CHAT_URL,
        headers={"Authorization": f"Bearer {params['apiKey']}"},
        json=payload,
    )
    response.raise_for_status()
    data = response.json()
    usage = data.get("usage") or {}
    choices = data.get("choices") or [{}]
    return {
        "content": (choices[0].get("message") or {}).get("content", ""),
        "model": data.get("model", params.get("model")),
        "tokens": {
            "prompt": usage.get("prompt_tokens", 0),
            "completion": usage.get("completion_tokens", 0),
            "total": usage.get("total_tokens", 0),
        },
    }


async def _stripe_recurring_invoice(client: httpx.AsyncClient, params: Params) -> Dict[str, Any]:
    try:
        amount = float(params.get("amount"))
    except (TypeError, ValueError):
        raise ToolInputError("STRIPE_VALIDATION_ERROR: amount must be a number")
    if amount < 0.01:
        raise ToolInputError("STRIPE_VALIDATION_ERROR: amount must be at least 0.01")
    interval = params.get("interval")
    if interval not in STRIPE_INTERVALS:
        raise ToolInputError("STRIPE_VALIDATION_ERROR: interval must be day, week, month, or year")
    interval_count = int(params.get("intervalCount") or 1)
    if interval_count < 1:
        raise ToolInputError("STRIPE_VALIDATION_ERROR: intervalCount must be at least 1")

    currency = params.get("currency") or "usd"
    collection_method = (
        "send_invoice" if params.get("autoAdvance") is False else "charge_automatically"
    )
    form: Dict[str, Any] = {
        "customer": params.get("customer"),
        "collection_method": collection_method,
        "items[0][price_data][currency]": currency,
        "items[0][price_data][unit_amount]": str(round(amount * 100)),
        "items[0][price_data][recurring][interval]": interval,
        "items[0][price_data][recurring][interval_count]": str(interval_count),
        "items[0][price_data][product_data][name]": params.get("description")
        or f"Recurring {interval} invoice",
        "metadata[recurring]": "true",
        "metadata[interval]": interval,
        "metadata[interval_count]": str(interval_count),
        "expand[]": "latest_invoice",
    }
    if collection_method == "send_invoice":
        form["days_until_due"] = str(params.get("daysUntilDue") or 30)
    response = await client.post(
        STRIPE_SUBSCRIPTIONS_URL,
        auth=(params["apiKey"], ""),
        data=form,
    )
    response.raise_for_status()
    subscription = response.json()
    invoice = subscription.get("latest_invoice")
    invoice = invoice if isinstance(invoice, dict) else {}
    created = invoice.get("created")
    return {
        "invoice": {
            "id": invoice.get("id") or subscription.get("latest_invoice") or "",
            "customer": subscription.get("customer"),
            "amount_due": invoice["amount_due"] / 100 if "amount_due" in invoice else amount,
            "currency": currency,
            "status": invoice.get("status") or "draft",
            "created": (
                datetime.fromtimestamp(created, tz=timezone.utc).date().isoformat()
                if created
                else datetime.now(timezone.utc).date().isoformat()
            ),
        },
        "subscription": {"id": subscription.get("id"), "status": subscription.get("status")},
    }


BUILTIN_TOOLS: List[ToolSpec] = [
    ToolSpec("http_request", _http_request),
    ToolSpec("gmail_send", _gmail_send, credential_param="credential", credential_label="Gmail OAuth credential"),
    ToolSpec("slack_message", _slack_message, credential_param="botToken", credential_label="Slack bot token credential"),
    ToolSpec("openai_chat", _openai_chat, credential_param="apiKey", credential_label="OpenAI API key"),
    ToolSpec(
        "stripe_create_recurring_invoice",
        _stripe_recurring_invoice,
        credential_param="apiKey",
        credential_label="Stripe API key",
    ),
]


def _openai_messages(params: Params) -> Params:
    messages = []
    if params.get("systemPrompt"):
        messages.append({"role": "system", "content": params["systemPrompt"]})
    if params.get("content"):
        messages.append({"role": "user", "content": params["content"]})
    return {"messages": messages} if messages else {}


def _days_until_due(params: Params) -> Optional[int]:
    return 30 if params.get("autoAdvance") is False else None


def builtin_blocks() -> List[BlockDescriptor]:
    return [
        BlockDescriptor(
            type="starter",
            name="Starter",
            description="Start workflow",
            outputs={"input": OutputField("any")},
            hide_from_toolbar=True,
        ),
        BlockDescriptor(
            type="api",
            name="API",
            description="Use any HTTP endpoint",
            inputs={
                "url": InputParam("short_text", "Request URL"),
                "method": InputParam("dropdown", "HTTP method"),
                "headers": InputParam("json", "Request headers"),
                "params": InputParam("json", "Query parameters"),
                "body": InputParam("json", "Request body"),
            },
            outputs={
                "data": OutputField("any", "Response body"),
                "status": OutputField("number", "HTTP status code"),
                "headers": OutputField("object", "Response headers"),
            },
            sub_params=[
                SubParam("url", "short_text", required=True),
                SubParam("method", "dropdown", default=StaticDefault("GET")),
                SubParam("headers", "table"),
                SubParam("params", "table"),
                SubParam("body", "code"),
            ],
            tools_access=["http_request"],
        ),
        BlockDescriptor(
            type="gmail",
            name="Gmail",
            description="Send Gmail messages",
            inputs={
                "credential": InputParam("short_text", "Gmail OAuth access token"),
                "to": InputParam("short_text", "Recipient email address"),
                "subject": InputParam("short_text", "Email subject"),
                "body": InputParam("long_text", "Email body"),
                "cc": InputParam("short_text", "CC recipients"),
            },
            outputs={
                "content": OutputField("string", "Result message"),
                "metadata": OutputField("object", "Message metadata"),
            },
            sub_params=[
                SubParam("credential", "oauth-input", required=True),
                SubParam("to", "short_text", required=True),
                SubParam("subject", "short_text", default=StaticDefault("")),
                SubParam("body", "long_text", required=True),
                SubParam("cc", "short_text"),
            ],
            tools_access=["gmail_send"],
            auth_mode="oauth",
        ),
        BlockDescriptor(
            type="slack",
            name="Slack",
            description="Send messages to Slack channels",
            inputs={
                "botToken": InputParam("short_text", "Slack bot token"),
                "channel": InputParam("short_text", "Channel ID"),
                "text": InputParam("long_text", "Message text"),
            },
            outputs={
                "ts": OutputField("string", "Message timestamp"),
                "channel": OutputField("string", "Channel ID"),
            },
            sub_params=[
                SubParam("botToken", "short_text", required=True),
                SubParam("channel", "short_text", required=True),
                SubParam("text", "long_text", required=True),
            ],
            tools_access=["slack_message"],
            auth_mode="bot_token",
        ),
        BlockDescriptor(
            type="openai",
            name="OpenAI",
            description="Generate text with OpenAI chat models",
            inputs={
                "apiKey": InputParam("short_text", "OpenAI API key"),
                "model": InputParam("dropdown", "Model name"),
                "systemPrompt": InputParam("long_text", "System prompt"),
                "content": InputParam("long_text", "User message"),
                "temperature": InputParam("slider", "Sampling temperature"),
                "responseFormat": InputParam("code", "JSON schema for structured output"),
            },
            outputs={
                "content": OutputField("string", "Generated text"),
                "model": OutputField("string", "Model used"),
                "tokens": OutputField("object", "Token usage"),
            },
            sub_params=[
                SubParam("apiKey", "short_text", required=True),
                SubParam("model", "dropdown", default=StaticDefault("gpt-4o-mini")),
                SubParam("systemPrompt", "long_text"),
                SubParam("content", "long_text", required=True),
                SubParam("temperature", "slider", default=StaticDefault(0.7)),
            ],
            tools_access=["openai_chat"],
            transform=ParamTransform(_openai_messages),
            auth_mode="api_key",
        ),
        BlockDescriptor(
            type="stripe",
            name="Stripe",
            description="Create recurring invoices for subscription billing",
            inputs={
                "apiKey": InputParam("short_text", "Stripe secret key"),
                "customer": InputParam("short_text", "Stripe customer ID"),
                "amount": InputParam("slider", "Invoice amount in dollars"),
                "currency": InputParam("short_text", "Currency code"),
                "interval": InputParam("dropdown", "Billing interval"),
                "intervalCount": InputParam("slider", "Intervals between invoices"),
                "description": InputParam("short_text", "Invoice description"),
                "autoAdvance": InputParam("checkbox", "Finalize and charge automatically"),
                "daysUntilDue": InputParam("slider", "Days until the invoice is due"),
            },
            outputs={
                "invoice": OutputField("object", "Latest invoice"),
                "subscription": OutputField("object", "Created subscription"),
            },
            sub_params=[
                SubParam("apiKey", "short_text", required=True),
                SubParam("customer", "short_text", required=True),
                SubParam("amount", "slider", required=True),
                SubParam("currency", "short_text", default=StaticDefault("usd")),
                SubParam("interval", "dropdown", required=True, default=StaticDefault("month")),
                SubParam("intervalCount", "slider", default=StaticDefault(1)),
                SubParam("daysUntilDue", "slider", default=ComputedDefault(_days_until_due)),
            ],
            tools_access=["stripe_create_recurring_invoice"],
            auth_mode="api_key",
        ),
    ]

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from blockgate.logging import get_logger
from blockgate.service.errors import InvalidBlockTypeError

logger = get_logger(__name__)

BLOCK_CAPABILITY_VERSION = "1.0.0"
TRIGGER_BLOCK_TYPES = frozenset({"starter"})

PARAM_TYPE_MAP: Dict[str, str] = {
    "short_text": "string",
    "long_text": "string",
    "code": "string",
    "json": "object",
    "checkbox": "boolean",
    "slider": "number",
    "dropdown": "enum",
    "file_upload": "file",
    "table": "array",
    "tool-input": "object",
    "file-selector": "file",
    "eval-input": "string",
}

OUTPUT_TYPE_MAP: Dict[str, str] = {
    "string": "string",
    "number": "number",
    "boolean": "boolean",
    "object": "object",
    "array": "array",
    "any": "any",
}

CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "email": ("gmail", "outlook", "sendgrid", "mailgun", "mailchimp", "smtp", "ses", "email"),
    "messaging": (
        "slack", "discord", "telegram", "twilio", "sms", "whatsapp", "teams",
        "mattermost", "signal", "messenger",
    ),
    "ai": (
        "openai", "anthropic", "claude", "gemini", "vertex", "mistral", "groq", "ollama",
        "llama", "deepseek", "xai", "cohere", "perplexity", "huggingface",
    ),
    "database": (
        "postgres", "postgresql", "mysql", "mariadb", "mongodb", "mongo", "supabase",
        "redis", "dynamodb", "rds", "elasticsearch", "pinecone", "qdrant", "weaviate",
        "milvus", "neo4j", "bigquery", "snowflake", "sqlite",
    ),
    "crm": ("salesforce", "hubspot", "zendesk", "pipedrive", "intercom", "zoho", "freshdesk"),
    "payments": ("stripe", "paypal", "braintree", "square", "adyen", "paystack", "razorpay", "checkout"),
    "storage": (
        "s3", "gcs", "google_drive", "drive", "dropbox", "box", "onedrive", "sharepoint",
        "sftp", "ftp", "storage",
    ),
}

CREDENTIAL_SUFFIXES = {"oauth": "oauth", "api_key": "api_key", "bot_token": "bot_token"}

Params = Dict[str, Any]


class ParamRule(ABC):
    """A pure function over the parameter map, evaluated best-effort."""

    @abstractmethod
    def evaluate(self, params: Params) -> Any:
        ...


@dataclass
class StaticDefault(ParamRule):
    value: Any

    def evaluate(self, params: Params) -> Any:
        return self.value


@dataclass
class ComputedDefault(ParamRule):
    compute: Callable[[Params], Any]

    def evaluate(self, params: Params) -> Any:
        return self.compute(dict(params))


@dataclass
class ParamTransform(ParamRule):
    """Post-hydration transform; its mapping result is merged over the params."""

    transform: Callable[[Params], Params]

    def evaluate(self, params: Params) -> Params:
        result = self.transform(dict(params))
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise TypeError(f"parameter transform returned {type(result).__name__}, expected dict")
        return result


@dataclass
class SubParam:
    """A UI-level parameter slot on a block, with an optional default rule."""

    id: str
    type: str = "short_text"
    required: bool = False
    default: Optional[ParamRule] = None


@dataclass
class InputParam:
    type: str
    description: Optional[str] = None
    schema: Optional[Dict[str, Any]] = None


@dataclass
class OutputField:
    type: str
    description: Optional[str] = None


@dataclass
class BlockDescriptor:
    type: str
    name: str
    description: str
    inputs: Dict[str, InputParam] = field(default_factory=dict)
    outputs: Dict[str, OutputField] = field(default_factory=dict)
    sub_params: List[SubParam] = field(default_factory=list)
    tools_access: List[str] = field(default_factory=list)
    tool_selector: Optional[Callable[[Params], Optional[str]]] = None
    transform: Optional[ParamTransform] = None
    auth_mode: Optional[str] = None
    hide_from_toolbar: bool = False

    @property
    def credential_types(self) -> List[str]:
        suffix = CREDENTIAL_SUFFIXES.get(self.auth_mode or "")
        return [f"{self.type}_{suffix}"] if suffix else []

    @property
    def requires_credentials(self) -> bool:
        return bool(self.credential_types)

    @property
    def required_inputs(self) -> List[str]:
        return [sub.id for sub in self.sub_params if sub.required is True]

    @property
    def category(self) -> str:
        return map_block_category(self)


@dataclass
class ResolvedBlock:
    block: BlockDescriptor
    tool_id: Optional[str] = None


def map_param_type(type_name: str) -> str:
    return PARAM_TYPE_MAP.get(type_name, type_name)


def map_output_type(type_name: str) -> str:
    return OUTPUT_TYPE_MAP.get(type_name, "any")


def map_block_category(block: BlockDescriptor) -> str:
    search_space = " ".join(
        [block.type, block.name, block.description, *block.tools_access]
    ).lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in search_space for keyword in keywords):
            return category
    return "other"


def _param_schema(config: InputParam) -> Dict[str, Any]:
    described = {"description": config.description} if config.description else {}
    if config.schema:
        return {**config.schema, **described}
    if config.type == "json":
        return {"type": "object", "additionalProperties": True, **described}
    if config.type == "array":
        return {"type": "array", "items": {}, **described}
    return {"type": map_param_type(config.type), **described}


def build_input_schema(block: BlockDescriptor) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": {name: _param_schema(config) for name, config in block.inputs.items()},
    }
    required = block.required_inputs
    if required:
        schema["required"] = required
    schema["additionalProperties"] = False
    return schema


def build_output_schema(block: BlockDescriptor) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for name, config in block.outputs.items():
        if name == "visualization":
            continue
        entry: Dict[str, Any] = {"type": map_output_type(config.type)}
        if config.description:
            entry["description"] = config.description
        properties[name] = entry
    return {"type": "object", "properties": properties, "additionalProperties": True}


def build_params_descriptor(block: BlockDescriptor) -> Dict[str, Dict[str, Any]]:
    required = set(block.required_inputs)
    params: Dict[str, Dict[str, Any]] = {}
    for name, config in block.inputs.items():
        entry: Dict[str, Any] = {"type": map_param_type(config.type), "required": name in required}
        if config.description:
            entry["description"] = config.description
        params[name] = entry
    return params


def block_capability(block: BlockDescriptor) -> Dict[str, Any]:
    capability: Dict[str, Any] = {
        "type": block.type,
        "version": BLOCK_CAPABILITY_VERSION,
        "name": block.name,
        "description": block.description,
        "category": block.category,
        "requiresCredentials": block.requires_credentials,
    }
    if block.credential_types:
        capability["credentialTypes"] = block.credential_types
    capability["params"] = build_params_descriptor(block)
    return capability


def block_schema(block: BlockDescriptor) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "type": block.type,
        "name": block.name,
        "description": block.description,
        "category": block.category,
        "version": BLOCK_CAPABILITY_VERSION,
        "requiresCredentials": block.requires_credentials,
    }
    if block.credential_types:
        schema["credentialTypes"] = block.credential_types
    schema["inputSchema"] = build_input_schema(block)
    schema["outputSchema"] = build_output_schema(block)
    return schema


def _safe_evaluate(rule: ParamRule, params: Params, *, block_type: str, target: str) -> Tuple[bool, Any]:
    """Run a parameter rule, converting any fault into a logged warning."""
    try:
        return True, rule.evaluate(params)
    except Exception as exc:
        logger.warning(
            "param_rule_failed",
            block_type=block_type,
            target=target,
            rule=type(rule).__name__,
            error=str(exc),
        )
        return False, None


def hydrate_params(block: BlockDescriptor, params: Params) -> Params:
    """Fill defaults, apply the block transform, then decode structured strings.

    None of the three steps can fail the request; faults are logged and the
    parameter map continues with whatever was produced so far.
    """
    hydrated: Params = dict(params)

    for sub in block.sub_params:
        if sub.id in hydrated or sub.default is None:
            continue
        ok, value = _safe_evaluate(sub.default, hydrated, block_type=block.type, target=sub.id)
        if ok and value is not None:
            hydrated[sub.id] = value

    if block.transform is not None:
        ok, transformed = _safe_evaluate(
            block.transform, hydrated, block_type=block.type, target="transform"
        )
        if ok and transformed:
            hydrated = {**hydrated, **transformed}

    properties = build_input_schema(block)["properties"]
    for key, schema in properties.items():
        value = hydrated.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        if schema.get("type") not in ("object", "array"):
            continue
        try:
            hydrated[key] = json.loads(value.strip())
        except ValueError as exc:
            logger.warning("param_json_parse_failed", block_type=block.type, key=key, error=str(exc))

    return hydrated


class BlockRegistry:
    """Read-only view over a block catalog with a tool-alias index."""

    def __init__(self, blocks: Iterable[BlockDescriptor]) -> None:
        self._blocks: Dict[str, BlockDescriptor] = {}
        self._by_tool: Dict[str, BlockDescriptor] = {}
        for block in blocks:
            self._blocks[block.type] = block
            for tool_id in block.tools_access:
                self._by_tool.setdefault(tool_id, block)

    def all(self) -> List[BlockDescriptor]:
        return list(self._blocks.values())

    def get(self, block_type: str) -> Optional[BlockDescriptor]:
        return self._blocks.get(block_type)

    def get_by_tool(self, tool_id: str) -> Optional[BlockDescriptor]:
        return self._by_tool.get(tool_id)

    def resolve(self, block_type: str) -> Optional[ResolvedBlock]:
        block = self.get(block_type)
        if block is not None:
            return ResolvedBlock(block=block)
        aliased = self.get_by_tool(block_type)
        if aliased is not None:
            # An alias names the executable action directly
            return ResolvedBlock(block=aliased, tool_id=block_type)
        return None

    def require(self, block_type: str) -> ResolvedBlock:
        resolved = self.resolve(block_type)
        if resolved is None:
            raise InvalidBlockTypeError("Unknown block type", detail={"blockType": block_type})
        return resolved

    def resolve_tool_id(self, resolved: ResolvedBlock, params: Params) -> str:
        tool_id = resolved.tool_id
        block = resolved.block
        if tool_id is None:
            if block.tool_selector is not None:
                try:
                    tool_id = block.tool_selector(dict(params))
                except Exception as exc:
                    logger.warning("tool_selector_failed", block_type=block.type, error=str(exc))
                    tool_id = None
            elif block.tools_access:
                tool_id = block.tools_access[0]
        if not tool_id:
            raise InvalidBlockTypeError(
                "Unable to resolve tool for block type", detail={"blockType": block.type}
            )
        return tool_id

    def list_capabilities(
        self,
        *,
        category: Optional[str] = None,
        search: Optional[str] = None,
        include_hidden: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        matches: List[BlockDescriptor] = []
        normalized_category = category.lower() if category else None
        query = search.lower() if search else None
        for block in self._blocks.values():
            if block.hide_from_toolbar and not include_hidden:
                continue
            if block.type in TRIGGER_BLOCK_TYPES:
                continue
            if normalized_category and block.category.lower() != normalized_category:
                continue
            if query and not (
                query in block.name.lower()
                or query in block.description.lower()
                or query in block.type.lower()
            ):
                continue
            matches.append(block)
        matches.sort(key=lambda b: (b.category.casefold(), b.name.casefold()))
        page = matches[offset : offset + limit]
        return {
            "blocks": [block_capability(block) for block in page],
            "total": len(matches),
            "limit": limit,
            "offset": offset,
        }

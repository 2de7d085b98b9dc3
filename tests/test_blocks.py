"""Block catalog: registry lookups, schemas and parameter hydration."""

import pytest

from blockgate.service.blocks import (
    BlockDescriptor,
    BlockRegistry,
    ComputedDefault,
    InputParam,
    OutputField,
    ParamRule,
    ParamTransform,
    StaticDefault,
    SubParam,
    block_capability,
    block_schema,
    hydrate_params,
    map_block_category,
)
from blockgate.service.catalog import builtin_blocks
from blockgate.service.errors import InvalidBlockTypeError


def _block(**overrides):
    fields = dict(
        type="demo",
        name="Demo",
        description="Demo block",
        inputs={
            "query": InputParam("short_text", "Search query"),
            "filters": InputParam("json"),
            "rows": InputParam("array"),
        },
        outputs={"result": OutputField("string"), "visualization": OutputField("object")},
        sub_params=[SubParam("query", required=True)],
        tools_access=["demo_search", "demo_lookup"],
    )
    fields.update(overrides)
    return BlockDescriptor(**fields)


class TestHydration:
    def test_static_default_fills_missing_only(self):
        block = _block(sub_params=[SubParam("mode", default=StaticDefault("fast"))])
        assert hydrate_params(block, {})["mode"] == "fast"
        assert hydrate_params(block, {"mode": "slow"})["mode"] == "slow"

    def test_explicit_none_is_kept(self):
        block = _block(sub_params=[SubParam("mode", default=StaticDefault("fast"))])
        assert hydrate_params(block, {"mode": None})["mode"] is None

    def test_computed_default_sees_earlier_params(self):
        block = _block(
            sub_params=[
                SubParam("region", default=StaticDefault("eu")),
                SubParam("endpoint", default=ComputedDefault(lambda p: f"https://{p['region']}.api")),
            ]
        )
        assert hydrate_params(block, {})["endpoint"] == "https://eu.api"

    def test_failing_default_is_skipped(self):
        block = _block(
            sub_params=[
                SubParam("broken", default=ComputedDefault(lambda p: p["missing"])),
                SubParam("mode", default=StaticDefault("fast")),
            ]
        )
        hydrated = hydrate_params(block, {})
        assert "broken" not in hydrated
        assert hydrated["mode"] == "fast"

    def test_transform_merges_over_params(self):
        block = _block(transform=ParamTransform(lambda p: {"query": p["query"].upper(), "extra": 1}))
        assert hydrate_params(block, {"query": "abc"}) == {"query": "ABC", "extra": 1}

    def test_failing_transform_keeps_params(self):
        block = _block(transform=ParamTransform(lambda p: 1 / 0))
        assert hydrate_params(block, {"query": "abc"}) == {"query": "abc"}

    def test_structured_strings_are_decoded(self):
        hydrated = hydrate_params(
            _block(), {"query": '{"not": "decoded"}', "filters": ' {"a": 1} ', "rows": "[1, 2]"}
        )
        assert hydrated["query"] == '{"not": "decoded"}'
        assert hydrated["filters"] == {"a": 1}
        assert hydrated["rows"] == [1, 2]

    def test_malformed_json_left_untouched(self):
        hydrated = hydrate_params(_block(), {"filters": "{oops"})
        assert hydrated["filters"] == "{oops"

    def test_input_is_not_mutated(self):
        params = {"filters": '{"a": 1}'}
        hydrate_params(_block(), params)
        assert params == {"filters": '{"a": 1}'}


class TestRegistry:
    def test_resolve_by_type_and_alias(self):
        registry = BlockRegistry([_block()])
        assert registry.resolve("demo").tool_id is None
        aliased = registry.resolve("demo_lookup")
        assert aliased.block.type == "demo"
        assert aliased.tool_id == "demo_lookup"
        assert registry.resolve("nope") is None

    def test_require_unknown_block(self):
        registry = BlockRegistry([_block()])
        with pytest.raises(InvalidBlockTypeError) as exc_info:
            registry.require("nope")
        assert exc_info.value.error_code == "INVALID_BLOCK_TYPE"
        assert exc_info.value.detail == {"blockType": "nope"}

    def test_tool_resolution_order(self):
        registry = BlockRegistry([_block()])
        assert registry.resolve_tool_id(registry.resolve("demo"), {}) == "demo_search"
        assert registry.resolve_tool_id(registry.resolve("demo_lookup"), {}) == "demo_lookup"

        selected = BlockRegistry([_block(tool_selector=lambda p: p.get("op"))])
        assert selected.resolve_tool_id(selected.resolve("demo"), {"op": "demo_lookup"}) == "demo_lookup"
        with pytest.raises(InvalidBlockTypeError):
            selected.resolve_tool_id(selected.resolve("demo"), {})

    def test_no_tools_is_invalid(self):
        registry = BlockRegistry([_block(tools_access=[])])
        with pytest.raises(InvalidBlockTypeError) as exc_info:
            registry.resolve_tool_id(registry.resolve("demo"), {})
        assert exc_info.value.message == "Unable to resolve tool for block type"

    def test_listing_filters_and_pages(self):
        registry = BlockRegistry(builtin_blocks())
        page = registry.list_capabilities()
        types = [b["type"] for b in page["blocks"]]
        assert "starter" not in types
        assert page["total"] == len(types)
        assert page["limit"] == 50 and page["offset"] == 0

        assert [b["type"] for b in registry.list_capabilities(category="PAYMENTS")["blocks"]] == [
            "stripe"
        ]
        assert [b["type"] for b in registry.list_capabilities(search="slack")["blocks"]] == ["slack"]

        second = registry.list_capabilities(limit=1, offset=1)
        assert len(second["blocks"]) == 1
        assert second["blocks"][0]["type"] == types[1]

    def test_hidden_blocks(self):
        registry = BlockRegistry([_block(hide_from_toolbar=True)])
        assert registry.list_capabilities()["total"] == 0
        assert registry.list_capabilities(include_hidden=True)["total"] == 1


class TestSchemas:
    def test_category_keywords(self):
        assert map_block_category(_block(type="gmail", name="Gmail")) == "email"
        assert map_block_category(_block()) == "other"

    def test_capability_shape(self):
        gmail = next(b for b in builtin_blocks() if b.type == "gmail")
        capability = block_capability(gmail)
        assert capability["category"] == "email"
        assert capability["requiresCredentials"] is True
        assert capability["credentialTypes"] == ["gmail_oauth"]
        assert capability["params"]["to"] == {
            "type": "string",
            "required": True,
            "description": "Recipient email address",
        }

    def test_schema_shape(self):
        schema = block_schema(_block())
        assert schema["requiresCredentials"] is False
        assert "credentialTypes" not in schema
        inputs = schema["inputSchema"]
        assert inputs["required"] == ["query"]
        assert inputs["additionalProperties"] is False
        assert inputs["properties"]["filters"] == {"type": "object", "additionalProperties": True}
        assert inputs["properties"]["rows"] == {"type": "array", "items": {}}
        outputs = schema["outputSchema"]
        assert "visualization" not in outputs["properties"]
        assert outputs["additionalProperties"] is True


def test_param_rule_without_evaluate_cannot_be_built():
    class Incomplete(ParamRule):
        pass

    with pytest.raises(TypeError):
        Incomplete()
    assert StaticDefault(3).evaluate({}) == 3

"""Tests for the tool registry and invoker."""

import asyncio
import sys
import time

import pytest
from pydantic import Field

from discovery.errors import DuplicateTool
from discovery.store.models import TOOL_COMPLETE, TOOL_FAILED
from discovery.tools.base import BaseTool, ToolContext, ToolOutput, ToolParams, ToolResult
from discovery.tools.registry import ToolRegistry, ToolRequest

# Get the actual module (not shadowed by discovery.tools.__init__)
_reg_mod = sys.modules["discovery.tools.registry"]

# -- Fixtures ----------------------------------------------------------------


@pytest.fixture
def reg() -> ToolRegistry:
    """Fresh registry for each test."""
    return ToolRegistry()


class CountParams(ToolParams):
    count: int = Field(ge=0, description="A number")


class CountOutput(ToolOutput):
    doubled: int


# -- Registration ------------------------------------------------------------


def test_register_via_decorator(reg: ToolRegistry) -> None:
    @reg.tool(name="ping", description="Ping", category="test")
    async def ping() -> ToolResult:
        return ToolResult(data={"pong": True})

    assert "ping" in reg.tool_names
    assert reg.get("ping").category == "test"


def test_decorator_rejects_sync_function(reg: ToolRegistry) -> None:
    with pytest.raises(TypeError, match="must be an async function"):

        @reg.tool(name="bad", description="Bad", category="test")
        def bad() -> ToolResult:
            return ToolResult()


def test_register_class_based_tool(reg: ToolRegistry) -> None:
    class MyTool(BaseTool):
        name = "my-tool"
        description = "A test tool"
        category = "custom"
        timeout = 2.5
        after = ("search",)

        async def execute(self, **kwargs) -> ToolResult:
            return ToolResult(data={"class_based": True})

    reg.register(MyTool())
    tool_def = reg.get("my-tool")
    assert tool_def.effective_timeout == 2.5
    assert tool_def.after == ("search",)


def test_name_collision_fails_fast(reg: ToolRegistry) -> None:
    @reg.tool(name="dup", description="First", category="test")
    async def first() -> ToolResult:
        return ToolResult()

    with pytest.raises(DuplicateTool):

        @reg.tool(name="dup", description="Second", category="test")
        async def second() -> ToolResult:
            return ToolResult()

    assert reg.get("dup").description == "First"


def test_frozen_registry_rejects_registration(reg: ToolRegistry) -> None:
    reg.freeze()
    assert reg.frozen
    with pytest.raises(RuntimeError, match="frozen"):

        @reg.tool(name="late", description="Late", category="test")
        async def late() -> ToolResult:
            return ToolResult()


def test_default_timeout_from_settings(reg: ToolRegistry) -> None:
    @reg.tool(name="t", description="T", category="test")
    async def t() -> ToolResult:
        return ToolResult()

    assert reg.get("t").effective_timeout == 10.0


# -- Schema generation -------------------------------------------------------


def test_get_schemas_no_params(reg: ToolRegistry) -> None:
    @reg.tool(name="simple", description="Simple tool", category="test")
    async def simple() -> ToolResult:
        return ToolResult()

    (schema,) = reg.get_schemas()
    assert schema["name"] == "simple"
    assert schema["input_schema"] == {"type": "object", "properties": {}}


def test_get_schemas_with_params(reg: ToolRegistry) -> None:
    @reg.tool(name="count", description="Count", category="test", params_model=CountParams)
    async def count(count: int) -> ToolResult:
        return ToolResult()

    (schema,) = reg.get_schemas()
    props = schema["input_schema"]["properties"]
    assert props["count"]["type"] == "integer"
    assert "count" in schema["input_schema"]["required"]


def test_tools_by_category(reg: ToolRegistry) -> None:
    for name, category in (("a", "alpha"), ("b", "beta"), ("c", "alpha")):

        async def handler() -> ToolResult:
            return ToolResult()

        reg.tool(name=name, description=name.upper(), category=category)(handler)

    groups = reg.get_tools_by_category()
    assert len(groups["alpha"]) == 2
    assert len(groups["beta"]) == 1


# -- invoke ------------------------------------------------------------------


async def test_invoke_success(reg: ToolRegistry) -> None:
    @reg.tool(
        name="double",
        description="Double",
        category="test",
        params_model=CountParams,
        result_model=CountOutput,
    )
    async def double(count: int) -> ToolResult:
        return ToolResult(data={"doubled": count * 2})

    call = await reg.invoke("double", {"count": 4}, position=3)
    assert call.status == TOOL_COMPLETE
    assert call.result == {"doubled": 8}
    assert call.error is None
    assert call.position == 3


async def test_invoke_unknown_tool(reg: ToolRegistry) -> None:
    call = await reg.invoke("nonexistent", {})
    assert call.status == TOOL_FAILED
    assert call.error["code"] == "unknown_tool"


async def test_invoke_invalid_arguments_reports_fields(reg: ToolRegistry) -> None:
    ran = False

    @reg.tool(name="strict", description="Strict", category="test", params_model=CountParams)
    async def strict(count: int) -> ToolResult:
        nonlocal ran
        ran = True
        return ToolResult(data={})

    call = await reg.invoke("strict", {"count": "many", "extra": 1})
    assert call.status == TOOL_FAILED
    assert call.error["code"] == "invalid_arguments"
    assert set(call.error["fields"]) == {"count", "extra"}
    assert ran is False


async def test_invoke_coerces_arguments(reg: ToolRegistry) -> None:
    @reg.tool(name="coerce", description="Coerce", category="test", params_model=CountParams)
    async def coerce(count: int) -> ToolResult:
        return ToolResult(data={"type": type(count).__name__})

    call = await reg.invoke("coerce", {"count": "5"})
    assert call.result == {"type": "int"}
    assert call.arguments == {"count": 5}


async def test_invoke_handler_exception_is_contained(reg: ToolRegistry) -> None:
    @reg.tool(name="boom", description="Boom", category="test")
    async def boom() -> ToolResult:
        msg = "secret internal detail"
        raise RuntimeError(msg)

    call = await reg.invoke("boom", {})
    assert call.status == TOOL_FAILED
    assert call.error["code"] == "upstream_error"
    assert "secret" not in call.error["detail"]


async def test_invoke_tool_reported_error(reg: ToolRegistry) -> None:
    @reg.tool(name="sad", description="Sad", category="test")
    async def sad() -> ToolResult:
        return ToolResult(error="corpus offline")

    call = await reg.invoke("sad", {})
    assert call.status == TOOL_FAILED
    assert call.error["code"] == "upstream_error"


async def test_invoke_malformed_result(reg: ToolRegistry) -> None:
    @reg.tool(name="liar", description="Liar", category="test", result_model=CountOutput)
    async def liar() -> ToolResult:
        return ToolResult(data={"doubled": "lots"})

    call = await reg.invoke("liar", {})
    assert call.status == TOOL_FAILED
    assert call.error["code"] == "invalid_result"
    assert call.result is None


async def test_invoke_wrong_return_type(reg: ToolRegistry) -> None:
    @reg.tool(name="raw", description="Raw", category="test")
    async def raw():
        return {"not": "a ToolResult"}

    call = await reg.invoke("raw", {})
    assert call.error["code"] == "invalid_result"


async def test_invoke_timeout(reg: ToolRegistry) -> None:
    @reg.tool(name="slow", description="Slow", category="test", timeout=0.05)
    async def slow() -> ToolResult:
        await asyncio.sleep(5)
        return ToolResult(data={})

    call = await reg.invoke("slow", {})
    assert call.status == TOOL_FAILED
    assert call.timed_out
    assert call.error["code"] == "timeout"


async def test_invoke_injects_context(reg: ToolRegistry) -> None:
    @reg.tool(name="ctx", description="Ctx", category="test")
    async def ctx(context: ToolContext) -> ToolResult:
        return ToolResult(data={"turn": context.turn_id, "up": sorted(context.upstream)})

    context = ToolContext(turn_id="t-1").with_upstream({"search": {"total": 0}})
    call = await reg.invoke("ctx", {}, context)
    assert call.result == {"turn": "t-1", "up": ["search"]}


# -- invoke_many -------------------------------------------------------------


async def test_timeout_does_not_block_siblings(reg: ToolRegistry) -> None:
    @reg.tool(name="slow", description="Slow", category="test", timeout=0.2)
    async def slow() -> ToolResult:
        await asyncio.sleep(5)
        return ToolResult(data={})

    @reg.tool(name="fast", description="Fast", category="test")
    async def fast() -> ToolResult:
        return ToolResult(data={"finished_at": time.monotonic()})

    @reg.tool(name="boom", description="Boom", category="test")
    async def boom() -> ToolResult:
        raise ValueError("nope")

    started = time.monotonic()
    calls = await reg.invoke_many(
        [ToolRequest("slow", {}), ToolRequest("fast", {}), ToolRequest("boom", {})]
    )

    slow_call, fast_call, boom_call = calls
    assert [c.position for c in calls] == [0, 1, 2]
    assert slow_call.timed_out
    assert fast_call.status == TOOL_COMPLETE
    assert fast_call.result["finished_at"] - started < 0.2
    assert boom_call.status == TOOL_FAILED


def test_module_registry_is_populated() -> None:
    assert {"search", "trend-predict", "category-stats"} <= set(_reg_mod.registry.tool_names)

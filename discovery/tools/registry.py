"""Tool registry — central catalog and isolated invoker for analysis tools."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pydantic

from discovery.config import settings
from discovery.errors import (
    DiscoveryError,
    DuplicateTool,
    InvalidArguments,
    InvalidResult,
    OperationTimeoutError,
    UnknownTool,
    UpstreamError,
)
from discovery.store.models import TOOL_COMPLETE, TOOL_FAILED, ToolCall, make_id
from discovery.tools.base import BaseTool, ToolContext, ToolOutput, ToolParams, ToolResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class ToolDef:
    """Internal representation of a registered tool."""

    name: str
    description: str
    category: str
    handler: Callable[..., Awaitable[ToolResult]]
    params_model: type[ToolParams] | None = None
    result_model: type[ToolOutput] | None = None
    timeout: float | None = None
    after: tuple[str, ...] = ()

    @property
    def effective_timeout(self) -> float:
        return self.timeout if self.timeout is not None else settings.tool_timeout_seconds


@dataclass
class ToolRequest:
    """A planned call: which tool, with which raw arguments."""

    tool_name: str
    arguments: dict[str, Any]


class ToolRegistry:
    """Central registry for all analysis tools.

    Supports two registration styles:

    1. Decorator (for simple stateless tools)::

        @registry.tool(
            name="my-tool",
            description="Does a thing",
            category="utility",
        )
        async def my_tool() -> ToolResult:
            return ToolResult(data={"ok": True})

    2. Class-based (for tools that need state)::

        class MyTool(BaseTool):
            name = "my-tool"
            ...
        registry.register(MyTool())

    The table is built at startup and frozen; names must be unique.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}
        self._frozen = False

    def _add(self, tool_def: ToolDef) -> None:
        if self._frozen:
            msg = f"Tool registry is frozen; cannot register '{tool_def.name}'"
            raise RuntimeError(msg)
        if not tool_def.name:
            msg = "Tool name must not be empty"
            raise ValueError(msg)
        if tool_def.name in self._tools:
            msg = f"Tool '{tool_def.name}' is already registered"
            raise DuplicateTool(msg)
        self._tools[tool_def.name] = tool_def

    def tool(
        self,
        *,
        name: str,
        description: str,
        category: str,
        params_model: type[ToolParams] | None = None,
        result_model: type[ToolOutput] | None = None,
        timeout: float | None = None,
        after: tuple[str, ...] = (),
    ) -> Callable:
        """Decorator to register an async function as a tool."""

        def decorator(fn: Callable[..., Awaitable[ToolResult]]) -> Callable:
            if not inspect.iscoroutinefunction(fn):
                msg = f"Tool handler '{name}' must be an async function"
                raise TypeError(msg)

            self._add(
                ToolDef(
                    name=name,
                    description=description,
                    category=category,
                    handler=fn,
                    params_model=params_model,
                    result_model=result_model,
                    timeout=timeout,
                    after=tuple(after),
                )
            )
            return fn

        return decorator

    def register(self, tool_instance: BaseTool) -> None:
        """Register a class-based tool instance."""
        self._add(
            ToolDef(
                name=tool_instance.name,
                description=tool_instance.description,
                category=tool_instance.category,
                handler=tool_instance.execute,
                params_model=tool_instance.params_model,
                result_model=tool_instance.result_model,
                timeout=tool_instance.timeout,
                after=tuple(tool_instance.after),
            )
        )

    def freeze(self) -> None:
        """Make the registration table immutable."""
        self._frozen = True
        logger.info("Tool registry frozen with %d tool(s): %s", len(self._tools), self.tool_names)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolDef | None:
        """Look up a tool by name."""
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        """All registered tool names."""
        return list(self._tools.keys())

    def get_schemas(self) -> list[dict[str, Any]]:
        """Generate planner tool schemas for all registered tools."""
        return [self._tool_schema(t) for t in self._tools.values()]

    def get_tools_by_category(self) -> dict[str, list[ToolDef]]:
        """Group registered tools by category."""
        groups: dict[str, list[ToolDef]] = {}
        for tool_def in self._tools.values():
            groups.setdefault(tool_def.category, []).append(tool_def)
        return groups

    # -- Invocation ------------------------------------------------------------

    async def invoke(
        self,
        tool_name: str,
        raw_arguments: dict[str, Any] | None,
        context: ToolContext | None = None,
        *,
        position: int = 0,
    ) -> ToolCall:
        """Validate, execute and check one tool call.

        Tool faults never raise: unknown tools, invalid arguments, timeouts,
        handler exceptions and malformed results all come back as a failed
        ToolCall carrying the error code and detail. Only cancellation
        propagates.
        """
        call = ToolCall(
            id=make_id(),
            tool_name=tool_name,
            arguments=dict(raw_arguments or {}),
            position=position,
        )
        tool_def = self._tools.get(tool_name)
        if tool_def is None:
            return _fail(call, UnknownTool(f"Unknown tool: {tool_name}"))

        try:
            kwargs = self._validate_arguments(tool_def, call)
        except InvalidArguments as exc:
            logger.warning("Tool '%s' rejected arguments: %s", tool_name, exc.fields)
            return _fail(call, exc)

        if context is not None and _accepts_param(tool_def.handler, "context"):
            kwargs["context"] = context

        timeout = tool_def.effective_timeout
        logger.info("Tool '%s' called with %s", tool_name, call.arguments)
        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(tool_def.handler(**kwargs), timeout)
        except TimeoutError:
            logger.warning("Tool '%s' timed out after %.1fs", tool_name, timeout)
            return _fail(call, OperationTimeoutError(f"Tool '{tool_name}' timed out"))
        except DiscoveryError as exc:
            logger.warning("Tool '%s' raised %s: %s", tool_name, exc.code, exc.detail)
            return _fail(call, exc)
        except Exception:
            elapsed = time.monotonic() - t0
            logger.exception("Tool '%s' failed in %.2fs", tool_name, elapsed)
            return _fail(
                call, UpstreamError(f"Tool '{tool_name}' failed. Check logs for details.")
            )

        elapsed = time.monotonic() - t0
        if not isinstance(result, ToolResult):
            return _fail(
                call, InvalidResult(f"Tool '{tool_name}' returned {type(result).__name__}")
            )
        if not result.success:
            logger.warning(
                "Tool '%s' returned error in %.2fs: %s", tool_name, elapsed, result.error
            )
            return _fail(call, UpstreamError(result.error or "Tool reported an error"))

        try:
            call.result = self._validate_result(tool_def, result)
        except InvalidResult as exc:
            logger.error("Tool '%s' returned malformed data: %s", tool_name, exc.detail)
            return _fail(call, exc)

        call.status = TOOL_COMPLETE
        logger.info("Tool '%s' succeeded in %.2fs", tool_name, elapsed)
        return call

    async def invoke_many(
        self,
        requests: list[ToolRequest],
        context: ToolContext | None = None,
        *,
        start_position: int = 0,
    ) -> list[ToolCall]:
        """Run independent calls concurrently; results follow request order."""
        return list(
            await asyncio.gather(
                *(
                    self.invoke(
                        r.tool_name, r.arguments, context, position=start_position + i
                    )
                    for i, r in enumerate(requests)
                )
            )
        )

    @staticmethod
    def _validate_arguments(tool_def: ToolDef, call: ToolCall) -> dict[str, Any]:
        if tool_def.params_model is None:
            return dict(call.arguments)
        try:
            params = tool_def.params_model.model_validate(call.arguments)
        except pydantic.ValidationError as exc:
            fields = _field_errors(exc)
            msg = f"Invalid arguments for '{tool_def.name}': " + "; ".join(
                f"{k}: {v}" for k, v in fields.items()
            )
            raise InvalidArguments(msg, fields=fields) from exc
        call.arguments = params.model_dump(mode="json")
        return params.model_dump()

    @staticmethod
    def _validate_result(tool_def: ToolDef, result: ToolResult) -> dict[str, Any]:
        data = result.data or {}
        if tool_def.result_model is None:
            return data
        try:
            return tool_def.result_model.model_validate(data).model_dump(mode="json")
        except pydantic.ValidationError as exc:
            fields = _field_errors(exc)
            msg = f"Tool '{tool_def.name}' result does not match its schema: " + "; ".join(
                f"{k}: {v}" for k, v in fields.items()
            )
            raise InvalidResult(msg, fields=fields) from exc

    @staticmethod
    def _tool_schema(tool_def: ToolDef) -> dict[str, Any]:
        """Build a single planner tool schema dict."""
        if tool_def.params_model is not None:
            input_schema = tool_def.params_model.model_json_schema()
        else:
            input_schema = {"type": "object", "properties": {}}

        return {
            "name": tool_def.name,
            "description": tool_def.description,
            "input_schema": input_schema,
        }


def _fail(call: ToolCall, error: DiscoveryError) -> ToolCall:
    call.status = TOOL_FAILED
    call.error = error.to_dict()
    return call


def _field_errors(exc: pydantic.ValidationError) -> dict[str, str]:
    fields: dict[str, str] = {}
    for err in exc.errors():
        path = ".".join(str(p) for p in err.get("loc", ())) or "__root__"
        fields[path] = err.get("msg", "invalid")
    return fields


def _accepts_param(fn: Callable[..., Any], param_name: str) -> bool:
    """Check whether a callable accepts a given parameter name."""
    return param_name in inspect.signature(fn).parameters


# Global registry; import this from anywhere to register or look up tools.
registry = ToolRegistry()

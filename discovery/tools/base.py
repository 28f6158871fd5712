"""Base types for the analysis-tool framework."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from discovery.store.models import Message


@dataclass
class ToolResult:
    """Result of a tool execution.

    Every tool handler returns one of these. ``data`` is validated against
    the tool's result model before it reaches a ToolCall.
    """

    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        """Serialize for a prompt."""
        if self.error:
            return json.dumps({"error": self.error})
        return json.dumps(self.data or {})


class ToolParams(BaseModel):
    """Base class for tool argument models.

    Subclass with Field() definitions. The JSON schema is auto-generated
    via model_json_schema() for the planner's tool definitions. Unknown
    arguments are rejected.
    """

    model_config = ConfigDict(extra="forbid")


class ToolOutput(BaseModel):
    """Base class for tool result models."""


@dataclass
class ToolContext:
    """Per-turn context handed to tools that accept a ``context`` parameter.

    Attributes:
        turn_id: The turn issuing the call (also the bus correlation id).
        chat_id: Owning chat.
        branch_id: Active branch.
        history: Resolved branch history at the time of planning.
        upstream: Results of completed dependency calls, keyed by tool name.
    """

    turn_id: str = ""
    chat_id: str = ""
    branch_id: str = ""
    history: list[Message] = field(default_factory=list)
    upstream: dict[str, dict[str, Any]] = field(default_factory=dict)

    def with_upstream(self, results: dict[str, dict[str, Any]]) -> ToolContext:
        """Copy of this context carrying the given dependency results."""
        return ToolContext(
            turn_id=self.turn_id,
            chat_id=self.chat_id,
            branch_id=self.branch_id,
            history=self.history,
            upstream=dict(results),
        )


class BaseTool(ABC):
    """Abstract base for class-based tool implementations.

    Use this when a tool needs initialization state. For simple tools,
    prefer the @registry.tool() decorator instead.

    Example::

        class MyTool(BaseTool):
            name = "my-tool"
            description = "Does a thing"
            category = "custom"
            params_model = MyToolParams
            result_model = MyToolOutput

            async def execute(self, **kwargs) -> ToolResult:
                return ToolResult(data={"ok": True})
    """

    name: str = ""
    description: str = ""
    category: str = ""
    params_model: type[ToolParams] | None = None
    result_model: type[ToolOutput] | None = None
    timeout: float | None = None
    after: tuple[str, ...] = ()

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool with validated parameters."""
        ...

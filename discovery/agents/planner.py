"""PlannerAgent — chooses which analysis tools a turn should run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from discovery.agents.base import Agent, Envelope
from discovery.llm import client as llm_client
from discovery.llm.prompt import PLANNER_SYSTEM_PROMPT

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from discovery.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

PLANNER_ID = "planner"
PLAN_REQUEST = "plan"
PLAN_RESULT = "plan.result"
MAX_PLAN_STEPS = 5


@dataclass
class PlanStep:
    """One planned tool call. ``depends_on`` holds indices of earlier steps."""

    tool: str
    arguments: dict[str, Any] = field(default_factory=dict)
    depends_on: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "arguments": self.arguments, "depends_on": self.depends_on}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanStep:
        return cls(
            tool=str(data.get("tool", "")),
            arguments=dict(data.get("arguments") or {}),
            depends_on=[int(i) for i in data.get("depends_on") or []],
        )


async def claude_selector(
    message: str, history: list[dict[str, Any]], schemas: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Default selector: Claude tool-use over the registry's schemas."""
    return await llm_client.select_tools(
        message, history, schemas, system=PLANNER_SYSTEM_PROMPT
    )


def build_plan(
    proposals: list[dict[str, Any]],
    registry: ToolRegistry,
    *,
    max_steps: int = MAX_PLAN_STEPS,
) -> list[PlanStep]:
    """Turn raw tool proposals into ordered plan steps.

    Unknown tools are dropped. A step depends on every earlier step whose
    tool it declares in ``after``; producers proposed late are moved ahead
    of their consumers so dependencies always point backwards.
    """
    steps: list[PlanStep] = []
    for proposal in proposals:
        name = str(proposal.get("name", ""))
        if registry.get(name) is None:
            logger.warning("Planner proposed unknown tool '%s'; dropping it", name)
            continue
        steps.append(PlanStep(tool=name, arguments=dict(proposal.get("input") or {})))
    steps = steps[:max_steps]

    producers = {t for s in steps for t in registry.get(s.tool).after}
    steps.sort(key=lambda s: 0 if s.tool in producers else 1)

    for i, step in enumerate(steps):
        wanted = registry.get(step.tool).after
        step.depends_on = [j for j in range(i) if steps[j].tool in wanted]
    return steps


class PlannerAgent(Agent):
    """Answers ``plan`` envelopes with a list of plan steps.

    Args:
        registry: Tool catalog the plan may draw from.
        selector: Async callable proposing tools; defaults to Claude.
        max_steps: Upper bound on steps per plan.
    """

    agent_id = PLANNER_ID

    def __init__(
        self,
        registry: ToolRegistry,
        selector: Callable[
            [str, list[dict[str, Any]], list[dict[str, Any]]], Awaitable[list[dict[str, Any]]]
        ]
        | None = None,
        *,
        max_steps: int = MAX_PLAN_STEPS,
    ) -> None:
        self._registry = registry
        self._selector = selector or claude_selector
        self._max_steps = max_steps

    async def handle(self, envelope: Envelope) -> list[Envelope]:
        if envelope.kind != PLAN_REQUEST:
            logger.debug("Planner ignoring envelope kind '%s'", envelope.kind)
            return []

        message = str(envelope.payload.get("message", ""))
        history = list(envelope.payload.get("history") or [])
        proposals = await self._selector(message, history, self._registry.get_schemas())
        steps = build_plan(proposals, self._registry, max_steps=self._max_steps)
        logger.info(
            "Plan for correlation %s: %s",
            envelope.correlation_id,
            [s.tool for s in steps] or "no tools",
        )
        return [
            envelope.reply(
                {"steps": [s.to_dict() for s in steps]},
                kind=PLAN_RESULT,
                sender_id=self.agent_id,
            )
        ]

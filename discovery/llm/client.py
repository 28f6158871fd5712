"""Async Claude client: one-shot completion, streaming, and tool selection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from discovery.config import settings
from discovery.errors import UpstreamError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

_client: anthropic.AsyncAnthropic | None = None


def _get_client() -> anthropic.AsyncAnthropic:
    """Lazily initialize the Anthropic client."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return _client


class TextGenerator(Protocol):
    """The text-generation capability the orchestrator depends on.

    ``stream`` continues after ``prefix`` when one is given: the chunks it
    yields never repeat the prefix.
    """

    async def complete(self, prompt: str) -> str: ...

    def stream(self, prompt: str, *, prefix: str = "") -> AsyncIterator[str]: ...


class ClaudeTextGenerator:
    """TextGenerator backed by the Anthropic Messages API."""

    def __init__(
        self,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        system: str | None = None,
    ) -> None:
        self._model = model or settings.chat_model
        self._max_tokens = max_tokens or settings.max_tokens
        self._system = system

    def _kwargs(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": messages,
        }
        if self._system is not None:
            kwargs["system"] = self._system
        return kwargs

    async def complete(self, prompt: str) -> str:
        """Single-shot call — no tools, no streaming."""
        client = _get_client()
        try:
            response = await client.messages.create(
                **self._kwargs([{"role": "user", "content": prompt}])
            )
        except anthropic.APIError as exc:
            logger.exception("Text generation failed")
            msg = "Text generation failed"
            raise UpstreamError(msg) from exc
        return "".join(b.text for b in response.content if b.type == "text")

    async def stream(self, prompt: str, *, prefix: str = "") -> AsyncIterator[str]:
        """Stream text chunks, continuing after ``prefix`` when given.

        The prefix is sent as a partial assistant turn. The API rejects
        trailing whitespace there, so it is trimmed and the continuation's
        leading whitespace dropped to keep the joined text exact.
        """
        client = _get_client()
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        trimmed = prefix.rstrip()
        had_trailing_space = len(trimmed) != len(prefix)
        if trimmed:
            messages.append({"role": "assistant", "content": trimmed})

        try:
            async with client.messages.stream(**self._kwargs(messages)) as stream:
                first = True
                async for text in stream.text_stream:
                    if first and had_trailing_space:
                        text = text.lstrip()
                    if not text:
                        continue
                    first = False
                    yield text
        except anthropic.APIError as exc:
            logger.exception("Streaming generation failed")
            msg = "Text generation failed"
            raise UpstreamError(msg) from exc


async def select_tools(
    message: str,
    history: list[dict[str, Any]],
    tool_schemas: list[dict[str, Any]],
    *,
    system: str,
    model: str | None = None,
) -> list[dict[str, Any]]:
    """Ask Claude which tools to call for ``message``.

    Returns ``[{"name": ..., "input": {...}}, ...]`` in the order Claude
    proposed them. An empty list is a valid plan.
    """
    if not tool_schemas:
        return []
    client = _get_client()
    try:
        response = await client.messages.create(
            model=model or settings.planner_model,
            max_tokens=1024,
            system=system,
            messages=[*history, {"role": "user", "content": message}],
            tools=tool_schemas,
            tool_choice={"type": "auto"},
        )
    except anthropic.APIError as exc:
        logger.exception("Tool selection failed")
        msg = "Planner model request failed"
        raise UpstreamError(msg) from exc

    selected = [
        {"name": block.name, "input": dict(block.input or {})}
        for block in response.content
        if block.type == "tool_use"
    ]
    logger.info(
        "Planner selected %d tool(s): %s",
        len(selected),
        ", ".join(s["name"] for s in selected) or "none",
    )
    return selected

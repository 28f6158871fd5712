"""Prompt assembly for planning and answer composition."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from discovery.citations.sources import Source
    from discovery.store.models import Message, ToolCall

HISTORY_WINDOW = 20
MAX_RESULT_CHARS = 4000

PLANNER_SYSTEM_PROMPT = """You plan analysis steps for an assistant that explores a corpus \
of user-submitted extraordinary experiences (UFO sightings, dreams, near-death \
experiences, synchronicities, ghosts and more). Each experience has a category, a date \
and a location.

Call the tools needed to answer the user's latest message. Call no tool at all for \
greetings, thanks, or questions you can answer from the conversation so far. Prefer \
'search' whenever the user asks about specific experiences, places or years."""

COMPOSER_INSTRUCTIONS = """Answer the user's question using only the analysis results \
below. When a sentence relies on a numbered source, end it with the source marker, \
e.g. "Three witnesses described a silent triangle [2]." Never invent sources or \
numbers. If a result is marked unavailable, say so briefly instead of guessing. Keep \
the answer concise and conversational."""

_TOOL_LABELS = {
    "search": "search",
    "trend-predict": "trend prediction",
    "category-stats": "category statistics",
}


def tool_label(tool_name: str) -> str:
    return _TOOL_LABELS.get(tool_name, tool_name.replace("-", " ").replace("_", " "))


def history_messages(history: list[Message]) -> list[dict[str, str]]:
    """Format the tail of resolved history for the Claude API.

    Consecutive messages with the same role are merged, since the API wants
    alternating turns.
    """
    out: list[dict[str, str]] = []
    for message in history[-HISTORY_WINDOW:]:
        if message.role not in ("user", "assistant"):
            continue
        if out and out[-1]["role"] == message.role:
            out[-1]["content"] += "\n\n" + message.content
        else:
            out.append({"role": message.role, "content": message.content})
    while out and out[0]["role"] != "user":
        out.pop(0)
    return out


def _result_json(result: dict[str, Any] | None) -> str:
    text = json.dumps(result or {}, ensure_ascii=False, default=str)
    if len(text) > MAX_RESULT_CHARS:
        text = text[:MAX_RESULT_CHARS] + "...(truncated)"
    return text


def build_compose_prompt(
    user_message: str,
    history: list[Message],
    tool_calls: list[ToolCall],
    sources: list[Source],
) -> str:
    """Render the composer prompt from the turn's inputs."""
    sections = [COMPOSER_INSTRUCTIONS]

    recent = history_messages(history)[-6:]
    if recent:
        lines = [f"{m['role']}: {m['content']}" for m in recent]
        sections.append("## Conversation so far\n\n" + "\n".join(lines))

    if tool_calls:
        lines = []
        for call in tool_calls:
            if call.succeeded:
                lines.append(f"### {call.tool_name}\n{_result_json(call.result)}")
            else:
                lines.append(f"### {call.tool_name}\nresult unavailable")
        sections.append("## Analysis results\n\n" + "\n\n".join(lines))

    if sources:
        sections.append("## Numbered sources\n\n" + "\n".join(s.prompt_line() for s in sources))

    sections.append(f"## Question\n\n{user_message}")
    return "\n\n".join(sections)


def unavailable_note(tool_names: list[str]) -> str:
    """Sentence telling the user which contributions are missing."""
    labels = [tool_label(n) for n in dict.fromkeys(tool_names)]
    if len(labels) == 1:
        return f"Note: the {labels[0]} is unavailable right now."
    return f"Note: these results are unavailable right now: {', '.join(labels)}."


def fallback_reply(tool_calls: list[ToolCall], sources: list[Source]) -> str:
    """Deterministic reply used when text generation is unavailable.

    Lists the cited sources with their markers so citations still attach.
    """
    if not sources:
        if any(c.succeeded for c in tool_calls):
            return "I ran the analysis but couldn't write up a summary right now."
        return "I couldn't put together an answer right now. Please try again."

    lines = [f"I found {len(sources)} relevant experience(s):"]
    for source in sources:
        title = source.title or source.record_id
        details = ", ".join(p for p in (source.category, source.occurred_at) if p)
        line = f"- {title} ({details}) [{source.index}]" if details else f"- {title} [{source.index}]"
        lines.append(line)
    return "\n".join(lines)

"""Persistent record types for chats, branches, messages, tool calls and citations."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def make_id() -> str:
    """Generate a new record ID."""
    return uuid.uuid4().hex


def utcnow() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Chat:
    """A conversation owned by one user. Root of one or more branches."""

    id: str
    owner_id: str
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utcnow()

    def to_row(self) -> tuple:
        return (self.id, self.owner_id, self.created_at)

    @classmethod
    def from_row(cls, row: tuple) -> Chat:
        return cls(id=row[0], owner_id=row[1], created_at=row[2])

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "owner_id": self.owner_id, "created_at": self.created_at}


@dataclass
class Branch:
    """A forkable message sequence.

    Attributes:
        id: Unique identifier (UUID hex).
        chat_id: Owning chat.
        parent_message_id: Fork point in an ancestor branch, or None for a root.
        name: Display name, unique per chat ignoring case.
        created_at: ISO 8601 timestamp.
        parent_branch_id: Branch holding the fork point (None for a root).
        fork_ordinal: Ordinal of the fork point, recorded when forking so the
            frozen prefix does not depend on the parent row staying put.
    """

    id: str
    chat_id: str
    parent_message_id: str | None
    name: str
    created_at: str = ""
    parent_branch_id: str | None = None
    fork_ordinal: int | None = None

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utcnow()

    @property
    def is_root(self) -> bool:
        return self.parent_message_id is None

    @property
    def name_key(self) -> str:
        """Case-folded name; the uniqueness key within a chat."""
        return self.name.casefold()

    def to_row(self) -> tuple:
        return (
            self.id,
            self.chat_id,
            self.parent_message_id,
            self.name,
            self.name_key,
            self.created_at,
            self.parent_branch_id,
            self.fork_ordinal,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Branch:
        return cls(
            id=row[0],
            chat_id=row[1],
            parent_message_id=row[2],
            name=row[3],
            created_at=row[5],
            parent_branch_id=row[6],
            fork_ordinal=row[7],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "parent_message_id": self.parent_message_id,
            "name": self.name,
            "created_at": self.created_at,
        }


@dataclass
class Message:
    """A single conversation entry within a branch.

    ``finalized`` is False only while the owning turn is in flight; pending
    messages are invisible to history, forking and citations. ``degraded``
    flags fallback text produced by a failed or partially failed turn.
    """

    id: str
    branch_id: str
    role: str  # "user", "assistant" or "tool"
    content: str
    ordinal: int
    created_at: str = ""
    finalized: bool = True
    degraded: bool = False

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utcnow()

    def to_row(self) -> tuple:
        return (
            self.id,
            self.branch_id,
            self.role,
            self.content,
            self.ordinal,
            self.created_at,
            int(self.finalized),
            int(self.degraded),
        )

    @classmethod
    def from_row(cls, row: tuple) -> Message:
        return cls(
            id=row[0],
            branch_id=row[1],
            role=row[2],
            content=row[3],
            ordinal=row[4],
            created_at=row[5],
            finalized=bool(row[6]),
            degraded=bool(row[7]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "role": self.role,
            "content": self.content,
            "ordinal": self.ordinal,
            "created_at": self.created_at,
            "degraded": self.degraded,
        }


TOOL_PENDING = "pending"
TOOL_COMPLETE = "complete"
TOOL_FAILED = "failed"


@dataclass
class ToolCall:
    """One invocation of an analysis tool, owned by an assistant message."""

    id: str
    tool_name: str
    arguments: dict[str, Any]
    message_id: str = ""
    status: str = TOOL_PENDING
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    position: int = 0
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utcnow()

    @property
    def succeeded(self) -> bool:
        return self.status == TOOL_COMPLETE

    @property
    def timed_out(self) -> bool:
        return self.status == TOOL_FAILED and (self.error or {}).get("code") == "timeout"

    def to_row(self) -> tuple:
        return (
            self.id,
            self.message_id,
            self.tool_name,
            json.dumps(self.arguments),
            self.status,
            json.dumps(self.result) if self.result is not None else None,
            json.dumps(self.error) if self.error is not None else None,
            self.position,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> ToolCall:
        return cls(
            id=row[0],
            message_id=row[1],
            tool_name=row[2],
            arguments=json.loads(row[3]),
            status=row[4],
            result=json.loads(row[5]) if row[5] else None,
            error=json.loads(row[6]) if row[6] else None,
            position=row[7],
            created_at=row[8],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "position": self.position,
        }


@dataclass
class Citation:
    """Provenance link from a span of a finalised message to a source record."""

    id: str
    message_id: str
    source_record_id: str
    span_start: int
    span_end: int
    confidence: float
    tool_name: str = ""
    snippet: str = ""
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = utcnow()

    @property
    def span(self) -> tuple[int, int]:
        return (self.span_start, self.span_end)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.message_id,
            self.source_record_id,
            self.span_start,
            self.span_end,
            self.confidence,
            self.tool_name,
            self.snippet,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Citation:
        return cls(
            id=row[0],
            message_id=row[1],
            source_record_id=row[2],
            span_start=row[3],
            span_end=row[4],
            confidence=row[5],
            tool_name=row[6] or "",
            snippet=row[7] or "",
            created_at=row[8],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "source_record_id": self.source_record_id,
            "span": {"start": self.span_start, "end": self.span_end},
            "confidence": self.confidence,
            "tool_name": self.tool_name,
            "snippet": self.snippet,
        }


@dataclass
class ExperienceRecord:
    """A user-submitted experience narrative from the corpus."""

    id: str
    title: str
    description: str
    category: str
    occurred_at: str  # ISO date or datetime
    location: str = ""
    tags: list[str] = field(default_factory=list)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.title,
            self.description,
            self.category,
            self.occurred_at,
            self.location,
            json.dumps(self.tags),
        )

    @classmethod
    def from_row(cls, row: tuple) -> ExperienceRecord:
        return cls(
            id=row[0],
            title=row[1],
            description=row[2],
            category=row[3],
            occurred_at=row[4],
            location=row[5] or "",
            tags=json.loads(row[6]) if row[6] else [],
        )


@dataclass
class StreamCheckpoint:
    """Generated-so-far content of a resumable text stream."""

    stream_id: str
    prompt: str
    content: str = ""
    done: bool = False
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = utcnow()

    @classmethod
    def from_row(cls, row: tuple) -> StreamCheckpoint:
        return cls(
            stream_id=row[0],
            prompt=row[1],
            content=row[2],
            done=bool(row[3]),
            updated_at=row[4],
        )

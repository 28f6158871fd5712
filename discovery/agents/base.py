"""Envelopes and the agent capability interface."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

STATUS_OK = "ok"
STATUS_AGENT_FAILED = "agent_failed"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: lower ranks are delivered first."""
        return _RANKS[self]


_RANKS = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class Envelope(BaseModel):
    """A routed inter-agent message.

    ``recipient_id`` of None means broadcast to every other registered
    agent. A reply carries the ``correlation_id`` of the request it answers.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender_id: str
    recipient_id: str | None = None
    priority: Priority = Priority.NORMAL
    kind: str = "message"
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str = Field(default_factory=new_correlation_id)
    status: str = STATUS_OK
    error: str | None = None

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_id is None

    @property
    def failed(self) -> bool:
        return self.status != STATUS_OK

    def reply(
        self,
        payload: dict[str, Any],
        *,
        kind: str | None = None,
        sender_id: str | None = None,
    ) -> Envelope:
        """Build the response to this envelope, addressed back to its sender.

        Replies to a broadcast must name their ``sender_id`` explicitly.
        """
        sender = sender_id or self.recipient_id
        if sender is None:
            msg = "Cannot derive a reply sender from a broadcast envelope"
            raise ValueError(msg)
        return Envelope(
            sender_id=sender,
            recipient_id=self.sender_id,
            priority=self.priority,
            kind=kind or f"{self.kind}.reply",
            payload=payload,
            correlation_id=self.correlation_id,
        )


class Agent(ABC):
    """A stable-id participant on the agent bus.

    Subclasses implement ``handle``; the bus guarantees one envelope at a
    time per agent.
    """

    agent_id: str = ""

    @abstractmethod
    async def handle(self, envelope: Envelope) -> list[Envelope]:
        """Process one envelope and return zero or more outgoing envelopes."""
        ...

"""Agent bus and the agents that plan discovery turns."""

from discovery.agents.base import Agent, Envelope, Priority
from discovery.agents.bus import AgentBus

__all__ = ["Agent", "AgentBus", "Envelope", "Priority"]

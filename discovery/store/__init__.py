"""Persistence layer — records and the SQLite-backed store."""

from discovery.store.models import (
    Branch,
    Chat,
    Citation,
    ExperienceRecord,
    Message,
    StreamCheckpoint,
    ToolCall,
)
from discovery.store.store import DiscoveryStore

__all__ = [
    "Branch",
    "Chat",
    "Citation",
    "DiscoveryStore",
    "ExperienceRecord",
    "Message",
    "StreamCheckpoint",
    "ToolCall",
]

"""Error taxonomy shared by every discovery component.

Five families, each carrying a stable ``code`` and a ``detail`` string that
is safe to log. ``user_message()`` is the only text that may reach an end
user.
"""

from __future__ import annotations

from typing import Any


class DiscoveryError(Exception):
    """Base class for all discovery errors."""

    code = "error"
    public_message = "Something went wrong. Please try again."

    def __init__(
        self, detail: str = "", fields: dict[str, str] | None = None, **context: Any
    ) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message
        self.fields = fields or {}
        self.context = context

    def user_message(self) -> str:
        """Text that is safe to show an end user."""
        return self.public_message

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "detail": self.detail}
        if self.fields:
            data["fields"] = self.fields
        return data


# -- Validation -----------------------------------------------------------------


class ValidationError(DiscoveryError):
    """Bad input: arguments, spans, names."""

    code = "validation_error"
    public_message = "The request was not valid."

    def user_message(self) -> str:
        # Validation detail is actionable and never contains internals.
        return self.detail


class InvalidParent(ValidationError):
    code = "invalid_parent"


class InvalidSpan(ValidationError):
    code = "invalid_span"


class InvalidArguments(ValidationError):
    """Tool arguments failed schema validation.

    ``fields`` maps a dotted field path to its validation message.
    """

    code = "invalid_arguments"


# -- Not found ------------------------------------------------------------------


class NotFoundError(DiscoveryError):
    """A referenced entity does not exist."""

    code = "not_found"
    public_message = "The requested item was not found."

    def user_message(self) -> str:
        return self.detail


class UnknownTool(NotFoundError):
    code = "unknown_tool"


# -- Conflict -------------------------------------------------------------------


class ConflictError(DiscoveryError):
    """Duplicate name, cycle, or a lost write race."""

    code = "conflict"
    public_message = "The request conflicts with the current state."

    def user_message(self) -> str:
        return self.detail


class DuplicateName(ConflictError):
    code = "duplicate_name"


class CycleDetected(ConflictError):
    code = "cycle_detected"


class DuplicateTool(ConflictError):
    code = "duplicate_tool"


# -- Timeout / upstream -----------------------------------------------------------


class OperationTimeoutError(DiscoveryError, TimeoutError):
    """A tool, agent, or generation call exceeded its time bound."""

    code = "timeout"
    public_message = "That took too long to answer."


class UpstreamError(DiscoveryError):
    """A tool or the text generator failed for external reasons."""

    code = "upstream_error"


class InvalidResult(UpstreamError):
    """A tool returned data that does not match its result schema."""

    code = "invalid_result"

"""Message and part data models for the conversation history."""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field

cuid = cuid_wrapper()

Role = Literal["user", "assistant", "tool"]
ApprovalState = Literal["requested", "approved", "rejected", "completed"]
ToolCallState = Literal["input-available", "awaiting-client", "awaiting-approval", "resolved"]

# Result states that close a tool call
TERMINAL_RESULT_STATES: frozenset[str] = frozenset({"completed", "rejected"})


class TextPart(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str

    class Config:
        frozen = True


class ReasoningPart(BaseModel):
    """Model reasoning, streamed separately from the answer text."""

    type: Literal["reasoning"] = "reasoning"
    text: str
    state: Literal["streaming", "done"] = "done"
    signature: str | None = Field(default=None, description="Provider signature required to replay the reasoning")

    class Config:
        frozen = True


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool-call"] = "tool-call"
    tool_name: str
    call_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    state: ToolCallState = "input-available"

    class Config:
        frozen = True


class ToolResultPart(BaseModel):
    """The outcome of a tool call, keyed by the originating call id."""

    type: Literal["tool-result"] = "tool-result"
    call_id: str
    tool_name: str
    output: Any = None
    error: str | None = None
    state: ApprovalState = "completed"
    approval_id: str | None = None

    class Config:
        frozen = True

    @property
    def is_error(self) -> bool:
        """Whether the result carries a failure instead of an output."""
        return self.error is not None

    @property
    def is_terminal(self) -> bool:
        """Whether this result closes its tool call."""
        return self.state in TERMINAL_RESULT_STATES


Part = Annotated[TextPart | ReasoningPart | ToolCallPart | ToolResultPart, Field(discriminator="type")]


class Message(BaseModel):
    """A single conversation message made of ordered parts."""

    id: str = Field(default_factory=lambda: cuid())
    role: Role
    parts: tuple[Part, ...] = ()
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    class Config:
        frozen = True

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_calls(self) -> list[ToolCallPart]:
        """Tool call parts in order."""
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    def tool_results(self) -> list[ToolResultPart]:
        """Tool result parts in order."""
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    def with_parts(self, parts: list[Part] | tuple[Part, ...]) -> "Message":
        """Return a copy of the message carrying different parts."""
        return self.model_copy(update={"parts": tuple(parts)})


def unresolved_call_ids(parts: list[Part] | tuple[Part, ...]) -> set[str]:
    """Call ids of tool calls that have no terminal result among the parts."""
    called = {part.call_id for part in parts if isinstance(part, ToolCallPart)}
    resolved = {part.call_id for part in parts if isinstance(part, ToolResultPart) and part.is_terminal}
    return called - resolved


def drop_unresolved(parts: list[Part] | tuple[Part, ...]) -> list[Part]:
    """Remove tool calls without a terminal result, and any non-terminal results.

    Each remaining call is marked resolved so the stored history carries no
    pending state.
    """
    dangling = unresolved_call_ids(parts)
    kept: list[Part] = []
    for part in parts:
        if isinstance(part, ToolCallPart):
            if part.call_id in dangling:
                continue
            if part.state != "resolved":
                part = part.model_copy(update={"state": "resolved"})
        elif isinstance(part, ToolResultPart) and not part.is_terminal:
            continue
        kept.append(part)
    return kept

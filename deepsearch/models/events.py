"""Wire events exchanged over the session channel."""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from deepsearch.models.messages import Message, Part

FinishReason = Literal["stop", "step-limit", "cancelled"]


# Outbound events
class HistoryEvent(BaseModel):
    """Full conversation, sent when a connection opens."""

    type: Literal["history"] = "history"
    session_id: str
    messages: list[Message]


class StartEvent(BaseModel):
    type: Literal["start"] = "start"
    message_id: str


class StartStepEvent(BaseModel):
    type: Literal["start-step"] = "start-step"
    step: int


class TextDeltaEvent(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    delta: str


class ReasoningDeltaEvent(BaseModel):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    delta: str


class ReasoningEndEvent(BaseModel):
    type: Literal["reasoning-end"] = "reasoning-end"


class ToolCallEvent(BaseModel):
    """A tool call the model emitted; client tools must be answered by the client."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]
    client_side: bool = False


class ToolApprovalRequestEvent(BaseModel):
    type: Literal["tool-approval-request"] = "tool-approval-request"
    approval_id: str
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]


class ToolResultEvent(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None
    error: str | None = None
    state: str = "completed"


class FinishStepEvent(BaseModel):
    type: Literal["finish-step"] = "finish-step"
    step: int


class FinishEvent(BaseModel):
    """End of a turn, carrying the assembled assistant message."""

    type: Literal["finish"] = "finish"
    finish_reason: FinishReason
    message: Message | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error_text: str


class ScheduledTaskEvent(BaseModel):
    """Out-of-band notification; not part of the message sequence."""

    type: Literal["scheduled-task"] = "scheduled-task"
    description: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


StreamEvent = (
    StartEvent
    | StartStepEvent
    | TextDeltaEvent
    | ReasoningDeltaEvent
    | ReasoningEndEvent
    | ToolCallEvent
    | ToolApprovalRequestEvent
    | ToolResultEvent
    | FinishStepEvent
    | FinishEvent
    | ErrorEvent
)


# Inbound events
class UserMessageIn(BaseModel):
    """A new user message: ``{"role": "user", "parts": [...]}``."""

    role: Literal["user"]
    parts: list[Part] = Field(min_length=1)


class ToolOutputIn(BaseModel):
    type: Literal["tool-output"]
    tool_call_id: str
    output: Any = None


class ToolApprovalResponseIn(BaseModel):
    type: Literal["tool-approval-response"]
    id: str
    approved: bool


class CancelIn(BaseModel):
    type: Literal["cancel"]


class ClearHistoryIn(BaseModel):
    type: Literal["clear-history"]


ControlIn = Annotated[
    ToolOutputIn | ToolApprovalResponseIn | CancelIn | ClearHistoryIn,
    Field(discriminator="type"),
]

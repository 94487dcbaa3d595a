"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    type: Literal["text"] = "text"
    text: str

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


class ThinkingBlock(BaseModel):
    """Extended thinking block, replayed with its signature."""

    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message in the model's wire representation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class LLMToolDefinition(BaseModel):
    """Complete tool definition for LLM."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "LLMUsage") -> None:
        """Accumulate usage from another step."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


# Generation fragments, emitted in order while a step streams
@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ReasoningEnd:
    signature: str | None = None


@dataclass
class ToolCallRequest:
    """A fully received tool call."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class GenerationFinish:
    """Terminal fragment of a single generation step."""

    stop_reason: str | None
    usage: LLMUsage


Fragment = TextDelta | ReasoningDelta | ReasoningEnd | ToolCallRequest | GenerationFinish

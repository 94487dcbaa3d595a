"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

# Handlers receive the parsed instance of their tool's input model
ToolHandler = Callable[[Any], Awaitable[Any]]


class ToolName(StrEnum):
    """Every tool the assistant can call. The registry must cover exactly this set."""

    WEB_SEARCH = "webSearch"
    GET_USER_TIMEZONE = "getUserTimezone"


@dataclass
class ToolDefinition:
    """Definition of a tool available to the AI assistant.

    A definition without a handler is executed by the client: the model may
    call it, but the result must be supplied over the session channel.
    """

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler | None = None
    needs_approval: bool = False

    @property
    def client_side(self) -> bool:
        return self.handler is None

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.input_schema_class.model_validate(raw_input)


@dataclass
class ToolResult:
    """Outcome of a server-side tool execution."""

    call_id: str
    tool_name: str
    output: Any = None

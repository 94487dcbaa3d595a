"""Tools registry for managing AI assistant tools."""

import os
from typing import Any

from pydantic import ValidationError

from deepsearch.errors import (
    ClientToolError,
    InvalidToolInput,
    ToolConfigurationError,
    ToolExecutionError,
    UnknownToolError,
)
from deepsearch.models.llm import LLMToolDefinition
from deepsearch.tools.base import ToolDefinition, ToolName, ToolResult
from deepsearch.tools.user_timezone import create_user_timezone_tool
from deepsearch.tools.web_search import create_web_search_tool
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry for managing AI assistant tools.

    The tool set is closed: every ToolName needs exactly one definition, and
    nothing outside ToolName may be registered. This is checked at
    construction so a misconfigured tool set fails at startup.
    """

    def __init__(self, tools: list[ToolDefinition] | None = None):
        """Initialize tools registry.

        Args:
            tools: Tool definitions (defaults to the built-in tool set)
        """
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools if tools is not None else self._default_tools():
            self.register_tool(tool)
        self._validate()

    def _default_tools(self) -> list[ToolDefinition]:
        """Build the default set of research tools."""
        search_needs_approval = os.getenv("SEARCH_REQUIRES_APPROVAL", "false").lower() in {"1", "true", "yes"}
        return [
            create_web_search_tool(needs_approval=search_needs_approval),
            create_user_timezone_tool(),
        ]

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        if tool.name not in set(ToolName):
            raise ToolConfigurationError(f"Tool {tool.name} is not a declared tool name")
        if tool.name in self._tools:
            raise ToolConfigurationError(f"Tool {tool.name} is registered twice")
        self._tools[str(tool.name)] = tool

    def _validate(self) -> None:
        missing = {str(name) for name in ToolName} - set(self._tools)
        if missing:
            raise ToolConfigurationError(f"Missing tool definitions: {sorted(missing)}")
        logger.info(f"Tools registered: {self.get_tool_names()}")

    def describe(self) -> list[ToolDefinition]:
        """All tool definitions in registration order."""
        return list(self._tools.values())

    def get_llm_tools(self) -> list[LLMToolDefinition]:
        """Get tool declarations for the generation request."""
        return [
            LLMToolDefinition(name=name, description=tool.description, input_schema=tool.get_json_schema())
            for name, tool in self._tools.items()
        ]

    def get_tool(self, name: str) -> ToolDefinition:
        """Look up a tool by name.

        Raises:
            UnknownToolError: If the tool is not registered
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def is_client_tool(self, name: str) -> bool:
        return self.get_tool(name).client_side

    def needs_approval(self, name: str) -> bool:
        return self.get_tool(name).needs_approval

    def validate_input(self, name: str, raw_input: dict[str, Any]) -> None:
        """Check input against the tool's schema.

        Raises:
            UnknownToolError: If the tool is not registered
            InvalidToolInput: If the input does not conform
        """
        tool = self.get_tool(name)
        try:
            tool.parse_input(raw_input)
        except ValidationError as e:
            raise InvalidToolInput(name, f"Invalid input for {name}: {e}") from e

    async def execute(self, name: str, raw_input: dict[str, Any], call_id: str = "") -> ToolResult:
        """Validate input and run a server-side tool.

        Raises:
            UnknownToolError: If the tool is not registered
            ClientToolError: If the tool is executed by the client
            InvalidToolInput: If the input does not conform to the schema
            ToolExecutionError: If the tool body raises
        """
        tool = self.get_tool(name)
        if tool.handler is None:
            raise ClientToolError(name)

        try:
            params = tool.parse_input(raw_input)
        except ValidationError as e:
            raise InvalidToolInput(name, f"Invalid input for {name}: {e}") from e

        logger.debug(f"Executing tool: {name} with input: {raw_input}")
        try:
            output = await tool.handler(params)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            raise ToolExecutionError(name, str(e)) from e

        logger.debug(f"Tool {name} succeeded: {str(output)[:100]}...")
        return ToolResult(call_id=call_id, tool_name=name, output=output)

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools


_tools_registry: ToolsRegistry | None = None


def get_tools_registry() -> ToolsRegistry:
    """Get or create tools registry instance."""
    global _tools_registry
    if _tools_registry is None:
        _tools_registry = ToolsRegistry()
    return _tools_registry

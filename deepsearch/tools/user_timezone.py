"""User timezone tool, answered by the client."""

from pydantic import BaseModel

from deepsearch.tools.base import ToolDefinition, ToolName


class GetUserTimezoneInput(BaseModel):
    """Empty input schema; the client knows its own timezone."""


def create_user_timezone_tool() -> ToolDefinition:
    return ToolDefinition(
        name=ToolName.GET_USER_TIMEZONE,
        description="Get the user's timezone from their browser.",
        input_schema_class=GetUserTimezoneInput,
    )

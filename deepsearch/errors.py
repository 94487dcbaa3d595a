"""Error types raised by the research assistant core."""


class DeepSearchError(Exception):
    """Base class for all service errors."""


class ToolError(DeepSearchError):
    """A failure attributable to a single tool call."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """The tool ran but its body failed."""


class InvalidToolInput(ToolError):
    """The model produced input that does not match the tool's schema."""


class UnknownToolError(ToolError):
    """The model requested a tool that is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Unknown tool {tool_name}")


class ClientToolError(ToolError):
    """A client-executed tool was asked to run on the server."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool {tool_name} is executed by the client, not the server")


class ToolConfigurationError(DeepSearchError):
    """The tool set does not match the declared tool names."""


class GenerationTransportError(DeepSearchError):
    """The hosted model could not be reached or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SessionBusyError(DeepSearchError):
    """A turn is already in progress for the session."""

    def __init__(self, session_id: str):
        super().__init__(f"A response is already in progress for session {session_id}")
        self.session_id = session_id

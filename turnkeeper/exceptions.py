"""Custom exceptions for turnkeeper."""


class TurnkeeperError(Exception):
    """Base exception for turnkeeper."""

    pass


class ConfigurationError(TurnkeeperError):
    """Configuration-related errors."""

    pass


class LLMError(TurnkeeperError):
    """LLM backend errors (transport, decoding)."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(TurnkeeperError):
    """Tool registry errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name

"""
Exception hierarchy for RelayMind.

Only provider failures are meant to escape a turn. Validation, execution
and delegation failures are converted to tool-result strings by the
dispatcher so the model can react to them in the next round.
"""


class RelayMindError(Exception):
    """Base class for all RelayMind errors."""
    pass


class ConfigurationError(RelayMindError):
    """Raised when a required collaborator or setting is missing."""
    pass


class LLMError(RelayMindError):
    """Error from the LLM client."""
    pass


class ContextLengthExceededError(LLMError):
    """The assembled window is larger than the provider accepts."""
    pass


class ToolValidationError(RelayMindError):
    """Tool arguments did not match the tool's declared schema."""

    def __init__(self, tool_name: str, errors: list[str]):
        self.tool_name = tool_name
        self.errors = errors
        super().__init__(f"Invalid arguments for '{tool_name}': " + "; ".join(errors))


class DelegationError(RelayMindError):
    """A delegation request could not be routed."""
    pass


class RpcError(RelayMindError):
    """A JSON-RPC request was answered with an error object."""

    def __init__(self, message: str, code: int | None = None, data: object = None):
        self.code = code
        self.data = data
        super().__init__(message)


class RpcTimeoutError(RpcError):
    """A JSON-RPC request received no reply before its deadline."""
    pass


class RpcClosedError(RpcError):
    """The connection to the tool server is not usable."""
    pass

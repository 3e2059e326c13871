"""Exception hierarchy for reportable runtime failures."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong types, bad user tools)."""


class TokenBudgetError(AgentError):
    """Raised when the conversation window cannot fit inside its token budget."""


class StreamDecodeError(AgentError):
    """Raised for malformed or truncated SSE data."""


class TransportError(AgentError):
    """Raised when the chat endpoint cannot be reached or answers with an error."""


class ToolNotFoundError(AgentError):
    """Raised when the model asks for a tool that is not in the registry."""

    def __init__(self, name: str):
        self.tool_name = name
        super().__init__(f"Tool '{name}' requested by model not found in registry.")


class SchemaCompileError(AgentError):
    """Raised when a tool's parameter schema is itself invalid."""

    def __init__(self, name: str, details: str):
        self.tool_name = name
        super().__init__(f"Failed to compile schema for tool '{name}': {details}")


class CommandError(AgentError):
    """Raised when a single-shot command cannot build its request (bad file, bad range)."""

"""Error taxonomy for the tool loop."""

from typing import Optional


class ToolLoopError(Exception):
    """Base exception for tool loop errors."""
    pass


class DuplicateToolError(ToolLoopError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class UnknownToolError(ToolLoopError):
    """No registered tool matches the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' not found")
        self.name = name


class HandlerFailure(ToolLoopError):
    """A tool handler could not produce a result."""

    def __init__(
        self,
        name: str,
        message: str,
        cause: Optional[BaseException] = None,
        timed_out: bool = False
    ) -> None:
        super().__init__(f"Tool '{name}' failed: {message}")
        self.name = name
        self.cause = cause
        self.timed_out = timed_out


class TransportError(ToolLoopError):
    """The model client failed or timed out."""

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class MalformedOutput(ToolLoopError):
    """Structured output could not be parsed or violated its contract."""
    pass


class LoopCancelled(ToolLoopError):
    """An external cancellation signal fired while the loop was suspended."""
    pass

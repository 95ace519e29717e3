"""Error hierarchy for the tool loop.

Errors caused by the oracle's own tool usage (``UnknownTool``, ``InvalidToolArguments``,
``ToolHandlerFailure``) are fed back into the conversation by the loop.  Transport errors and the
round budget are terminal and reach the caller.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Iterable,
    List,
)

if TYPE_CHECKING:
    from toolloop.core.schema import Message


class ToolLoopError(RuntimeError):
    """Base for all tool loop errors."""


class DuplicateToolName(ToolLoopError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered.")


class UnknownTool(ToolLoopError):
    """The requested tool is not in the registry."""

    def __init__(self, name: str, available: Iterable[str] = ()) -> None:
        self.name = name
        self.available = list(available)
        message = f"Tool '{name}' is not registered."
        if self.available:
            message += f" Available tools: {', '.join(self.available)}."
        super().__init__(message)


class InvalidToolArguments(ToolLoopError):
    """Arguments do not satisfy the tool's input schema."""

    def __init__(self, name: str, detail: str) -> None:
        self.name = name
        self.detail = detail
        super().__init__(f"Invalid arguments for tool '{name}': {detail}")


class ToolHandlerFailure(ToolLoopError):
    """The tool handler raised."""

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Tool '{name}' raised an error: {type(cause).__name__}: {cause}")


class MissingExecutionContext(ToolLoopError):
    """A tool reads a context key the host did not supply.

    Only the key names are reported, never context values.
    """

    def __init__(self, keys: Iterable[str]) -> None:
        self.keys: List[str] = list(keys)
        super().__init__(f"Execution context is missing key(s): {', '.join(self.keys)}")


class OracleTimeout(ToolLoopError):
    """An oracle call did not complete within its timeout."""


class OracleTransportError(ToolLoopError):
    """The oracle could not be reached or returned an unusable response."""


class OracleConfigError(OracleTransportError):
    """Missing or invalid oracle configuration (e.g., no API key)."""


class ToolLoopExceeded(ToolLoopError):
    """The round budget ran out before the oracle produced a final message."""

    def __init__(self, rounds: int, messages: List["Message"] | None = None) -> None:
        self.rounds = rounds
        self.messages = list(messages or [])
        super().__init__(f"No final answer after {rounds} round(s).")


class SchemaCoercionFailed(ToolLoopError):
    """The oracle output could not be parsed against the output schema."""

    def __init__(self, detail: str, raw: str = "") -> None:
        self.detail = detail
        self.raw = raw
        super().__init__(f"Structured output coercion failed: {detail}")

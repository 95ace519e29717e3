"""
Basic sanity tests for the tool executor.

Run with:
$ pytest -q
"""

import asyncio

import pytest

from toolloop.agent.context import ExecutionContext
from toolloop.agent.tool_executor import (
    execute_tool_call,
    render_result,
)
from toolloop.core.errors import MissingExecutionContext
from toolloop.core.schema import (
    Role,
    ToolCall,
)
from toolloop.tools import (
    ToolRegistry,
    declare_tool,
)
from toolloop.tools.weather import WeatherReport

# This is a stub registry for testing purposes.
registry = ToolRegistry()


@registry.tool("add")
def _add(a: int, b: int) -> int:
    """Return the sum of two integers (used only for tests)."""

    return a + b


@registry.tool("divide")
async def _divide(a: float, b: float) -> float:
    """Async handler that fails on zero."""

    return a / b


@registry.tool("whoami")
def _whoami(ctx: ExecutionContext) -> str:
    """Reads a key nobody declared."""

    return ctx["user_id"]


def _run(call: ToolCall, context: ExecutionContext | None = None):
    return asyncio.run(execute_tool_call(registry, call, context or ExecutionContext()))


def test_execute_tool_success() -> None:
    """Executor should return the rendered value when the tool is valid."""

    call = ToolCall(name="add", args={"a": 2, "b": 3})
    result = _run(call)

    assert result.role == Role.TOOL
    assert result.content == "5"
    assert result.tool_call_id == call.id
    assert result.name == "add"
    assert not result.is_error


def test_execute_async_tool() -> None:
    """Async handlers are awaited."""

    assert _run(ToolCall(name="divide", args={"a": 9, "b": 3})).content == "3.0"


def test_execute_tool_missing() -> None:
    """An unknown tool becomes an error result naming the tool."""

    result = _run(ToolCall(name="not_a_tool", args={}))

    assert result.is_error
    assert "not_a_tool" in result.content
    assert "is not registered" in result.content


def test_execute_tool_bad_args() -> None:
    """Wrong arguments become an error result and the handler is not called."""

    result = _run(ToolCall(name="add", args={"a": 2}))  # missing 'b'

    assert result.is_error
    assert "Invalid arguments" in result.content


def test_execute_tool_unparsable_args() -> None:
    """Arguments that never parsed as JSON are reported, not executed."""

    result = _run(ToolCall(name="add", args='{"a": 2,'))

    assert result.is_error
    assert "not a JSON object" in result.content


def test_execute_tool_handler_failure() -> None:
    """A raising handler becomes an error result carrying the exception."""

    result = _run(ToolCall(name="divide", args={"a": 1, "b": 0}))

    assert result.is_error
    assert "ZeroDivisionError" in result.content


def test_missing_context_key_propagates() -> None:
    """Reading an absent context key is a host error, not something the oracle can fix."""

    with pytest.raises(MissingExecutionContext) as excinfo:
        _run(ToolCall(name="whoami", args={}))
    assert excinfo.value.keys == ["user_id"]


def test_context_reaches_handler() -> None:
    """The context is handed to handlers that ask for it."""

    result = _run(ToolCall(name="whoami", args={}), ExecutionContext(user_id="42"))

    assert result.content == "42"


def test_render_result() -> None:
    """Strings pass through, models and other values are JSON encoded."""

    report = WeatherReport(humour_response="Sunny!", weatherCondition="Sunny")

    assert render_result("plain") == "plain"
    assert render_result({"a": 1}) == '{"a": 1}'
    assert render_result(report) == report.model_dump_json()


def test_registries_do_not_share_tools() -> None:
    """Separate registries do not share tools."""

    other = ToolRegistry([declare_tool(_add, "plus")])
    result = asyncio.run(
        execute_tool_call(other, ToolCall(name="add", args={"a": 1, "b": 1}), ExecutionContext())
    )

    assert result.is_error
    assert "plus" in result.content

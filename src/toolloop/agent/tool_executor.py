"""Dispatches oracle tool calls and turns every outcome into a tool-result message."""

import asyncio
import inspect
import json
import logging
from typing import (
    Any,
    Dict,
)

from pydantic import BaseModel

from toolloop.agent.context import ExecutionContext
from toolloop.core.errors import (
    InvalidToolArguments,
    MissingExecutionContext,
    ToolHandlerFailure,
    UnknownTool,
)
from toolloop.core.schema import (
    Message,
    ToolCall,
)
from toolloop.tools import (
    ToolDeclaration,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


def render_result(result: Any) -> str:
    """Convert a handler return value into tool-result text."""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    return json.dumps(result, default=str)


async def invoke_handler(
    declaration: ToolDeclaration, args: Dict[str, Any], context: ExecutionContext
) -> Any:
    """
    Call the handler of *declaration* with validated *args*.

    Async handlers are awaited; sync handlers run in a worker thread so that other calls of the same
    round keep going.  Cancelling the caller cancels an async handler; a sync handler already
    running in its thread is abandoned and finishes on its own.

    Raises
    ------
    ToolHandlerFailure
        If the handler raises.
    MissingExecutionContext
        If the handler reads a context key the host did not supply (host programming error).
    """
    kwargs = dict(args)
    if declaration.context_param is not None:
        kwargs[declaration.context_param] = context

    try:
        logger.debug("Executing tool '%s' with args=%s", declaration.name, args)
        if inspect.iscoroutinefunction(declaration.handler):
            return await declaration.handler(**kwargs)
        return await asyncio.to_thread(declaration.handler, **kwargs)
    except MissingExecutionContext:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", declaration.name)
        raise ToolHandlerFailure(declaration.name, exc) from exc


async def execute_tool_call(
    registry: ToolRegistry, call: ToolCall, context: ExecutionContext
) -> Message:
    """
    Resolve, validate and run one oracle tool call.

    Parameters
    ----------
    registry:
        Tools available for this request.
    call:
        The oracle's request.  Its name and arguments are untrusted.
    context:
        Execution context, handed to the handler only when it declares a context parameter.

    Returns
    -------
    Message
        A tool-result message.  ``UnknownTool``, ``InvalidToolArguments`` and
        ``ToolHandlerFailure`` come back as results with ``is_error=True`` so the oracle can
        correct itself in the next round.  Context values are redacted from the error text.
    """
    try:
        declaration = registry.resolve(call.name)
        args = declaration.validate(call.args)
        result = await invoke_handler(declaration, args, context)
    except (UnknownTool, InvalidToolArguments, ToolHandlerFailure) as exc:
        logger.warning("Tool call %s failed: %s", call.id, context.redact(str(exc)))
        return Message.tool_result(call, f"Error: {context.redact(str(exc))}", is_error=True)

    content = render_result(result)
    logger.info("Tool '%s' returned: %s", call.name, content)
    return Message.tool_result(call, content)

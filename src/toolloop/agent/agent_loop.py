"""Main orchestration loop: bounded oracle round-trips with tool execution in between."""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    List,
    Mapping,
    Sequence,
    Tuple,
    Union,
)

from toolloop.agent.context import (
    ExecutionContext,
    as_context,
)
from toolloop.agent.oracle import BaseOracle
from toolloop.agent.tool_executor import execute_tool_call
from toolloop.core.errors import ToolLoopExceeded
from toolloop.core.schema import (
    LoopResult,
    Message,
    OracleRequest,
    Role,
    ToolCall,
)
from toolloop.tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 8

MessageLike = Union[Message, Mapping[str, Any], Tuple[str, str]]


def to_message(value: MessageLike) -> Message:
    """Accept a ``Message``, a role/content dict or a ``(role, content)`` pair."""
    if isinstance(value, Message):
        return value
    if isinstance(value, tuple):
        role, content = value
        return Message(role=Role(role), content=content)
    return Message.model_validate(value)


class ToolLoop:
    """
    Lets the oracle call tools until it produces a final answer, for at most ``max_rounds`` rounds.

    A round is one oracle call plus the tool calls it requests.  Rounds run strictly one after the
    other; the tool calls of a single round run concurrently.  The registry is only read, so one
    ``ToolLoop`` can serve concurrent requests.
    """

    def __init__(
        self,
        oracle: BaseOracle,
        registry: ToolRegistry,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")
        self.oracle = oracle
        self.registry = registry
        self.max_rounds = max_rounds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def run(
        self,
        messages: Sequence[MessageLike],
        context: ExecutionContext | Mapping[str, Any] | None = None,
        *,
        system_prompt: str | None = None,
    ) -> LoopResult:
        """
        Run the loop over *messages* and return the final answer.

        Parameters
        ----------
        messages:
            Initial conversation, usually one or more user messages.
        context:
            Host-supplied execution context.  Handed to tool handlers only; it is never written
            into the transcript.
        system_prompt:
            Prepended as a system message when given.

        Raises
        ------
        MissingExecutionContext
            Before the first round, if a registered tool reads a key absent from *context*.
        OracleTimeout, OracleTransportError
            If an oracle call fails.  Not retried here.
        ToolLoopExceeded
            If ``max_rounds`` oracle calls all requested tools.
        """
        ctx = as_context(context)
        ctx.ensure(self.registry.required_context_keys())

        transcript: List[Message] = []
        if system_prompt:
            transcript.append(Message.system(system_prompt))
        transcript.extend(to_message(m) for m in messages)

        # Same tools in the same order on every round.
        tool_specs = self.registry.specs()
        executed: List[ToolCall] = []

        for round_no in range(1, self.max_rounds + 1):
            request = OracleRequest(
                messages=list(transcript),
                tools=tool_specs,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
            )
            logger.debug(
                "Round %d/%d: sending %d message(s)", round_no, self.max_rounds, len(transcript)
            )
            reply = await self.oracle.complete(request)

            if reply.is_final:
                content = reply.content or ""
                transcript.append(Message.assistant(content))
                logger.info("Loop finished after %d round(s)", round_no)
                return LoopResult(
                    content=content, messages=transcript, rounds=round_no, tool_calls=executed
                )

            logger.info(
                "Round %d: oracle requested %d tool call(s): %s",
                round_no,
                len(reply.tool_calls),
                [call.name for call in reply.tool_calls],
            )
            transcript.append(Message.assistant(reply.content or "", tool_calls=reply.tool_calls))

            results = await self._run_round(reply.tool_calls, ctx)
            transcript.extend(results)
            executed.extend(reply.tool_calls)

        logger.warning("No final answer after %d round(s)", self.max_rounds)
        raise ToolLoopExceeded(self.max_rounds, transcript)

    async def _run_round(self, calls: List[ToolCall], ctx: ExecutionContext) -> List[Message]:
        """
        Execute the calls of one round side by side, results in call order.

        If any call raises (``MissingExecutionContext``, cancellation), the calls still running are
        cancelled and awaited before the error propagates.
        """
        tasks = [
            asyncio.ensure_future(execute_tool_call(self.registry, call, ctx)) for call in calls
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise


def run_tool_loop(
    oracle: BaseOracle,
    registry: ToolRegistry,
    messages: Sequence[MessageLike],
    context: ExecutionContext | Mapping[str, Any] | None = None,
    *,
    system_prompt: str | None = None,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: float | None = None,
) -> LoopResult:
    """Synchronous convenience wrapper around :meth:`ToolLoop.run`."""
    loop = ToolLoop(
        oracle,
        registry,
        max_rounds=max_rounds,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )
    return asyncio.run(loop.run(messages, context, system_prompt=system_prompt))

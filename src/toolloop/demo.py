"""
Demo scenarios for toolloop.

Three runs against the configured oracle:

1. **multi-tool** - explicit-city time and weather questions answered with ``get_time`` and
   ``get_weather``.
2. **user context** - "What is the weather outside?" answered by chaining ``get_user_location``
   (reads ``user_id`` from the execution context) into ``get_weather``.
3. **structured** - the same question under the forecaster system prompt with tuned sampling
   parameters, followed by coercion of the answer into a :class:`WeatherReport`.

With ``ORACLE=scripted`` the runs use :func:`demo_strategy`, a rule-based stand-in for the model,
so the whole flow works offline.
"""

import asyncio
import json
import logging
import re
from typing import (
    List,
    Optional,
)

from toolloop.agent.agent_loop import ToolLoop
from toolloop.agent.context import ExecutionContext
from toolloop.agent.formatter import coerce_structured
from toolloop.agent.oracle import (
    BaseOracle,
    build_oracle,
)
from toolloop.agent.prompts import (
    WEATHER_FORMAT_RULES,
    WEATHER_SYSTEM_PROMPT,
)
from toolloop.common import (
    AnsiColors,
    colored_print,
)
from toolloop.config import Settings
from toolloop.core.schema import (
    Message,
    OracleReply,
    OracleRequest,
    Role,
    ToolCall,
)
from toolloop.tools.weather import (
    WeatherReport,
    build_multi_tool_registry,
    build_weather_registry,
)

logger = logging.getLogger(__name__)

_CITY_RE = re.compile(r"\bin ([A-Z][\w-]*(?: [A-Z][\w-]*)*)")
_RESPONSE_RE = re.compile(r'Response:\s*"(.*)"', re.DOTALL)
_CONDITIONS = ("sunny", "rainy", "cloudy", "snowy", "windy", "stormy", "foggy", "clear")


# ---------------------------------------------------------------------------
# Offline stand-in for the model
# ---------------------------------------------------------------------------
def _trailing(messages: List[Message], role: Role) -> List[Message]:
    """Messages of *role* at the end of the transcript, oldest first."""
    out: List[Message] = []
    for msg in reversed(messages):
        if msg.role != role:
            break
        out.append(msg)
    return list(reversed(out))


def _extract_city(text: str) -> Optional[str]:
    match = _CITY_RE.search(text)
    return match.group(1) if match else None


def _format_reply(request: OracleRequest) -> OracleReply:
    prompt = next((m.content for m in request.messages if m.role == Role.USER), "")
    match = _RESPONSE_RE.search(prompt)
    text = match.group(1) if match else prompt
    condition = next((c.capitalize() for c in _CONDITIONS if c in text.lower()), "Unknown")
    report = {
        "humour_response": f"{text} Looks like the sun clocked in for overtime.",
        "weatherCondition": condition,
    }
    return OracleReply(content=json.dumps(report))


def demo_strategy(request: OracleRequest) -> OracleReply:
    """
    Rule-based oracle behaviour for the demo tools.

    Explicit cities go straight to ``get_weather`` / ``get_time``; weather questions without a city
    ask ``get_user_location`` first; tool results are summarised into the final answer.
    """
    if request.json_output:
        return _format_reply(request)

    tools = {spec.name for spec in request.tools}
    last = request.messages[-1]

    if last.role == Role.TOOL:
        results = _trailing(request.messages, Role.TOOL)
        for result in results:
            located = result.name == "get_user_location" and not result.is_error
            if located and "get_weather" in tools:
                return OracleReply(
                    tool_calls=[ToolCall(name="get_weather", args={"city": result.content})]
                )
        return OracleReply(content=" ".join(result.content for result in results))

    calls: List[ToolCall] = []
    for msg in _trailing(request.messages, Role.USER):
        lowered = msg.content.lower()
        city = _extract_city(msg.content)
        if "time" in lowered and city and "get_time" in tools:
            calls.append(ToolCall(name="get_time", args={"city": city}))
        elif "weather" in lowered and city and "get_weather" in tools:
            calls.append(ToolCall(name="get_weather", args={"city": city}))
        elif "weather" in lowered and "get_user_location" in tools:
            calls.append(ToolCall(name="get_user_location", args={}))
    if calls:
        return OracleReply(tool_calls=calls)
    return OracleReply(content="I can only help with weather and time questions.")


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
async def multi_tool_demo(oracle: BaseOracle, config: Settings) -> str:
    """Explicit cities: no execution context needed."""
    loop = ToolLoop(
        oracle,
        build_multi_tool_registry(),
        max_rounds=config.MAX_ROUNDS,
        timeout=config.ORACLE_TIMEOUT,
    )
    result = await loop.run(
        [("user", "What is the time in India?"), ("user", "What is the weather in US?")]
    )
    return result.content


async def user_context_demo(oracle: BaseOracle, config: Settings, user_id: str) -> str:
    """Location comes from the execution context, not from the user."""
    loop = ToolLoop(
        oracle,
        build_weather_registry(),
        max_rounds=config.MAX_ROUNDS,
        timeout=config.ORACLE_TIMEOUT,
    )
    result = await loop.run(
        [Message.user("What is the weather outside?")], ExecutionContext(user_id=user_id)
    )
    return result.content


async def structured_demo(
    oracle: BaseOracle, config: Settings, user_id: str
) -> tuple[str, WeatherReport]:
    """Tuned sampling parameters, then coercion of the answer into a ``WeatherReport``."""
    loop = ToolLoop(
        oracle,
        build_weather_registry(),
        max_rounds=config.MAX_ROUNDS,
        temperature=config.TEMPERATURE,
        max_tokens=config.MAX_TOKENS,
        timeout=config.ORACLE_TIMEOUT,
    )
    result = await loop.run(
        [Message.user("What is the weather outside?")],
        ExecutionContext(user_id=user_id),
        system_prompt=config.SYSTEM_PROMPT or WEATHER_SYSTEM_PROMPT,
    )
    report = await coerce_structured(
        result.content,
        WeatherReport,
        oracle,
        rules=WEATHER_FORMAT_RULES,
        temperature=config.TEMPERATURE,
        max_tokens=config.MAX_TOKENS,
        timeout=config.ORACLE_TIMEOUT,
    )
    return result.content, report  # type: ignore[return-value]


async def _run_all(oracle: BaseOracle, config: Settings, user_id: str) -> None:
    try:
        colored_print("== Multi-tool usage", AnsiColors.BLUE)
        colored_print(await multi_tool_demo(oracle, config), AnsiColors.YELLOW)

        colored_print("== Tools with user context", AnsiColors.BLUE)
        colored_print(await user_context_demo(oracle, config, user_id), AnsiColors.YELLOW)

        colored_print("== Customised model + structured output", AnsiColors.BLUE)
        text, report = await structured_demo(oracle, config, user_id)
        colored_print(f"Agent text output: {text}", AnsiColors.YELLOW)
        colored_print(f"Structured output: {report.model_dump_json()}", AnsiColors.GREEN)
    finally:
        await oracle.aclose()


def run_demo(config: Settings, user_id: str = "1") -> None:
    """Run every scenario against the oracle selected by *config*."""
    oracle = build_oracle(config)
    logger.info("Running demos with oracle '%s'", config.ORACLE)
    asyncio.run(_run_all(oracle, config, user_id))

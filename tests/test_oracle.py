"""
Tests for the oracle back-ends.

No network: the httpx back-end runs on ``httpx.MockTransport`` and the SDK back-ends get stub
clients.
"""

import asyncio
import json
from types import SimpleNamespace

import httpx
import openai
import pytest
from openai.types.chat import ChatCompletion

from toolloop.agent.oracle import (
    AnthropicOracle,
    OpenAIOracle,
    OpenRouterOracle,
    RetryingOracle,
    ScriptedOracle,
    build_oracle,
    load_oracle,
    parse_openai_message,
    to_anthropic_messages,
    to_openai_messages,
)
from toolloop.config import Settings
from toolloop.core.errors import (
    OracleConfigError,
    OracleTimeout,
    OracleTransportError,
)
from toolloop.core.schema import (
    Message,
    OracleReply,
    OracleRequest,
    ToolCall,
    ToolSpec,
)

WEATHER_SPEC = ToolSpec(
    name="get_weather",
    description="Retrieves the weather for a given city.",
    parameters={
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
        "additionalProperties": False,
    },
)

TOOL_CALL_MESSAGE = {
    "role": "assistant",
    "content": None,
    "tool_calls": [
        {
            "id": "call_abc",
            "type": "function",
            "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'},
        }
    ],
}


def _request(**kwargs) -> OracleRequest:
    return OracleRequest(
        messages=[Message.user("Weather in Paris?")], tools=[WEATHER_SPEC], **kwargs
    )


# ---------------------------------------------------------------------------
# Wire format helpers
# ---------------------------------------------------------------------------
def test_to_openai_messages() -> None:
    """Tool calls and results map onto the Chat Completions shapes."""

    call = ToolCall(id="call_1", name="get_weather", args={"city": "Paris"})
    out = to_openai_messages(
        [
            Message.system("rules"),
            Message.user("hi"),
            Message.assistant(tool_calls=[call]),
            Message.tool_result(call, "Sunny"),
        ]
    )

    assert out[0] == {"role": "system", "content": "rules"}
    assert out[2]["tool_calls"][0] == {
        "id": "call_1",
        "type": "function",
        "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'},
    }
    assert out[3] == {"role": "tool", "tool_call_id": "call_1", "content": "Sunny"}


def test_parse_openai_message() -> None:
    """Tool calls are parsed; unparsable arguments are kept as text."""

    reply = parse_openai_message(TOOL_CALL_MESSAGE)
    assert reply.tool_calls[0].id == "call_abc"
    assert reply.tool_calls[0].args == {"city": "Paris"}
    assert not reply.is_final

    broken = {"tool_calls": [{"id": "c", "function": {"name": "x", "arguments": "{oops"}}]}
    assert parse_openai_message(broken).tool_calls[0].args == "{oops"

    final = parse_openai_message({"role": "assistant", "content": "Sunny."})
    assert final.is_final
    assert final.content == "Sunny."


def test_to_anthropic_messages_merges_tool_results() -> None:
    """System text is split out and parallel tool results share one user turn."""

    first = ToolCall(id="t1", name="get_weather", args={"city": "Paris"})
    second = ToolCall(id="t2", name="get_time", args={"city": "Paris"})
    system, messages = to_anthropic_messages(
        [
            Message.system("rules"),
            Message.user("hi"),
            Message.assistant("Checking.", tool_calls=[first, second]),
            Message.tool_result(first, "Sunny"),
            Message.tool_result(second, "3:00 PM", is_error=True),
        ]
    )

    assert system == "rules"
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert [b["type"] for b in messages[1]["content"]] == ["text", "tool_use", "tool_use"]
    assert [b["tool_use_id"] for b in messages[2]["content"]] == ["t1", "t2"]
    assert messages[2]["content"][1]["is_error"] is True


# ---------------------------------------------------------------------------
# OpenRouter (httpx)
# ---------------------------------------------------------------------------
def _openrouter(handler) -> OpenRouterOracle:
    return OpenRouterOracle(
        api_key="test-key",
        base_url="https://openrouter.test/api/v1/",
        model="test/model",
        transport=httpx.MockTransport(handler),
    )


async def _respond_and_close(oracle, request: OracleRequest) -> OracleReply:
    try:
        return await oracle.complete(request)
    finally:
        await oracle.aclose()


def test_openrouter_tool_call() -> None:
    """The payload carries tools and sampling parameters; tool calls come back parsed."""

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": TOOL_CALL_MESSAGE}]})

    reply = asyncio.run(
        _respond_and_close(_openrouter(handler), _request(temperature=0.2, max_tokens=1000))
    )

    assert reply.tool_calls[0].name == "get_weather"
    assert seen["url"] == "https://openrouter.test/api/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    payload = seen["payload"]
    assert payload["model"] == "test/model"
    assert payload["tool_choice"] == "auto"
    assert payload["tools"][0]["function"]["name"] == "get_weather"
    assert (payload["temperature"], payload["max_tokens"]) == (0.2, 1000)
    assert "response_format" not in payload


def test_openrouter_json_output() -> None:
    """JSON output requests ask for a JSON object response."""

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

    request = OracleRequest(messages=[Message.user("format")], json_output=True)
    reply = asyncio.run(_respond_and_close(_openrouter(handler), request))

    assert reply.content == "{}"
    assert seen["payload"]["response_format"] == {"type": "json_object"}
    assert "tools" not in seen["payload"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": {"message": "upstream down"}}),
        httpx.Response(200, json={"error": {"message": "provider error"}}),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, text="<html>oops</html>"),
    ],
)
def test_openrouter_errors(response) -> None:
    """HTTP errors and unusable bodies become OracleTransportError."""

    with pytest.raises(OracleTransportError):
        asyncio.run(_respond_and_close(_openrouter(lambda request: response), _request()))


def test_openrouter_timeout() -> None:
    """Transport timeouts become OracleTimeout."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(OracleTimeout):
        asyncio.run(_respond_and_close(_openrouter(handler), _request(timeout=1)))


def test_openrouter_requires_key() -> None:
    """A missing key is a configuration error."""

    with pytest.raises(OracleConfigError):
        OpenRouterOracle(api_key=None)


# ---------------------------------------------------------------------------
# OpenAI SDK
# ---------------------------------------------------------------------------
class _FakeCompletions:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.kwargs = {}

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.result


class _FakeOpenAIClient:
    def __init__(self, completions: _FakeCompletions):
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _completion(message: dict) -> ChatCompletion:
    return ChatCompletion.model_validate(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 0,
            "model": "test/model",
            "choices": [{"index": 0, "finish_reason": "tool_calls", "message": message}],
        }
    )


def test_openai_oracle_tool_call() -> None:
    """SDK responses are normalised like raw Chat Completions messages."""

    completions = _FakeCompletions(result=_completion(TOOL_CALL_MESSAGE))
    client = _FakeOpenAIClient(completions)
    oracle = OpenAIOracle(model="test/model", client=client)

    reply = asyncio.run(_respond_and_close(oracle, _request(timeout=10)))

    assert reply.tool_calls[0].id == "call_abc"
    assert reply.tool_calls[0].args == {"city": "Paris"}
    assert completions.kwargs["model"] == "test/model"
    assert completions.kwargs["timeout"] == 10
    assert client.closed


def test_openai_oracle_error_mapping() -> None:
    """SDK errors map onto the oracle error taxonomy."""

    request = httpx.Request("POST", "https://openrouter.test/api/v1/chat/completions")

    timeout = OpenAIOracle(
        client=_FakeOpenAIClient(_FakeCompletions(error=openai.APITimeoutError(request=request)))
    )
    with pytest.raises(OracleTimeout):
        asyncio.run(timeout.respond(_request()))

    failing = OpenAIOracle(
        client=_FakeOpenAIClient(
            _FakeCompletions(error=openai.APIConnectionError(request=request))
        )
    )
    with pytest.raises(OracleTransportError):
        asyncio.run(failing.respond(_request()))


def test_openai_oracle_requires_key() -> None:
    """Without a client or key the oracle cannot be built."""

    with pytest.raises(OracleConfigError):
        OpenAIOracle(api_key=None)


# ---------------------------------------------------------------------------
# Anthropic SDK
# ---------------------------------------------------------------------------
def test_anthropic_oracle() -> None:
    """Text and tool_use blocks are split into content and tool calls."""

    seen = {}

    async def create(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Let me check."),
                SimpleNamespace(
                    type="tool_use", id="toolu_1", name="get_weather", input={"city": "Paris"}
                ),
            ]
        )

    client = SimpleNamespace(messages=SimpleNamespace(create=create))
    oracle = AnthropicOracle(model="claude-test", client=client)
    request = OracleRequest(
        messages=[Message.system("rules"), Message.user("Weather in Paris?")],
        tools=[WEATHER_SPEC],
        temperature=0.2,
    )

    reply = asyncio.run(oracle.respond(request))

    assert reply.content == "Let me check."
    assert reply.tool_calls == [ToolCall(id="toolu_1", name="get_weather", args={"city": "Paris"})]
    assert seen["system"] == "rules"
    assert seen["max_tokens"] == 1024
    assert seen["tools"][0]["input_schema"] == WEATHER_SPEC.parameters
    assert seen["temperature"] == 0.2


# ---------------------------------------------------------------------------
# Scripted oracle, retries and the oracle registry
# ---------------------------------------------------------------------------
def test_scripted_oracle_exhausted() -> None:
    """Running past the end of the script is a transport error."""

    oracle = ScriptedOracle(["only one"])

    assert asyncio.run(oracle.complete(_request())).content == "only one"
    with pytest.raises(OracleTransportError):
        asyncio.run(oracle.complete(_request()))
    assert oracle.calls == 2


def test_retrying_oracle_recovers() -> None:
    """Transient failures are retried up to the attempt limit."""

    outcomes = [OracleTransportError("flaky"), OracleTimeout("slow"), "finally"]

    def script(request: OracleRequest):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    inner = ScriptedOracle(script)
    oracle = RetryingOracle(inner, attempts=3, min_wait=0, max_wait=0)

    assert asyncio.run(oracle.complete(_request())).content == "finally"
    assert inner.calls == 3


def test_retrying_oracle_gives_up() -> None:
    """The last error is re-raised once attempts run out."""

    def script(request: OracleRequest):
        raise OracleTransportError("down")

    inner = ScriptedOracle(script)
    oracle = RetryingOracle(inner, attempts=2, min_wait=0, max_wait=0)

    with pytest.raises(OracleTransportError):
        asyncio.run(oracle.complete(_request()))
    assert inner.calls == 2


def test_retrying_oracle_skips_config_errors() -> None:
    """Configuration errors are never retried."""

    def script(request: OracleRequest):
        raise OracleConfigError("no key")

    inner = ScriptedOracle(script)

    with pytest.raises(OracleConfigError):
        asyncio.run(RetryingOracle(inner, attempts=5, min_wait=0).complete(_request()))
    assert inner.calls == 1


def test_load_oracle() -> None:
    """Oracles are looked up by name and built from explicit settings."""

    config = Settings(_env_file=None, ORACLE="scripted", ORACLE_RETRIES=1)

    assert isinstance(load_oracle("scripted", config), ScriptedOracle)
    assert isinstance(build_oracle(config), ScriptedOracle)
    with pytest.raises(ValueError):
        load_oracle("nope", config)

    retried = build_oracle(Settings(_env_file=None, ORACLE="scripted", ORACLE_RETRIES=3))
    assert isinstance(retried, RetryingOracle)
    assert retried.attempts == 3

"""
Oracle interface for toolloop.

This module is the only place that *directly* calls an LLM.  Everything else (loop, tools, output
coercion) stays model-agnostic and talks to a :class:`BaseOracle`.

Back-ends available out of the box:

1. **openai** - the official ``openai`` SDK pointed at an OpenAI-compatible gateway (OpenRouter by
   default), using native function calling.
2. **openrouter** - the same wire format spoken directly over ``httpx``.
3. **anthropic** - the ``anthropic`` SDK with native tool use.
4. **scripted** - replays canned replies; used by tests and the offline demo.

Additional providers can be added by subclassing :class:`BaseOracle` and registering via
:func:`register_oracle`.  Configuration (keys, base URLs, models) is always passed to constructors
explicitly; the loop never reads settings.
"""

import asyncio
import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Sequence,
    Tuple,
    Type,
    Union,
)

import httpx
import openai
import tenacity

from toolloop.core.errors import (
    OracleConfigError,
    OracleTimeout,
    OracleTransportError,
)
from toolloop.core.schema import (
    Message,
    OracleReply,
    OracleRequest,
    Role,
    ToolCall,
    ToolSpec,
)

if TYPE_CHECKING:
    from toolloop.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "mistralai/devstral-2512:free"


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_ORACLE_REGISTRY: dict[str, Type["BaseOracle"]] = {}


def register_oracle(name: str) -> Callable:
    """Decorator to register an oracle class under *name*."""

    def wrapper(cls: Type["BaseOracle"]) -> Type["BaseOracle"]:
        _ORACLE_REGISTRY[name] = cls
        return cls

    return wrapper


def load_oracle(name: str, config: "Settings") -> "BaseOracle":
    """Instantiate the oracle registered under *name* from explicit *config*."""
    cls = _ORACLE_REGISTRY.get(name.lower())
    if cls is None:
        raise ValueError(
            f"Oracle '{name}' is not registered. Available: {', '.join(sorted(_ORACLE_REGISTRY))}"
        )
    return cls.from_settings(config)


def build_oracle(config: "Settings") -> "BaseOracle":
    """Load the configured oracle, wrapped in retries when ``ORACLE_RETRIES`` > 1."""
    oracle = load_oracle(config.ORACLE, config)
    if config.ORACLE_RETRIES > 1:
        oracle = RetryingOracle(oracle, attempts=config.ORACLE_RETRIES)
    return oracle


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseOracle(ABC):
    """Abstract oracle: conversation state -> final message or tool-call requests."""

    @classmethod
    def from_settings(cls, config: "Settings") -> "BaseOracle":
        """Build an instance from application settings."""
        raise NotImplementedError(f"{cls.__name__} cannot be built from settings")

    @abstractmethod
    async def respond(self, request: OracleRequest) -> OracleReply:
        """Send *request* to the model and return its reply."""

    async def complete(self, request: OracleRequest) -> OracleReply:
        """
        Call :meth:`respond`, bounded by ``request.timeout``.

        Raises
        ------
        OracleTimeout
            If no reply arrives in time.  The in-flight call is cancelled.
        """
        if request.timeout is None:
            return await self.respond(request)
        try:
            return await asyncio.wait_for(self.respond(request), timeout=request.timeout)
        except asyncio.TimeoutError as exc:
            raise OracleTimeout(f"Oracle did not reply within {request.timeout:g}s") from exc

    async def aclose(self) -> None:
        """Release network resources."""


# ---------------------------------------------------------------------------
# OpenAI wire format (shared by the SDK and the plain httpx back-end)
# ---------------------------------------------------------------------------
def _encode_args(args: Union[Dict[str, Any], str]) -> str:
    return args if isinstance(args, str) else json.dumps(args)


def to_openai_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert transcript messages into Chat Completions messages."""
    out: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == Role.TOOL:
            out.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
        elif msg.role == Role.ASSISTANT and msg.tool_calls:
            out.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": _encode_args(call.args),
                            },
                        }
                        for call in msg.tool_calls
                    ],
                }
            )
        else:
            out.append({"role": msg.role.value, "content": msg.content})
    return out


def to_openai_tools(tools: Sequence[ToolSpec]) -> List[Dict[str, Any]]:
    """Convert tool specs into Chat Completions function specs."""
    return [
        {
            "type": "function",
            "function": {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.parameters,
            },
        }
        for spec in tools
    ]


def parse_openai_message(message: Mapping[str, Any]) -> OracleReply:
    """Normalise a Chat Completions ``message`` object into an :class:`OracleReply`."""
    calls: List[ToolCall] = []
    for raw_call in message.get("tool_calls") or []:
        function = raw_call.get("function") or {}
        name = function.get("name")
        if not name:
            raise OracleTransportError(f"Tool call without a function name: {raw_call!r}")
        raw_args = function.get("arguments") or "{}"
        args: Union[Dict[str, Any], str]
        try:
            parsed = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
            args = parsed if isinstance(parsed, dict) else raw_args
        except json.JSONDecodeError:
            # Left as text: validation turns it into an InvalidToolArguments result.
            args = raw_args
        if raw_call.get("id"):
            calls.append(ToolCall(id=raw_call["id"], name=name, args=args))
        else:
            calls.append(ToolCall(name=name, args=args))
    return OracleReply(content=message.get("content"), tool_calls=calls)


def _openai_payload(model: str, request: OracleRequest) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model,
        "messages": to_openai_messages(request.messages),
    }
    if request.tools:
        payload["tools"] = to_openai_tools(request.tools)
        payload["tool_choice"] = "auto"
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    if request.json_output:
        payload["response_format"] = {"type": "json_object"}
    return payload


# ---------------------------------------------------------------------------
# Concrete oracles
# ---------------------------------------------------------------------------
@register_oracle("openai")
class OpenAIOracle(BaseOracle):
    """Chat Completions via the official ``openai`` SDK against any compatible base URL."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        client: Any = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise OracleConfigError("No API key provided for the OpenAI-compatible oracle.")
            client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._client = client
        self.model = model

    @classmethod
    def from_settings(cls, config: "Settings") -> "OpenAIOracle":
        return cls(
            api_key=config.OPENROUTER_API_KEY,
            base_url=config.OPENROUTER_BASE_URL,
            model=config.MODEL,
        )

    async def respond(self, request: OracleRequest) -> OracleReply:
        payload = _openai_payload(self.model, request)
        if request.timeout is not None:
            payload["timeout"] = request.timeout

        try:
            resp = await self._client.chat.completions.create(**payload)
        except openai.APITimeoutError as exc:
            raise OracleTimeout(f"OpenAI-compatible oracle timed out: {exc}") from exc
        except openai.APIError as exc:
            logger.error("OpenAI oracle error: %s", exc)
            raise OracleTransportError(f"Error calling OpenAI-compatible oracle: {exc}") from exc

        if not resp.choices:
            raise OracleTransportError("OpenAI-compatible oracle returned no choices")
        message = resp.choices[0].message
        logger.debug("OpenAI oracle response: %s", message)
        return parse_openai_message(message.model_dump())

    async def aclose(self) -> None:
        await self._client.close()


@register_oracle("openrouter")
class OpenRouterOracle(BaseOracle):
    """Chat Completions spoken directly over ``httpx``."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise OracleConfigError("No API key provided for the OpenRouter oracle.")
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, config: "Settings") -> "OpenRouterOracle":
        return cls(
            api_key=config.OPENROUTER_API_KEY,
            base_url=config.OPENROUTER_BASE_URL,
            model=config.MODEL,
        )

    async def respond(self, request: OracleRequest) -> OracleReply:
        payload = _openai_payload(self.model, request)
        timeout = request.timeout if request.timeout is not None else httpx.USE_CLIENT_DEFAULT

        try:
            resp = await self._client.post("/chat/completions", json=payload, timeout=timeout)
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as exc:
            raise OracleTimeout(f"OpenRouter request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.error("OpenRouter request error: %s", exc)
            raise OracleTransportError(f"Error calling OpenRouter: {exc}") from exc
        except ValueError as exc:
            raise OracleTransportError(f"OpenRouter returned a non-JSON body: {exc}") from exc

        logger.debug("OpenRouter response: %s", body)
        # Upstream provider failures can arrive as a 200 with an error object.
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            detail = error.get("message", error) if isinstance(error, dict) else error
            raise OracleTransportError(f"OpenRouter error: {detail}")
        try:
            message = body["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OracleTransportError(f"Unexpected OpenRouter response: {body!r}") from exc
        return parse_openai_message(message)

    async def aclose(self) -> None:
        await self._client.aclose()


def to_anthropic_messages(
    messages: Sequence[Message],
) -> Tuple[str | None, List[Dict[str, Any]]]:
    """Split out system text and convert the rest into Anthropic content blocks.

    Consecutive messages that map to the same Anthropic role are merged, so every batch of tool
    results lands in the single user turn that follows the assistant's ``tool_use`` blocks.
    """
    system_parts: List[str] = []
    out: List[Dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
            continue

        blocks: List[Dict[str, Any]] = []
        if msg.role == Role.TOOL:
            role = "user"
            blocks.append(
                {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                    "is_error": msg.is_error,
                }
            )
        else:
            role = "assistant" if msg.role == Role.ASSISTANT else "user"
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": call.args if isinstance(call.args, dict) else {},
                    }
                )
        if not blocks:
            continue

        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})

    return ("\n\n".join(system_parts) or None), out


@register_oracle("anthropic")
class AnthropicOracle(BaseOracle):
    """Anthropic Claude with native tool use."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-3-5-haiku-latest",
        default_max_tokens: int = 1024,
        client: Any = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise OracleConfigError("No API key provided for the Anthropic oracle.")
            import anthropic  # pylint: disable=import-outside-toplevel

            client = anthropic.AsyncAnthropic(api_key=api_key)
        self._client = client
        self.model = model
        self.default_max_tokens = default_max_tokens

    @classmethod
    def from_settings(cls, config: "Settings") -> "AnthropicOracle":
        return cls(api_key=config.ANTHROPIC_API_KEY, model=config.ANTHROPIC_MODEL)

    async def respond(self, request: OracleRequest) -> OracleReply:
        import anthropic  # pylint: disable=import-outside-toplevel

        system, messages = to_anthropic_messages(request.messages)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens or self.default_max_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        if request.tools:
            kwargs["tools"] = [
                {
                    "name": spec.name,
                    "description": spec.description,
                    "input_schema": spec.parameters,
                }
                for spec in request.tools
            ]
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APITimeoutError as exc:
            raise OracleTimeout(f"Anthropic oracle timed out: {exc}") from exc
        except anthropic.APIError as exc:
            logger.error("Anthropic oracle error: %s", exc)
            raise OracleTransportError(f"Error calling Anthropic: {exc}") from exc

        texts: List[str] = []
        calls: List[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, args=dict(block.input or {})))
        logger.debug(
            "Anthropic oracle response: %d text block(s), %d tool call(s)", len(texts), len(calls)
        )
        return OracleReply(content="\n".join(texts) or None, tool_calls=calls)

    async def aclose(self) -> None:
        await self._client.close()


Strategy = Callable[[OracleRequest], Union[OracleReply, str]]


@register_oracle("scripted")
class ScriptedOracle(BaseOracle):
    """
    Deterministic oracle for tests and offline runs.

    *script* is either a sequence of replies (an :class:`OracleReply` or a plain string meaning a
    final message) returned one per call, or a strategy callable deciding each reply from the
    request.  Every request is recorded in :attr:`requests`.
    """

    def __init__(
        self,
        script: Union[Sequence[Union[OracleReply, str]], Strategy] = (),
        *,
        delay: float = 0.0,
    ) -> None:
        self._script = script
        self._delay = delay
        self._index = 0
        self.requests: List[OracleRequest] = []

    @classmethod
    def from_settings(cls, config: "Settings") -> "ScriptedOracle":
        from toolloop.demo import (  # pylint: disable=import-outside-toplevel
            demo_strategy,
        )

        return cls(demo_strategy)

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def respond(self, request: OracleRequest) -> OracleReply:
        self.requests.append(request.model_copy(deep=True))
        if self._delay:
            await asyncio.sleep(self._delay)

        if callable(self._script):
            reply = self._script(request)
        else:
            if self._index >= len(self._script):
                raise OracleTransportError(
                    f"Scripted oracle exhausted after {len(self._script)} replies"
                )
            reply = self._script[self._index]
            self._index += 1

        if isinstance(reply, str):
            reply = OracleReply(content=reply)
        return reply


def _is_retryable(exc: BaseException) -> bool:
    """Timeouts and transport errors are retryable; configuration errors are not."""
    if isinstance(exc, OracleConfigError):
        return False
    return isinstance(exc, (OracleTimeout, OracleTransportError))


class RetryingOracle(BaseOracle):
    """
    Retries another oracle with exponential backoff.

    The loop itself never retries; a host opts in by wrapping its oracle.  Every attempt gets the
    full ``request.timeout``.
    """

    def __init__(
        self,
        inner: BaseOracle,
        attempts: int = 3,
        min_wait: float = 0.5,
        max_wait: float = 8.0,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.inner = inner
        self.attempts = attempts
        self.min_wait = min_wait
        self.max_wait = max_wait

    async def respond(self, request: OracleRequest) -> OracleReply:
        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=tenacity.wait_exponential(multiplier=self.min_wait, max=self.max_wait),
            stop=tenacity.stop_after_attempt(self.attempts),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retryer(self.inner.complete, request)

    async def complete(self, request: OracleRequest) -> OracleReply:
        # Timeouts are enforced per attempt by the inner oracle.
        return await self.respond(request)

    async def aclose(self) -> None:
        await self.inner.aclose()

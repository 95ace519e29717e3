"""
Structured output coercion.

Turns the loop's free-text answer into a typed record with one more oracle call.  The answer is
treated as opaque text; nothing here knows about tools or the execution context.
"""

import json
import logging
import re
from typing import (
    Mapping,
    Type,
    Union,
)

from pydantic import (
    BaseModel,
    ValidationError,
    create_model,
)

from toolloop.agent.oracle import BaseOracle
from toolloop.agent.prompts import (
    FORMAT_PROMPT,
    FORMAT_RETRY_PROMPT,
    FORMAT_SYSTEM_PROMPT,
)
from toolloop.core.errors import SchemaCoercionFailed
from toolloop.core.schema import (
    Message,
    OracleRequest,
)
from toolloop.tools import PYTHON_TYPES

logger = logging.getLogger(__name__)

OutputSchema = Union[Type[BaseModel], Mapping[str, Union[type, str]]]


def build_output_model(schema: OutputSchema, name: str = "StructuredOutput") -> Type[BaseModel]:
    """
    Return a pydantic model for *schema*.

    *schema* is either a model class (returned as is) or a mapping of field name to a primitive
    type, given as a Python type (``str``) or a JSON schema name (``"string"``).  Every field of a
    mapping schema is required.
    """
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema

    fields = {}
    for field_name, field_type in schema.items():
        if isinstance(field_type, str):
            if field_type not in PYTHON_TYPES:
                raise ValueError(f"Unsupported type '{field_type}' for field '{field_name}'.")
            field_type = PYTHON_TYPES[field_type]
        fields[field_name] = (field_type, ...)
    return create_model(name, **fields)  # type: ignore[call-overload]


def sanitize_json(content: str) -> str:
    """Clean up JSON strings returned by LLMs."""
    # Strip markdown code blocks if present
    if "```" in content:
        match = re.search(r"```(?:json)?\s*(.+?)```", content, re.DOTALL)
        if match:
            content = match.group(1).strip()

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t")

    # Keep only the outermost {...} object, skipping braces inside strings
    open_idx = content.find("{")
    if open_idx < 0:
        return content
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_idx, len(content)):
        ch = content[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return content[open_idx : i + 1]
    return content[open_idx:]


async def coerce_structured(
    text: str,
    schema: OutputSchema,
    oracle: BaseOracle,
    *,
    rules: str = "",
    retries: int = 1,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout: float | None = None,
) -> BaseModel:
    """
    Ask the oracle to restate *text* as an instance of *schema*.

    The first reply that validates is returned.  A reply that does not validate is sent back with
    the validation error, up to *retries* more times.

    Raises
    ------
    SchemaCoercionFailed
        If no reply validates.
    OracleTimeout, OracleTransportError
        If an oracle call fails.
    """
    model = build_output_model(schema)
    prompt = FORMAT_PROMPT.format(
        schema=json.dumps(model.model_json_schema(), indent=2), text=text, rules=rules
    )
    messages = [Message.system(FORMAT_SYSTEM_PROMPT), Message.user(prompt)]
    raw = ""
    error = "no reply"

    for attempt in range(retries + 1):
        reply = await oracle.complete(
            OracleRequest(
                messages=list(messages),
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                json_output=True,
            )
        )
        raw = reply.content or ""
        try:
            record = model.model_validate_json(sanitize_json(raw))
        except ValidationError as exc:
            error = str(exc)
            logger.warning(
                "Structured output attempt %d/%d did not validate: %s",
                attempt + 1,
                retries + 1,
                exc,
            )
            messages.append(Message.assistant(raw))
            messages.append(Message.user(FORMAT_RETRY_PROMPT.format(error=error)))
            continue
        logger.debug("Structured output: %s", record)
        return record

    raise SchemaCoercionFailed(error, raw=raw)

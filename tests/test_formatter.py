"""Tests for structured output coercion."""

import asyncio
import json

import pytest

from toolloop.agent.formatter import (
    build_output_model,
    coerce_structured,
    sanitize_json,
)
from toolloop.agent.oracle import ScriptedOracle
from toolloop.agent.prompts import WEATHER_FORMAT_RULES
from toolloop.core.errors import SchemaCoercionFailed
from toolloop.core.schema import Role
from toolloop.demo import demo_strategy
from toolloop.tools.weather import WeatherReport


def test_weather_report_coercion() -> None:
    """The free-text answer becomes a WeatherReport in one oracle call."""

    oracle = ScriptedOracle(demo_strategy)

    report = asyncio.run(
        coerce_structured(
            "It's always sunny in New York",
            WeatherReport,
            oracle,
            rules=WEATHER_FORMAT_RULES,
            temperature=0.2,
            max_tokens=1000,
        )
    )

    assert isinstance(report, WeatherReport)
    assert report.weatherCondition == "Sunny"
    assert "New York" in report.humour_response
    assert oracle.calls == 1
    request = oracle.requests[0]
    assert request.json_output
    assert request.tools == []
    assert request.temperature == 0.2
    assert "It's always sunny in New York" in request.messages[-1].content
    assert "weatherCondition" in request.messages[-1].content


def test_coercion_accepts_fenced_json() -> None:
    """Code fences and chatter around the object are tolerated."""

    reply = 'Sure!\n```json\n{"humour_response": "Bring shades.", "weatherCondition": "Sunny"}\n```'
    oracle = ScriptedOracle([reply])

    report = asyncio.run(coerce_structured("Sunny.", WeatherReport, oracle))

    assert report.humour_response == "Bring shades."


def test_coercion_retries_with_validation_error() -> None:
    """An invalid reply is sent back with the error before trying again."""

    bad = json.dumps({"humour_response": "Ha", "weatherCondition": "Partly cloudy"})
    good = json.dumps({"humour_response": "Ha", "weatherCondition": "Cloudy"})
    oracle = ScriptedOracle([bad, good])

    report = asyncio.run(coerce_structured("Cloudy.", WeatherReport, oracle, retries=1))

    assert report.weatherCondition == "Cloudy"
    assert oracle.calls == 2
    retry = oracle.requests[1].messages
    assert retry[-2].role == Role.ASSISTANT
    assert retry[-2].content == bad
    assert "weatherCondition" in retry[-1].content


def test_coercion_failure() -> None:
    """When no reply validates, SchemaCoercionFailed carries the last raw reply."""

    oracle = ScriptedOracle(["not json", "still not json"])

    with pytest.raises(SchemaCoercionFailed) as excinfo:
        asyncio.run(coerce_structured("Sunny.", WeatherReport, oracle, retries=1))

    assert excinfo.value.raw == "still not json"
    assert oracle.calls == 2


def test_coercion_without_retries() -> None:
    """retries=0 makes a single attempt."""

    oracle = ScriptedOracle(["{}"])

    with pytest.raises(SchemaCoercionFailed):
        asyncio.run(coerce_structured("Sunny.", WeatherReport, oracle, retries=0))
    assert oracle.calls == 1


def test_mapping_schema() -> None:
    """A mapping of field names to types is accepted as a schema."""

    oracle = ScriptedOracle(['{"city": "Paris", "temperature": 21}'])

    record = asyncio.run(
        coerce_structured("21 degrees in Paris", {"city": "string", "temperature": int}, oracle)
    )

    assert record.city == "Paris"  # type: ignore[attr-defined]
    assert record.temperature == 21  # type: ignore[attr-defined]


def test_build_output_model() -> None:
    """Model classes pass through; unknown type names are rejected."""

    assert build_output_model(WeatherReport) is WeatherReport
    model = build_output_model({"ok": bool})
    assert model.model_validate({"ok": True}).ok  # type: ignore[attr-defined]
    with pytest.raises(ValueError):
        build_output_model({"items": "array"})


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"a": 1}', '{"a": 1}'),
        ('```json\n{"a": 1}\n```', '{"a": 1}'),
        ('Here you go: {"a": {"b": "}"}} hope it helps', '{"a": {"b": "}"}}'),
        ('{"a": "x\\"}"}', '{"a": "x\\"}"}'),
        ("no json here", "no json here"),
    ],
)
def test_sanitize_json(raw, expected) -> None:
    """The outermost object is extracted, ignoring braces inside strings."""

    assert sanitize_json(raw) == expected

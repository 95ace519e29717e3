"""
Demo tools: user location, weather and time lookups.

The backends are canned; in a real deployment ``get_user_location`` would hit a profile service and
``get_weather`` a weather API.
"""

from pydantic import (
    BaseModel,
    Field,
)

from toolloop.agent.context import ExecutionContext
from toolloop.tools import (
    ToolRegistry,
    declare_tool,
)

_USER_LOCATIONS = {"1": "New York"}
_DEFAULT_LOCATION = "San Francisco"


def get_user_location(ctx: ExecutionContext) -> str:
    """Retrieves the user's current location based on their user ID."""
    return _USER_LOCATIONS.get(str(ctx["user_id"]), _DEFAULT_LOCATION)


def get_weather(city: str) -> str:
    """Retrieves the weather for a given city."""
    return f"It's always sunny in {city}"


def get_time(city: str) -> str:
    """Get time for a given city."""
    return f"The current time in {city} is 3:00 PM"


class WeatherReport(BaseModel):
    """Structured form of a free-text weather answer."""

    humour_response: str = Field(
        ..., min_length=1, description="The weather answer with a light joke added"
    )
    weatherCondition: str = Field(  # pylint: disable=invalid-name
        ...,
        pattern=r"^[A-Za-z]+$",
        description="One-word weather condition, e.g. Sunny",
    )


def build_weather_registry() -> ToolRegistry:
    """``get_user_location`` + ``get_weather``: answers "what is the weather outside?"."""
    return ToolRegistry(
        [
            declare_tool(get_user_location, context_keys=("user_id",)),
            declare_tool(get_weather),
        ]
    )


def build_multi_tool_registry() -> ToolRegistry:
    """``get_weather`` + ``get_time`` for explicit-city questions."""
    return ToolRegistry(
        [
            declare_tool(
                get_weather,
                description="You MUST use this tool to answer any weather-related question.",
            ),
            declare_tool(get_time),
        ]
    )


def build_default_registry() -> ToolRegistry:
    """Every demo tool, as served by the API."""
    return ToolRegistry(
        [
            declare_tool(get_user_location, context_keys=("user_id",)),
            declare_tool(get_weather),
            declare_tool(get_time),
        ]
    )

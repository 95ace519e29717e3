"""CLI client for the toolloop API."""

from __future__ import annotations

import logging
import time
from typing import (
    Any,
    Dict,
    Tuple,
    cast,
)

import httpx

from toolloop.common import (
    AnsiColors,
    colored_print,
)
from toolloop.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Dict[str, Any],
    headers: Dict[str, str] | None = None,
    max_retries: int = 5,
    timeout: float = 60.0,
) -> Dict[str, Any]:
    """Make a POST request to the API and return the response with retries."""
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"

    for attempt in range(max_retries):
        response: httpx.Response | None = None
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(api_url, json=data, headers=headers)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
        except httpx.HTTPError as e:
            # On connection refused, retry with exponential backoff
            if isinstance(e, httpx.ConnectError) and attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue

            # If we reached max retries or it's not a connection issue
            logger.error("API request error: %s", str(e))
            error_msg = f"Error connecting to API: {str(e)}"
            if response is not None:
                try:
                    error_data = response.json()
                    if "detail" in error_data:
                        error_msg = f"API error: {error_data['detail']}"
                except ValueError:
                    pass
            colored_print(error_msg, AnsiColors.RED)
            return {"reply": error_msg}

    # If we've exhausted all retries without returning or raising an exception
    error_msg = f"Failed to connect to API after {max_retries} attempts"
    colored_print(error_msg, AnsiColors.RED)
    return {"reply": error_msg}


def render_response(response: Dict[str, Any]) -> None:
    """Print tool calls, the answer and the structured report (if any)."""
    for call in response.get("tool_calls") or []:
        colored_print(f"[{call['name']}] {call['args']}", AnsiColors.GREEN)

    colored_print(response.get("reply", "No response from API"), AnsiColors.YELLOW)

    if response.get("structured"):
        colored_print(f"{response['structured']}", AnsiColors.BLUE)


def run_cli(user_id: str | None = None, structured: bool = False) -> None:
    """Run the CLI client that communicates with the API.

    *user_id* is sent as the ``X-User-Id`` header and becomes the request's execution context.
    """
    headers = {"X-User-Id": user_id} if user_id else None

    # Create a new session
    session_response = call_api("/sessions", {})
    session_id = session_response.get("session_id")

    if not session_id:
        colored_print("⚠️ Failed to create a session", AnsiColors.RED)
        return

    colored_print(
        "\n🔮 toolloop shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN
    )
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if not user_msg:
            continue
        if user_msg.lower() in {"exit", "quit"}:
            break

        response = call_api(
            "/agent",
            {"message": user_msg, "session_id": session_id, "structured": structured},
            headers=headers,
        )
        render_response(response)


if __name__ == "__main__":
    run_cli()

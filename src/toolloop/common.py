"""Console helpers shared by the API launcher, the CLI client and the demos."""

import os
import sys
from enum import Enum
from typing import (
    Any,
    TextIO,
)

_RESET = "\033[0m"


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def supports_color(stream: TextIO) -> bool:
    """True when *stream* is a terminal and ``NO_COLOR`` is not set."""
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def colorize(text: str, color: AnsiColors, stream: TextIO | None = None) -> str:
    """Wrap *text* in *color* if the target stream can show it."""
    if not supports_color(stream or sys.stdout):
        return text
    return f"{color.value}{text}{_RESET}"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Piped or captured output (and ``NO_COLOR=1``) gets plain text, so logs and transcripts stay
    free of escape codes.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print (``file`` picks the stream)
    """
    print(colorize(text, color, kwargs.get("file")), *args, **kwargs)

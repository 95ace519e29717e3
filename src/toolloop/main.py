"""
toolloop entry point.

This file handles startup concerns (arg-parsing, logging) and launches the appropriate interface
(API, CLI, or the demo scenarios).
"""

import argparse
import logging
import sys

from toolloop.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Keep HTTP client chatter out of the way
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the toolloop agent")
    parser.add_argument(
        "--mode",
        choices=["api", "cli", "demo"],
        type=str.lower,
        default="api",
        help="Launch the REST API, an interactive CLI, or the demo scenarios (default: api)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    parser.add_argument(
        "--oracle",
        choices=["openai", "openrouter", "anthropic", "scripted"],
        type=str.lower,
        default=settings.ORACLE,
        help="Model back-end (default from env: %(default)s)",
    )
    parser.add_argument(
        "--user-id",
        default="1",
        help="User ID placed in the execution context (default: %(default)s)",
    )
    parser.add_argument(
        "--structured",
        action="store_true",
        help="CLI mode: also request the structured weather report",
    )
    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the toolloop application.

    This function sets up the command-line interface, initializes logging, and starts the
    application in either API, CLI, or demo mode.
    """
    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)

    # Override settings with command-line arguments
    settings.LOG_LEVEL = args.log_level
    settings.ORACLE = args.oracle

    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting toolloop [%s mode, oracle=%s]", args.mode, settings.ORACLE)
    logger.debug(
        "Settings: %s",
        settings.model_dump(exclude={"OPENROUTER_API_KEY", "ANTHROPIC_API_KEY"}),
    )

    # Lazy imports keep each mode's dependencies out of the others
    # pylint: disable=import-outside-toplevel
    if args.mode == "api":
        from toolloop.api.app import run_api

        run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)

    elif args.mode == "demo":
        from toolloop.demo import run_demo

        run_demo(settings, user_id=args.user_id)

    else:
        import threading

        from toolloop.api.app import run_api
        from toolloop.client.cli import run_cli

        # Start API server in a separate thread
        api_thread = threading.Thread(
            target=run_api,
            kwargs={
                "host": "0.0.0.0",
                "port": settings.API_PORT,
                "reload": False,  # Reload doesn't work well with threading
                "log_level": "warning",
            },
            daemon=True,
        )
        api_thread.start()

        # Run CLI in main thread
        run_cli(user_id=args.user_id, structured=args.structured)


if __name__ == "__main__":
    main()

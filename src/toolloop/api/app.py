"""
Core API backend for toolloop.

It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **POST /sessions** - create a new session, returns a session ID.
- **GET /sessions** - list all active sessions.
- **POST /agent**   - multi-turn interaction: {"message": "...", "session_id": "..."}

The execution context of a request is built from the ``X-User-Id`` header, never from the message
text.  Session history keeps only user messages and final answers; tool traffic stays inside the
request that produced it.
"""

import asyncio
import contextlib
import logging
import uuid
from functools import lru_cache
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Dict,
    List,
    Optional,
    TypeVar,
)

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
)
from fastapi.responses import JSONResponse

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
from toolloop.api.models import (
    MessageRequest,
    MessageResponse,
    SessionResponse,
    ToolCallRecord,
)
from toolloop.common import (
    AnsiColors,
    colored_print,
)
from toolloop.config import settings
from toolloop.core.errors import (
    MissingExecutionContext,
    OracleTimeout,
    OracleTransportError,
    SchemaCoercionFailed,
    ToolLoopError,
    ToolLoopExceeded,
)
from toolloop.core.schema import Message
from toolloop.tools import ToolRegistry
from toolloop.tools.weather import (
    WeatherReport,
    build_default_registry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds between client-disconnect checks while a request is being answered
_DISCONNECT_POLL = 0.5

# Session storage (in-memory for now, could be moved to a database)
sessions: Dict[str, List[Message]] = {}

# Built once at startup and never written again
REGISTRY = build_default_registry().freeze()

_STATUS_CODES = {
    MissingExecutionContext: 400,
    OracleTimeout: 504,
    OracleTransportError: 502,
    SchemaCoercionFailed: 502,
    ToolLoopExceeded: 500,
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_oracle() -> BaseOracle:
    """The configured oracle, shared by all requests."""
    return build_oracle(settings)


@contextlib.asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Close the shared oracle (if one was built) when the server shuts down."""
    yield
    if get_oracle.cache_info().currsize:
        logger.info("Closing oracle")
        await get_oracle().aclose()
        get_oracle.cache_clear()


app = FastAPI(
    title="toolloop API",
    version="0.1.0",
    description="Bounded tool-calling agent API",
    lifespan=lifespan,
)


def get_registry() -> ToolRegistry:
    return REGISTRY


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def get_or_create_session(session_id: Optional[str] = None) -> str:
    """Get existing session or create a new one."""
    if session_id and session_id in sessions:
        return session_id

    new_session_id = str(uuid.uuid4())
    sessions[new_session_id] = []
    return new_session_id


async def run_until_disconnect(request: Request, work: Awaitable[T]) -> T:
    """
    Await *work*, cancelling it if the client goes away first.

    Cancellation reaches the in-flight oracle call and any running async tool handlers.
    """
    task = asyncio.ensure_future(work)
    while True:
        done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL)
        if done:
            return task.result()
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling request")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise HTTPException(status_code=499, detail="Client disconnected")


@app.exception_handler(ToolLoopError)
async def tool_loop_error_handler(request: Request, exc: ToolLoopError) -> JSONResponse:
    """Map terminal loop errors onto HTTP status codes."""
    status = next(
        (code for err_type, code in _STATUS_CODES.items() if isinstance(exc, err_type)), 500
    )
    logger.warning("Request to %s failed (%d): %s", request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
async def create_session() -> SessionResponse:
    """Create a new conversation session."""
    session_id = get_or_create_session()
    return SessionResponse(session_id=session_id)


@app.get("/sessions", response_model=List[str], summary="List active sessions")
async def list_sessions() -> List[str]:
    """List all active session IDs."""
    return list(sessions.keys())


@app.post("/agent", response_model=MessageResponse, summary="Process a message")
async def agent_endpoint(
    req: MessageRequest,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    oracle: BaseOracle = Depends(get_oracle),
    registry: ToolRegistry = Depends(get_registry),
) -> MessageResponse:
    """Answer a user message, letting the oracle call tools on the caller's behalf."""
    session_id = get_or_create_session(req.session_id)
    history = sessions[session_id]

    context_values: Dict[str, Any] = {}
    if x_user_id is not None:
        context_values["user_id"] = x_user_id
    context = ExecutionContext(context_values)

    loop = ToolLoop(
        oracle,
        registry,
        max_rounds=settings.MAX_ROUNDS,
        temperature=settings.TEMPERATURE,
        max_tokens=settings.MAX_TOKENS,
        timeout=settings.ORACLE_TIMEOUT,
    )
    user_message = Message.user(req.message)
    result = await run_until_disconnect(
        request,
        loop.run(
            [*history, user_message],
            context,
            system_prompt=settings.SYSTEM_PROMPT or WEATHER_SYSTEM_PROMPT,
        ),
    )

    structured: Dict[str, Any] | None = None
    if req.structured:
        report = await run_until_disconnect(
            request,
            coerce_structured(
                result.content,
                WeatherReport,
                oracle,
                rules=WEATHER_FORMAT_RULES,
                temperature=settings.TEMPERATURE,
                max_tokens=settings.MAX_TOKENS,
                timeout=settings.ORACLE_TIMEOUT,
            ),
        )
        structured = report.model_dump()

    # Save the exchange to session history
    history.extend([user_message, Message.assistant(result.content)])

    return MessageResponse(
        reply=result.content,
        session_id=session_id,
        rounds=result.rounds,
        tool_calls=[ToolCallRecord(name=call.name, args=call.args) for call in result.tool_calls],
        structured=structured,
    )


@app.get("/", summary="API root")
async def root() -> dict[str, str]:
    """Return a simple welcome message."""
    return {"message": "Welcome to the toolloop API! Use /docs for API documentation."}


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting toolloop API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("Tools: %s", REGISTRY.names())

    colored_print(f"🔮 toolloop API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "toolloop.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m toolloop.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)

"""
Pydantic models for toolloop API requests and responses.
This module defines the request and response schemas used by the toolloop API.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str


class MessageRequest(BaseModel):
    """Incoming user message."""

    message: str = Field(..., min_length=1, description="User message")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")
    structured: bool = Field(False, description="Also return the answer as a weather report")


class ToolCallRecord(BaseModel):
    """A tool call executed while answering."""

    name: str
    args: Dict[str, Any] | str


class MessageResponse(BaseModel):
    """API response returned to the caller."""

    reply: str
    session_id: str
    rounds: int
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    structured: Dict[str, Any] | None = None

"""
Schema definitions for oracle <-> loop <-> tool messages.

These data models serve as the contract between the oracle (the remote language model), the
orchestration loop, and individual tools.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

import uuid
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    Field,
)


class Role(str, Enum):
    """Author of a message in the transcript."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolCall(BaseModel):
    """A call that the oracle wants the loop to execute."""

    id: str = Field(default_factory=_new_call_id, description="Correlates the call and its result")
    name: str = Field(..., description="Requested tool name (may not exist in the registry)")
    # A string here means the oracle sent arguments that were not valid JSON.
    args: Union[Dict[str, Any], str] = Field(
        default_factory=dict, description="Arguments claimed to satisfy the tool schema"
    )


class Message(BaseModel):
    """One entry of the ordered transcript sent to the oracle."""

    role: Role
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)  # assistant only
    tool_call_id: Optional[str] = None  # tool only
    name: Optional[str] = None  # tool only: originating tool
    is_error: bool = False  # tool only

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: List[ToolCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool_result(cls, call: ToolCall, content: str, is_error: bool = False) -> "Message":
        return cls(
            role=Role.TOOL,
            content=content,
            tool_call_id=call.id,
            name=call.name,
            is_error=is_error,
        )


class ToolSpec(BaseModel):
    """What the oracle sees of a tool.  Never carries the handler."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the input")


class OracleRequest(BaseModel):
    """Everything sent to the oracle for one round-trip."""

    messages: List[Message]
    tools: List[ToolSpec] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout: Optional[float] = Field(None, description="Seconds before the call fails")
    json_output: bool = False


class OracleReply(BaseModel):
    """Either a final message or one or more tool-call requests."""

    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


class LoopResult(BaseModel):
    """Outcome of a successful loop run."""

    content: str
    messages: List[Message]
    rounds: int
    tool_calls: List[ToolCall] = Field(default_factory=list)

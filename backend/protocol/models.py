"""Pydantic models for the peer-channel message protocol."""

import json
import time
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class MessageType(str, Enum):
    """The closed set of message types accepted on the peer channel."""
    COMMAND = "command"
    RESULT = "result"
    COMMAND_RECEIVED = "command_received"
    ERROR = "error"
    TOOLS_LIST = "tools_list"
    CLI_OUTPUT = "cli_output"
    CLI_COMMAND = "cli_command"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"


def now_ms() -> int:
    return int(time.time() * 1000)


class PeerMessage(BaseModel):
    """The wire unit exchanged over the peer channel."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: MessageType
    text: Optional[str] = None
    command: Optional[str] = None
    tool: Optional[str] = None
    data: Any = None
    id: Optional[str] = None
    timestamp: Optional[int] = None  # milliseconds since epoch
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    checksum: Optional[str] = None

    def to_wire(self) -> str:
        return json.dumps(
            self.model_dump(mode="json", by_alias=True, exclude_none=True),
            ensure_ascii=False,
        )


# --- Typed payloads (the `data` field, keyed by `type`) ---

class ToolCallData(BaseModel):
    name: str = Field(pattern=r"^[a-z_]{1,64}$")
    args: dict = Field(default_factory=dict)


class ToolResultData(BaseModel):
    ok: bool
    result: Any = None
    error: Optional[str] = None
    code: Optional[ErrorCode] = None


class ToolInfo(BaseModel):
    """An installed coding assistant the desktop can drive."""
    id: str
    name: str
    version: str = ""
    path: str = ""


class ToolsListData(BaseModel):
    tools: list[ToolInfo]


class ErrorData(BaseModel):
    message: str
    code: ErrorCode = ErrorCode.VALIDATION_ERROR


class DirectoryEntry(BaseModel):
    """One row of a list_directory result."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    is_directory: bool = Field(alias="isDirectory")
    path: str


PAYLOAD_ADAPTERS: dict[MessageType, TypeAdapter] = {
    MessageType.COMMAND: TypeAdapter(type(None)),
    MessageType.CLI_COMMAND: TypeAdapter(type(None)),
    MessageType.COMMAND_RECEIVED: TypeAdapter(type(None)),
    MessageType.RESULT: TypeAdapter(Any),
    MessageType.ERROR: TypeAdapter(Union[ErrorData, str]),
    MessageType.TOOLS_LIST: TypeAdapter(ToolsListData),
    MessageType.CLI_OUTPUT: TypeAdapter(str),
    MessageType.TOOL_CALL: TypeAdapter(ToolCallData),
    MessageType.TOOL_RESULT: TypeAdapter(ToolResultData),
}


def parse_payload(message: PeerMessage) -> Any:
    """
    Validate message.data against the shape registered for message.type.

    Raises pydantic.ValidationError if the payload does not match.
    """
    return PAYLOAD_ADAPTERS[message.type].validate_python(message.data)

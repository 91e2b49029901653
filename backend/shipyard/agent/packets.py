"""Normalized stream packets sent to the chat UI, and persisted transcript blocks.

Every packet is serialized as an SSE frame with `event: message` and a
`type` field that discriminates the packet.
"""

from enum import Enum
from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import Field


class StreamingType(Enum):
    """Packet type strings. Single source of truth for the `type` field."""

    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    TOOL_START = "tool_start"
    TOOL_STOP = "tool_stop"
    MESSAGE_COMPLETE = "message_complete"
    ERROR = "error"


class BaseObj(BaseModel):
    type: str = ""


class ContentBlockStart(BaseObj):
    type: Literal["content_block_start"] = StreamingType.CONTENT_BLOCK_START.value
    index: int = 0


class ContentBlockDelta(BaseObj):
    type: Literal["content_block_delta"] = StreamingType.CONTENT_BLOCK_DELTA.value
    delta_type: Literal["text_delta"] = "text_delta"
    text: str
    index: int = 0


class ContentBlockStop(BaseObj):
    type: Literal["content_block_stop"] = StreamingType.CONTENT_BLOCK_STOP.value
    index: int = 0


class ToolStart(BaseObj):
    type: Literal["tool_start"] = StreamingType.TOOL_START.value
    tool_name: str
    tool_input: Any = None
    tool_id: str


class ToolStop(BaseObj):
    type: Literal["tool_stop"] = StreamingType.TOOL_STOP.value
    tool_id: str
    tool_result: Any = None
    is_error: bool = False


class MessageComplete(BaseObj):
    type: Literal["message_complete"] = StreamingType.MESSAGE_COMPLETE.value


class StreamError(BaseObj):
    type: Literal["error"] = StreamingType.ERROR.value
    message: str


NormalizedEvent = Annotated[
    Union[
        ContentBlockStart,
        ContentBlockDelta,
        ContentBlockStop,
        ToolStart,
        ToolStop,
        MessageComplete,
        StreamError,
    ],
    Field(discriminator="type"),
]


def format_sse(packet: BaseObj) -> str:
    return f"event: message\ndata: {packet.model_dump_json()}\n\n"


################################################
# Persisted transcript blocks
################################################
class ToolStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ToolBlock(BaseModel):
    type: Literal["tool"] = "tool"
    name: str
    input: Any = None
    status: ToolStatus = ToolStatus.RUNNING
    result: Any = None


class ErrorBlock(BaseModel):
    type: Literal["error"] = "error"
    message: str


AssistantBlock = Annotated[
    Union[TextBlock, ToolBlock, ErrorBlock], Field(discriminator="type")
]

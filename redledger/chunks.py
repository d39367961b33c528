"""
Stream chunk vocabulary delivered by a transport for one assistant reply.

Every chunk carries a ``type`` tag; the union is closed so consumers can
dispatch with ``isinstance`` and treat anything else as a programming error.
"""
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from redledger.models import ToolCall


class ThinkingChunk(BaseModel):
    type: Literal["thinking"] = "thinking"
    content: str = ""


class TextChunk(BaseModel):
    type: Literal["text"] = "text"
    content: str = ""


class ToolCallChunk(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call: ToolCall


class ToolResultChunk(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call: ToolCall


class ErrorChunk(BaseModel):
    type: Literal["error"] = "error"
    message: str = "Streaming error"


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"


StreamChunk = Annotated[
    Union[ThinkingChunk, TextChunk, ToolCallChunk, ToolResultChunk, ErrorChunk, DoneChunk],
    Field(discriminator="type"),
]

ChunkType = Literal["thinking", "text", "tool_call", "tool_result", "error", "done"]

_stream_chunk = TypeAdapter(StreamChunk)


def parse_chunk(data: Any) -> StreamChunk:
    """Validate a raw mapping (or JSON string) into a typed chunk.

    Raises pydantic.ValidationError for unknown tags or malformed payloads.
    """
    if isinstance(data, (str, bytes)):
        return _stream_chunk.validate_json(data)
    return _stream_chunk.validate_python(data)

"""
Session-scoped accumulators for one streamed assistant reply.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from redledger.chunks import ChunkType
from redledger.models import ToolCall

# Inserted between thinking runs that were interrupted by other output
THINKING_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class BufferSnapshot:
    content: str
    thinking: str
    tool_calls: List[ToolCall]

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.thinking and not self.tool_calls


@dataclass
class AccumulationBuffers:
    content: str = ""
    thinking: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    last_chunk_type: Optional[ChunkType] = None

    def append_thinking(self, text: str) -> None:
        resumed = self.last_chunk_type is not None and self.last_chunk_type != "thinking"
        if resumed and text and self.thinking:
            self.thinking += THINKING_SEPARATOR
        self.thinking += text

    def append_text(self, text: str) -> None:
        self.content += text

    def add_tool_call(self, tool_call: ToolCall) -> ToolCall:
        """Record a call, stamping where it happened in the text so far."""
        stamped = tool_call.model_copy(update={"content_offset": len(self.content)})
        self.tool_calls = [*self.tool_calls, stamped]
        return stamped

    def apply_tool_result(self, result: ToolCall) -> bool:
        """Replace the matching call with its result, keeping the original offset.

        Results with no matching call are dropped. Returns whether a call matched.
        """
        for index, existing in enumerate(self.tool_calls):
            if existing.id == result.id:
                updated = result.model_copy(update={"content_offset": existing.content_offset})
                self.tool_calls = [*self.tool_calls[:index], updated, *self.tool_calls[index + 1:]]
                return True
        return False

    def snapshot(self) -> BufferSnapshot:
        return BufferSnapshot(
            content=self.content,
            thinking=self.thinking,
            tool_calls=list(self.tool_calls),
        )

    def reset(self) -> None:
        self.content = ""
        self.thinking = ""
        self.tool_calls = []
        self.last_chunk_type = None

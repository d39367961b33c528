"""
Pydantic models for conversations, messages and tool calls.
"""
import time
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, TypeAdapter

from redledger.titles import DEFAULT_CHAT_TITLE

ProviderName = Literal["anthropic", "openai", "openrouter", "ollama", "lmstudio"]
Role = Literal["user", "assistant"]
MessageStatus = Literal["streaming", "persisted", "failed"]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    # Length of the accumulated reply text when the call was emitted
    content_offset: Optional[int] = None


class Attachment(BaseModel):
    name: str
    content: str


class Message(BaseModel):
    id: str
    conversation_id: str
    role: Role
    content: str
    thinking: Optional[str] = None
    tool_calls: Optional[str] = None
    attachments: Optional[List[Attachment]] = None
    created_at: int
    timestamp: datetime
    # Client-side lifecycle only; never written to the database
    status: MessageStatus = "persisted"
    error: Optional[str] = None

    def parsed_tool_calls(self) -> List[ToolCall]:
        return parse_tool_calls(self.tool_calls)


class MessageCreate(BaseModel):
    conversation_id: str
    role: Role
    content: str
    thinking: Optional[str] = None
    tool_calls: Optional[str] = None
    attachments: Optional[List[Attachment]] = None


class Conversation(BaseModel):
    id: str
    title: str = DEFAULT_CHAT_TITLE
    provider: Optional[ProviderName] = None
    model: Optional[str] = None
    created_at: int
    updated_at: int
    workspace_path: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        """Provider and model are fixed once the first message is sent."""
        return self.provider is not None and self.model is not None


class ConversationUpdate(BaseModel):
    """Partial conversation update; only explicitly set fields are merged."""

    title: Optional[str] = None
    provider: Optional[ProviderName] = None
    model: Optional[str] = None
    workspace_path: Optional[str] = None


class ChatSettings(BaseModel):
    active_provider: ProviderName
    default_model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1, le=128000)
    workspace_path: Optional[str] = None


class RequestMessage(BaseModel):
    role: Role
    content: str
    timestamp: Optional[datetime] = None


class LLMRequest(BaseModel):
    conversation_id: str
    messages: List[RequestMessage]
    model: str
    provider: ProviderName
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


_tool_call_list = TypeAdapter(List[ToolCall])


def serialize_tool_calls(tool_calls: List[ToolCall]) -> Optional[str]:
    """JSON-encode tool calls for storage; None when there are none."""
    if not tool_calls:
        return None
    return _tool_call_list.dump_json(tool_calls).decode("utf-8")


def parse_tool_calls(raw: Optional[str]) -> List[ToolCall]:
    if not raw:
        return []
    return _tool_call_list.validate_json(raw)

"""
Transports deliver a reply as stream chunks to a callback.

``send_message(request, on_chunk)`` returns a cleanup callable; after it is
called no further chunks are delivered.
"""
import asyncio
import logging
import os
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from redledger.chunks import (
    DoneChunk,
    ErrorChunk,
    StreamChunk,
    TextChunk,
    ThinkingChunk,
    ToolCallChunk,
    ToolResultChunk,
)
from redledger.models import LLMRequest, ToolCall

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], None]
ChunkSource = Callable[[LLMRequest], AsyncIterator[StreamChunk]]


class Transport(Protocol):
    def send_message(self, request: LLMRequest, on_chunk: ChunkCallback) -> Callable[[], None]:
        ...


class AsyncIteratorTransport:
    """Pumps an async iterator of chunks into the callback on the running loop.

    A stream that ends without ``done`` gets one appended; a stream that
    raises is reported as an ``error`` chunk followed by ``done``.
    """

    def __init__(self, source: ChunkSource):
        self._source = source

    def send_message(self, request: LLMRequest, on_chunk: ChunkCallback) -> Callable[[], None]:
        task = asyncio.ensure_future(self._pump(request, on_chunk))

        def cleanup():
            if not task.done():
                task.cancel()

        return cleanup

    async def _pump(self, request: LLMRequest, on_chunk: ChunkCallback) -> None:
        try:
            async for chunk in self._source(request):
                on_chunk(chunk)
                if isinstance(chunk, DoneChunk):
                    return
        except asyncio.CancelledError:
            logger.debug("Stream for conversation %s cancelled", request.conversation_id[:8])
            raise
        except Exception as e:
            logger.exception("Stream failed for conversation %s", request.conversation_id[:8])
            on_chunk(ErrorChunk(message=f"Error communicating with provider: {e}"))
        on_chunk(DoneChunk())


SYSTEM_PROMPT = (
    "You are a helpful assistant embedded in a desktop chat application. "
    "Earlier turns of the conversation, if any, are provided inside a "
    "<history> block. Answer the final user message."
)

DISALLOWED_TOOLS = [
    "Task",
    "Bash",
    "Glob",
    "Grep",
    "Read",
    "Edit",
    "Write",
    "WebFetch",
    "WebSearch",
    "NotebookEdit",
    "Skill",
    "TodoWrite",
    "EnterPlanMode",
    "ExitPlanMode",
    "TaskOutput",
    "TaskStop",
]


def build_prompt(request: LLMRequest) -> str:
    """Render the request history into a single prompt for the SDK client."""
    if not request.messages:
        return ""

    *earlier, latest = request.messages
    lines: list[str] = []
    for msg in earlier:
        prefix = "User" if msg.role == "user" else "Assistant"
        if msg.timestamp is not None:
            lines.append(f"{prefix} [system: msg_timestamp={msg.timestamp.isoformat()}]: {msg.content}")
        else:
            lines.append(f"{prefix}: {msg.content}")

    prompt = latest.content
    if latest.timestamp is not None:
        prompt = f"[system: msg_timestamp={latest.timestamp.isoformat()}]\n\n{prompt}"
    if lines:
        prompt = "<history>\n" + "\n\n".join(lines) + "\n</history>\n\n" + prompt
    return prompt


class ClaudeTransport(AsyncIteratorTransport):
    """Streams replies from Claude through the Claude Agent SDK.

    A fresh SDK client is opened per request; conversation history travels
    in the prompt so the store stays the single source of truth.
    """

    def __init__(self, oauth_token: Optional[str] = None, max_turns: int = 20):
        super().__init__(self.stream)
        if oauth_token:
            os.environ["CLAUDE_CODE_OAUTH_TOKEN"] = oauth_token
        self.max_turns = max_turns

    def _options(self, request: LLMRequest) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=request.model,
            disallowed_tools=DISALLOWED_TOOLS,
            permission_mode="bypassPermissions",
            max_turns=self.max_turns,
            system_prompt=SYSTEM_PROMPT,
        )

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        if request.provider != "anthropic":
            yield ErrorChunk(message=f"Provider '{request.provider}' is not available in this build")
            yield DoneChunk()
            return

        # Results only carry the call id; remember what each call was
        pending_calls: Dict[str, ToolCall] = {}

        async with ClaudeSDKClient(options=self._options(request)) as client:
            await client.query(build_prompt(request))

            async for msg in client.receive_response():
                logger.debug("SDK message: type=%s", type(msg).__name__)

                if isinstance(msg, SystemMessage):
                    logger.debug("SystemMessage subtype=%s", msg.subtype)

                elif isinstance(msg, AssistantMessage):
                    for block in msg.content:
                        chunk = self._convert_block(block, pending_calls)
                        if chunk is not None:
                            yield chunk

                elif isinstance(msg, UserMessage):
                    # Tool results come back as UserMessage in the Claude API.
                    if isinstance(msg.content, list):
                        for block in msg.content:
                            chunk = self._convert_block(block, pending_calls)
                            if chunk is not None:
                                yield chunk

                elif isinstance(msg, ResultMessage):
                    logger.info(
                        "ResultMessage subtype=%s is_error=%s",
                        getattr(msg, "subtype", None),
                        msg.is_error,
                    )
                    if msg.is_error:
                        yield ErrorChunk(message=msg.result or "Unknown error")

        yield DoneChunk()

    @staticmethod
    def _convert_block(block: Any, pending_calls: Dict[str, ToolCall]) -> Optional[StreamChunk]:
        if isinstance(block, TextBlock):
            return TextChunk(content=block.text)
        if isinstance(block, ThinkingBlock):
            return ThinkingChunk(content=block.thinking)
        if isinstance(block, ToolUseBlock):
            call = ToolCall(id=block.id, name=block.name, arguments=block.input or {})
            pending_calls[block.id] = call
            return ToolCallChunk(tool_call=call)
        if isinstance(block, ToolResultBlock):
            call = pending_calls.get(block.tool_use_id)
            if call is None:
                logger.warning("Tool result for unknown call %s", block.tool_use_id)
                call = ToolCall(id=block.tool_use_id, name="unknown")
            result = {"content": block.content, "is_error": bool(block.is_error)}
            return ToolResultChunk(tool_call=call.model_copy(update={"result": result}))
        logger.debug("Ignoring block type=%s", type(block).__name__)
        return None

"""Tests for reply accumulation rules."""
from redledger.buffers import THINKING_SEPARATOR, AccumulationBuffers
from redledger.models import ToolCall


def test_thinking_separator_only_after_other_output():
    buffers = AccumulationBuffers()
    buffers.append_thinking("A")
    buffers.last_chunk_type = "thinking"
    buffers.append_thinking("B")
    assert buffers.thinking == "AB"

    buffers.last_chunk_type = "tool_call"
    buffers.append_thinking("C")
    assert buffers.thinking == "AB" + THINKING_SEPARATOR + "C"


def test_no_separator_for_first_thinking_or_empty_text():
    buffers = AccumulationBuffers()
    buffers.last_chunk_type = "text"
    buffers.append_thinking("A")
    assert buffers.thinking == "A"

    buffers.last_chunk_type = "error"
    buffers.append_thinking("")
    assert buffers.thinking == "A"


def test_tool_call_stamped_with_text_length():
    buffers = AccumulationBuffers()
    buffers.append_text("hello")
    stamped = buffers.add_tool_call(ToolCall(id="1", name="search", content_offset=42))

    assert stamped.content_offset == 5
    assert buffers.tool_calls == [stamped]


def test_tool_result_replaces_call_in_place():
    buffers = AccumulationBuffers()
    buffers.add_tool_call(ToolCall(id="1", name="a"))
    buffers.append_text("xy")
    buffers.add_tool_call(ToolCall(id="2", name="b"))

    matched = buffers.apply_tool_result(ToolCall(id="1", name="a", result={"ok": True}))

    assert matched
    assert [c.id for c in buffers.tool_calls] == ["1", "2"]
    assert buffers.tool_calls[0].result == {"ok": True}
    assert buffers.tool_calls[0].content_offset == 0
    assert buffers.tool_calls[1].content_offset == 2


def test_unmatched_tool_result_is_dropped():
    buffers = AccumulationBuffers()
    assert not buffers.apply_tool_result(ToolCall(id="ghost", name="a", result=1))
    assert buffers.tool_calls == []


def test_snapshot_is_detached_and_reports_emptiness():
    buffers = AccumulationBuffers()
    assert buffers.snapshot().is_empty

    buffers.add_tool_call(ToolCall(id="1", name="a"))
    snapshot = buffers.snapshot()
    buffers.reset()

    assert not snapshot.is_empty
    assert len(snapshot.tool_calls) == 1
    assert buffers.snapshot().is_empty
    assert buffers.last_chunk_type is None

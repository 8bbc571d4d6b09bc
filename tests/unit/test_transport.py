"""Unit tests for wire frames, StreamChannel and StreamAccumulator."""
import asyncio
import json

import pytest

from module_chat_events.transport import (
    DoneFrame,
    ErrorFrame,
    StreamAccumulator,
    StreamChannel,
    TextDeltaFrame,
    ToolExecutedFrame,
    accumulate,
    decode_frame,
    encode_frame,
    is_terminal,
)

from conftest import make_summary


class TestFrames:
    """Tests for frame encoding."""

    def test_text_delta_wire_format(self):
        assert encode_frame(TextDeltaFrame(content="Hel")) == (
            'data: {"type":"text_delta","content":"Hel"}\n\n'
        )

    def test_tool_executed_uses_camel_case(self):
        line = encode_frame(ToolExecutedFrame(
            tool_name="set_progress", refetch_events=True, event_type="module.progress"
        ))
        body = json.loads(line[len("data: "):])
        assert body == {
            "type": "tool_executed",
            "toolName": "set_progress",
            "refetchEvents": True,
            "eventType": "module.progress",
        }

    def test_done_frame_omits_missing_fields(self):
        body = json.loads(encode_frame(DoneFrame(progress=40))[len("data: "):])
        assert body == {"type": "done", "progress": 40, "complete": False}

    def test_done_frame_with_summary(self):
        frame = DoneFrame(
            message_id="01HX0000000000000000000000",
            event_seq=9,
            progress=100,
            complete=True,
            summary=make_summary(),
        )
        body = json.loads(encode_frame(frame)[len("data: "):])
        assert body["messageId"] == "01HX0000000000000000000000"
        assert body["eventSeq"] == 9
        assert body["summary"]["takeaway"] == make_summary().takeaway

    def test_decode_round_trips_each_frame_type(self):
        frames = [
            TextDeltaFrame(content="x"),
            ToolExecutedFrame(tool_name="complete_module", refetch_events=False),
            DoneFrame(event_seq=3),
            ErrorFrame(error="Please try again."),
        ]
        for frame in frames:
            assert decode_frame(encode_frame(frame)[len("data: "):].strip()) == frame

    def test_terminal_frames(self):
        assert is_terminal(DoneFrame())
        assert is_terminal(ErrorFrame(error="x"))
        assert not is_terminal(TextDeltaFrame(content="x"))


class TestStreamChannel:
    """Tests for the non-blocking push channel."""

    def test_frames_delivered_in_order_until_terminal(self):
        async def scenario():
            channel = StreamChannel()
            channel.publish(TextDeltaFrame(content="Hel"))
            channel.publish(TextDeltaFrame(content="lo"))
            channel.publish(DoneFrame())
            channel.publish(TextDeltaFrame(content="late"))
            return [frame async for frame in channel.frames()], channel

        frames, channel = asyncio.run(scenario())
        assert [f.type for f in frames] == ["text_delta", "text_delta", "done"]
        assert channel.closed
        assert channel.dropped == 1

    def test_full_buffer_drops_but_keeps_terminal(self):
        async def scenario():
            channel = StreamChannel(max_buffered=2)
            results = [channel.publish(TextDeltaFrame(content=str(i))) for i in range(4)]
            results.append(channel.publish(ErrorFrame(error="boom")))
            return results, [frame async for frame in channel.frames()], channel

        results, frames, channel = asyncio.run(scenario())
        assert results == [True, True, False, False, True]
        assert [getattr(f, "content", None) for f in frames] == ["1", None]
        assert isinstance(frames[-1], ErrorFrame)
        assert channel.dropped == 3

    def test_cancel_drops_everything(self):
        channel = StreamChannel()
        channel.publish(TextDeltaFrame(content="a"))
        channel.cancel()
        assert channel.cancelled
        assert channel.publish(DoneFrame()) is False

    def test_stream_yields_encoded_frames(self):
        async def scenario():
            channel = StreamChannel()
            channel.publish(TextDeltaFrame(content="Hi"))
            channel.publish(DoneFrame())
            return [chunk async for chunk in channel.stream()]

        chunks = asyncio.run(scenario())
        assert chunks[0] == 'data: {"type":"text_delta","content":"Hi"}\n\n'
        assert chunks[1].startswith('data: {"type":"done"')

    def test_invalid_buffer_size(self):
        with pytest.raises(ValueError):
            StreamChannel(max_buffered=0)


class TestStreamAccumulator:
    """Tests for the client-side stream parser."""

    def test_accumulates_text_across_split_chunks(self):
        wire = (
            encode_frame(TextDeltaFrame(content="Hel"))
            + encode_frame(TextDeltaFrame(content="lo"))
            + encode_frame(DoneFrame(event_seq=2))
        )
        chunks = [wire[i:i + 7] for i in range(0, len(wire), 7)]
        accumulator = accumulate(chunks)
        assert accumulator.text == "Hello"
        assert accumulator.finished
        assert isinstance(accumulator.terminal, DoneFrame)

    def test_utf8_split_inside_a_character(self):
        data = encode_frame(TextDeltaFrame(content="café ☕")).encode("utf-8")
        # Feed one byte at a time so multi-byte sequences are split
        accumulator = accumulate(data[i:i + 1] for i in range(len(data)))
        assert accumulator.text == "café ☕"

    def test_ignores_frames_after_terminal(self):
        wire = (
            encode_frame(TextDeltaFrame(content="a"))
            + encode_frame(ErrorFrame(error="Please try again."))
            + encode_frame(TextDeltaFrame(content="b"))
        )
        accumulator = StreamAccumulator()
        accumulator.feed(wire)
        assert accumulator.text == "a"
        assert accumulator.terminal.error == "Please try again."
        assert accumulator.feed(encode_frame(TextDeltaFrame(content="c"))) == []

    def test_skips_malformed_and_foreign_lines(self):
        wire = (
            ": keep-alive\n\n"
            "data: {not json}\n\n"
            'data: {"type":"mystery"}\n\n'
            + encode_frame(TextDeltaFrame(content="ok"))
        )
        accumulator = StreamAccumulator()
        accumulator.feed(wire)
        assert accumulator.text == "ok"
        assert accumulator.malformed_lines == 2
        assert not accumulator.finished

    def test_refetch_requested(self):
        accumulator = StreamAccumulator()
        accumulator.feed(encode_frame(ToolExecutedFrame(tool_name="x", refetch_events=False)))
        assert not accumulator.refetch_requested
        accumulator.feed(encode_frame(ToolExecutedFrame(tool_name="y", refetch_events=True)))
        assert accumulator.refetch_requested

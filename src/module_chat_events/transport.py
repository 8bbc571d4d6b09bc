"""Stream transport: wire frames, a non-blocking push channel, and a client parser.

Each frame travels as a server-sent-events line::

    data: {"type": "text_delta", "content": "Hel"}\\n\\n

``done`` and ``error`` frames terminate the stream. The transport is not
durable; a client that reconnects rebuilds its view from the event log.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Annotated, Any, AsyncIterator, FrozenSet, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from module_chat_events.conversation import ModuleSummary

logger = logging.getLogger("module_chat_events.transport")

DATA_PREFIX: str = "data: "

# ── Frames ───────────────────────────────────────────────────────────────────


class _Frame(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TextDeltaFrame(_Frame):
    """A fragment of assistant text, in generation order."""

    type: Literal["text_delta"] = "text_delta"
    content: str


class ToolExecutedFrame(_Frame):
    """A tool invocation was handled; refetch events when state changed."""

    type: Literal["tool_executed"] = "tool_executed"
    tool_name: str
    refetch_events: bool
    event_type: Optional[str] = None


class DoneFrame(_Frame):
    """Terminal frame of a successful turn."""

    type: Literal["done"] = "done"
    message_id: Optional[str] = None
    event_seq: Optional[int] = None
    progress: int = 0
    complete: bool = False
    summary: Optional[ModuleSummary] = None


class ErrorFrame(_Frame):
    """Terminal frame of a failed turn; ``error`` is safe to show users."""

    type: Literal["error"] = "error"
    error: str


StreamFrame = Annotated[
    Union[TextDeltaFrame, ToolExecutedFrame, DoneFrame, ErrorFrame],
    Field(discriminator="type"),
]

_FRAME_ADAPTER: TypeAdapter[Any] = TypeAdapter(StreamFrame)

TERMINAL_FRAME_TYPES: FrozenSet[str] = frozenset({"done", "error"})


def is_terminal(frame: _Frame) -> bool:
    return getattr(frame, "type", None) in TERMINAL_FRAME_TYPES


def encode_frame(frame: _Frame) -> str:
    """Render a frame as ``data: <JSON>\\n\\n`` with camelCase keys."""
    body = frame.model_dump_json(by_alias=True, exclude_none=True)
    return f"{DATA_PREFIX}{body}\n\n"


def decode_frame(data: Union[str, bytes]) -> Any:
    """Parse the JSON body of one ``data:`` line into its frame model."""
    return _FRAME_ADAPTER.validate_json(data)


# ── Server side ──────────────────────────────────────────────────────────────


class StreamChannel:
    """Single-subscriber, bounded, non-blocking frame channel for one turn.

    ``publish`` never waits: when the buffer is full ordinary frames are
    dropped, and a terminal frame evicts the oldest buffered frame so the
    subscriber always sees the end of the stream. After :meth:`cancel`
    (client went away) every frame is dropped.
    """

    def __init__(self, max_buffered: int = 256) -> None:
        if max_buffered < 1:
            raise ValueError(f"max_buffered must be ≥ 1, got {max_buffered}")
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=max_buffered)
        self._cancelled = False
        self._closed = False
        self.dropped = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, frame: _Frame) -> bool:
        """Offer a frame to the subscriber; returns False if it was dropped."""
        if self._cancelled or self._closed:
            self.dropped += 1
            return False
        terminal = is_terminal(frame)
        if self._queue.full():
            if not terminal:
                self.dropped += 1
                return False
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(frame)
        if terminal:
            self._closed = True
        return True

    def cancel(self) -> None:
        """Detach the subscriber; the producing turn keeps running."""
        if not self._cancelled:
            logger.info("Stream subscriber cancelled (%d frames dropped)", self.dropped)
        self._cancelled = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def frames(self) -> AsyncIterator[Any]:
        """Yield frames in order, ending after the terminal frame."""
        while True:
            frame = await self._queue.get()
            yield frame
            if is_terminal(frame):
                return

    async def stream(self) -> AsyncIterator[str]:
        """Yield encoded wire frames, suitable for an HTTP streaming body."""
        async for frame in self.frames():
            yield encode_frame(frame)


# ── Client side ──────────────────────────────────────────────────────────────


class StreamAccumulator:
    """Incremental parser for the wire stream, as a client consumes it.

    Feed raw chunks (split anywhere, even inside a UTF-8 sequence); complete
    ``data:`` lines are parsed, ``text_delta`` content is concatenated in
    order, and nothing after the first terminal frame is processed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._parts: List[str] = []
        self.frames: List[Any] = []
        self.terminal: Optional[Any] = None
        self.malformed_lines = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    @property
    def refetch_requested(self) -> bool:
        return any(
            isinstance(f, ToolExecutedFrame) and f.refetch_events for f in self.frames
        )

    def feed(self, chunk: Union[str, bytes]) -> List[Any]:
        """Consume a chunk; returns the frames completed by it."""
        if self.finished:
            return []
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        completed: List[Any] = []
        for line in lines:
            if not line.startswith(DATA_PREFIX):
                continue
            body = line[len(DATA_PREFIX):].strip()
            if not body:
                continue
            try:
                frame = decode_frame(body)
            except PydanticValidationError as exc:
                self.malformed_lines += 1
                logger.warning("Skipping malformed stream line: %s", exc)
                continue
            self.frames.append(frame)
            completed.append(frame)
            if isinstance(frame, TextDeltaFrame):
                self._parts.append(frame.content)
            elif is_terminal(frame):
                self.terminal = frame
                break
        return completed


def accumulate(chunks: Iterable[Union[str, bytes]]) -> StreamAccumulator:
    """Feed every chunk into a fresh accumulator and return it."""
    accumulator = StreamAccumulator()
    for chunk in chunks:
        accumulator.feed(chunk)
        if accumulator.finished:
            break
    return accumulator

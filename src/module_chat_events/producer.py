"""Model-output producer contract.

A producer is the black-box language-model call: given the transcript and the
declared tool set it yields content fragments and tool calls, and signals a
normal end with :class:`OutputComplete`. An iterator that stops without that
signal is treated by the turn processor as an abrupt termination.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Sequence, Union

logger = logging.getLogger("module_chat_events.producer")


@dataclass(frozen=True)
class ContentFragment:
    """A piece of assistant text, streamed as it is generated."""

    text: str


@dataclass(frozen=True)
class ToolCall:
    """A raw, unvalidated tool invocation emitted by the model."""

    name: str
    arguments: Any
    call_id: Optional[str] = None


@dataclass(frozen=True)
class OutputComplete:
    """Terminal signal: the model finished the turn normally."""

    stop_reason: str = "end_turn"


ModelOutputItem = Union[ContentFragment, ToolCall, OutputComplete]


class ModelOutputProducer(Protocol):
    """Callable returning an async iterator of model output items."""

    def __call__(
        self,
        transcript: Sequence[Mapping[str, str]],
        tools: Sequence[Mapping[str, Any]],
    ) -> AsyncIterator[ModelOutputItem]:
        ...


class FallbackProducer:
    """Use ``secondary`` when ``primary`` fails before yielding anything.

    Once the primary has produced output the turn is committed to it and its
    failures propagate unchanged.
    """

    def __init__(
        self, primary: ModelOutputProducer, secondary: ModelOutputProducer
    ) -> None:
        self._primary = primary
        self._secondary = secondary

    def __call__(
        self,
        transcript: Sequence[Mapping[str, str]],
        tools: Sequence[Mapping[str, Any]],
    ) -> AsyncIterator[ModelOutputItem]:
        return self._generate(transcript, tools)

    async def _generate(
        self,
        transcript: Sequence[Mapping[str, str]],
        tools: Sequence[Mapping[str, Any]],
    ) -> AsyncIterator[ModelOutputItem]:
        emitted = False
        try:
            async for item in self._primary(transcript, tools):
                emitted = True
                yield item
            return
        except Exception as exc:
            if emitted:
                raise
            logger.warning(
                "Primary producer failed before output, falling back: %s", exc
            )
        async for item in self._secondary(transcript, tools):
            yield item

"""Turn processing: drive one assistant turn from user message to done/error.

A turn moves ``idle -> generating -> {done | error}``. While generating, each
model output item is pushed live through a :class:`StreamChannel` and durable
effects are appended to the :class:`EventLog`. At most one turn is in flight
per session; the slot is released on every exit path, and a watchdog bounds
how long a silent producer can hold it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from module_chat_events.config import ProtocolSettings
from module_chat_events.conversation import (
    MESSAGE_ASSISTANT,
    MESSAGE_USER,
    MessagePayload,
)
from module_chat_events.error_log import ErrorLog
from module_chat_events.event_log import EventLog
from module_chat_events.models import (
    ConversationEvent,
    InvalidOptionError,
    ModuleChatEventsError,
    NotFoundError,
    ProtocolViolationError,
    StorageError,
    TurnInProgressError,
    ValidationError,
)
from module_chat_events.outcomes import OutcomeCoordinator
from module_chat_events.producer import (
    ContentFragment,
    ModelOutputProducer,
    OutputComplete,
    ToolCall,
)
from module_chat_events.progress import ProgressTracker
from module_chat_events.storage import InMemoryErrorStorage
from module_chat_events.tools import (
    TOOL_DECLARATIONS,
    AppendOutcomes,
    CompleteModule,
    SetProgress,
    parse_tool_invocation,
)
from module_chat_events.transport import (
    DoneFrame,
    ErrorFrame,
    StreamChannel,
    TextDeltaFrame,
    ToolExecutedFrame,
)

logger = logging.getLogger("module_chat_events.turns")

RETRY_MESSAGE: str = "Something went wrong generating the response. Please try again."
TIMEOUT_MESSAGE: str = "The response took too long. Please try again."
INTERRUPTED_MESSAGE: str = "The response was interrupted. Please try again."
STORAGE_MESSAGE: str = "We couldn't save your conversation. Please try again."
BUSY_MESSAGE: str = "A response is already being generated. Please wait for it to finish."
COMPLETE_MESSAGE: str = "This module is already complete."

# Tool failures that skip the invocation instead of failing the turn
_SKIPPABLE_TOOL_ERRORS = (
    ValidationError,
    ProtocolViolationError,
    NotFoundError,
    InvalidOptionError,
)


def _rejection_message(exc: ModuleChatEventsError) -> str:
    if isinstance(exc, TurnInProgressError):
        return BUSY_MESSAGE
    if isinstance(exc, ProtocolViolationError):
        return COMPLETE_MESSAGE
    return str(exc)


class TurnState(str, Enum):
    """Per-turn state machine."""

    IDLE = "idle"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ToolOutcome:
    """How one tool invocation of a turn was handled."""

    tool_name: str
    applied: bool
    events: Tuple[ConversationEvent, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class TurnResult:
    """Final record of a turn, returned after the terminal frame is sent."""

    session_id: str
    state: TurnState
    text: str
    user_event: ConversationEvent
    assistant_event: Optional[ConversationEvent] = None
    tool_outcomes: Tuple[ToolOutcome, ...] = ()
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class _Turn:
    session_id: str
    channel: StreamChannel
    user_event: Optional[ConversationEvent] = None
    streamed: List[str] = field(default_factory=list)
    uncommitted: List[str] = field(default_factory=list)
    assistant_events: List[ConversationEvent] = field(default_factory=list)
    tool_outcomes: List[ToolOutcome] = field(default_factory=list)


class TurnProcessor:
    """Runs assistant turns against a model output producer."""

    def __init__(
        self,
        event_log: EventLog,
        producer: ModelOutputProducer,
        *,
        outcomes: Optional[OutcomeCoordinator] = None,
        progress: Optional[ProgressTracker] = None,
        error_log: Optional[ErrorLog] = None,
        settings: Optional[ProtocolSettings] = None,
    ) -> None:
        self._log = event_log
        self._producer = producer
        self._settings = settings or ProtocolSettings()
        self._outcomes = outcomes or OutcomeCoordinator(event_log)
        self._progress = progress or ProgressTracker(event_log)
        self._error_log = error_log or ErrorLog(
            InMemoryErrorStorage(max_entries=self._settings.error_log_max_entries)
        )
        self._in_flight: Dict[str, TurnState] = {}

    @property
    def error_log(self) -> ErrorLog:
        return self._error_log

    def is_in_flight(self, session_id: str) -> bool:
        return session_id in self._in_flight

    def open_channel(self) -> StreamChannel:
        return StreamChannel(max_buffered=self._settings.transport_buffer_size)

    async def run_turn(
        self,
        session_id: str,
        user_text: str,
        channel: Optional[StreamChannel] = None,
    ) -> TurnResult:
        """Process one user message to a terminal done/error frame.

        Raises (before anything is streamed; a given ``channel`` still
        receives an ``error`` frame):
            ProtocolViolationError: The session is complete.
            TurnInProgressError: A turn is already generating for the session.
            ValidationError: ``user_text`` is empty.
            StorageError: The user message could not be appended.
        """
        try:
            self._admit(session_id, user_text)
        except ModuleChatEventsError as exc:
            logger.info("Rejected turn for session %s: %s", session_id, exc)
            if channel is not None:
                channel.publish(ErrorFrame(error=_rejection_message(exc)))
            raise

        self._in_flight[session_id] = TurnState.GENERATING
        turn = _Turn(session_id=session_id, channel=channel or self.open_channel())
        try:
            return await self._run(turn, user_text)
        finally:
            self._in_flight.pop(session_id, None)
            logger.debug("Released in-flight slot for session %s", session_id)

    def _admit(self, session_id: str, user_text: str) -> None:
        if not user_text or not user_text.strip():
            raise ValidationError("user message must not be empty")
        session = self._log.get_session(session_id)
        if session.is_complete:
            raise ProtocolViolationError(f"Session {session_id} is already complete")
        if session_id in self._in_flight:
            raise TurnInProgressError(f"A turn is already in flight for {session_id}")

    async def _run(self, turn: _Turn, user_text: str) -> TurnResult:
        try:
            turn.user_event = await self._log.append(
                turn.session_id,
                MESSAGE_USER,
                MessagePayload(role="user", content=user_text).to_wire(),
            )
        except ModuleChatEventsError as exc:
            turn.channel.publish(ErrorFrame(
                error=STORAGE_MESSAGE if exc.retryable else str(exc)
            ))
            raise

        state = await self._log.read_state(turn.session_id)
        logger.info(
            "Turn started in session %s (%d transcript messages)",
            turn.session_id, len(state.transcript),
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.turn_timeout_seconds
        iterator = self._producer(
            state.transcript_messages(), TOOL_DECLARATIONS
        ).__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                item = await asyncio.wait_for(
                    iterator.__anext__(),
                    timeout=min(remaining, self._settings.fragment_timeout_seconds),
                )
                if isinstance(item, ContentFragment):
                    self._on_fragment(turn, item)
                elif isinstance(item, ToolCall):
                    await self._on_tool_call(turn, item)
                elif isinstance(item, OutputComplete):
                    return await self._finish(turn)
                else:
                    logger.warning("Ignoring unknown producer item %r", item)
        except StopAsyncIteration:
            return self._abort(turn, INTERRUPTED_MESSAGE, "stream ended without completion")
        except asyncio.TimeoutError:
            return self._abort(turn, TIMEOUT_MESSAGE, "producer watchdog timeout")
        except StorageError as exc:
            return self._abort(turn, STORAGE_MESSAGE, str(exc), retryable=True)
        except Exception as exc:
            logger.warning(
                "Producer failed in session %s: %s", turn.session_id, exc, exc_info=True
            )
            return self._abort(turn, RETRY_MESSAGE, f"{type(exc).__name__}: {exc}")
        finally:
            await self._close(iterator)

    # -- Output items -------------------------------------------------------

    def _on_fragment(self, turn: _Turn, item: ContentFragment) -> None:
        if not item.text:
            return
        turn.streamed.append(item.text)
        turn.uncommitted.append(item.text)
        turn.channel.publish(TextDeltaFrame(content=item.text))

    async def _on_tool_call(self, turn: _Turn, item: ToolCall) -> None:
        try:
            invocation = parse_tool_invocation(item.name, item.arguments)
            events = await self._dispatch(turn, invocation)
        except _SKIPPABLE_TOOL_ERRORS as exc:
            logger.warning(
                "Skipping tool %s in session %s: %s", item.name, turn.session_id, exc
            )
            self._error_log.record(
                f"tool:{item.name}",
                str(exc),
                session_id=turn.session_id,
                resolution="skipped",
            )
            turn.tool_outcomes.append(
                ToolOutcome(tool_name=item.name, applied=False, error=str(exc))
            )
            turn.channel.publish(ToolExecutedFrame(tool_name=item.name, refetch_events=False))
            return

        turn.tool_outcomes.append(
            ToolOutcome(tool_name=item.name, applied=True, events=events)
        )
        turn.channel.publish(ToolExecutedFrame(
            tool_name=item.name,
            refetch_events=bool(events),
            event_type=events[-1].type if events else None,
        ))

    async def _dispatch(
        self,
        turn: _Turn,
        invocation: Union[AppendOutcomes, SetProgress, CompleteModule],
    ) -> Tuple[ConversationEvent, ...]:
        if isinstance(invocation, AppendOutcomes):
            event = await self._outcomes.present_outcomes(
                turn.session_id, invocation.outcome_options()
            )
            return (event,)
        if isinstance(invocation, SetProgress):
            update = await self._progress.set_progress(turn.session_id, invocation.percent)
            return (update.event,)
        if isinstance(invocation, CompleteModule):
            # Text written before completion belongs to the transcript
            committed = await self._commit_text(turn)
            result = await self._progress.complete_module(
                turn.session_id, invocation.summary
            )
            if result.already_complete:
                return committed
            return committed + (result.event,)
        raise TypeError(f"Unhandled tool invocation: {invocation!r}")

    async def _commit_text(self, turn: _Turn) -> Tuple[ConversationEvent, ...]:
        text = "".join(turn.uncommitted)
        turn.uncommitted.clear()
        if not text.strip():
            return ()
        try:
            event = await self._log.append(
                turn.session_id,
                MESSAGE_ASSISTANT,
                MessagePayload(role="assistant", content=text).to_wire(),
            )
        except ProtocolViolationError:
            logger.warning(
                "Dropping %d chars of assistant text after completion in session %s",
                len(text), turn.session_id,
            )
            return ()
        turn.assistant_events.append(event)
        return (event,)

    # -- Terminal transitions -----------------------------------------------

    async def _finish(self, turn: _Turn) -> TurnResult:
        await self._commit_text(turn)
        state = await self._log.read_state(turn.session_id)
        assistant_event = turn.assistant_events[-1] if turn.assistant_events else None
        turn.channel.publish(DoneFrame(
            message_id=assistant_event.event_id if assistant_event else None,
            event_seq=state.last_event_seq,
            progress=state.progress,
            complete=state.complete,
            summary=state.summary,
        ))
        self._in_flight[turn.session_id] = TurnState.DONE
        logger.info(
            "Turn done in session %s (%d chars, %d tools)",
            turn.session_id, len("".join(turn.streamed)), len(turn.tool_outcomes),
        )
        return self._result(turn, TurnState.DONE, assistant_event)

    def _abort(
        self,
        turn: _Turn,
        message: str,
        detail: str,
        *,
        retryable: bool = True,
    ) -> TurnResult:
        # Buffered text of the half-formed answer is discarded
        turn.uncommitted.clear()
        turn.channel.publish(ErrorFrame(error=message))
        self._in_flight[turn.session_id] = TurnState.ERROR
        self._error_log.record(
            "turn", detail, session_id=turn.session_id, resolution="aborted"
        )
        logger.warning("Turn failed in session %s: %s", turn.session_id, detail)
        return self._result(
            turn,
            TurnState.ERROR,
            turn.assistant_events[-1] if turn.assistant_events else None,
            error=message,
            retryable=retryable,
        )

    def _result(
        self,
        turn: _Turn,
        state: TurnState,
        assistant_event: Optional[ConversationEvent],
        *,
        error: Optional[str] = None,
        retryable: bool = False,
    ) -> TurnResult:
        if turn.user_event is None:
            raise RuntimeError("turn result requested before the user message was stored")
        return TurnResult(
            session_id=turn.session_id,
            state=state,
            text="".join(turn.streamed),
            user_event=turn.user_event,
            assistant_event=assistant_event,
            tool_outcomes=tuple(turn.tool_outcomes),
            error=error,
            retryable=retryable,
        )

    async def _close(self, iterator: Any) -> None:
        """Cooperatively stop the producer; failures here are only logged."""
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await asyncio.wait_for(
                aclose(), timeout=self._settings.fragment_timeout_seconds
            )
        except Exception as exc:
            logger.warning("Producer close failed: %s", exc, exc_info=True)

"""Request/response command surface over the event protocol.

Each command returns a frozen response model whose :meth:`to_wire` is the
camelCase JSON body an API layer sends back. Failures are library
exceptions; :func:`error_status` and :func:`error_body` translate them into
HTTP-equivalent status codes and user-facing bodies.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from module_chat_events.conversation import (
    ConversationAnomaly,
    ModuleSummary,
    OutcomeOption,
    OutcomeSet,
    TranscriptEntry,
)
from module_chat_events.event_log import EventLog
from module_chat_events.models import (
    ConflictError,
    ConversationEvent,
    InvalidOptionError,
    ModuleChatEventsError,
    NotFoundError,
    ProtocolViolationError,
    Session,
    StorageError,
    TurnInProgressError,
    ValidationError,
)
from module_chat_events.outcomes import DEV_TEST_OPTIONS, OutcomeCoordinator
from module_chat_events.progress import ProgressTracker

logger = logging.getLogger("module_chat_events.commands")

# Used by complete_module when the caller supplies no summary
PLACEHOLDER_SUMMARY: ModuleSummary = ModuleSummary(
    insights=("Module completed without a generated summary.",),
    assessment="Completed on request.",
    takeaway="Revisit the conversation for details.",
)

GENERIC_ERROR_MESSAGE: str = "Something went wrong. Please try again."
COMPLETE_ERROR_MESSAGE: str = "This module is already complete."


# ── Response Models ──────────────────────────────────────────────────────────


class _Response(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    success: bool = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PresentOutcomesResponse(_Response):
    event_seq: int
    options: Tuple[OutcomeOption, ...]
    events: Tuple[ConversationEvent, ...]


class SelectOutcomeResponse(_Response):
    transcript: Tuple[TranscriptEntry, ...]
    events: Tuple[ConversationEvent, ...]
    note: Optional[str] = None


class CompleteModuleResponse(_Response):
    complete: bool = True
    events: Tuple[ConversationEvent, ...]
    summary: ModuleSummary


class ReadStateResponse(_Response):
    """Folded projection used to re-render a session after refresh."""

    session_id: str
    module_number: Optional[int] = None
    transcript: Tuple[TranscriptEntry, ...]
    outcome_sets: Tuple[OutcomeSet, ...]
    pending_outcomes: Tuple[OutcomeSet, ...]
    progress: int
    complete: bool
    summary: Optional[ModuleSummary] = None
    last_event_seq: Optional[int] = None
    anomalies: Tuple[ConversationAnomaly, ...] = Field(default_factory=tuple)


# ── Commands ─────────────────────────────────────────────────────────────────


class ModuleChatCommands:
    """Non-streaming commands addressed by session id and module number."""

    def __init__(
        self,
        event_log: EventLog,
        *,
        outcomes: Optional[OutcomeCoordinator] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> None:
        self._log = event_log
        self._outcomes = outcomes or OutcomeCoordinator(event_log)
        self._progress = progress or ProgressTracker(event_log)

    def _session(self, session_id: str, module_number: Optional[int]) -> Session:
        session = self._log.get_session(session_id)
        if module_number is not None and session.module_number != module_number:
            raise NotFoundError(
                f"Session {session_id} does not belong to module {module_number}"
            )
        return session

    async def present_outcomes(
        self,
        session_id: str,
        module_number: Optional[int] = None,
        options: Optional[Sequence[Union[OutcomeOption, Mapping[str, Any]]]] = None,
    ) -> PresentOutcomesResponse:
        """Inject a structured outcomes event (the dev test options by default)."""
        self._session(session_id, module_number)
        event = await self._outcomes.present_outcomes(
            session_id, options if options is not None else DEV_TEST_OPTIONS
        )
        state = await self._log.read_state(session_id)
        outcome_set = state.outcome_set(event.event_seq)
        if outcome_set is None:
            raise NotFoundError(
                f"Outcomes event {event.event_seq} missing from session {session_id}"
            )
        return PresentOutcomesResponse(
            event_seq=event.event_seq,
            options=outcome_set.options,
            events=tuple(await self._log.list(session_id)),
        )

    async def select_outcome(
        self,
        session_id: str,
        module_number: Optional[int],
        event_seq: int,
        option_id: str,
    ) -> SelectOutcomeResponse:
        self._session(session_id, module_number)
        result = await self._outcomes.select_outcome(session_id, event_seq, option_id)
        state = await self._log.read_state(session_id)
        return SelectOutcomeResponse(
            transcript=state.transcript,
            events=tuple(await self._log.list(session_id)),
            note=result.note,
        )

    async def complete_module(
        self,
        session_id: str,
        module_number: Optional[int] = None,
        summary: Optional[Union[ModuleSummary, Mapping[str, Any]]] = None,
    ) -> CompleteModuleResponse:
        self._session(session_id, module_number)
        if summary is None:
            logger.info("Completing session %s with placeholder summary", session_id)
        result = await self._progress.complete_module(
            session_id, summary if summary is not None else PLACEHOLDER_SUMMARY
        )
        return CompleteModuleResponse(
            events=tuple(await self._log.list(session_id)),
            summary=result.summary,
        )

    async def read_state(
        self, session_id: str, module_number: Optional[int] = None
    ) -> ReadStateResponse:
        session = self._session(session_id, module_number)
        state = await self._log.read_state(session_id)
        return ReadStateResponse(
            session_id=session.session_id,
            module_number=session.module_number,
            transcript=state.transcript,
            outcome_sets=state.outcome_sets,
            pending_outcomes=state.pending_outcomes,
            progress=state.progress,
            complete=state.complete,
            summary=state.summary,
            last_event_seq=state.last_event_seq,
            anomalies=state.anomalies,
        )


# ── Error Mapping ────────────────────────────────────────────────────────────

_STATUS_BY_ERROR: Tuple[Tuple[type, int], ...] = (
    (ConflictError, 409),
    (NotFoundError, 404),
    (InvalidOptionError, 400),
    (ValidationError, 400),
    (ProtocolViolationError, 422),
    (TurnInProgressError, 429),
    (StorageError, 503),
)


def error_status(exc: BaseException) -> int:
    """HTTP-equivalent status code for an error raised by a command."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_body(exc: BaseException) -> Dict[str, Any]:
    """User-facing JSON body ``{success: false, error, kind}`` for an error."""
    if isinstance(exc, ConflictError):
        chosen = exc.selected_label or exc.selected_option_id
        return {
            "success": False,
            "error": f"You already chose \"{chosen}\".",
            "kind": exc.kind,
            "selectedOptionId": exc.selected_option_id,
        }
    if isinstance(exc, ProtocolViolationError):
        message = COMPLETE_ERROR_MESSAGE
    elif isinstance(exc, (NotFoundError, InvalidOptionError, ValidationError)):
        message = str(exc)
    else:
        message = GENERIC_ERROR_MESSAGE
    kind = exc.kind if isinstance(exc, ModuleChatEventsError) else "internal_error"
    return {"success": False, "error": message, "kind": kind}

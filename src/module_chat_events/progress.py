"""Monotonic progress signal and the terminal module completion transition."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from module_chat_events.conversation import (
    MAX_PROGRESS,
    MIN_PROGRESS,
    MODULE_COMPLETE,
    MODULE_PROGRESS,
    ModuleCompletePayload,
    ModuleSummary,
    ProgressPayload,
    reduce_conversation_events,
)
from module_chat_events.event_log import EventLog
from module_chat_events.models import ConversationEvent, ValidationError

logger = logging.getLogger("module_chat_events.progress")


@dataclass(frozen=True)
class ProgressUpdate:
    """A recorded progress report and the value clients are shown."""

    event: ConversationEvent
    raw_percent: int
    exposed_percent: int

    @property
    def clamped(self) -> bool:
        return self.exposed_percent != self.raw_percent


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of complete_module; ``event`` is the single module.complete."""

    summary: ModuleSummary
    event: ConversationEvent
    already_complete: bool = False


def coerce_summary(summary: Union[ModuleSummary, Mapping[str, Any]]) -> ModuleSummary:
    """Validate a summary, raising the library ValidationError."""
    if isinstance(summary, ModuleSummary):
        return summary
    try:
        return ModuleSummary.model_validate(summary)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid module summary: {exc}") from exc


class ProgressTracker:
    """Appends progress and completion events for a session."""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    async def set_progress(self, session_id: str, percent: int) -> ProgressUpdate:
        """Record ``percent`` and return the exposed (never regressing) value.

        Backward updates are stored as sent but exposed as the previous
        maximum.

        Raises:
            ValidationError: percent is not an integer in [5, 100].
        """
        if isinstance(percent, bool) or not isinstance(percent, int):
            raise ValidationError(f"percent must be an integer, got {percent!r}")
        if not MIN_PROGRESS <= percent <= MAX_PROGRESS:
            raise ValidationError(
                f"percent must be within [{MIN_PROGRESS}, {MAX_PROGRESS}], "
                f"got {percent}"
            )

        async with self._log.session_lock(session_id):
            previous = reduce_conversation_events(
                self._log.events_locked(session_id)
            ).progress
            event = self._log.append_locked(
                session_id, MODULE_PROGRESS, ProgressPayload(percent=percent).to_wire()
            )

        exposed = max(percent, previous)
        if exposed != percent:
            logger.info(
                "Progress %d in session %s is below %d; exposing %d",
                percent, session_id, previous, exposed,
            )
        return ProgressUpdate(event=event, raw_percent=percent, exposed_percent=exposed)

    async def current_progress(self, session_id: str) -> int:
        return (await self._log.read_state(session_id)).progress

    async def complete_module(
        self,
        session_id: str,
        summary: Union[ModuleSummary, Mapping[str, Any]],
    ) -> CompletionResult:
        """Finalize the module with ``summary``.

        Idempotent: when the module is already complete the existing summary
        and event are returned and nothing is appended.

        Raises:
            ValidationError: Empty insights, assessment or takeaway.
        """
        validated = coerce_summary(summary)

        async with self._log.session_lock(session_id):
            events = self._log.events_locked(session_id)
            state = reduce_conversation_events(events)
            existing: Optional[ConversationEvent] = next(
                (e for e in events if e.type == MODULE_COMPLETE), None
            )
            if state.complete and state.summary is not None and existing is not None:
                logger.info("Session %s already complete; returning summary", session_id)
                return CompletionResult(
                    summary=state.summary, event=existing, already_complete=True
                )
            event = self._log.append_locked(
                session_id,
                MODULE_COMPLETE,
                ModuleCompletePayload(summary=validated).to_wire(),
            )

        logger.info(
            "Completed session %s at seq=%d with %d insights",
            session_id, event.event_seq, len(validated.insights),
        )
        return CompletionResult(summary=validated, event=event)

"""Structured outcome presentation and exactly-once selection."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from module_chat_events.conversation import (
    MESSAGE_USER,
    OUTCOME_SELECTED,
    STRUCTURED_OUTCOMES_ADDED,
    MessagePayload,
    OutcomeOption,
    OutcomeSelectedPayload,
    StructuredOutcomesAddedPayload,
    reduce_conversation_events,
)
from module_chat_events.event_log import EventLog
from module_chat_events.models import (
    ConflictError,
    ConversationEvent,
    InvalidOptionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger("module_chat_events.outcomes")

REPLAY_NOTE: str = "idempotent replay"

# Options injected by the present-outcomes command when none are supplied
DEV_TEST_OPTIONS: Tuple[OutcomeOption, ...] = (
    OutcomeOption(
        id="mod_opt_1",
        label="Let's go deeper on this",
        value="I'd like to explore this more deeply.",
    ),
    OutcomeOption(
        id="mod_opt_2",
        label="Move on",
        value="I'm ready to move on to the next topic.",
    ),
)


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of select_outcome.

    On replay ``selection_event`` is the previously recorded selection and
    ``message_event`` is None.
    """

    selection_event: ConversationEvent
    message_event: Optional[ConversationEvent]
    option: OutcomeOption
    replayed: bool = False

    @property
    def note(self) -> Optional[str]:
        return REPLAY_NOTE if self.replayed else None


class OutcomeCoordinator:
    """Presents structured choices and resolves each of them exactly once."""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    async def present_outcomes(
        self,
        session_id: str,
        options: Sequence[Union[OutcomeOption, Mapping[str, Any]]],
    ) -> ConversationEvent:
        """Append a structured outcomes event; its event_seq is the handle.

        Raises:
            ValidationError: Empty options or duplicate option ids.
            ProtocolViolationError: The session is complete.
        """
        if not options:
            raise ValidationError("options must not be empty")
        try:
            payload = StructuredOutcomesAddedPayload(options=tuple(
                o if isinstance(o, OutcomeOption) else OutcomeOption.model_validate(o)
                for o in options
            ))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid outcome options: {exc}") from exc

        event = await self._log.append(
            session_id, STRUCTURED_OUTCOMES_ADDED, payload.to_wire()
        )
        logger.info(
            "Presented %d outcomes in session %s at seq=%d",
            len(payload.options), session_id, event.event_seq,
        )
        return event

    async def select_outcome(
        self, session_id: str, outcomes_event_seq: int, option_id: str
    ) -> SelectionResult:
        """Resolve an outcomes event.

        The read of prior selections and the append happen under the session
        lock, so of two concurrent distinct selections exactly one is
        recorded and the other observes it.

        Raises:
            NotFoundError: ``outcomes_event_seq`` is not a structured
                outcomes event of this session.
            InvalidOptionError: ``option_id`` was not offered.
            ConflictError: A different option was already chosen.
            ProtocolViolationError: No prior selection and the session is
                complete.
        """
        async with self._log.session_lock(session_id):
            events = self._log.events_locked(session_id)
            state = reduce_conversation_events(events)

            outcome_set = state.outcome_set(outcomes_event_seq)
            if outcome_set is None:
                raise NotFoundError(
                    f"No structured outcomes event with eventSeq "
                    f"{outcomes_event_seq} in session {session_id}"
                )

            option = outcome_set.option(option_id)
            if option is None:
                raise InvalidOptionError(
                    f"Option {option_id!r} is not offered by outcomes "
                    f"event {outcomes_event_seq}"
                )

            if outcome_set.selected_option_id is not None:
                if outcome_set.selected_option_id == option_id:
                    logger.info(
                        "Replayed selection %s for outcomes seq=%d in session %s",
                        option_id, outcomes_event_seq, session_id,
                    )
                    prior = next(
                        e for e in events
                        if e.event_seq == outcome_set.selection_event_seq
                    )
                    return SelectionResult(
                        selection_event=prior,
                        message_event=None,
                        option=option,
                        replayed=True,
                    )
                chosen = outcome_set.option(outcome_set.selected_option_id)
                logger.warning(
                    "Rejected selection %s for outcomes seq=%d in session %s: "
                    "already chose %s",
                    option_id, outcomes_event_seq, session_id,
                    outcome_set.selected_option_id,
                )
                raise ConflictError(
                    outcomes_event_seq,
                    outcome_set.selected_option_id,
                    option_id,
                    selected_label=chosen.label if chosen else None,
                )

            # The selection and its transcript message are stored together or not at all
            selection_event, message_event = self._log.append_many_locked(
                session_id,
                [
                    (
                        OUTCOME_SELECTED,
                        OutcomeSelectedPayload(
                            outcomes_event_seq=outcomes_event_seq,
                            option_id=option_id,
                            value=option.value,
                        ).to_wire(),
                    ),
                    (
                        MESSAGE_USER,
                        MessagePayload(role="user", content=option.value).to_wire(),
                    ),
                ],
            )

        logger.info(
            "Selected %s for outcomes seq=%d in session %s",
            option_id, outcomes_event_seq, session_id,
        )
        return SelectionResult(
            selection_event=selection_event,
            message_event=message_event,
            option=option,
        )

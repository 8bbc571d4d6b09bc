"""Conversation Event Contracts domain module.

Provides event kind constants, typed payload models, the
ReducedConversationState output model, and a deterministic reducer that
rebuilds every derived view (transcript, outcomes, progress, completion)
from a session's event log.

Sections:
    1. Event Kind Constants
    2. Payload Models
    3. Anomaly Model
    4. Reducer Output Models
    5. Reducer
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from module_chat_events.models import ConversationEvent

# ── Section 1: Event Kind Constants ──────────────────────────────────────────

MESSAGE_USER: str = "message.user"
MESSAGE_ASSISTANT: str = "message.assistant"
STRUCTURED_OUTCOMES_ADDED: str = "module.structured_outcomes_added"
OUTCOME_SELECTED: str = "module.outcome_selected"
MODULE_PROGRESS: str = "module.progress"
MODULE_COMPLETE: str = "module.complete"

CONVERSATION_EVENT_TYPES: FrozenSet[str] = frozenset({
    MESSAGE_USER,
    MESSAGE_ASSISTANT,
    STRUCTURED_OUTCOMES_ADDED,
    OUTCOME_SELECTED,
    MODULE_PROGRESS,
    MODULE_COMPLETE,
})

# Kinds that may no longer be appended once module.complete exists
CLOSED_AFTER_COMPLETE: FrozenSet[str] = frozenset({
    MESSAGE_USER,
    MESSAGE_ASSISTANT,
    STRUCTURED_OUTCOMES_ADDED,
    OUTCOME_SELECTED,
    MODULE_COMPLETE,
})

MIN_PROGRESS: int = 5
MAX_PROGRESS: int = 100

# ── Section 2: Payload Models ────────────────────────────────────────────────


class _WireModel(BaseModel):
    """Frozen model that reads snake_case or camelCase and writes camelCase."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class MessagePayload(_WireModel):
    """Payload for message.user and message.assistant events."""

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class OutcomeOption(_WireModel):
    """One clickable choice inside a structured outcomes event.

    ``value`` is the text that enters the transcript when the option is
    chosen; it defaults to ``label``.
    """

    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _default_value_to_label(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get("value") and data.get("label"):
            return {**data, "value": data["label"]}
        return data


class StructuredOutcomesAddedPayload(_WireModel):
    """Payload for module.structured_outcomes_added events."""

    options: Tuple[OutcomeOption, ...] = Field(..., min_length=1)

    @field_validator("options")
    @classmethod
    def _unique_option_ids(
        cls, v: Tuple[OutcomeOption, ...]
    ) -> Tuple[OutcomeOption, ...]:
        seen: set[str] = set()
        for option in v:
            if option.id in seen:
                raise ValueError(f"Duplicate option id: {option.id!r}")
            seen.add(option.id)
        return v

    def option(self, option_id: str) -> Optional[OutcomeOption]:
        for candidate in self.options:
            if candidate.id == option_id:
                return candidate
        return None


class OutcomeSelectedPayload(_WireModel):
    """Payload for module.outcome_selected events.

    ``eventSeq`` on the wire references the structured outcomes event being
    resolved, not this event.
    """

    outcomes_event_seq: int = Field(..., ge=1, alias="eventSeq")
    option_id: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)


class ProgressPayload(_WireModel):
    """Payload for module.progress events (raw, unclamped value)."""

    percent: int = Field(..., ge=MIN_PROGRESS, le=MAX_PROGRESS)


class ModuleSummary(_WireModel):
    """Structured summary finalized by module completion."""

    insights: Tuple[str, ...] = Field(..., min_length=1)
    assessment: str = Field(..., min_length=1)
    takeaway: str = Field(..., min_length=1)

    @field_validator("insights")
    @classmethod
    def _non_blank_insights(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if any(not item.strip() for item in v):
            raise ValueError("insights must not contain blank entries")
        return v

    @field_validator("assessment", "takeaway")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class ModuleCompletePayload(_WireModel):
    """Payload for module.complete events."""

    summary: ModuleSummary


ConversationPayload = Union[
    MessagePayload,
    StructuredOutcomesAddedPayload,
    OutcomeSelectedPayload,
    ProgressPayload,
    ModuleCompletePayload,
]

_EVENT_TO_PAYLOAD: Dict[str, type[ConversationPayload]] = {
    MESSAGE_USER: MessagePayload,
    MESSAGE_ASSISTANT: MessagePayload,
    STRUCTURED_OUTCOMES_ADDED: StructuredOutcomesAddedPayload,
    OUTCOME_SELECTED: OutcomeSelectedPayload,
    MODULE_PROGRESS: ProgressPayload,
    MODULE_COMPLETE: ModuleCompletePayload,
}

_MESSAGE_ROLES: Dict[str, str] = {
    MESSAGE_USER: "user",
    MESSAGE_ASSISTANT: "assistant",
}


def payload_model_for(event_type: str) -> Optional[type[ConversationPayload]]:
    """Return the payload model registered for an event kind, if any."""
    return _EVENT_TO_PAYLOAD.get(event_type)


# ── Section 3: Anomaly Model ─────────────────────────────────────────────────


class ConversationAnomaly(_WireModel):
    """Non-fatal issue recorded during conversation reduction.

    Valid kind values: "sequence_gap", "unknown_event_type",
    "malformed_payload", "event_after_complete", "duplicate_complete",
    "unknown_outcomes_reference", "invalid_option", "conflicting_selection",
    "duplicate_selection".
    """

    kind: str
    event_seq: int
    message: str


# ── Section 4: Reducer Output Models ─────────────────────────────────────────


class TranscriptEntry(_WireModel):
    """A single transcript message with the event that recorded it."""

    role: Literal["user", "assistant"]
    content: str
    event_seq: int


class OutcomeSet(_WireModel):
    """A presented structured outcomes event and its resolution, if any."""

    event_seq: int
    options: Tuple[OutcomeOption, ...]
    selected_option_id: Optional[str] = None
    selection_event_seq: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.selected_option_id is None

    def option(self, option_id: str) -> Optional[OutcomeOption]:
        for candidate in self.options:
            if candidate.id == option_id:
                return candidate
        return None


class ReducedConversationState(_WireModel):
    """Deterministic projection output of reduce_conversation_events()."""

    transcript: Tuple[TranscriptEntry, ...] = ()
    outcome_sets: Tuple[OutcomeSet, ...] = ()
    progress: int = Field(0, description="Exposed (never regressing) progress")
    progress_history: Tuple[int, ...] = Field(
        default_factory=tuple,
        description="Exposed progress after each module.progress event",
    )
    complete: bool = False
    summary: Optional[ModuleSummary] = None
    anomalies: Tuple[ConversationAnomaly, ...] = ()
    event_count: int = 0
    last_event_seq: Optional[int] = None

    @property
    def pending_outcomes(self) -> Tuple[OutcomeSet, ...]:
        return tuple(o for o in self.outcome_sets if o.is_pending)

    def outcome_set(self, event_seq: int) -> Optional[OutcomeSet]:
        for candidate in self.outcome_sets:
            if candidate.event_seq == event_seq:
                return candidate
        return None

    def transcript_messages(self) -> List[Dict[str, str]]:
        """Transcript as role/content dicts, the shape model producers take."""
        return [{"role": e.role, "content": e.content} for e in self.transcript]


# ── Section 5: Reducer ───────────────────────────────────────────────────────


def conversation_event_sort_key(event: ConversationEvent) -> Tuple[int, str]:
    """Sort key: event_seq, with event_id as a deterministic tie-breaker."""
    return (event.event_seq, event.event_id)


def dedup_events(events: Sequence[ConversationEvent]) -> List[ConversationEvent]:
    """Drop events whose event_seq was already seen (first occurrence wins)."""
    seen: set[int] = set()
    unique: List[ConversationEvent] = []
    for event in events:
        if event.event_seq in seen:
            continue
        seen.add(event.event_seq)
        unique.append(event)
    return unique


def reduce_conversation_events(
    events: Sequence[ConversationEvent],
) -> ReducedConversationState:
    """Deterministic reducer: Sequence[ConversationEvent] -> ReducedConversationState.

    Pipeline: sort -> dedup -> fold -> freeze.

    Fold rules:
      message.*                    -> transcript entry
      structured_outcomes_added    -> new pending outcome set
      outcome_selected             -> resolves its outcome set; first choice is permanent
      module.progress              -> exposed progress = max(previous, percent)
      module.complete              -> terminal; later message/outcome/complete events
                                      are recorded as anomalies and ignored

    Pure function. No I/O. Any permutation of the same events yields the
    same state.
    """
    # Step 1: Sort for determinism
    sorted_events = sorted(events, key=conversation_event_sort_key)

    # Step 2: Deduplicate by event_seq
    deduped = dedup_events(sorted_events)

    # Step 3: Mutable accumulator for fold
    anomalies: List[ConversationAnomaly] = []
    transcript: List[TranscriptEntry] = []
    outcome_sets: Dict[int, OutcomeSet] = {}
    progress = 0
    progress_history: List[int] = []
    complete = False
    summary: Optional[ModuleSummary] = None
    previous_seq: Optional[int] = None

    for event in deduped:
        seq = event.event_seq

        if previous_seq is not None and seq != previous_seq + 1:
            anomalies.append(ConversationAnomaly(
                kind="sequence_gap",
                event_seq=seq,
                message=f"Expected eventSeq {previous_seq + 1}, got {seq}",
            ))
        previous_seq = seq

        payload_cls = _EVENT_TO_PAYLOAD.get(event.type)
        if payload_cls is None:
            anomalies.append(ConversationAnomaly(
                kind="unknown_event_type",
                event_seq=seq,
                message=f"Unknown event type: {event.type!r}",
            ))
            continue

        if complete and event.type in CLOSED_AFTER_COMPLETE:
            anomalies.append(ConversationAnomaly(
                kind=(
                    "duplicate_complete"
                    if event.type == MODULE_COMPLETE
                    else "event_after_complete"
                ),
                event_seq=seq,
                message=f"Event {event.type!r} arrived after module.complete",
            ))
            continue

        try:
            payload = payload_cls.model_validate(event.payload)
        except PydanticValidationError as exc:
            anomalies.append(ConversationAnomaly(
                kind="malformed_payload",
                event_seq=seq,
                message=f"Payload validation failed for {event.type!r}: {exc}",
            ))
            continue

        if isinstance(payload, MessagePayload):
            if payload.role != _MESSAGE_ROLES[event.type]:
                anomalies.append(ConversationAnomaly(
                    kind="malformed_payload",
                    event_seq=seq,
                    message=f"Role {payload.role!r} does not match {event.type!r}",
                ))
                continue
            transcript.append(TranscriptEntry(
                role=payload.role, content=payload.content, event_seq=seq,
            ))

        elif isinstance(payload, StructuredOutcomesAddedPayload):
            outcome_sets[seq] = OutcomeSet(event_seq=seq, options=payload.options)

        elif isinstance(payload, OutcomeSelectedPayload):
            target = outcome_sets.get(payload.outcomes_event_seq)
            if target is None:
                anomalies.append(ConversationAnomaly(
                    kind="unknown_outcomes_reference",
                    event_seq=seq,
                    message=(
                        f"Selection references eventSeq "
                        f"{payload.outcomes_event_seq}, which is not a "
                        f"structured outcomes event"
                    ),
                ))
                continue
            if target.option(payload.option_id) is None:
                anomalies.append(ConversationAnomaly(
                    kind="invalid_option",
                    event_seq=seq,
                    message=f"Option {payload.option_id!r} not offered",
                ))
                continue
            if target.selected_option_id is None:
                outcome_sets[target.event_seq] = target.model_copy(update={
                    "selected_option_id": payload.option_id,
                    "selection_event_seq": seq,
                })
            elif target.selected_option_id != payload.option_id:
                anomalies.append(ConversationAnomaly(
                    kind="conflicting_selection",
                    event_seq=seq,
                    message=(
                        f"Outcomes {target.event_seq} already resolved with "
                        f"{target.selected_option_id!r} (first choice kept)"
                    ),
                ))
            else:
                anomalies.append(ConversationAnomaly(
                    kind="duplicate_selection",
                    event_seq=seq,
                    message=f"Outcomes {target.event_seq} selected twice",
                ))

        elif isinstance(payload, ProgressPayload):
            progress = max(progress, payload.percent)
            progress_history.append(progress)

        elif isinstance(payload, ModuleCompletePayload):
            complete = True
            summary = payload.summary

    # Step 4: Freeze and return
    return ReducedConversationState(
        transcript=tuple(transcript),
        outcome_sets=tuple(outcome_sets[k] for k in sorted(outcome_sets)),
        progress=progress,
        progress_history=tuple(progress_history),
        complete=complete,
        summary=summary,
        anomalies=tuple(anomalies),
        event_count=len(deduped),
        last_event_seq=previous_seq,
    )

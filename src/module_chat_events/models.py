"""Core data models for module-chat-events library."""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone

# ULIDs are 26 characters of Crockford base32
_ULID_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def utc_now() -> datetime:
    """Timezone-aware current time used for event and session timestamps."""
    return datetime.now(timezone.utc)


class SessionPhase(str, Enum):
    """Lifecycle phase of a conversation session."""

    ACTIVE = "active"
    COMPLETE = "complete"


class Session(BaseModel):
    """One module (or interview) conversation instance."""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(
        ...,
        min_length=1,
        description="Unique session identifier (ULID)"
    )
    subject_id: str = Field(
        ...,
        min_length=1,
        description="Owner of the session"
    )
    module_number: Optional[int] = Field(
        None,
        ge=1,
        description="Coaching module number (None for the interview)"
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        description="When the session was first entered"
    )
    phase: SessionPhase = Field(
        default=SessionPhase.ACTIVE,
        description="active until module.complete is appended"
    )

    @property
    def is_complete(self) -> bool:
        return self.phase == SessionPhase.COMPLETE

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"Session(session_id={self.session_id[:8]}..., "
            f"subject={self.subject_id}, "
            f"module={self.module_number}, "
            f"phase={self.phase.value})"
        )


class ConversationEvent(BaseModel):
    """Immutable record in a session's append-only event log."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_seq: int = Field(
        ...,
        ge=1,
        alias="eventSeq",
        description="Per-session, strictly increasing, gap-free sequence number"
    )
    event_id: str = Field(
        ...,
        min_length=26,
        max_length=26,
        alias="eventId",
        description="Globally unique event identifier (ULID)",
        json_schema_extra={"pattern": _ULID_PATTERN},
    )
    session_id: str = Field(
        ...,
        min_length=1,
        alias="sessionId",
        description="Session this event belongs to"
    )
    type: str = Field(
        ...,
        min_length=1,
        description="Event kind (e.g., 'message.user', 'module.progress')"
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific data"
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        alias="createdAt",
        description="Wall-clock append time (not used for ordering)"
    )

    @field_validator("event_id", mode="before")
    @classmethod
    def _normalize_event_id(cls, v: object) -> object:
        if isinstance(v, str):
            return v.upper()
        return v

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"ConversationEvent(seq={self.event_seq}, "
            f"type={self.type}, "
            f"session={self.session_id[:8]}...)"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to its camelCase wire dictionary."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationEvent":
        """Deserialize event from a wire or storage dictionary."""
        return cls.model_validate(data)


class ErrorEntry(BaseModel):
    """Record of a failed action, kept for diagnosis of turn failures."""

    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the error occurred"
    )
    session_id: Optional[str] = Field(
        None,
        description="Session the failed action belonged to"
    )
    action_attempted: str = Field(
        ...,
        min_length=1,
        description="What was attempted (e.g., 'tool:set_progress')"
    )
    error_message: str = Field(
        ...,
        min_length=1,
        description="Error output or exception message"
    )
    resolution: str = Field(
        default="",
        description="How the error was handled (e.g., 'skipped')"
    )

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"ErrorEntry(timestamp={self.timestamp.isoformat()}, "
            f"action={self.action_attempted[:30]}..., "
            f"resolution={self.resolution or 'unresolved'})"
        )


# Custom Exceptions
class ModuleChatEventsError(Exception):
    """Base exception for all library errors."""

    # Stable identifier exposed to clients alongside the message
    kind: str = "error"
    retryable: bool = False


class StorageError(ModuleChatEventsError):
    """Storage adapter failure. Nothing was persisted; safe to retry."""

    kind = "storage_unavailable"
    retryable = True


class ValidationError(ModuleChatEventsError):
    """Payload, tool arguments or command input failed validation."""

    kind = "validation_error"


class NotFoundError(ModuleChatEventsError):
    """Session or referenced event does not exist."""

    kind = "not_found"


class InvalidOptionError(ModuleChatEventsError):
    """Selected option id is not part of the referenced outcomes event."""

    kind = "invalid_option"


class ProtocolViolationError(ModuleChatEventsError):
    """Operation not permitted in the session's current state."""

    kind = "protocol_violation"


class TurnInProgressError(ModuleChatEventsError):
    """Another turn is already generating for this session."""

    kind = "turn_in_progress"
    retryable = True


class ConflictError(ModuleChatEventsError):
    """A different option was already chosen for this outcomes event."""

    kind = "conflict"

    def __init__(
        self,
        outcomes_event_seq: int,
        selected_option_id: str,
        attempted_option_id: str,
        selected_label: Optional[str] = None,
    ) -> None:
        self.outcomes_event_seq = outcomes_event_seq
        self.selected_option_id = selected_option_id
        self.attempted_option_id = attempted_option_id
        self.selected_label = selected_label
        super().__init__(
            f"Outcomes event {outcomes_event_seq} already resolved with "
            f"{selected_option_id!r}; cannot select {attempted_option_id!r}"
        )

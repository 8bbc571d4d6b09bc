"""Storage adapters for sessions, conversation events and error entries.

The abstract base classes define the persistence contract; the in-memory
implementations are used for tests and single-process deployments.
"""
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from ulid import ULID

from module_chat_events.models import (
    ConversationEvent,
    ErrorEntry,
    NotFoundError,
    Session,
    SessionPhase,
    utc_now,
)


class EventStore(ABC):
    """Abstract persistence for sessions and their append-only event logs.

    Implementations must make ``append_event`` and ``append_events`` atomic:
    the events are either all stored with consecutive sequence numbers or
    none is stored. Callers serialize appends per session.
    """

    @abstractmethod
    def create_session(
        self, subject_id: str, module_number: Optional[int]
    ) -> Session:
        """Create and persist a new active session."""

    @abstractmethod
    def get_session(self, session_id: str) -> Session:
        """Load a session. Raises NotFoundError if it does not exist."""

    @abstractmethod
    def find_session(
        self, subject_id: str, module_number: Optional[int]
    ) -> Optional[Session]:
        """Return the subject's session for a module, if one exists."""

    @abstractmethod
    def append_event(
        self,
        session_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        phase: Optional[SessionPhase] = None,
    ) -> ConversationEvent:
        """Assign the next event_seq and persist the event.

        When ``phase`` is given the session transitions to it in the same
        atomic operation.
        """

    @abstractmethod
    def append_events(
        self,
        session_id: str,
        items: Sequence[Tuple[str, Dict[str, Any]]],
        *,
        phase: Optional[SessionPhase] = None,
    ) -> List[ConversationEvent]:
        """Persist ``(event_type, payload)`` pairs as one unit with
        consecutive event_seq values, in order."""

    @abstractmethod
    def load_events(
        self, session_id: str, after_seq: int = 0
    ) -> List[ConversationEvent]:
        """Load a session's events with event_seq > after_seq, ascending."""


class ErrorStorage(ABC):
    """Abstract retention store for ErrorEntry records."""

    @abstractmethod
    def append(self, entry: ErrorEntry) -> None:
        """Store an error entry, evicting the oldest beyond retention."""

    @abstractmethod
    def load_recent(self, limit: int) -> List[ErrorEntry]:
        """Return up to ``limit`` entries, newest first."""


class InMemoryEventStore(EventStore):
    """Process-local event store backed by dictionaries and lists."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._index: Dict[Tuple[str, Optional[int]], str] = {}
        self._events: Dict[str, List[ConversationEvent]] = {}

    def create_session(
        self, subject_id: str, module_number: Optional[int]
    ) -> Session:
        session = Session(
            session_id=str(ULID()),
            subject_id=subject_id,
            module_number=module_number,
        )
        self._sessions[session.session_id] = session
        self._index[(subject_id, module_number)] = session.session_id
        self._events[session.session_id] = []
        return session

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Unknown session: {session_id!r}")
        return session

    def find_session(
        self, subject_id: str, module_number: Optional[int]
    ) -> Optional[Session]:
        session_id = self._index.get((subject_id, module_number))
        if session_id is None:
            return None
        return self._sessions[session_id]

    def append_event(
        self,
        session_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        phase: Optional[SessionPhase] = None,
    ) -> ConversationEvent:
        return self.append_events(
            session_id, [(event_type, payload)], phase=phase
        )[0]

    def append_events(
        self,
        session_id: str,
        items: Sequence[Tuple[str, Dict[str, Any]]],
        *,
        phase: Optional[SessionPhase] = None,
    ) -> List[ConversationEvent]:
        session = self.get_session(session_id)
        log = self._events[session_id]
        next_seq = log[-1].event_seq + 1 if log else 1
        # Build everything before mutating so a validation failure stores nothing
        events = [
            ConversationEvent(
                event_seq=next_seq + offset,
                event_id=str(ULID()),
                session_id=session_id,
                type=event_type,
                payload=dict(payload),
                created_at=utc_now(),
            )
            for offset, (event_type, payload) in enumerate(items)
        ]
        updated = session.model_copy(update={"phase": phase}) if phase else None
        log.extend(events)
        if updated is not None:
            self._sessions[session_id] = updated
        return events

    def load_events(
        self, session_id: str, after_seq: int = 0
    ) -> List[ConversationEvent]:
        self.get_session(session_id)
        return [e for e in self._events[session_id] if e.event_seq > after_seq]


class InMemoryErrorStorage(ErrorStorage):
    """Bounded, process-local error storage (oldest entries evicted first)."""

    def __init__(self, max_entries: int = 100) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be ≥ 1, got {max_entries}")
        self._entries: Deque[ErrorEntry] = deque(maxlen=max_entries)

    def append(self, entry: ErrorEntry) -> None:
        self._entries.append(entry)

    def load_recent(self, limit: int) -> List[ErrorEntry]:
        if limit < 1:
            raise ValueError(f"limit must be ≥ 1, got {limit}")
        newest_first = list(reversed(self._entries))
        return newest_first[:limit]


"""Per-session append-only event log.

The EventLog is the single source of truth for conversation and module
state. Appends to one session are serialized through a per-session
``asyncio.Lock``; sessions never contend with each other. All derived views
are recomputed by folding :meth:`EventLog.list` through
:func:`reduce_conversation_events`.

The log is bound to one event loop; fan-out across processes is left to the
storage adapter.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from module_chat_events.conversation import (
    CLOSED_AFTER_COMPLETE,
    MODULE_COMPLETE,
    ReducedConversationState,
    payload_model_for,
    reduce_conversation_events,
)
from module_chat_events.models import (
    ConversationEvent,
    ModuleChatEventsError,
    ProtocolViolationError,
    Session,
    SessionPhase,
    StorageError,
    ValidationError,
)
from module_chat_events.storage import EventStore

logger = logging.getLogger("module_chat_events.event_log")


class EventLog:
    """Serialized append and ordered replay over an EventStore."""

    def __init__(self, store: EventStore) -> None:
        self._store = store
        # Entries vanish once no holder or waiter references the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # -- Sessions -----------------------------------------------------------

    async def create_session(
        self, subject_id: str, module_number: Optional[int] = None
    ) -> Session:
        session = self._call_store(
            "create_session", self._store.create_session, subject_id, module_number
        )
        logger.info(
            "Created session %s for subject %s (module %s)",
            session.session_id, subject_id, module_number,
        )
        return session

    async def get_or_create_session(
        self, subject_id: str, module_number: Optional[int] = None
    ) -> Session:
        """Return the subject's session for a module, creating it on first entry."""
        existing = self._call_store(
            "find_session", self._store.find_session, subject_id, module_number
        )
        if existing is not None:
            return existing
        return await self.create_session(subject_id, module_number)

    def get_session(self, session_id: str) -> Session:
        """Raises NotFoundError for unknown sessions."""
        return self._call_store("get_session", self._store.get_session, session_id)

    # -- Locking ------------------------------------------------------------

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """The lock guarding structural mutation of one session's log.

        Hold it (``async with log.session_lock(sid):``) to read and then
        append atomically via :meth:`events_locked` and :meth:`append_locked`.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    # -- Append -------------------------------------------------------------

    async def append(
        self, session_id: str, kind: str, payload: Dict[str, Any]
    ) -> ConversationEvent:
        """Append one event, assigning the next event_seq.

        Raises:
            ProtocolViolationError: The session is complete and ``kind`` is
                closed after completion.
            ValidationError: The payload does not match the kind's model.
            StorageError: The store is unavailable; nothing was persisted.
        """
        async with self.session_lock(session_id):
            return self.append_locked(session_id, kind, payload)

    def append_locked(
        self, session_id: str, kind: str, payload: Dict[str, Any]
    ) -> ConversationEvent:
        """Append while the caller already holds :meth:`session_lock`."""
        return self.append_many_locked(session_id, [(kind, payload)])[0]

    def append_many_locked(
        self,
        session_id: str,
        items: Sequence[Tuple[str, Dict[str, Any]]],
    ) -> List[ConversationEvent]:
        """Append several events as one unit under the held session lock.

        Either every event is stored, with consecutive event_seq values, or
        none is.
        """
        if not self.session_lock(session_id).locked():
            raise RuntimeError("append_many_locked requires the session lock")

        session = self.get_session(session_id)
        batch: List[Tuple[str, Dict[str, Any]]] = []
        for kind, payload in items:
            if session.is_complete and kind in CLOSED_AFTER_COMPLETE:
                raise ProtocolViolationError(
                    f"Session {session_id} is complete; {kind!r} not accepted"
                )
            batch.append((kind, self._normalize(kind, payload)))

        kinds = [kind for kind, _ in batch]
        phase = SessionPhase.COMPLETE if MODULE_COMPLETE in kinds else None
        events = self._call_store(
            "append_events",
            self._store.append_events,
            session_id,
            batch,
            phase=phase,
        )
        for event in events:
            logger.debug(
                "Appended %s seq=%d to session %s",
                event.type, event.event_seq, session_id,
            )
        return events

    @staticmethod
    def _normalize(kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload_cls = payload_model_for(kind)
        if payload_cls is None:
            logger.debug("Appending unregistered event kind %r", kind)
            return payload
        try:
            return payload_cls.model_validate(payload).to_wire()
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid payload for {kind!r}: {exc}") from exc

    # -- Read ---------------------------------------------------------------

    async def list(
        self, session_id: str, after_seq: int = 0
    ) -> List[ConversationEvent]:
        """All events of a session ascending by event_seq (pure read)."""
        return self.events_locked(session_id, after_seq)

    def events_locked(
        self, session_id: str, after_seq: int = 0
    ) -> List[ConversationEvent]:
        events = self._call_store(
            "load_events", self._store.load_events, session_id, after_seq
        )
        return sorted(events, key=lambda e: e.event_seq)

    async def read_state(self, session_id: str) -> ReducedConversationState:
        """Fold the session's log into its current projection."""
        return reduce_conversation_events(await self.list(session_id))

    # -- Internals ----------------------------------------------------------

    @staticmethod
    def _call_store(action: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        """Invoke a store method, surfacing adapter failures as StorageError."""
        try:
            return fn(*args, **kwargs)
        except ModuleChatEventsError:
            raise
        except Exception as exc:
            logger.warning("Event store %s failed: %s", action, exc)
            raise StorageError(f"Event store unavailable during {action}") from exc

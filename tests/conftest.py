"""Shared pytest fixtures for all tests."""
import asyncio
from datetime import datetime, timezone
from typing import Any, List, Optional

import pytest
from ulid import ULID

from module_chat_events import (
    ConversationEvent,
    EventLog,
    InMemoryEventStore,
    ModuleSummary,
)
from module_chat_events.conversation import MESSAGE_USER


def make_event(**overrides: Any) -> ConversationEvent:
    """Build a ConversationEvent with defaults for all required fields.

    Callers override specific fields as needed.
    """
    defaults: dict[str, Any] = {
        "event_seq": 1,
        "event_id": str(ULID()),
        "session_id": "session-001",
        "type": MESSAGE_USER,
        "payload": {"role": "user", "content": "Hello"},
        "created_at": datetime.now(timezone.utc),
    }
    defaults.update(overrides)
    return ConversationEvent(**defaults)


def make_summary(**overrides: Any) -> ModuleSummary:
    defaults: dict[str, Any] = {
        "insights": ["Values autonomy over title", "Manager relationship is the core issue"],
        "assessment": "Ready to explore options with a clearer picture.",
        "takeaway": "The job is fixable only if the reporting line changes.",
    }
    defaults.update(overrides)
    return ModuleSummary(**defaults)


class ScriptedProducer:
    """Model output producer that replays a fixed script of items.

    After the script it raises ``fail_with`` when given, or waits forever
    when ``hang`` is set. ``closed`` records that the iterator was finalized.
    """

    def __init__(
        self,
        *items: Any,
        fail_with: Optional[BaseException] = None,
        hang: bool = False,
    ) -> None:
        self.items = items
        self.fail_with = fail_with
        self.hang = hang
        self.calls: List[Any] = []
        self.closed = False

    def __call__(self, transcript: Any, tools: Any) -> Any:
        self.calls.append((list(transcript), list(tools)))
        return self._generate()

    async def _generate(self) -> Any:
        try:
            for item in self.items:
                await asyncio.sleep(0)
                yield item
            if self.fail_with is not None:
                raise self.fail_with
            if self.hang:
                await asyncio.sleep(3600)
        finally:
            self.closed = True


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def event_log(store: InMemoryEventStore) -> EventLog:
    return EventLog(store)

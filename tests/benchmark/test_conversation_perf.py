"""Performance benchmark for the conversation reducer with 10K events."""

import random
import time
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from ulid import ULID

from module_chat_events.conversation import (
    MESSAGE_ASSISTANT,
    MESSAGE_USER,
    MODULE_PROGRESS,
    OUTCOME_SELECTED,
    STRUCTURED_OUTCOMES_ADDED,
    reduce_conversation_events,
)
from module_chat_events.models import ConversationEvent

_SESSION_ID = "BENCH-SESSION-001"


def _generate_10k_events() -> List[ConversationEvent]:
    """Generate 10,000 events of one long session.

    Event type distribution:
    - ~70% user/assistant messages
    - ~15% progress reports
    - ~15% outcome presentation followed by a selection
    """
    rng = random.Random(42)
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    events: List[ConversationEvent] = []
    open_outcomes: List[int] = []

    def add(kind: str, payload: dict) -> int:
        seq = len(events) + 1
        events.append(ConversationEvent(
            event_seq=seq,
            event_id=str(ULID()),
            session_id=_SESSION_ID,
            type=kind,
            payload=payload,
            created_at=base_time + timedelta(seconds=seq),
        ))
        return seq

    while len(events) < 10000:
        roll = rng.random()
        if open_outcomes and roll < 0.075:
            add(OUTCOME_SELECTED, {
                "eventSeq": open_outcomes.pop(),
                "optionId": "opt_1",
                "value": "Option one",
            })
        elif roll < 0.15:
            open_outcomes.append(add(STRUCTURED_OUTCOMES_ADDED, {"options": [
                {"id": "opt_1", "label": "Option one"},
                {"id": "opt_2", "label": "Option two"},
            ]}))
        elif roll < 0.30:
            add(MODULE_PROGRESS, {"percent": rng.randint(5, 100)})
        elif roll < 0.65:
            add(MESSAGE_USER, {"role": "user", "content": f"User message {len(events)}"})
        else:
            add(MESSAGE_ASSISTANT, {"role": "assistant", "content": f"Reply {len(events)}"})

    return events


@pytest.mark.benchmark
def test_conversation_reducer_10k_events() -> None:
    """Reducer must process 10K events in under 2 seconds."""
    events = _generate_10k_events()
    assert len(events) == 10000, f"Expected 10000 events, got {len(events)}"

    start = time.perf_counter()
    state = reduce_conversation_events(events)
    elapsed = time.perf_counter() - start

    assert state.event_count == 10000
    assert state.anomalies == ()
    assert elapsed < 2.0, f"Reducer took {elapsed:.3f}s, expected < 2.0s"

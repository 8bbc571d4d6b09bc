"""Unit tests for ProgressTracker: progress clamping and module completion."""
import asyncio

import pytest

from module_chat_events.conversation import MESSAGE_USER, MODULE_COMPLETE, MODULE_PROGRESS
from module_chat_events.models import ProtocolViolationError, ValidationError
from module_chat_events.progress import ProgressTracker, coerce_summary

from conftest import make_summary


class TestSetProgress:
    """Tests for set_progress."""

    def test_backward_update_is_stored_raw_and_exposed_clamped(self, event_log):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            sid = session.session_id
            updates = [await tracker.set_progress(sid, p) for p in (10, 40, 25, 90)]
            return updates, await event_log.list(sid), await tracker.current_progress(sid)

        updates, events, current = asyncio.run(scenario())
        assert [u.exposed_percent for u in updates] == [10, 40, 40, 90]
        assert [u.clamped for u in updates] == [False, False, True, False]
        assert [e.payload["percent"] for e in events] == [10, 40, 25, 90]
        assert all(e.type == MODULE_PROGRESS for e in events)
        assert current == 90

    @pytest.mark.parametrize("percent", [4, 0, 101, -10, True, 50.5, "50"])
    def test_invalid_percent(self, event_log, percent):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            with pytest.raises(ValidationError):
                await tracker.set_progress(session.session_id, percent)
            return await event_log.list(session.session_id)

        assert asyncio.run(scenario()) == []

    @pytest.mark.parametrize("percent", [5, 100])
    def test_bounds_inclusive(self, event_log, percent):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            return await tracker.set_progress(session.session_id, percent)

        assert asyncio.run(scenario()).exposed_percent == percent


class TestCompleteModule:
    """Tests for complete_module."""

    def test_completion_is_idempotent(self, event_log):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            sid = session.session_id
            first = await tracker.complete_module(sid, make_summary())
            second = await tracker.complete_module(sid, make_summary())
            with pytest.raises(ProtocolViolationError):
                await event_log.append(sid, MESSAGE_USER, {"role": "user", "content": "more"})
            return first, second, await event_log.list(sid)

        first, second, events = asyncio.run(scenario())
        assert not first.already_complete
        assert second.already_complete
        assert second.event == first.event
        assert second.summary == first.summary
        assert [e.type for e in events] == [MODULE_COMPLETE]

    def test_second_call_returns_existing_summary(self, event_log):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            sid = session.session_id
            await tracker.complete_module(sid, make_summary(takeaway="Original"))
            return await tracker.complete_module(sid, make_summary(takeaway="Different"))

        assert asyncio.run(scenario()).summary.takeaway == "Original"

    def test_concurrent_completions_append_once(self, event_log):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            sid = session.session_id
            results = await asyncio.gather(*(
                tracker.complete_module(sid, make_summary()) for _ in range(4)
            ))
            return results, await event_log.list(sid)

        results, events = asyncio.run(scenario())
        assert sum(1 for r in results if not r.already_complete) == 1
        assert len(events) == 1

    def test_accepts_mapping_summary(self, event_log):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            return await tracker.complete_module(
                session.session_id,
                {"insights": ["a"], "assessment": "b", "takeaway": "c"},
            )

        result = asyncio.run(scenario())
        assert result.event.payload == {
            "summary": {"insights": ["a"], "assessment": "b", "takeaway": "c"}
        }

    @pytest.mark.parametrize(
        "summary",
        [
            {"insights": [], "assessment": "b", "takeaway": "c"},
            {"insights": ["a"], "assessment": "", "takeaway": "c"},
            {"insights": ["a"], "assessment": "b", "takeaway": ""},
        ],
    )
    def test_invalid_summary_rejected(self, event_log, summary):
        tracker = ProgressTracker(event_log)

        async def scenario():
            session = await event_log.create_session("user-1", 1)
            with pytest.raises(ValidationError):
                await tracker.complete_module(session.session_id, summary)
            return event_log.get_session(session.session_id)

        assert not asyncio.run(scenario()).is_complete

    def test_coerce_summary_passthrough(self):
        summary = make_summary()
        assert coerce_summary(summary) is summary

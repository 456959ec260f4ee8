"""
test_scheduled_events.py - Unit Tests for the deadline scheduler

Tests cover:
1. Event identity and ordering
2. DeadlineScheduler scheduling, deduplication and retrieval
"""

import pytest
from datetime import datetime, timedelta

from session_escrow.scheduled_events import (
    DeadlineEvent,
    DeadlineScheduler,
    expiry_event,
    ACTION_EXPIRE,
)


T = datetime(2025, 1, 3, 9, 0)


class TestDeadlineEvent:
    """Tests for DeadlineEvent dataclass."""

    def test_event_id_is_deterministic(self):
        assert expiry_event("s1", T).event_id == expiry_event("s1", T).event_id

    def test_different_time_different_id(self):
        assert expiry_event("s1", T).event_id != expiry_event("s1", T + timedelta(hours=1)).event_id

    def test_factory_sets_action(self):
        event = expiry_event("s1", T)
        assert event.action == ACTION_EXPIRE
        assert event.session_id == "s1"
        assert event.trigger_time == T

    def test_ordering_by_time_then_priority_then_session(self):
        early = DeadlineEvent(T, priority=50, session_id="z")
        urgent = DeadlineEvent(T + timedelta(minutes=1), priority=0, session_id="b")
        later = DeadlineEvent(T + timedelta(minutes=1), priority=10, session_id="a")
        tie = DeadlineEvent(T + timedelta(minutes=1), priority=10, session_id="c")
        assert sorted([tie, later, urgent, early]) == [early, urgent, later, tie]

    def test_event_is_frozen(self):
        event = expiry_event("s1", T)
        with pytest.raises(AttributeError):
            event.session_id = "s2"


class TestDeadlineScheduler:
    """Tests for DeadlineScheduler."""

    def test_get_due_returns_only_due_events_in_order(self):
        scheduler = DeadlineScheduler()
        scheduler.schedule(expiry_event("late", T + timedelta(hours=2)))
        scheduler.schedule(expiry_event("second", T + timedelta(hours=1)))
        scheduler.schedule(expiry_event("first", T))

        due = scheduler.get_due(T + timedelta(hours=1))
        assert [e.session_id for e in due] == ["first", "second"]
        assert scheduler.pending_count() == 1
        assert scheduler.peek_next().session_id == "late"

    def test_due_boundary_is_inclusive(self):
        scheduler = DeadlineScheduler()
        scheduler.schedule(expiry_event("s1", T))
        assert scheduler.get_due(T - timedelta(seconds=1)) == []
        assert len(scheduler.get_due(T)) == 1

    def test_duplicate_schedule_is_noop(self):
        scheduler = DeadlineScheduler()
        first = scheduler.schedule(expiry_event("s1", T))
        second = scheduler.schedule(expiry_event("s1", T))
        assert first == second
        assert scheduler.pending_count() == 1

    def test_can_reschedule_after_pop(self):
        scheduler = DeadlineScheduler()
        scheduler.schedule(expiry_event("s1", T))
        scheduler.get_due(T)
        scheduler.schedule(expiry_event("s1", T))
        assert scheduler.pending_count() == 1

    def test_peek_and_clear(self):
        scheduler = DeadlineScheduler()
        assert scheduler.peek_next() is None
        scheduler.schedule(expiry_event("s1", T))
        scheduler.clear()
        assert scheduler.pending_count() == 0

"""
scheduled_events.py - Deadline Scheduler

Simple heap-based scheduling of session deadlines:
- Events are just data: (trigger_time, priority, session_id, action)
- The scheduler only answers "what is due now?"
- Deadlines move (a counter-offer restarts the negotiation window), so the
  consumer re-checks the session before acting. A superseded event is
  discarded by the consumer, never deleted from the heap.

Core concepts:
1. DeadlineEvent: Immutable description of what should be checked and when
2. DeadlineScheduler: Priority queue for due event retrieval
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set
import heapq
import threading


ACTION_EXPIRE = "expire"

# Lower runs first within the same timestamp.
PRIORITY_EXPIRE = 10


@dataclass(frozen=True, slots=True)
class DeadlineEvent:
    """
    Immutable scheduled deadline.

    Sorting: by trigger_time, then priority (lower=first), then session_id.

    Attributes:
        trigger_time: When this deadline falls due
        priority: Execution order within the same timestamp
        session_id: Session this deadline belongs to
        action: What to do when due ("expire")
    """
    trigger_time: datetime
    priority: int = PRIORITY_EXPIRE
    session_id: str = ""
    action: str = ACTION_EXPIRE

    def __lt__(self, other: 'DeadlineEvent') -> bool:
        """Enable heap ordering: time, then priority, then session."""
        if self.trigger_time != other.trigger_time:
            return self.trigger_time < other.trigger_time
        if self.priority != other.priority:
            return self.priority < other.priority
        return self.session_id < other.session_id

    @property
    def event_id(self) -> str:
        """Deterministic ID for deduplication."""
        return f"{self.action}:{self.session_id}:{self.trigger_time.isoformat()}"


def expiry_event(session_id: str, expires_at: datetime) -> DeadlineEvent:
    """Create a negotiation-deadline event."""
    return DeadlineEvent(
        trigger_time=expires_at,
        priority=PRIORITY_EXPIRE,
        session_id=session_id,
        action=ACTION_EXPIRE,
    )


class DeadlineScheduler:
    """
    Minimal deadline scheduler using a priority queue.

    Design:
    - Deadlines are scheduled when a session enters a state that has one
    - get_due() pops everything due, skipping duplicates
    - The session store stays the source of truth; this is only an index

    Thread Safety:
        schedule() and get_due() are guarded by an internal lock so the state
        machine and the sweeper can share one scheduler.
    """

    def __init__(self):
        self._heap: List[DeadlineEvent] = []
        self._queued: Set[str] = set()
        self._lock = threading.Lock()

    def schedule(self, event: DeadlineEvent) -> str:
        """
        Add an event to the pending queue.

        Scheduling an identical event twice is a no-op. Returns the event_id.
        """
        with self._lock:
            if event.event_id not in self._queued:
                heapq.heappush(self._heap, event)
                self._queued.add(event.event_id)
        return event.event_id

    def get_due(self, as_of: datetime) -> List[DeadlineEvent]:
        """
        Get and remove events due at or before as_of, in execution order.
        """
        due = []
        with self._lock:
            while self._heap and self._heap[0].trigger_time <= as_of:
                event = heapq.heappop(self._heap)
                self._queued.discard(event.event_id)
                due.append(event)
        return due

    def pending_count(self) -> int:
        """Number of pending events."""
        with self._lock:
            return len(self._heap)

    def peek_next(self) -> Optional[DeadlineEvent]:
        """Peek at the next deadline without removing it."""
        with self._lock:
            return self._heap[0] if self._heap else None

    def clear(self) -> None:
        with self._lock:
            self._heap.clear()
            self._queued.clear()

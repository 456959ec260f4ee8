"""
session.py - Session records and lifecycle state variants

A Session is a plain frozen record. Its lifecycle state is a tagged variant:
one frozen dataclass per state, each carrying only the data that state needs.
All transition logic lives in state_machine.py; nothing here mutates.

    Requested / CounterOffered
        accept         -> Accepted
        reject         -> Rejected
        counter_offer  -> CounterOffered
        expire         -> Expired
    Accepted
        complete       -> Completed
        cancel         -> Cancelled
        no_show        -> Cancelled
        dispute        -> Disputed
    Completed
        dispute        -> Disputed (within the dispute window)
    Disputed
        resolve_dispute -> Resolved
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional, Tuple, Union


class SessionStatus(str, Enum):
    """Tag of a session's lifecycle state."""
    REQUESTED = "requested"
    COUNTER_OFFERED = "counter_offered"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    RESOLVED = "resolved"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SessionStatus.REJECTED,
    SessionStatus.EXPIRED,
    SessionStatus.CANCELLED,
    SessionStatus.RESOLVED,
})

# States that carry a negotiation deadline swept by the expiry sweeper.
NEGOTIATING_STATUSES = frozenset({
    SessionStatus.REQUESTED,
    SessionStatus.COUNTER_OFFERED,
})


class CancelReason(str, Enum):
    TEACHER_CANCELLED = "teacher_cancelled"
    NO_SHOW = "no_show"


# ============================================================================
# STATE VARIANTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Requested:
    proposed_time: datetime
    expires_at: datetime
    status: ClassVar[SessionStatus] = SessionStatus.REQUESTED


@dataclass(frozen=True, slots=True)
class CounterOffered:
    """A new time proposed by the teacher; the negotiation deadline restarts."""
    proposed_time: datetime
    expires_at: datetime
    previous_time: datetime
    rounds: int = 1
    status: ClassVar[SessionStatus] = SessionStatus.COUNTER_OFFERED


@dataclass(frozen=True, slots=True)
class Accepted:
    scheduled_time: datetime
    accepted_at: datetime
    status: ClassVar[SessionStatus] = SessionStatus.ACCEPTED


@dataclass(frozen=True, slots=True)
class Completed:
    """completed_at opens the dispute window."""
    scheduled_time: datetime
    completed_at: datetime
    status: ClassVar[SessionStatus] = SessionStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class Rejected:
    rejected_at: datetime
    status: ClassVar[SessionStatus] = SessionStatus.REJECTED


@dataclass(frozen=True, slots=True)
class Expired:
    expired_at: datetime
    status: ClassVar[SessionStatus] = SessionStatus.EXPIRED


@dataclass(frozen=True, slots=True)
class Cancelled:
    cancelled_at: datetime
    reason: CancelReason
    reported_by: Optional[str] = None
    status: ClassVar[SessionStatus] = SessionStatus.CANCELLED


@dataclass(frozen=True, slots=True)
class Disputed:
    reason: str
    raised_by: str
    raised_at: datetime
    from_status: SessionStatus
    ticket_id: Optional[str] = None
    status: ClassVar[SessionStatus] = SessionStatus.DISPUTED


@dataclass(frozen=True, slots=True)
class Resolved:
    resolved_at: datetime
    resolved_by: str
    actions: Tuple[object, ...] = ()
    dispute_reason: str = ""
    status: ClassVar[SessionStatus] = SessionStatus.RESOLVED


SessionState = Union[
    Requested, CounterOffered, Accepted, Completed,
    Rejected, Expired, Cancelled, Disputed, Resolved,
]


# ============================================================================
# SESSION RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class Session:
    """
    One student/teacher booking and its escrow.

    Attributes:
        session_id: Session identity
        listing_id: Reference to the listing the session was booked from
        student_id: Payer
        teacher_id: Payee
        escrow_id: Escrow created with the session (immutable once set)
        price: Credits held in escrow
        created_at: Request time
        state: Current lifecycle state variant
        history: (timestamp, status) pairs, one per committed transition
    """
    session_id: str
    listing_id: str
    student_id: str
    teacher_id: str
    escrow_id: str
    price: Decimal
    created_at: datetime
    state: SessionState
    history: Tuple[Tuple[datetime, SessionStatus], ...] = ()

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def label(self) -> str:
        """Human-readable state, derived from the tag on every read."""
        return self.state.status.label

    @property
    def expires_at(self) -> Optional[datetime]:
        """Negotiation deadline, if the session is still negotiating."""
        return getattr(self.state, "expires_at", None)

    @property
    def proposed_time(self) -> Optional[datetime]:
        return getattr(self.state, "proposed_time", None)

    @property
    def scheduled_time(self) -> Optional[datetime]:
        return getattr(self.state, "scheduled_time", None)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.student_id, self.teacher_id)

    def with_state(self, state: SessionState, at: datetime) -> "Session":
        """Return a copy in a new state with the transition appended to history."""
        return replace(self, state=state, history=self.history + ((at, state.status),))

    def __repr__(self) -> str:
        return f"Session({self.session_id}: {self.student_id}→{self.teacher_id} {self.price} [{self.status.value}])"


# ============================================================================
# CONDUCT RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class ConductRecord:
    """
    Cancellation, no-show and warning history for one teacher.

    The rolling cancellation counter is derived from the timestamps at read
    time, so it never drifts from the history.
    """
    teacher_id: str
    cancellations: Tuple[datetime, ...] = ()
    no_shows: Tuple[datetime, ...] = ()
    warnings: Tuple[Tuple[datetime, str], ...] = ()
    suspended: bool = False

    def cancellations_within(self, window: timedelta, now: datetime) -> int:
        cutoff = now - window
        return sum(1 for t in self.cancellations if cutoff < t <= now)

    @property
    def has_warning(self) -> bool:
        return bool(self.warnings)

    def with_cancellation(self, at: datetime) -> "ConductRecord":
        return replace(self, cancellations=self.cancellations + (at,))

    def with_no_show(self, at: datetime) -> "ConductRecord":
        return replace(self, no_shows=self.no_shows + (at,))

    def with_warning(self, at: datetime, reason: str) -> "ConductRecord":
        return replace(self, warnings=self.warnings + ((at, reason),))

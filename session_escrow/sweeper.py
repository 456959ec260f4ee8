"""
sweeper.py - Expiry/Timeout Sweeper

Forces expire on sessions whose negotiation deadline has passed.

The sweeper drives the state machine the same way a user action does: it
calls expire() and lets the machine decide. Losing a race is normal and is
counted as "already handled":
    - the deadline moved (counter-offer) or the session left negotiation
    - the session was already Expired (no-op result)
    - another caller's transition won (IllegalTransition)

Two entry points:
    step()  pops due events from the deadline scheduler (normal path)
    scan()  walks every negotiating session in the store (recovery path,
            e.g. after a restart emptied the in-memory scheduler)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional
import logging

from .core import IllegalTransition
from .scheduled_events import DeadlineScheduler, expiry_event
from .session import NEGOTIATING_STATUSES
from .state_machine import SessionStateMachine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """
    Session ids touched by one sweep.

    expired: expire() applied
    already_handled: stale deadline, lost race, or already Expired
    failed: expire() raised something other than a lost race; step() keeps
            the deadline queued for the next sweep
    """
    expired: List[str] = field(default_factory=list)
    already_handled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def merge(self, other: "SweepReport") -> "SweepReport":
        self.expired.extend(other.expired)
        self.already_handled.extend(other.already_handled)
        self.failed.extend(other.failed)
        return self

    @property
    def total(self) -> int:
        return len(self.expired) + len(self.already_handled) + len(self.failed)


class ExpirySweeper:
    """
    Periodic driver that expires sessions past their negotiation deadline.

    Usage:
        sweeper = ExpirySweeper(machine)
        report = sweeper.step()              # due events at the clock's now
        report = sweeper.scan()              # full store scan after restart
        report = sweeper.run([t1, t2, t3])   # simulation over timestamps
    """

    def __init__(self, machine: SessionStateMachine, scheduler: Optional[DeadlineScheduler] = None):
        self.machine = machine
        self.scheduler = scheduler or machine.scheduler

    def step(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Process every deadline event due at or before now.

        An event whose session no longer carries that deadline is stale and
        counted as already handled without calling expire(). An event whose
        expire() failed goes back on the scheduler, so the next step retries it.
        """
        now = self._advance(now)
        report = SweepReport()
        for event in self.scheduler.get_due(now):
            session = self.machine.store.get_session(event.session_id)
            if session is None or session.expires_at != event.trigger_time:
                report.already_handled.append(event.session_id)
                continue
            if not self._expire(event.session_id, report):
                self.scheduler.schedule(event)
        if report.total:
            logger.info(
                "sweep at %s: %d expired, %d already handled, %d failed",
                now.isoformat(), len(report.expired), len(report.already_handled), len(report.failed),
            )
        return report

    def scan(self, now: Optional[datetime] = None) -> SweepReport:
        """Expire every negotiating session in the store whose deadline has passed."""
        now = self._advance(now)
        report = SweepReport()
        for session in self.machine.sessions_in(NEGOTIATING_STATUSES):
            if session.expires_at is not None and session.expires_at <= now:
                self._expire(session.session_id, report)
        if report.total:
            logger.info("scan at %s: %d expired, %d already handled, %d failed",
                        now.isoformat(), len(report.expired), len(report.already_handled), len(report.failed))
        return report

    def rebuild(self) -> int:
        """
        Reseed the scheduler from the store.

        Returns:
            Number of deadlines scheduled
        """
        sessions = self.machine.sessions_in(NEGOTIATING_STATUSES)
        for session in sessions:
            self.scheduler.schedule(expiry_event(session.session_id, session.expires_at))
        return len(sessions)

    def run(self, timestamps: Iterable[datetime]) -> SweepReport:
        """Step through timestamps in order and merge the reports."""
        report = SweepReport()
        for ts in timestamps:
            report.merge(self.step(ts))
        return report

    def _advance(self, now: Optional[datetime]) -> datetime:
        """Move a manual clock forward to now; with no now, read the clock."""
        clock = self.machine.clock
        if now is None:
            return clock.now()
        if hasattr(clock, "advance_time") and now > clock.now():
            clock.advance_time(now)
        return now

    def _expire(self, session_id: str, report: SweepReport) -> bool:
        """
        Expire one session and file the outcome in the report.

        Any failure is contained to its session so one bad record cannot stop
        the rest of the sweep.

        Returns:
            False if expire() failed and the deadline still needs handling
        """
        try:
            result = self.machine.expire(session_id)
        except IllegalTransition as e:
            logger.debug("expire lost race on %s: %s", session_id, e)
            report.already_handled.append(session_id)
        except Exception as e:
            logger.error("expire failed on %s: %s", session_id, e, exc_info=True)
            report.failed.append(session_id)
            return False
        else:
            if result.applied:
                report.expired.append(session_id)
            else:
                report.already_handled.append(session_id)
        return True

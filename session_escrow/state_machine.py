"""
state_machine.py - Session lifecycle state machine

The SessionStateMachine is the only component that changes a Session. Each
transition:

    1. holds the session's lock, then the locks of every wallet it may touch
    2. opens one store unit of work
    3. matches on the current state variant (anything unmatched is illegal)
    4. calls the Ledger for money-moving transitions
    5. writes the new Session (and ConductRecord) and commits
    6. dispatches side-effect intents to the collaborator ports

Steps 1-5 either all happen or none do. Step 6 runs after the commit and never
undoes it.

Transition table:

    State           | legal operations
    ----------------|---------------------------------------------------------
    Requested       | accept, reject, counter_offer, expire (after deadline)
    CounterOffered  | accept, reject, counter_offer, expire (after deadline)
    Accepted        | complete, cancel, no_show (after grace), dispute
    Completed       | dispute (within the dispute window)
    Disputed        | resolve_dispute
    Expired         | expire (no-op)
    Rejected, Cancelled, Resolved: terminal
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import time

from .core import (
    ADMIN_RECIPIENT,
    IllegalTransition, NotAParticipant, NotFound,
    positive_credits,
)
from .disputes import Bonus, ResolutionAction, plan_resolution
from .ledger import Ledger
from .policy import SessionPolicy
from .ports import (
    AccountPort, DispatchReport, Effect, NotificationPort, TicketingPort,
    Notify, OpenTicket, SuspendAccount,
    NullAccounts, NullNotifier, NullTicketing,
    dispatch_effects,
)
from .retry import retry_transient
from .scheduled_events import DeadlineScheduler, expiry_event
from .session import (
    Session, SessionStatus, ConductRecord, CancelReason,
    Requested, CounterOffered, Accepted, Completed,
    Rejected, Expired, Cancelled, Disputed, Resolved,
)
from .storage import KeyedLocks, Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """
    Outcome of one state machine operation.

    Attributes:
        session: The session after the operation
        applied: False when the operation was a no-op (expire on an Expired session)
        effects: Side-effect intents produced by the transition
        dispatch: What happened when the intents were delivered
    """
    session: Session
    applied: bool = True
    effects: Tuple[Effect, ...] = ()
    dispatch: Optional[DispatchReport] = None

    @property
    def status(self) -> SessionStatus:
        return self.session.status


class SessionStateMachine:
    """
    Validates and executes session transitions against the escrow ledger.

    The machine and its ledger must share one Store so a transition's ledger
    writes and session write commit as one unit. Wallet locks come from the
    ledger's KeyedLocks; session locks are the machine's own.

    Example:
        machine = SessionStateMachine(ledger)
        result = machine.request("listing_1", "student", "teacher",
                                 Decimal("50"), datetime(2025, 1, 5, 14))
        machine.accept(result.session.session_id)
        machine.complete(result.session.session_id)
    """

    def __init__(
        self,
        ledger: Ledger,
        store: Optional[Store] = None,
        clock=None,
        policy: Optional[SessionPolicy] = None,
        notifier: Optional[NotificationPort] = None,
        ticketing: Optional[TicketingPort] = None,
        accounts: Optional[AccountPort] = None,
        locks: Optional[KeyedLocks] = None,
        scheduler: Optional[DeadlineScheduler] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if store is not None and store is not ledger.store:
            raise ValueError("state machine and ledger must share one store")
        self.ledger = ledger
        self.store = ledger.store
        self.clock = clock or ledger.clock
        self.policy = policy or SessionPolicy()
        self.notifier = notifier or NullNotifier()
        self.ticketing = ticketing or NullTicketing()
        self.accounts = accounts or NullAccounts()
        self.locks = locks or KeyedLocks()
        self.scheduler = scheduler or DeadlineScheduler()
        self._sleep = sleep

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_session(self, session_id: str) -> Session:
        """
        Return a session.

        Raises:
            NotFound: If the session does not exist
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFound("session", session_id)
        return session

    def sessions_in(self, statuses: Union[SessionStatus, Iterable[SessionStatus]]) -> List[Session]:
        """Sessions currently in any of the given statuses, ordered by id."""
        if isinstance(statuses, SessionStatus):
            wanted = {statuses}
        else:
            wanted = set(statuses)
        return [s for s in self.store.list_sessions() if s.status in wanted]

    def conduct(self, teacher_id: str) -> ConductRecord:
        """A teacher's conduct record (empty if nothing was ever recorded)."""
        return self.store.get_conduct(teacher_id) or ConductRecord(teacher_id=teacher_id)

    # ========================================================================
    # CREATION
    # ========================================================================

    def request(
        self,
        listing_id: str,
        student_id: str,
        teacher_id: str,
        price: Any,
        proposed_time: datetime,
    ) -> TransitionResult:
        """
        Create a session in Requested and lock the student's credits.

        The session and its escrow are created in one unit of work: if the
        lock fails (InsufficientFunds, NotFound) no session exists afterwards.
        The negotiation deadline is scheduled with the deadline scheduler.

        Raises:
            ValueError: If price is not a positive credit amount, or student
                        and teacher are the same user
            InsufficientFunds: If the student cannot cover the price
            NotFound: If either wallet does not exist
        """
        price = positive_credits(price, "price")
        if student_id == teacher_id:
            raise ValueError("a session needs two different participants")

        def attempt() -> TransitionResult:
            session_id = self._generate_session_id()
            with self.locks.hold(session_id), \
                    self.ledger.locks.hold(student_id, teacher_id), \
                    self.store.transaction():
                now = self.clock.now()
                escrow = self.ledger.lock(student_id, price, session_id, teacher_id)
                session = Session(
                    session_id=session_id,
                    listing_id=listing_id,
                    student_id=student_id,
                    teacher_id=teacher_id,
                    escrow_id=escrow.escrow_id,
                    price=price,
                    created_at=now,
                    state=Requested(
                        proposed_time=proposed_time,
                        expires_at=now + self.policy.negotiation_window,
                    ),
                    history=((now, SessionStatus.REQUESTED),),
                )
                self.store.put_session(session)
            return TransitionResult(session, effects=(
                Notify(teacher_id, f"New session request {session_id} for {proposed_time.isoformat()}"),
            ))

        result = self._retry(attempt)
        self.scheduler.schedule(expiry_event(result.session.session_id, result.session.expires_at))
        return self._finish("request", None, result)

    # ========================================================================
    # NEGOTIATION
    # ========================================================================

    def accept(self, session_id: str) -> TransitionResult:
        """Teacher accepts the proposed time. No money moves."""
        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Requested(proposed_time=proposed) | CounterOffered(proposed_time=proposed):
                    self._require_open(session, "accept", now)
                    accepted = session.with_state(Accepted(scheduled_time=proposed, accepted_at=now), now)
                    return TransitionResult(accepted, effects=(
                        Notify(session.student_id, f"Session {session_id} accepted for {proposed.isoformat()}"),
                    ))
                case _:
                    raise IllegalTransition(session_id, "accept", session.status)

        return self._transition(session_id, "accept", apply)

    def reject(self, session_id: str) -> TransitionResult:
        """Teacher rejects the request. The escrow is refunded."""
        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Requested() | CounterOffered():
                    self._require_open(session, "reject", now)
                    self.ledger.release(session.escrow_id)
                    return TransitionResult(session.with_state(Rejected(rejected_at=now), now), effects=(
                        Notify(session.student_id, f"Session {session_id} was declined; {session.price} credits refunded"),
                    ))
                case _:
                    raise IllegalTransition(session_id, "reject", session.status)

        return self._transition(session_id, "reject", apply)

    def counter_offer(self, session_id: str, new_time: datetime) -> TransitionResult:
        """Teacher proposes a different time. The negotiation deadline restarts."""
        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Requested(proposed_time=previous):
                    rounds = 1
                case CounterOffered(proposed_time=previous, rounds=done):
                    rounds = done + 1
                case _:
                    raise IllegalTransition(session_id, "counter_offer", session.status)
            self._require_open(session, "counter_offer", now)
            state = CounterOffered(
                proposed_time=new_time,
                expires_at=now + self.policy.negotiation_window,
                previous_time=previous,
                rounds=rounds,
            )
            return TransitionResult(session.with_state(state, now), effects=(
                Notify(session.student_id, f"Session {session_id}: new time proposed {new_time.isoformat()}"),
            ))

        result = self._transition(session_id, "counter_offer", apply, dispatch=False)
        self.scheduler.schedule(expiry_event(session_id, result.session.expires_at))
        return self._dispatch(result)

    def expire(self, session_id: str) -> TransitionResult:
        """
        Expire a request whose negotiation deadline has passed.

        Expiring an already Expired session is a no-op (applied=False).

        Raises:
            IllegalTransition: Before the deadline, or from any other state
        """
        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Expired():
                    return TransitionResult(session, applied=False)
                case Requested(expires_at=deadline) | CounterOffered(expires_at=deadline):
                    if now < deadline:
                        raise IllegalTransition(
                            session_id, "expire", session.status,
                            f"deadline {deadline.isoformat()} not reached",
                        )
                    self.ledger.release(session.escrow_id)
                    return TransitionResult(session.with_state(Expired(expired_at=now), now), effects=(
                        Notify(session.student_id, f"Session {session_id} expired; {session.price} credits refunded"),
                    ))
                case _:
                    raise IllegalTransition(session_id, "expire", session.status)

        return self._transition(session_id, "expire", apply)

    # ========================================================================
    # DELIVERY
    # ========================================================================

    def complete(self, session_id: str) -> TransitionResult:
        """Mark the session delivered and pay the teacher. Opens the dispute window."""
        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Accepted(scheduled_time=scheduled):
                    self.ledger.transfer(session.escrow_id)
                    completed = session.with_state(Completed(scheduled_time=scheduled, completed_at=now), now)
                    return TransitionResult(completed, effects=(
                        Notify(session.student_id, f"Session {session_id} completed. How did it go? Leave a review."),
                        Notify(session.teacher_id, f"Session {session_id} completed. {session.price} credits earned."),
                    ))
                case _:
                    raise IllegalTransition(session_id, "complete", session.status)

        return self._transition(session_id, "complete", apply)

    def cancel(self, session_id: str) -> TransitionResult:
        """
        Teacher cancels an accepted session. The student is refunded.

        The cancellation is added to the teacher's conduct record. When the
        cancellations within the rolling window reach the warning threshold,
        a warning is recorded and the teacher is told.
        """
        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Accepted():
                    pass
                case _:
                    raise IllegalTransition(session_id, "cancel", session.status)

            self.ledger.release(session.escrow_id)
            effects: List[Effect] = [
                Notify(session.student_id, f"Session {session_id} was cancelled by the teacher; credits refunded"),
            ]

            record = self.conduct(session.teacher_id).with_cancellation(now)
            count = record.cancellations_within(self.policy.cancellation_window, now)
            if count >= self.policy.cancellation_warning_threshold:
                days = self.policy.cancellation_window.days
                reason = f"{count} cancellations within {days} days"
                record = record.with_warning(now, reason)
                effects.append(Notify(session.teacher_id, f"Warning: {reason}"))
                logger.info("teacher %s warned: %s", session.teacher_id, reason)
            self.store.put_conduct(record)

            state = Cancelled(
                cancelled_at=now,
                reason=CancelReason.TEACHER_CANCELLED,
                reported_by=session.teacher_id,
            )
            return TransitionResult(session.with_state(state, now), effects=tuple(effects))

        return self._transition(session_id, "cancel", apply)

    def no_show(self, session_id: str, reporter_id: str) -> TransitionResult:
        """
        A participant reports that the other did not show up.

        Allowed once the grace period after the scheduled time has passed.
        The escrow is always refunded to the student; nobody is paid for a
        session that did not happen.

        Raises:
            NotAParticipant: If the reporter is neither student nor teacher
            IllegalTransition: Outside Accepted, or before the grace period ends
        """
        def apply(session: Session, now: datetime) -> TransitionResult:
            if not session.is_participant(reporter_id):
                raise NotAParticipant(session_id, reporter_id)
            match session.state:
                case Accepted(scheduled_time=scheduled):
                    earliest = scheduled + self.policy.no_show_grace
                    if now < earliest:
                        raise IllegalTransition(
                            session_id, "no_show", session.status,
                            f"grace period runs until {earliest.isoformat()}",
                        )
                case _:
                    raise IllegalTransition(session_id, "no_show", session.status)

            self.ledger.release(session.escrow_id)
            if reporter_id == session.student_id:
                self.store.put_conduct(self.conduct(session.teacher_id).with_no_show(now))

            state = Cancelled(cancelled_at=now, reason=CancelReason.NO_SHOW, reported_by=reporter_id)
            message = f"Session {session_id} closed as a no-show reported by {reporter_id}; credits refunded to the student"
            return TransitionResult(session.with_state(state, now), effects=(
                Notify(session.student_id, message),
                Notify(session.teacher_id, message),
            ))

        return self._transition(session_id, "no_show", apply)

    # ========================================================================
    # DISPUTES
    # ========================================================================

    def dispute(self, session_id: str, raised_by: str, reason: str) -> TransitionResult:
        """
        Raise a dispute on an accepted or recently completed session.

        A dispute from Accepted freezes the held escrow until resolution. A
        dispute from Completed is allowed while the dispute window is open.
        A support ticket is opened once the dispute commits; its id is stored
        on the Disputed state when the ticketing system returns one.

        Raises:
            ValueError: If reason is empty
            NotAParticipant: If raised_by is neither student nor teacher
            IllegalTransition: From any other state, or after the window closed
        """
        if not reason or not reason.strip():
            raise ValueError("a dispute needs a reason")

        def apply(session: Session, now: datetime) -> TransitionResult:
            if not session.is_participant(raised_by):
                raise NotAParticipant(session_id, raised_by)
            match session.state:
                case Accepted():
                    pass
                case Completed(completed_at=completed_at):
                    closes = completed_at + self.policy.dispute_window
                    if now > closes:
                        raise IllegalTransition(
                            session_id, "dispute", session.status,
                            f"dispute window closed at {closes.isoformat()}",
                        )
                case _:
                    raise IllegalTransition(session_id, "dispute", session.status)

            state = Disputed(reason=reason, raised_by=raised_by, raised_at=now, from_status=session.status)
            return TransitionResult(session.with_state(state, now), effects=(
                OpenTicket(session_id, reason),
                Notify(ADMIN_RECIPIENT, f"Dispute on session {session_id} raised by {raised_by}: {reason}"),
            ))

        result = self._transition(session_id, "dispute", apply)
        if result.dispatch is not None and result.dispatch.ticket_ids:
            result = replace(result, session=self._attach_ticket(session_id, result.dispatch.ticket_ids[0]))
        return result

    def reopen_ticket(self, session_id: str) -> Session:
        """
        Open the support ticket for a Disputed session that has none.

        The ticket is normally opened when the dispute commits; if the
        ticketing system was unavailable then, this recreates it. A session
        that already carries a ticket id is returned unchanged. A failing
        ticketing port is logged and leaves ticket_id unset.

        Raises:
            NotFound: If the session does not exist
            IllegalTransition: If the session is not Disputed
        """
        session = self.get_session(session_id)
        match session.state:
            case Disputed(ticket_id=None, reason=reason):
                pass
            case Disputed():
                return session
            case _:
                raise IllegalTransition(session_id, "reopen_ticket", session.status)

        report = dispatch_effects(
            (OpenTicket(session_id, reason),), self.notifier, self.ticketing, self.accounts,
        )
        if not report.ticket_ids:
            logger.warning("ticket for disputed session %s still not opened", session_id)
            return session
        logger.info("ticket %s opened for disputed session %s", report.ticket_ids[0], session_id)
        return self._attach_ticket(session_id, report.ticket_ids[0])

    def resolve_dispute(
        self,
        session_id: str,
        admin_id: str,
        actions: Sequence[ResolutionAction],
    ) -> TransitionResult:
        """
        Apply an admin's resolution plan to a Disputed session.

        The plan is validated against the escrow before anything is written,
        then every step (ledger movements, conduct updates) runs in the same
        unit of work as the move to Resolved.

        Raises:
            InvalidResolution: If the plan does not fit the escrow
            InsufficientFunds: If a post-completion refund exceeds what the
                               teacher still holds (nothing is applied)
            IllegalTransition: If the session is not Disputed
        """
        actions = tuple(actions)
        bonus_wallets = [a.wallet_id for a in actions if isinstance(a, Bonus)]

        def apply(session: Session, now: datetime) -> TransitionResult:
            match session.state:
                case Disputed(reason=dispute_reason):
                    pass
                case _:
                    raise IllegalTransition(session_id, "resolve_dispute", session.status)

            escrow = self.ledger.get_escrow(session.escrow_id)
            steps = plan_resolution(escrow, actions)
            effects: List[Effect] = []
            record = self.conduct(session.teacher_id)
            conduct_changed = False

            for step in steps:
                match step.operation:
                    case "release":
                        self.ledger.release(escrow.escrow_id)
                    case "transfer":
                        self.ledger.transfer(escrow.escrow_id)
                    case "partial_refund":
                        self.ledger.partial_refund(escrow.escrow_id, step.refund_amount, step.transfer_amount)
                    case "reverse_transfer":
                        self.ledger.reverse_transfer(
                            escrow.escrow_id, step.refund_amount, f"dispute on {session_id} resolved by {admin_id}",
                        )
                    case "issue_bonus":
                        bonus = step.action
                        self.ledger.issue_bonus(bonus.wallet_id, bonus.amount, bonus.reason, session_id=session_id)
                        effects.append(Notify(bonus.wallet_id, f"{bonus.amount} bonus credits: {bonus.reason}"))
                    case "warn":
                        record = record.with_warning(now, step.action.reason)
                        conduct_changed = True
                        effects.append(Notify(session.teacher_id, f"Warning: {step.action.reason}"))
                    case "suspend":
                        if step.action.user_id == session.teacher_id:
                            record = replace(record, suspended=True)
                            conduct_changed = True
                        effects.append(SuspendAccount(step.action.user_id, step.action.reason))
                    case other:
                        raise AssertionError(f"unplanned resolution step {other}")

            if conduct_changed:
                self.store.put_conduct(record)

            state = Resolved(resolved_at=now, resolved_by=admin_id, actions=actions, dispute_reason=dispute_reason)
            message = f"Dispute on session {session_id} resolved"
            effects.append(Notify(session.student_id, message))
            effects.append(Notify(session.teacher_id, message))
            return TransitionResult(session.with_state(state, now), effects=tuple(effects))

        return self._transition(session_id, "resolve_dispute", apply, extra_wallets=bonus_wallets)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _transition(
        self,
        session_id: str,
        operation: str,
        apply: Callable[[Session, datetime], TransitionResult],
        extra_wallets: Sequence[str] = (),
        dispatch: bool = True,
    ) -> TransitionResult:
        """
        Run one transition as a single unit of work.

        Lock order is always session first, then every wallet the transition
        may touch in sorted order. The wallet locks stay held until the unit
        commits or rolls back, so a rollback never restores over another
        thread's write. Conduct records are keyed by teacher, and the teacher's
        wallet lock covers them.
        """
        def attempt() -> Tuple[SessionStatus, TransitionResult]:
            with self.locks.hold(session_id):
                session = self.get_session(session_id)
                wallets = (session.student_id, session.teacher_id, *extra_wallets)
                with self.ledger.locks.hold(*wallets), self.store.transaction():
                    result = apply(session, self.clock.now())
                    if result.applied:
                        self.store.put_session(result.session)
                return session.status, result

        try:
            previous, result = self._retry(attempt)
        except IllegalTransition as e:
            logger.debug("rejected %s: %s", operation, e)
            raise

        if not result.applied:
            logger.debug("%s on session %s was a no-op (%s)", operation, session_id, result.status.value)
        if dispatch:
            return self._finish(operation, previous, result)
        self._log_applied(operation, previous, result)
        return result

    def _finish(
        self,
        operation: str,
        previous: Optional[SessionStatus],
        result: TransitionResult,
    ) -> TransitionResult:
        self._log_applied(operation, previous, result)
        return self._dispatch(result)

    def _log_applied(self, operation: str, previous: Optional[SessionStatus], result: TransitionResult) -> None:
        if result.applied:
            logger.info(
                "%s session %s: %s -> %s",
                operation, result.session.session_id,
                previous.value if previous is not None else "-", result.status.value,
            )

    def _dispatch(self, result: TransitionResult) -> TransitionResult:
        report = dispatch_effects(result.effects, self.notifier, self.ticketing, self.accounts)
        return replace(result, dispatch=report)

    def _attach_ticket(self, session_id: str, ticket_id: str) -> Session:
        """Record the support ticket on a Disputed session. Not a transition."""
        with self.locks.hold(session_id), self.store.transaction():
            session = self.get_session(session_id)
            if isinstance(session.state, Disputed) and session.state.ticket_id is None:
                session = replace(session, state=replace(session.state, ticket_id=ticket_id))
                self.store.put_session(session)
            return session

    def _require_open(self, session: Session, operation: str, now: datetime) -> None:
        """Negotiation operations are refused once the deadline has passed."""
        if session.expires_at is not None and now >= session.expires_at:
            raise IllegalTransition(
                session.session_id, operation, session.status,
                f"negotiation deadline {session.expires_at.isoformat()} has passed",
            )

    def _retry(self, operation: Callable[[], Any]) -> Any:
        return retry_transient(
            operation,
            attempts=self.policy.retry_attempts,
            base_delay=self.policy.retry_base_delay,
            sleep=self._sleep,
        )

    def _generate_session_id(self) -> str:
        sequence = self.store.next_sequence("session")
        return f"session:{self.ledger.name}:{sequence:012d}"

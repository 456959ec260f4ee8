"""
session_escrow - Session lifecycle and escrow ledger

Coordinates a paid session between a student and a teacher: negotiation,
acceptance, completion, cancellation and dispute, with the session price held
in escrow and moved exactly once.

Usage:
    from session_escrow import (
        InMemoryStore, ManualClock, Ledger, SessionStateMachine, ExpirySweeper,
    )

    store = InMemoryStore()
    clock = ManualClock(datetime(2025, 1, 1, 9))
    ledger = Ledger(store, clock)
    ledger.open_wallet("student")
    ledger.open_wallet("teacher")
    ledger.deposit("student", Decimal("100"), "payment_001")

    machine = SessionStateMachine(ledger)
    session = machine.request("listing_1", "student", "teacher",
                              Decimal("50"), datetime(2025, 1, 2, 14)).session
    machine.accept(session.session_id)
    machine.complete(session.session_id)
    assert ledger.verify_conservation()['valid']
"""

# Core types
from .core import (
    Wallet,
    EscrowTransaction,
    CreditTransaction,
    EscrowStatus,
    CreditKind,
    DepositResult,
    EscrowError,
    IllegalTransition,
    InsufficientFunds,
    InvalidEscrowState,
    NotFound,
    NotAParticipant,
    InvalidResolution,
    DuplicateEscrow,
    TransientStorageError,
    ADMIN_RECIPIENT,
    CREDIT_PLACES,
    to_credits,
)

# Time and storage
from .clock import Clock, SystemClock, ManualClock
from .storage import Store, InMemoryStore, KeyedLocks

# Ledger
from .ledger import Ledger, apply_purchases

# Sessions
from .session import (
    Session,
    SessionState,
    SessionStatus,
    CancelReason,
    ConductRecord,
    Requested,
    CounterOffered,
    Accepted,
    Completed,
    Rejected,
    Expired,
    Cancelled,
    Disputed,
    Resolved,
    TERMINAL_STATUSES,
    NEGOTIATING_STATUSES,
)

# Policy and configuration
from .policy import SessionPolicy, configure_logging

# Collaborator ports
from .ports import (
    NotificationPort,
    TicketingPort,
    AccountPort,
    PaymentPort,
    Purchase,
    NullNotifier,
    NullTicketing,
    NullAccounts,
    Notify,
    OpenTicket,
    SuspendAccount,
    DispatchReport,
    dispatch_effects,
)

# Disputes
from .disputes import (
    FullRefund,
    PartialRefund,
    PayoutTeacher,
    Bonus,
    WarnTeacher,
    Suspend,
    ResolutionStep,
    plan_resolution,
)

# State machine, deadlines and sweeper
from .state_machine import SessionStateMachine, TransitionResult
from .scheduled_events import DeadlineEvent, DeadlineScheduler, expiry_event
from .sweeper import ExpirySweeper, SweepReport
from .retry import retry_transient

__version__ = "0.1.0"

__all__ = [
    # Core
    'Wallet', 'EscrowTransaction', 'CreditTransaction',
    'EscrowStatus', 'CreditKind', 'DepositResult',
    'EscrowError', 'IllegalTransition', 'InsufficientFunds', 'InvalidEscrowState',
    'NotFound', 'NotAParticipant', 'InvalidResolution', 'DuplicateEscrow', 'TransientStorageError',
    'ADMIN_RECIPIENT', 'CREDIT_PLACES', 'to_credits',
    # Time and storage
    'Clock', 'SystemClock', 'ManualClock',
    'Store', 'InMemoryStore', 'KeyedLocks',
    # Ledger
    'Ledger', 'apply_purchases',
    # Sessions
    'Session', 'SessionState', 'SessionStatus', 'CancelReason', 'ConductRecord',
    'Requested', 'CounterOffered', 'Accepted', 'Completed',
    'Rejected', 'Expired', 'Cancelled', 'Disputed', 'Resolved',
    'TERMINAL_STATUSES', 'NEGOTIATING_STATUSES',
    # Policy
    'SessionPolicy', 'configure_logging',
    # Ports
    'NotificationPort', 'TicketingPort', 'AccountPort', 'PaymentPort', 'Purchase',
    'NullNotifier', 'NullTicketing', 'NullAccounts',
    'Notify', 'OpenTicket', 'SuspendAccount', 'DispatchReport', 'dispatch_effects',
    # Disputes
    'FullRefund', 'PartialRefund', 'PayoutTeacher', 'Bonus', 'WarnTeacher', 'Suspend',
    'ResolutionStep', 'plan_resolution',
    # State machine
    'SessionStateMachine', 'TransitionResult',
    'DeadlineEvent', 'DeadlineScheduler', 'expiry_event',
    'ExpirySweeper', 'SweepReport',
    'retry_transient',
]

"""
conftest.py - Shared pytest fixtures for session escrow tests

Provides common fixtures used across unit, functional and conformance tests:
- Clock, store and ledger with registered wallets
- A funded student
- State machine wired to recording ports
- Sessions already driven into each lifecycle state
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from session_escrow import (
    InMemoryStore, ManualClock, Ledger,
    SessionStateMachine, SessionPolicy, ExpirySweeper,
)

from tests.fake_ports import RecordingNotifier, RecordingTicketing, RecordingAccounts


T0 = datetime(2025, 1, 1, 9, 0)
PRICE = Decimal("50.00")
STUDENT_FUNDS = Decimal("100.00")
LESSON_TIME = T0 + timedelta(days=1, hours=5)


def no_sleep(seconds: float) -> None:
    return None


def build_machine(store=None, funds=STUDENT_FUNDS, **kwargs):
    """
    Fresh ledger and state machine outside pytest fixtures.

    Property-based tests build a new world per example, so they cannot share
    function-scoped fixtures.

    Returns:
        (machine, ledger, clock)
    """
    clock = ManualClock(T0)
    ledger = Ledger(store or InMemoryStore(), clock, name="test")
    ledger.open_wallet("student")
    ledger.open_wallet("teacher")
    ledger.open_wallet("admin")
    if funds:
        ledger.deposit("student", funds, "purchase_seed")
    kwargs.setdefault("sleep", no_sleep)
    return SessionStateMachine(ledger, **kwargs), ledger, clock


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    """Manual clock starting at T0."""
    return ManualClock(T0)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger(store, clock):
    """Ledger with student, teacher and admin wallets, all empty."""
    ledger = Ledger(store, clock, name="test")
    ledger.open_wallet("student")
    ledger.open_wallet("teacher")
    ledger.open_wallet("admin")
    return ledger


@pytest.fixture
def funded_ledger(ledger):
    """Ledger where the student has purchased 100 credits."""
    ledger.deposit("student", STUDENT_FUNDS, "purchase_seed")
    return ledger


# =============================================================================
# STATE MACHINE FIXTURES
# =============================================================================

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ticketing():
    return RecordingTicketing()


@pytest.fixture
def accounts():
    return RecordingAccounts()


@pytest.fixture
def machine(funded_ledger, notifier, ticketing, accounts):
    """State machine over the funded ledger with default policy."""
    return SessionStateMachine(
        funded_ledger,
        policy=SessionPolicy(),
        notifier=notifier,
        ticketing=ticketing,
        accounts=accounts,
        sleep=no_sleep,
    )


@pytest.fixture
def sweeper(machine):
    return ExpirySweeper(machine)


# =============================================================================
# SESSION FIXTURES
# =============================================================================

@pytest.fixture
def requested(machine):
    """Id of a session in Requested with 50 credits held."""
    result = machine.request("listing_1", "student", "teacher", PRICE, LESSON_TIME)
    return result.session.session_id


@pytest.fixture
def accepted(machine, requested):
    machine.accept(requested)
    return requested


@pytest.fixture
def completed(machine, accepted, clock):
    """Id of a completed session; the clock sits just after the lesson ended."""
    clock.advance_time(LESSON_TIME + timedelta(hours=1))
    machine.complete(accepted)
    return accepted


@pytest.fixture
def disputed(machine, accepted):
    """Id of a session disputed from Accepted (escrow still held)."""
    machine.dispute(accepted, "student", "teacher never joined the call")
    return accepted

"""
Conservation Law Conformance Tests

INVARIANT: At all times:
    Σ_{w ∈ wallets} (available(w) + locked(w)) = Σ deposits + Σ bonuses

lock, release, transfer, partial_refund and reverse_transfer redistribute
credits; only deposit and issue_bonus change the total.

These tests use property-based testing to verify conservation holds for
arbitrary operation sequences, including ones where operations are rejected.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st
from datetime import timedelta
from decimal import Decimal

from session_escrow import (
    Ledger, InMemoryStore, ManualClock, EscrowStatus, EscrowError,
    SessionStatus, FullRefund, PartialRefund, PayoutTeacher, Bonus,
)

from tests.conftest import T0, LESSON_TIME, build_machine


# =============================================================================
# STRATEGIES FOR PROPERTY-BASED TESTING
# =============================================================================

@st.composite
def credit_amount(draw, min_value=Decimal("0.01"), max_value=Decimal("500")):
    """Generate a valid credit amount as Decimal."""
    return draw(st.decimals(
        min_value=min_value,
        max_value=max_value,
        places=2,
        allow_nan=False,
        allow_infinity=False,
    ))


WALLETS = ["alice", "bob", "carol"]

ledger_operation = st.one_of(
    st.tuples(st.just("deposit"), st.sampled_from(WALLETS), credit_amount()),
    st.tuples(st.just("bonus"), st.sampled_from(WALLETS), credit_amount()),
    st.tuples(st.just("lock"), st.sampled_from(WALLETS), credit_amount(), st.sampled_from(WALLETS)),
    st.tuples(st.just("release"), st.integers(min_value=0, max_value=20)),
    st.tuples(st.just("transfer"), st.integers(min_value=0, max_value=20)),
    st.tuples(st.just("split"), st.integers(min_value=0, max_value=20), st.integers(min_value=0, max_value=100)),
    st.tuples(st.just("reverse"), st.integers(min_value=0, max_value=20), credit_amount(max_value=Decimal("100"))),
)

machine_operation = st.sampled_from([
    "request", "accept", "reject", "counter_offer", "complete", "cancel",
    "no_show", "dispute", "expire", "resolve_refund", "resolve_payout", "advance",
])


def _apply_ledger_op(ledger, escrows, op):
    kind = op[0]
    if kind == "deposit":
        ledger.deposit(op[1], op[2], f"pay_{len(ledger.audit_trail())}")
    elif kind == "bonus":
        ledger.issue_bonus(op[1], op[2], "property test")
    elif kind == "lock":
        escrows.append(ledger.lock(op[1], op[2], f"s{len(escrows)}", op[3]).escrow_id)
    elif escrows:
        escrow_id = escrows[op[1] % len(escrows)]
        if kind == "release":
            ledger.release(escrow_id)
        elif kind == "transfer":
            ledger.transfer(escrow_id)
        elif kind == "split":
            amount = ledger.get_escrow(escrow_id).amount
            refund = (amount * op[2] / 100).quantize(Decimal("0.01"))
            ledger.partial_refund(escrow_id, refund, amount - refund)
        elif kind == "reverse":
            ledger.reverse_transfer(escrow_id, op[2], "property test")


class TestLedgerConservation:
    """Property-based conservation tests over raw ledger operations."""

    @given(st.lists(ledger_operation, min_size=1, max_size=40))
    @settings(max_examples=100, deadline=None)
    def test_supply_equals_issuance(self, operations):
        """
        PROPERTY: Whatever sequence of operations runs, and whichever of them
        are rejected, supply equals issuance and the audit log replays to the
        stored balances.
        """
        ledger = Ledger(InMemoryStore(), ManualClock(T0), name="prop")
        for w in WALLETS:
            ledger.open_wallet(w)
        escrows = []

        for op in operations:
            try:
                _apply_ledger_op(ledger, escrows, op)
            except (EscrowError, ValueError) as e:
                note(f"{op} rejected: {e}")

            result = ledger.verify_conservation()
            assert result['valid'], f"after {op}: {result}"

        for wallet in ledger.list_wallets():
            assert wallet.available >= 0
            assert wallet.locked >= 0
        assert ledger.reconcile()['valid']

    @given(st.lists(ledger_operation, min_size=1, max_size=40))
    @settings(max_examples=50, deadline=None)
    def test_locked_equals_held_escrows(self, operations):
        """
        PROPERTY: Each wallet's locked balance is exactly the sum of its HELD escrows.
        """
        ledger = Ledger(InMemoryStore(), ManualClock(T0), name="prop")
        for w in WALLETS:
            ledger.open_wallet(w)
        escrows = []

        for op in operations:
            try:
                _apply_ledger_op(ledger, escrows, op)
            except (EscrowError, ValueError):
                pass

        held = {w: Decimal("0") for w in WALLETS}
        for escrow in ledger.store.list_escrows():
            if escrow.status is EscrowStatus.HELD:
                held[escrow.source_wallet] += escrow.amount
        for wallet in ledger.list_wallets():
            assert wallet.locked == held[wallet.owner_id]


class TestStateMachineConservation:
    """Conservation through the state machine."""

    @given(st.lists(
        st.tuples(machine_operation, st.integers(min_value=0, max_value=5)),
        min_size=1,
        max_size=40,
    ))
    @settings(max_examples=100, deadline=None)
    def test_random_lifecycles_conserve(self, steps):
        """
        PROPERTY: Any interleaving of legal and illegal operations over
        several sessions conserves credits, and every session in a final
        money state has a resolved escrow.
        """
        machine, ledger, clock = build_machine(funds=Decimal("300"))
        sessions = []

        for operation, index in steps:
            target = sessions[index % len(sessions)] if sessions else None
            try:
                if operation == "request":
                    sessions.append(machine.request(
                        "listing", "student", "teacher", Decimal("40"), clock.now() + timedelta(days=1),
                    ).session.session_id)
                elif operation == "advance":
                    clock.advance_by(timedelta(hours=13))
                elif target is None:
                    continue
                elif operation == "counter_offer":
                    machine.counter_offer(target, clock.now() + timedelta(days=2))
                elif operation == "no_show":
                    machine.no_show(target, "student")
                elif operation == "dispute":
                    machine.dispute(target, "student", "property test")
                elif operation == "resolve_refund":
                    machine.resolve_dispute(target, "admin", [FullRefund(), Bonus("student", Decimal("1"), "sorry")])
                elif operation == "resolve_payout":
                    machine.resolve_dispute(target, "admin", [PayoutTeacher()])
                else:
                    getattr(machine, operation)(target)
            except (EscrowError, ValueError) as e:
                note(f"{operation} on {target} rejected: {e}")

            assert ledger.verify_conservation()['valid']

        assert ledger.reconcile()['valid']
        for session_id in sessions:
            session = machine.get_session(session_id)
            escrow = ledger.get_escrow(session.escrow_id)
            if session.status in (SessionStatus.REJECTED, SessionStatus.EXPIRED, SessionStatus.CANCELLED):
                assert escrow.status is EscrowStatus.REFUNDED
            elif session.status is SessionStatus.COMPLETED:
                assert escrow.status is EscrowStatus.TRANSFERRED
            elif session.status in (SessionStatus.REQUESTED, SessionStatus.COUNTER_OFFERED, SessionStatus.ACCEPTED):
                assert escrow.status is EscrowStatus.HELD
            elif session.status is SessionStatus.RESOLVED:
                assert escrow.status is not EscrowStatus.HELD


class TestConservationExamples:
    """Explicit conservation examples."""

    def test_partial_refund_then_reversal(self):
        machine, ledger, clock = build_machine()
        session_id = machine.request("l", "student", "teacher", Decimal("60"), LESSON_TIME).session.session_id
        machine.accept(session_id)
        machine.dispute(session_id, "student", "half a lesson")
        machine.resolve_dispute(session_id, "admin", [PartialRefund(Decimal("30"))])
        escrow = ledger.get_escrow(machine.get_session(session_id).escrow_id)
        assert escrow.status is EscrowStatus.TRANSFERRED
        assert escrow.payout == Decimal("30.00")
        assert ledger.total_supply() == Decimal("100.00")
        assert ledger.verify_conservation()['valid']

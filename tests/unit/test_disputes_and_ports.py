"""
test_disputes_and_ports.py - Unit tests for resolution planning and effect dispatch

Tests:
- plan_resolution against held and transferred escrows
- Resolution action validation
- dispatch_effects isolates port failures
"""

import logging
import pytest
from datetime import datetime
from decimal import Decimal

from session_escrow import (
    EscrowTransaction, EscrowStatus, InvalidResolution,
    FullRefund, PartialRefund, PayoutTeacher, Bonus, WarnTeacher, Suspend,
    plan_resolution,
    Notify, OpenTicket, SuspendAccount, dispatch_effects,
    NullNotifier, NullTicketing, NullAccounts,
)

from tests.fake_ports import (
    RecordingNotifier, RecordingTicketing, RecordingAccounts,
    FailingNotifier, FailingTicketing,
)


def _held(amount="50.00"):
    return EscrowTransaction(
        escrow_id="escrow:test:000000000001",
        session_id="s1",
        source_wallet="student",
        dest_wallet="teacher",
        amount=Decimal(amount),
        status=EscrowStatus.HELD,
        created_at=datetime(2025, 1, 1),
    )


def _transferred(amount="50.00", reversed_amount="0"):
    return EscrowTransaction(
        escrow_id="escrow:test:000000000002",
        session_id="s1",
        source_wallet="student",
        dest_wallet="teacher",
        amount=Decimal(amount),
        status=EscrowStatus.TRANSFERRED,
        created_at=datetime(2025, 1, 1),
        resolved_at=datetime(2025, 1, 2),
        payout=Decimal(amount),
        reversed_amount=Decimal(reversed_amount),
    )


class TestResolutionActions:
    """Tests for action record validation."""

    def test_partial_refund_quantizes(self):
        action = PartialRefund(Decimal("10"), Decimal("40"))
        assert action.refund_amount == Decimal("10.00")
        assert action.transfer_amount == Decimal("40.00")

    def test_partial_refund_rejects_negative(self):
        with pytest.raises(ValueError):
            PartialRefund(Decimal("-5"))

    def test_partial_refund_transfer_defaults_to_unset(self):
        assert PartialRefund(Decimal("10")).transfer_amount is None

    def test_bonus_requires_positive_amount(self):
        with pytest.raises(ValueError, match="bonus amount"):
            Bonus("student", Decimal("0"), "sorry")

    def test_bonus_rejects_float(self):
        with pytest.raises(ValueError):
            Bonus("student", 5.0, "sorry")


class TestPlanHeldEscrow:
    """Disputes raised before completion: the held escrow must be settled."""

    def test_full_refund_releases(self):
        steps = plan_resolution(_held(), [FullRefund()])
        assert [s.operation for s in steps] == ["release"]
        assert steps[0].refund_amount == Decimal("50.00")

    def test_payout_transfers(self):
        steps = plan_resolution(_held(), [PayoutTeacher()])
        assert [s.operation for s in steps] == ["transfer"]

    def test_partial_refund_infers_transfer_part(self):
        steps = plan_resolution(_held(), [PartialRefund(Decimal("20"))])
        assert steps[0].operation == "partial_refund"
        assert steps[0].refund_amount == Decimal("20.00")
        assert steps[0].transfer_amount == Decimal("30.00")

    def test_partial_refund_must_split_whole_amount(self):
        with pytest.raises(InvalidResolution, match="does not split"):
            plan_resolution(_held(), [PartialRefund(Decimal("20"), Decimal("20"))])

    def test_explicit_zero_transfer_is_not_inferred(self):
        with pytest.raises(InvalidResolution, match="does not split"):
            plan_resolution(_held(), [PartialRefund(Decimal("20"), Decimal("0"))])

    def test_full_split_with_zero_transfer(self):
        steps = plan_resolution(_held(), [PartialRefund(Decimal("50"), Decimal("0"))])
        assert steps[0].refund_amount == Decimal("50.00")
        assert steps[0].transfer_amount == Decimal("0.00")

    def test_partial_refund_larger_than_escrow(self):
        with pytest.raises(InvalidResolution):
            plan_resolution(_held(), [PartialRefund(Decimal("60"))])

    def test_unsettled_plan_rejected(self):
        with pytest.raises(InvalidResolution, match="still held"):
            plan_resolution(_held(), [WarnTeacher("late")])

    def test_two_settling_actions_rejected(self):
        with pytest.raises(InvalidResolution, match="only one"):
            plan_resolution(_held(), [FullRefund(), PayoutTeacher()])

    def test_empty_plan_rejected(self):
        with pytest.raises(InvalidResolution, match="at least one"):
            plan_resolution(_held(), [])

    def test_settlement_runs_before_extras(self):
        steps = plan_resolution(_held(), [
            Bonus("student", Decimal("5"), "goodwill"),
            WarnTeacher("no-show"),
            FullRefund(),
            Suspend("teacher", "repeat offender"),
        ])
        assert [s.operation for s in steps] == ["release", "issue_bonus", "warn", "suspend"]

    def test_unknown_action_rejected(self):
        with pytest.raises(InvalidResolution, match="unknown"):
            plan_resolution(_held(), [FullRefund(), "refund please"])


class TestPlanTransferredEscrow:
    """Disputes raised after completion: refunds become reversals."""

    def test_full_refund_reverses_everything(self):
        steps = plan_resolution(_transferred(), [FullRefund()])
        assert steps[0].operation == "reverse_transfer"
        assert steps[0].refund_amount == Decimal("50.00")

    def test_full_refund_after_partial_reversal(self):
        steps = plan_resolution(_transferred(reversed_amount="15.00"), [FullRefund()])
        assert steps[0].refund_amount == Decimal("35.00")

    def test_partial_refund_reverses_refund_part(self):
        steps = plan_resolution(_transferred(), [PartialRefund(Decimal("10"))])
        assert steps[0].operation == "reverse_transfer"
        assert steps[0].refund_amount == Decimal("10.00")

    def test_partial_refund_above_payout_rejected(self):
        with pytest.raises(InvalidResolution, match="exceeds"):
            plan_resolution(_transferred(), [PartialRefund(Decimal("51"))])

    def test_zero_refund_rejected(self):
        with pytest.raises(InvalidResolution, match="nothing to refund"):
            plan_resolution(_transferred(), [PartialRefund(Decimal("0"))])

    def test_payout_rejected_as_redundant(self):
        with pytest.raises(InvalidResolution, match="already paid out"):
            plan_resolution(_transferred(), [PayoutTeacher()])

    def test_extras_only_allowed(self):
        steps = plan_resolution(_transferred(), [WarnTeacher("rude")])
        assert [s.operation for s in steps] == ["warn"]


class TestDispatchEffects:
    """Tests for post-commit effect delivery."""

    def test_delivers_every_kind(self):
        notifier, ticketing, accounts = RecordingNotifier(), RecordingTicketing(), RecordingAccounts()
        report = dispatch_effects(
            [Notify("u1", "hi"), OpenTicket("s1", "broken"), SuspendAccount("u2", "abuse")],
            notifier, ticketing, accounts,
        )
        assert report.ok
        assert notifier.sent == [("u1", "hi")]
        assert ticketing.tickets == [("TICKET-1", "s1", "broken")]
        assert accounts.suspended == [("u2", "abuse")]
        assert report.ticket_ids == ("TICKET-1",)

    def test_failures_are_logged_and_isolated(self, caplog):
        accounts = RecordingAccounts()
        with caplog.at_level(logging.WARNING, logger="session_escrow.ports"):
            report = dispatch_effects(
                [Notify("u1", "hi"), OpenTicket("s1", "broken"), SuspendAccount("u2", "abuse")],
                FailingNotifier(), FailingTicketing(), accounts,
            )
        assert not report.ok
        assert len(report.failed) == 2
        assert report.delivered == (SuspendAccount("u2", "abuse"),)
        assert accounts.suspended == [("u2", "abuse")]
        assert sum(1 for r in caplog.records if r.levelno == logging.WARNING) == 2

    def test_null_ports_accept_everything(self):
        report = dispatch_effects(
            [Notify("u1", "hi"), OpenTicket("s1", "x")],
            NullNotifier(), NullTicketing(), NullAccounts(),
        )
        assert report.ok
        assert report.ticket_ids == ()

    def test_unknown_effect_recorded_as_failed(self):
        report = dispatch_effects(["shout"], NullNotifier(), NullTicketing(), NullAccounts())
        assert report.failed == ("shout",)

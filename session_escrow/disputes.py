"""
disputes.py - Dispute resolution actions

An admin resolves a Disputed session with a plan: a tuple of actions.
plan_resolution() is a pure function that checks the plan against the escrow
and turns it into ResolutionSteps the state machine executes in order.

Escrow still HELD (dispute raised before completion):
    exactly one settling action is required so no credits stay locked:
        FullRefund     -> Ledger.release
        PartialRefund  -> Ledger.partial_refund
        PayoutTeacher  -> Ledger.transfer

Escrow already TRANSFERRED (dispute raised after completion):
    refunds become compensating reversals from teacher to student:
        FullRefund     -> Ledger.reverse_transfer(everything still reversible)
        PartialRefund  -> Ledger.reverse_transfer(refund_amount)
    PayoutTeacher is rejected: the teacher was already paid.

Bonus, WarnTeacher and Suspend may be combined with anything.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Union

from .core import (
    EscrowTransaction, EscrowStatus, InvalidResolution,
    ZERO, positive_credits, to_credits,
)


@dataclass(frozen=True, slots=True)
class FullRefund:
    """Give the student back everything they paid."""
    pass


@dataclass(frozen=True, slots=True)
class PartialRefund:
    """
    Split the escrow between student and teacher.

    transfer_amount left as None means "the rest of a held escrow".
    """
    refund_amount: Decimal
    transfer_amount: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'refund_amount', to_credits(self.refund_amount))
        if self.transfer_amount is not None:
            object.__setattr__(self, 'transfer_amount', to_credits(self.transfer_amount))
        if self.refund_amount < ZERO or (self.transfer_amount or ZERO) < ZERO:
            raise ValueError("partial refund amounts cannot be negative")


@dataclass(frozen=True, slots=True)
class PayoutTeacher:
    """Dispute decided for the teacher: the held escrow is paid out."""
    pass


@dataclass(frozen=True, slots=True)
class Bonus:
    wallet_id: str
    amount: Decimal
    reason: str

    def __post_init__(self):
        object.__setattr__(self, 'amount', positive_credits(self.amount, "bonus amount"))


@dataclass(frozen=True, slots=True)
class WarnTeacher:
    """Recorded on the teacher's conduct record. No money moves."""
    reason: str


@dataclass(frozen=True, slots=True)
class Suspend:
    """Suspension is carried out by the account system."""
    user_id: str
    reason: str


ResolutionAction = Union[FullRefund, PartialRefund, PayoutTeacher, Bonus, WarnTeacher, Suspend]

SETTLING_ACTIONS = (FullRefund, PartialRefund, PayoutTeacher)


@dataclass(frozen=True, slots=True)
class ResolutionStep:
    """
    One executable step of a validated plan.

    operation is one of: release, transfer, partial_refund, reverse_transfer,
    issue_bonus, warn, suspend.
    """
    operation: str
    action: ResolutionAction
    refund_amount: Decimal = ZERO
    transfer_amount: Decimal = ZERO


def plan_resolution(
    escrow: EscrowTransaction,
    actions: Sequence[ResolutionAction],
) -> List[ResolutionStep]:
    """
    Validate a resolution plan and translate it into ledger steps.

    Raises:
        InvalidResolution: If the plan is empty, settles the escrow more than
                           once, leaves a HELD escrow unsettled, refunds more
                           than can be reversed, or pays a teacher twice.
    """
    if not actions:
        raise InvalidResolution("resolution needs at least one action")

    settling = [a for a in actions if isinstance(a, SETTLING_ACTIONS)]
    if len(settling) > 1:
        raise InvalidResolution("resolution may contain only one refund or payout action")

    steps: List[ResolutionStep] = []

    if escrow.status is EscrowStatus.HELD:
        if not settling:
            raise InvalidResolution(
                f"escrow {escrow.escrow_id} is still held: resolution must refund or pay it out"
            )
        steps.append(_settle_held(escrow, settling[0]))
    elif escrow.status is EscrowStatus.TRANSFERRED:
        if settling:
            steps.append(_reverse_transferred(escrow, settling[0]))
    else:
        if settling:
            raise InvalidResolution(
                f"escrow {escrow.escrow_id} was already refunded: nothing left to settle"
            )

    for action in actions:
        if isinstance(action, SETTLING_ACTIONS):
            continue
        if isinstance(action, Bonus):
            steps.append(ResolutionStep("issue_bonus", action))
        elif isinstance(action, WarnTeacher):
            steps.append(ResolutionStep("warn", action))
        elif isinstance(action, Suspend):
            steps.append(ResolutionStep("suspend", action))
        else:
            raise InvalidResolution(f"unknown resolution action {action!r}")

    return steps


def _settle_held(escrow: EscrowTransaction, action: ResolutionAction) -> ResolutionStep:
    if isinstance(action, FullRefund):
        return ResolutionStep("release", action, refund_amount=escrow.amount)
    if isinstance(action, PayoutTeacher):
        return ResolutionStep("transfer", action, transfer_amount=escrow.amount)
    # PartialRefund on a held escrow must split the whole amount.
    transfer_amount = action.transfer_amount
    if transfer_amount is None:
        transfer_amount = escrow.amount - action.refund_amount
    if transfer_amount < ZERO or action.refund_amount + transfer_amount != escrow.amount:
        raise InvalidResolution(
            f"partial refund {action.refund_amount} + {transfer_amount} "
            f"does not split escrow amount {escrow.amount}"
        )
    return ResolutionStep(
        "partial_refund", action,
        refund_amount=action.refund_amount, transfer_amount=transfer_amount,
    )


def _reverse_transferred(escrow: EscrowTransaction, action: ResolutionAction) -> ResolutionStep:
    if isinstance(action, PayoutTeacher):
        raise InvalidResolution(f"escrow {escrow.escrow_id} was already paid out")
    if isinstance(action, FullRefund):
        amount = escrow.reversible
    else:
        amount = action.refund_amount
    if amount <= ZERO:
        raise InvalidResolution(f"nothing to refund on escrow {escrow.escrow_id}")
    if amount > escrow.reversible:
        raise InvalidResolution(
            f"refund {amount} exceeds the {escrow.reversible} paid out on escrow {escrow.escrow_id}"
        )
    return ResolutionStep("reverse_transfer", action, refund_amount=amount)

"""
ports.py - Collaborator ports and side-effect intents

Transitions never call collaborators directly. They return side-effect
intents (Notify, OpenTicket, SuspendAccount) alongside the committed session;
dispatch_effects() delivers them after the commit. A failing collaborator is
logged and skipped: the financial state change is the transition's contract,
a notification is not.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol, Union, runtime_checkable
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# PORTS
# ============================================================================

@runtime_checkable
class NotificationPort(Protocol):
    """Fire-and-forget user notifications."""

    def notify(self, user_id: str, message: str) -> None:
        ...


@runtime_checkable
class TicketingPort(Protocol):
    """Support ticket system used for disputes."""

    def create_ticket(self, session_id: str, reason: str) -> Optional[str]:
        """Open a ticket and return its id (None if the system has no ids)."""
        ...


@runtime_checkable
class AccountPort(Protocol):
    """Account administration (suspension after a dispute)."""

    def suspend(self, user_id: str, reason: str) -> None:
        ...


class PaymentPort(Protocol):
    """
    Credit purchase gateway.

    Lives outside the escrow core. A confirmed purchase reaches the core only
    through Ledger.deposit(wallet_id, amount, payment_reference).
    """

    def confirmed_purchases(self) -> Iterable["Purchase"]:
        ...


@dataclass(frozen=True, slots=True)
class Purchase:
    wallet_id: str
    amount: Decimal
    payment_reference: str


class NullNotifier:
    """Notification port that drops every message."""

    def notify(self, user_id: str, message: str) -> None:
        return None


class NullTicketing:
    """Ticketing port that records nothing."""

    def create_ticket(self, session_id: str, reason: str) -> Optional[str]:
        return None


class NullAccounts:
    def suspend(self, user_id: str, reason: str) -> None:
        return None


# ============================================================================
# SIDE-EFFECT INTENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Notify:
    user_id: str
    message: str


@dataclass(frozen=True, slots=True)
class OpenTicket:
    session_id: str
    reason: str


@dataclass(frozen=True, slots=True)
class SuspendAccount:
    user_id: str
    reason: str


Effect = Union[Notify, OpenTicket, SuspendAccount]


@dataclass(frozen=True, slots=True)
class DispatchReport:
    """What happened to each intent handed to dispatch_effects()."""
    delivered: tuple = ()
    failed: tuple = ()
    ticket_ids: tuple = ()

    @property
    def ok(self) -> bool:
        return not self.failed


def dispatch_effects(
    effects: Iterable[Effect],
    notifier: NotificationPort,
    ticketing: TicketingPort,
    accounts: AccountPort,
) -> DispatchReport:
    """
    Deliver side-effect intents to their collaborators.

    Every intent is attempted. Any exception raised by a collaborator is
    logged at WARNING and recorded in the report; none propagates.
    """
    delivered: List[Effect] = []
    failed: List[Effect] = []
    ticket_ids: List[str] = []

    for effect in effects:
        try:
            if isinstance(effect, Notify):
                notifier.notify(effect.user_id, effect.message)
            elif isinstance(effect, OpenTicket):
                ticket_id = ticketing.create_ticket(effect.session_id, effect.reason)
                if ticket_id is not None:
                    ticket_ids.append(ticket_id)
            elif isinstance(effect, SuspendAccount):
                accounts.suspend(effect.user_id, effect.reason)
            else:
                raise TypeError(f"unknown side effect {effect!r}")
        except Exception as e:
            logger.warning("side effect %r failed: %s", effect, e, exc_info=True)
            failed.append(effect)
        else:
            delivered.append(effect)

    return DispatchReport(
        delivered=tuple(delivered),
        failed=tuple(failed),
        ticket_ids=tuple(ticket_ids),
    )

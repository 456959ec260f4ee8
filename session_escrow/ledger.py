"""
ledger.py - Wallet and Escrow Ledger

The Ledger is the only component that mutates money. It owns wallet balances,
escrow records and the append-only credit audit log.

Key responsibilities:
    - Executes every operation atomically (all writes succeed or none do)
    - Serializes operations per wallet, acquiring wallet locks in sorted order
    - Always validates before writing and always audits what it writes
    - Verifies conservation: lock/release/transfer/partial_refund/reverse_transfer
      are zero-sum; only issue_bonus and deposit change the total supply
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from .clock import Clock, SystemClock
from .core import (
    # Types
    Wallet, EscrowTransaction, CreditTransaction,
    EscrowStatus, CreditKind, DepositResult,
    # Constants
    ZERO,
    # Exceptions
    DuplicateEscrow, InsufficientFunds, InvalidEscrowState, NotFound,
    # Helpers
    positive_credits, to_credits,
)
from .ports import Purchase
from .storage import KeyedLocks, Store

logger = logging.getLogger(__name__)


class Ledger:
    """
    Escrow ledger with full validation and audit trail.

    Design Principles:
        - Always validates: every operation checks balances and escrow status
          before the first write. A failed check leaves no trace.
        - Always logs: every balance change appends a CreditTransaction.

    Thread Safety:
        Operations on the same wallet are serialized through KeyedLocks.
        Share one KeyedLocks instance between Ledgers that share a Store.

    Example:
        ledger = Ledger(InMemoryStore(), ManualClock(datetime(2025, 1, 1)))
        ledger.open_wallet("student")
        ledger.open_wallet("teacher")
        ledger.deposit("student", Decimal("100"), "payment_001")

        escrow = ledger.lock("student", Decimal("50"), "session_1", "teacher")
        ledger.transfer(escrow.escrow_id)
    """

    def __init__(
        self,
        store: Store,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLocks] = None,
        name: str = "main",
        verbose: bool = False,
    ):
        """
        Create a ledger.

        Args:
            store: Storage port holding wallets, escrows and the audit log
            clock: Time source (default: SystemClock)
            locks: Per-wallet locks (default: a private KeyedLocks)
            name: Ledger identifier, embedded in generated ids
            verbose: Print one line per applied or rejected operation
        """
        self.store = store
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLocks()
        self.name = name
        self.verbose = verbose

    # ========================================================================
    # READ-ONLY METHODS
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current time according to the ledger's clock."""
        return self.clock.now()

    def get_wallet(self, owner_id: str) -> Wallet:
        """
        Return a wallet.

        Raises:
            NotFound: If the wallet does not exist
        """
        wallet = self.store.get_wallet(owner_id)
        if wallet is None:
            raise NotFound("wallet", owner_id)
        return wallet

    def get_escrow(self, escrow_id: str) -> EscrowTransaction:
        """
        Return an escrow.

        Raises:
            NotFound: If the escrow does not exist
        """
        escrow = self.store.get_escrow(escrow_id)
        if escrow is None:
            raise NotFound("escrow", escrow_id)
        return escrow

    def list_wallets(self) -> List[Wallet]:
        return self.store.list_wallets()

    def total_supply(self) -> Decimal:
        """
        Sum of available + locked over every wallet.

        Wallets come back sorted by owner so accumulation order is deterministic.
        """
        return sum((w.available + w.locked for w in self.store.list_wallets()), ZERO)

    def total_issued(self) -> Decimal:
        """Credits that entered the system through deposits and bonuses."""
        issued = ZERO
        for entry in self.store.credit_log():
            if entry.kind is CreditKind.PURCHASED:
                issued += entry.amount
            elif entry.kind is CreditKind.EARNED and entry.operation == "issue_bonus":
                issued += entry.amount
        return issued

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Verify that no credits were created or destroyed outside issuance.

        Returns:
            Dict with keys:
            - 'valid': bool - True if total supply equals total issued
            - 'supply': Decimal - Current sum of all wallet balances
            - 'issued': Decimal - Sum of deposits and bonuses
            - 'discrepancy': Decimal - supply - issued

        Example:
            result = ledger.verify_conservation()
            assert result['valid'], f"Conservation violated: {result['discrepancy']}"
        """
        supply = self.total_supply()
        issued = self.total_issued()
        return {
            'valid': supply == issued,
            'supply': supply,
            'issued': issued,
            'discrepancy': supply - issued,
        }

    def audit_trail(
        self,
        wallet_id: Optional[str] = None,
        session_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
    ) -> List[CreditTransaction]:
        """Audit entries in sequence order, optionally filtered."""
        entries = self.store.credit_log()
        if wallet_id is not None:
            entries = [e for e in entries if e.wallet_id == wallet_id]
        if session_id is not None:
            entries = [e for e in entries if e.session_id == session_id]
        if escrow_id is not None:
            entries = [e for e in entries if e.escrow_id == escrow_id]
        return entries

    def replay_balances(self) -> Dict[str, Tuple[Decimal, Decimal]]:
        """
        Rebuild every wallet's (available, locked) from the audit log alone.

        Wallets without audit entries replay to (0, 0).
        """
        balances: Dict[str, Tuple[Decimal, Decimal]] = {
            w.owner_id: (ZERO, ZERO) for w in self.store.list_wallets()
        }
        for entry in self.store.credit_log():
            available, locked = balances.get(entry.wallet_id, (ZERO, ZERO))
            balances[entry.wallet_id] = (
                available + entry.available_delta,
                locked + entry.locked_delta,
            )
        return balances

    def reconcile(self) -> Dict[str, Any]:
        """
        Compare stored balances against a replay of the audit log.

        Returns:
            Dict with 'valid' and a list of 'discrepancies', each holding
            wallet, stored and replayed (available, locked) pairs.
        """
        replayed = self.replay_balances()
        discrepancies = []
        for wallet in self.store.list_wallets():
            stored = (wallet.available, wallet.locked)
            derived = replayed.get(wallet.owner_id, (ZERO, ZERO))
            if stored != derived:
                discrepancies.append({
                    'wallet': wallet.owner_id,
                    'stored': stored,
                    'replayed': derived,
                })
        return {
            'valid': len(discrepancies) == 0,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def open_wallet(self, owner_id: str) -> Wallet:
        """
        Register a new empty wallet.

        Raises:
            ValueError: If the wallet already exists
        """
        with self.locks.hold(owner_id), self.store.transaction():
            if self.store.get_wallet(owner_id) is not None:
                raise ValueError(f"Wallet {owner_id} already registered")
            wallet = Wallet(owner_id=owner_id, created_at=self.current_time)
            self.store.put_wallet(wallet)
        return wallet

    def has_wallet(self, owner_id: str) -> bool:
        return self.store.get_wallet(owner_id) is not None

    # ========================================================================
    # ESCROW OPERATIONS (Mutating)
    # ========================================================================

    def lock(
        self,
        wallet_id: str,
        amount: Any,
        session_id: str,
        dest_wallet_id: str,
    ) -> EscrowTransaction:
        """
        Move credits from a wallet's available balance into a new HELD escrow.

        Args:
            wallet_id: Payer wallet
            amount: Credits to hold (positive)
            session_id: Session the escrow belongs to
            dest_wallet_id: Payee wallet the escrow may later transfer to

        Returns:
            The new escrow, status HELD

        Raises:
            NotFound: If either wallet does not exist
            DuplicateEscrow: If session_id already has an escrow
            InsufficientFunds: If available < amount
        """
        amount = positive_credits(amount)
        with self.locks.hold(wallet_id, dest_wallet_id), self.store.transaction():
            wallet = self.get_wallet(wallet_id)
            self.get_wallet(dest_wallet_id)
            existing = self.store.escrow_for_session(session_id)
            if existing is not None:
                self._trace_rejected("lock", f"session {session_id} already has {existing.escrow_id}")
                raise DuplicateEscrow(session_id, existing.escrow_id)
            if wallet.available < amount:
                self._trace_rejected("lock", f"{wallet_id} available {wallet.available} < {amount}")
                raise InsufficientFunds(wallet_id, amount, wallet.available)

            now = self.current_time
            escrow = EscrowTransaction(
                escrow_id=self._generate_id("escrow"),
                session_id=session_id,
                source_wallet=wallet_id,
                dest_wallet=dest_wallet_id,
                amount=amount,
                status=EscrowStatus.HELD,
                created_at=now,
            )
            self.store.put_wallet(replace(
                wallet,
                available=wallet.available - amount,
                locked=wallet.locked + amount,
            ))
            self.store.put_escrow(escrow)
            self._append(
                wallet_id, CreditKind.SPENT, amount, "lock",
                available_delta=-amount, locked_delta=amount,
                session_id=session_id, escrow_id=escrow.escrow_id,
            )
        self._trace_applied("lock", f"{amount} held {wallet_id}→{dest_wallet_id} ({escrow.escrow_id})")
        return escrow

    def release(self, escrow_id: str) -> EscrowTransaction:
        """
        Refund a HELD escrow to its source wallet.

        Raises:
            NotFound: If the escrow does not exist
            InvalidEscrowState: If the escrow is not HELD
        """
        escrow = self.get_escrow(escrow_id)
        with self.locks.hold(escrow.source_wallet, escrow.dest_wallet), self.store.transaction():
            escrow = self._held_escrow(escrow_id, "release")
            source = self.get_wallet(escrow.source_wallet)
            self.store.put_wallet(replace(
                source,
                available=source.available + escrow.amount,
                locked=source.locked - escrow.amount,
            ))
            resolved = replace(escrow, status=EscrowStatus.REFUNDED, resolved_at=self.current_time)
            self.store.put_escrow(resolved)
            self._append(
                source.owner_id, CreditKind.REFUNDED, escrow.amount, "release",
                available_delta=escrow.amount, locked_delta=-escrow.amount,
                session_id=escrow.session_id, escrow_id=escrow_id,
            )
        self._trace_applied("release", f"{escrow.amount} refunded to {escrow.source_wallet} ({escrow_id})")
        return resolved

    def transfer(self, escrow_id: str) -> EscrowTransaction:
        """
        Pay a HELD escrow out to its destination wallet.

        Raises:
            NotFound: If the escrow or a wallet does not exist
            InvalidEscrowState: If the escrow is not HELD
        """
        escrow = self.get_escrow(escrow_id)
        with self.locks.hold(escrow.source_wallet, escrow.dest_wallet), self.store.transaction():
            escrow = self._held_escrow(escrow_id, "transfer")
            source = self.get_wallet(escrow.source_wallet)
            dest = self.get_wallet(escrow.dest_wallet)
            self.store.put_wallet(replace(source, locked=source.locked - escrow.amount))
            self.store.put_wallet(replace(dest, available=dest.available + escrow.amount))
            resolved = replace(
                escrow,
                status=EscrowStatus.TRANSFERRED,
                resolved_at=self.current_time,
                payout=escrow.amount,
            )
            self.store.put_escrow(resolved)
            self._append(
                source.owner_id, CreditKind.SPENT, escrow.amount, "transfer",
                locked_delta=-escrow.amount,
                session_id=escrow.session_id, escrow_id=escrow_id,
                metadata={'settles': escrow_id},
            )
            self._append(
                dest.owner_id, CreditKind.EARNED, escrow.amount, "transfer",
                available_delta=escrow.amount,
                session_id=escrow.session_id, escrow_id=escrow_id,
            )
        self._trace_applied("transfer", f"{escrow.amount} {escrow.source_wallet}→{escrow.dest_wallet} ({escrow_id})")
        return resolved

    def partial_refund(
        self,
        escrow_id: str,
        refund_amount: Any,
        transfer_amount: Any,
    ) -> EscrowTransaction:
        """
        Split a HELD escrow between a refund to the source and a payout to the destination.

        The escrow resolves to TRANSFERRED; the audit entries record the split.

        Raises:
            ValueError: If either part is negative or the parts do not sum to
                        the escrow amount
            InvalidEscrowState: If the escrow is not HELD
        """
        refund_amount = to_credits(refund_amount)
        transfer_amount = to_credits(transfer_amount)
        if refund_amount < ZERO or transfer_amount < ZERO:
            raise ValueError("partial refund amounts cannot be negative")

        escrow = self.get_escrow(escrow_id)
        if refund_amount + transfer_amount != escrow.amount:
            raise ValueError(
                f"refund {refund_amount} + transfer {transfer_amount} "
                f"!= escrow amount {escrow.amount}"
            )

        with self.locks.hold(escrow.source_wallet, escrow.dest_wallet), self.store.transaction():
            escrow = self._held_escrow(escrow_id, "partial_refund")
            source = self.get_wallet(escrow.source_wallet)
            dest = self.get_wallet(escrow.dest_wallet)
            split = {'refund': str(refund_amount), 'transfer': str(transfer_amount)}

            self.store.put_wallet(replace(
                source,
                available=source.available + refund_amount,
                locked=source.locked - escrow.amount,
            ))
            self.store.put_wallet(replace(dest, available=dest.available + transfer_amount))
            resolved = replace(
                escrow,
                status=EscrowStatus.TRANSFERRED,
                resolved_at=self.current_time,
                payout=transfer_amount,
            )
            self.store.put_escrow(resolved)

            if refund_amount > ZERO:
                self._append(
                    source.owner_id, CreditKind.REFUNDED, refund_amount, "partial_refund",
                    available_delta=refund_amount, locked_delta=-refund_amount,
                    session_id=escrow.session_id, escrow_id=escrow_id, metadata=split,
                )
            if transfer_amount > ZERO:
                self._append(
                    source.owner_id, CreditKind.SPENT, transfer_amount, "partial_refund",
                    locked_delta=-transfer_amount,
                    session_id=escrow.session_id, escrow_id=escrow_id, metadata=split,
                )
                self._append(
                    dest.owner_id, CreditKind.EARNED, transfer_amount, "partial_refund",
                    available_delta=transfer_amount,
                    session_id=escrow.session_id, escrow_id=escrow_id, metadata=split,
                )
        self._trace_applied(
            "partial_refund",
            f"{refund_amount} back to {escrow.source_wallet}, {transfer_amount} to {escrow.dest_wallet} ({escrow_id})",
        )
        return resolved

    def reverse_transfer(self, escrow_id: str, amount: Any, reason: str) -> EscrowTransaction:
        """
        Pay credits back from the payee to the payer of a TRANSFERRED escrow.

        This is the compensating movement used when a dispute raised after
        completion ends in a refund. The escrow keeps its TRANSFERRED status;
        only its reversed_amount grows.

        Raises:
            InvalidEscrowState: If the escrow is not TRANSFERRED
            ValueError: If the reversal would exceed what the payee received
            InsufficientFunds: If the payee's available balance cannot cover it
        """
        amount = positive_credits(amount)
        escrow = self.get_escrow(escrow_id)
        with self.locks.hold(escrow.source_wallet, escrow.dest_wallet), self.store.transaction():
            escrow = self.get_escrow(escrow_id)
            if escrow.status is not EscrowStatus.TRANSFERRED:
                logger.error("reverse_transfer on escrow %s in status %s", escrow_id, escrow.status.value)
                raise InvalidEscrowState(escrow_id, escrow.status, "reverse_transfer")
            if amount > escrow.reversible:
                raise ValueError(
                    f"cannot reverse {amount} on escrow {escrow_id}: only {escrow.reversible} reversible"
                )
            source = self.get_wallet(escrow.source_wallet)
            dest = self.get_wallet(escrow.dest_wallet)
            if dest.available < amount:
                self._trace_rejected("reverse_transfer", f"{dest.owner_id} available {dest.available} < {amount}")
                raise InsufficientFunds(dest.owner_id, amount, dest.available)

            self.store.put_wallet(replace(dest, available=dest.available - amount))
            self.store.put_wallet(replace(source, available=source.available + amount))
            updated = replace(escrow, reversed_amount=escrow.reversed_amount + amount)
            self.store.put_escrow(updated)
            meta = {'reason': reason}
            self._append(
                dest.owner_id, CreditKind.SPENT, amount, "reverse_transfer",
                available_delta=-amount,
                session_id=escrow.session_id, escrow_id=escrow_id, metadata=meta,
            )
            self._append(
                source.owner_id, CreditKind.REFUNDED, amount, "reverse_transfer",
                available_delta=amount,
                session_id=escrow.session_id, escrow_id=escrow_id, metadata=meta,
            )
        self._trace_applied("reverse_transfer", f"{amount} {escrow.dest_wallet}→{escrow.source_wallet} ({escrow_id})")
        return updated

    # ========================================================================
    # ISSUANCE (Mutating, changes total supply)
    # ========================================================================

    def issue_bonus(
        self,
        wallet_id: str,
        amount: Any,
        reason: str,
        session_id: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Credit a wallet directly, independent of any escrow.

        Used for compensation. There is no source wallet, so the only
        precondition is that the wallet exists.
        """
        amount = positive_credits(amount)
        with self.locks.hold(wallet_id), self.store.transaction():
            wallet = self.get_wallet(wallet_id)
            self.store.put_wallet(replace(wallet, available=wallet.available + amount))
            entry = self._append(
                wallet_id, CreditKind.EARNED, amount, "issue_bonus",
                available_delta=amount, session_id=session_id,
                metadata={'reason': reason},
            )
        self._trace_applied("issue_bonus", f"{amount} to {wallet_id} ({reason})")
        return entry

    def deposit(self, wallet_id: str, amount: Any, payment_reference: str) -> DepositResult:
        """
        Credit purchased credits to a wallet.

        This is the only entry point for the payment gateway. Deposits are
        idempotent on payment_reference: a reference that was already applied
        is reported as ALREADY_APPLIED and changes nothing.

        Raises:
            ValueError: If payment_reference is empty
            NotFound: If the wallet does not exist
        """
        if not payment_reference or not payment_reference.strip():
            raise ValueError("payment_reference cannot be empty")
        amount = positive_credits(amount)
        with self.locks.hold(wallet_id), self.store.transaction():
            if self.store.has_payment_reference(payment_reference):
                if self.verbose:
                    print(f"⚠  ALREADY_APPLIED: payment_reference={payment_reference}")
                return DepositResult.ALREADY_APPLIED
            wallet = self.get_wallet(wallet_id)
            self.store.put_wallet(replace(wallet, available=wallet.available + amount))
            self.store.add_payment_reference(payment_reference)
            self._append(
                wallet_id, CreditKind.PURCHASED, amount, "deposit",
                available_delta=amount,
                metadata={'payment_reference': payment_reference},
            )
        self._trace_applied("deposit", f"{amount} to {wallet_id} ({payment_reference})")
        return DepositResult.APPLIED

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _generate_id(self, kind: str) -> str:
        """
        Generate a unique id.

        Format: {kind}:{ledger_name}:{sequence:012d}
        Monotonically increasing within a ledger and kind.
        """
        sequence = self.store.next_sequence(kind)
        return f"{kind}:{self.name}:{sequence:012d}"

    def _held_escrow(self, escrow_id: str, operation: str) -> EscrowTransaction:
        escrow = self.get_escrow(escrow_id)
        if escrow.status is not EscrowStatus.HELD:
            # Per-session and per-wallet serialization should make this unreachable.
            logger.error(
                "%s on escrow %s already %s (session %s)",
                operation, escrow_id, escrow.status.value, escrow.session_id,
            )
            self._trace_rejected(operation, f"escrow {escrow_id} is {escrow.status.value}")
            raise InvalidEscrowState(escrow_id, escrow.status, operation)
        return escrow

    def _append(
        self,
        wallet_id: str,
        kind: CreditKind,
        amount: Decimal,
        operation: str,
        available_delta: Decimal = ZERO,
        locked_delta: Decimal = ZERO,
        session_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        sequence = self.store.next_sequence("credit")
        entry = CreditTransaction(
            entry_id=f"credit:{self.name}:{sequence:012d}",
            sequence_number=sequence,
            wallet_id=wallet_id,
            kind=kind,
            amount=amount,
            timestamp=self.current_time,
            operation=operation,
            available_delta=available_delta,
            locked_delta=locked_delta,
            session_id=session_id,
            escrow_id=escrow_id,
            metadata=dict(metadata or {}),
        )
        self.store.append_credit(entry)
        return entry

    def _trace_applied(self, operation: str, detail: str) -> None:
        logger.debug("%s applied: %s", operation, detail)
        if self.verbose:
            print(f"✓ {operation.upper()}: {detail}")

    def _trace_rejected(self, operation: str, reason: str) -> None:
        logger.debug("%s rejected: %s", operation, reason)
        if self.verbose:
            print(f"✗ REJECTED {operation}: {reason}")


def apply_purchases(ledger: Ledger, purchases: Iterable[Purchase]) -> Dict[DepositResult, int]:
    """
    Deposit confirmed purchases from the payment gateway.

    Deposits are idempotent on payment_reference, so replaying the gateway's
    feed is safe.

    Returns:
        Count of purchases per DepositResult
    """
    counts = {result: 0 for result in DepositResult}
    for purchase in purchases:
        result = ledger.deposit(purchase.wallet_id, purchase.amount, purchase.payment_reference)
        counts[result] += 1
    return counts

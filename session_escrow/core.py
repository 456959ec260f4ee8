"""
Core types and pure functions for the session escrow system.

This module provides the foundational data structures for the escrow core:
1. Decimal context and credit quantization
2. Enums: EscrowStatus, CreditKind, DepositResult
3. Exceptions: EscrowError and domain-specific error types
4. Immutable records: Wallet, EscrowTransaction, CreditTransaction

Records are frozen. Only the Ledger produces new Wallet, EscrowTransaction and
CreditTransaction values; nothing in this module touches storage.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Credit arithmetic must be exact and deterministic. The global context is
# configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_ESCROW_DECIMAL_CONTEXT = getcontext()
_ESCROW_DECIMAL_CONTEXT.prec = 50
_ESCROW_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Credits carry two decimal places, rounded with banker's rounding.
CREDIT_PLACES = 2
CREDIT_QUANTUM = Decimal(10) ** -CREDIT_PLACES

ZERO = Decimal("0")

# Identity notified when a dispute is raised.
ADMIN_RECIPIENT = "admin"


# ============================================================================
# CREDIT HELPERS
# ============================================================================

def to_credits(value: Any) -> Decimal:
    """
    Convert a value to a quantized credit amount.

    Accepts Decimal, int and numeric strings. Floats are rejected because
    they cannot represent credit amounts exactly.

    Raises:
        ValueError: If the value is a float, bool, non-finite or unparsable.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"credit amounts must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(value)
        except ArithmeticError as e:
            raise ValueError(f"invalid credit amount: {value!r}") from e
    else:
        raise ValueError(f"credit amounts must be Decimal, int or str, got {type(value).__name__}")
    if not amount.is_finite():
        raise ValueError(f"credit amount must be finite, got {amount}")
    return amount.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_EVEN)


def positive_credits(value: Any, what: str = "amount") -> Decimal:
    """Quantize a value and require it to be strictly positive."""
    amount = to_credits(value)
    if amount <= ZERO:
        raise ValueError(f"{what} must be positive, got {amount}")
    return amount


# ============================================================================
# ENUMS
# ============================================================================

class EscrowStatus(str, Enum):
    """Status of an escrow. HELD resolves exactly once, to one of the others."""
    HELD = "held"
    REFUNDED = "refunded"
    TRANSFERRED = "transferred"

    @property
    def is_terminal(self) -> bool:
        return self is not EscrowStatus.HELD


class CreditKind(str, Enum):
    """Classification of an audit entry from the wallet owner's point of view."""
    EARNED = "earned"
    SPENT = "spent"
    PURCHASED = "purchased"
    REFUNDED = "refunded"


class DepositResult(Enum):
    """
    Outcome of a purchase deposit.

    APPLIED: Credits were added to the wallet.
    ALREADY_APPLIED: The payment reference was processed before (idempotent).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class EscrowError(Exception):
    """Base exception for all escrow-related errors."""
    pass


class IllegalTransition(EscrowError):
    """Raised when a session operation is not valid in the session's current state."""

    def __init__(self, session_id: str, operation: str, status: Any, detail: str = ""):
        self.session_id = session_id
        self.operation = operation
        self.status = status
        self.detail = detail
        label = getattr(status, "value", status)
        message = f"cannot {operation} session {session_id} in state {label}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InsufficientFunds(EscrowError):
    """Raised when a wallet's available balance cannot cover a lock or debit."""

    def __init__(self, wallet_id: str, requested: Decimal, available: Decimal):
        self.wallet_id = wallet_id
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"wallet {wallet_id} has {available} available, "
            f"needs {requested} (short by {self.shortfall})"
        )


class InvalidEscrowState(EscrowError):
    """Raised when an escrow operation meets an escrow in the wrong status."""

    def __init__(self, escrow_id: str, status: EscrowStatus, operation: str = ""):
        self.escrow_id = escrow_id
        self.status = status
        self.operation = operation
        super().__init__(f"escrow {escrow_id} is {status.value}, cannot {operation or 'resolve'}")


class NotFound(EscrowError):
    """Raised when a referenced session, wallet or escrow does not exist."""

    def __init__(self, kind: str, identity: str):
        self.kind = kind
        self.identity = identity
        super().__init__(f"{kind} {identity} not found")


class NotAParticipant(EscrowError):
    """Raised when an actor who is neither student nor teacher acts on a session."""

    def __init__(self, session_id: str, actor_id: str):
        self.session_id = session_id
        self.actor_id = actor_id
        super().__init__(f"{actor_id} is not a participant of session {session_id}")


class DuplicateEscrow(EscrowError):
    """Raised when a session already has its escrow and a second lock is attempted."""

    def __init__(self, session_id: str, escrow_id: str):
        self.session_id = session_id
        self.escrow_id = escrow_id
        super().__init__(f"session {session_id} already has escrow {escrow_id}")


class InvalidResolution(EscrowError):
    """Raised when a dispute resolution plan cannot be applied."""
    pass


class TransientStorageError(EscrowError):
    """Raised by storage backends for failures that may succeed on retry."""
    pass


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Wallet:
    """
    One user's credit account.

    Attributes:
        owner_id: Identity of the wallet owner (also the wallet identity).
        available: Credits free to spend.
        locked: Credits held in escrow.
        created_at: Registration time.
    """
    owner_id: str
    available: Decimal = ZERO
    locked: Decimal = ZERO
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.owner_id or not self.owner_id.strip():
            raise ValueError("Wallet owner_id cannot be empty")
        if not isinstance(self.available, Decimal) or not isinstance(self.locked, Decimal):
            raise ValueError("Wallet balances must be Decimal")
        if self.available < ZERO:
            raise ValueError(f"Wallet {self.owner_id} available balance negative: {self.available}")
        if self.locked < ZERO:
            raise ValueError(f"Wallet {self.owner_id} locked balance negative: {self.locked}")

    @property
    def total(self) -> Decimal:
        return self.available + self.locked

    def __repr__(self) -> str:
        return f"Wallet({self.owner_id}: available={self.available}, locked={self.locked})"


@dataclass(frozen=True, slots=True)
class EscrowTransaction:
    """
    Credits held in transit for exactly one session.

    Attributes:
        escrow_id: Unique escrow identity.
        session_id: Session that owns this escrow.
        source_wallet: Payer (the student).
        dest_wallet: Payee (the teacher).
        amount: Credits held (positive).
        status: HELD until resolved to REFUNDED or TRANSFERRED.
        created_at: When the credits were locked.
        resolved_at: When the escrow reached its terminal status.
        payout: Credits that reached dest_wallet when the escrow resolved.
        reversed_amount: Credits paid back to the source after a transfer,
                         through compensating reversals.
    """
    escrow_id: str
    session_id: str
    source_wallet: str
    dest_wallet: str
    amount: Decimal
    status: EscrowStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    payout: Decimal = ZERO
    reversed_amount: Decimal = ZERO

    def __post_init__(self):
        if not isinstance(self.amount, Decimal) or self.amount <= ZERO:
            raise ValueError(f"Escrow amount must be a positive Decimal, got {self.amount!r}")
        if self.source_wallet == self.dest_wallet:
            raise ValueError("Escrow source and dest must be different")
        if self.status.is_terminal and self.resolved_at is None:
            raise ValueError(f"Escrow {self.escrow_id} is {self.status.value} without resolved_at")
        if self.status is EscrowStatus.HELD and self.resolved_at is not None:
            raise ValueError(f"Escrow {self.escrow_id} is held but has resolved_at")
        if self.reversed_amount > self.payout:
            raise ValueError(f"Escrow {self.escrow_id} reversed more than it paid out")

    @property
    def reversible(self) -> Decimal:
        """Credits the payee received and has not yet given back."""
        return self.payout - self.reversed_amount

    def __repr__(self) -> str:
        return (f"Escrow({self.escrow_id}: {self.amount} "
                f"{self.source_wallet}→{self.dest_wallet} [{self.status.value}])")


@dataclass(frozen=True, slots=True)
class CreditTransaction:
    """
    Immutable audit entry for one balance change of one wallet.

    Attributes:
        entry_id: Unique entry identity.
        sequence_number: Monotonic position in the audit log.
        wallet_id: Wallet whose balance changed.
        kind: EARNED / SPENT / PURCHASED / REFUNDED.
        amount: Credits moved (positive).
        timestamp: When the change happened.
        operation: Ledger operation that wrote the entry (lock, release, ...).
        available_delta: Signed change to the wallet's available balance.
        locked_delta: Signed change to the wallet's locked balance.
        session_id: Causing session, if any.
        escrow_id: Causing escrow, if any.
        metadata: Extra context (bonus reason, partial refund split, ...).

    Replaying available_delta / locked_delta over the whole log reproduces
    every wallet balance.
    """
    entry_id: str
    sequence_number: int
    wallet_id: str
    kind: CreditKind
    amount: Decimal
    timestamp: datetime
    operation: str
    available_delta: Decimal = ZERO
    locked_delta: Decimal = ZERO
    session_id: Optional[str] = None
    escrow_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (f"Credit#{self.sequence_number}({self.kind.value} {self.amount} "
                f"{self.wallet_id} via {self.operation})")

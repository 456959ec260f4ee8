"""
storage.py - Storage ports and the in-memory backend

The Ledger and the SessionStateMachine receive a Store at construction instead
of reaching for global repositories. A Store holds five tables:

    wallets         owner_id   -> Wallet
    escrows         escrow_id  -> EscrowTransaction
    credit log      append-only list of CreditTransaction
    sessions        session_id -> Session
    conduct         teacher_id -> ConductRecord

plus the set of processed payment references and named sequence counters.

Atomicity:
    store.transaction() opens a unit of work. InMemoryStore journals the prior
    value of every key written inside the calling thread's unit and restores
    exactly those keys if the unit raises. Nested units join the outer one.
    Callers hold the per-session / per-wallet locks for every key they write,
    so restoring those keys never clobbers another thread's work.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Set, Tuple
import itertools
import threading

from .core import CreditTransaction, EscrowTransaction, Wallet


class Store(Protocol):
    """Persistence port used by the Ledger and the state machine."""

    def transaction(self): ...

    def get_wallet(self, owner_id: str) -> Optional[Wallet]: ...
    def put_wallet(self, wallet: Wallet) -> None: ...
    def list_wallets(self) -> List[Wallet]: ...

    def get_escrow(self, escrow_id: str) -> Optional[EscrowTransaction]: ...
    def put_escrow(self, escrow: EscrowTransaction) -> None: ...
    def list_escrows(self) -> List[EscrowTransaction]: ...
    def escrow_for_session(self, session_id: str) -> Optional[EscrowTransaction]: ...

    def append_credit(self, entry: CreditTransaction) -> None: ...
    def credit_log(self) -> List[CreditTransaction]: ...

    def has_payment_reference(self, reference: str) -> bool: ...
    def add_payment_reference(self, reference: str) -> None: ...

    def get_session(self, session_id: str) -> Optional[Any]: ...
    def put_session(self, session: Any) -> None: ...
    def list_sessions(self) -> List[Any]: ...

    def get_conduct(self, teacher_id: str) -> Optional[Any]: ...
    def put_conduct(self, record: Any) -> None: ...

    def next_sequence(self, name: str) -> int: ...


class KeyedLocks:
    """
    One re-entrant lock per identity.

    hold() acquires the locks for several identities in sorted order so two
    callers racing on the same pair of identities cannot deadlock.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        ordered = [self._lock_for(k) for k in sorted(set(keys))]
        acquired = []
        try:
            for lock in ordered:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# Sentinel for "key did not exist before this unit of work".
_MISSING = object()


class InMemoryStore:
    """
    Dictionary-backed Store for tests, simulations and single-process use.

    Thread Safety:
        Individual reads and writes are guarded by an internal mutex.
        Units of work are per-thread; isolation between threads comes from
        the caller's KeyedLocks.
    """

    def __init__(self):
        self._wallets: Dict[str, Wallet] = {}
        self._escrows: Dict[str, EscrowTransaction] = {}
        self._credits: List[CreditTransaction] = []
        self._references: Set[str] = set()
        self._sessions: Dict[str, Any] = {}
        self._conduct: Dict[str, Any] = {}
        self._counters: Dict[str, itertools.count] = {}
        self._mutex = threading.RLock()
        self._local = threading.local()

    # ========================================================================
    # UNIT OF WORK
    # ========================================================================

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """
        Open (or join) the calling thread's unit of work.

        On exception every write made inside the outermost unit is undone,
        then the exception propagates.
        """
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._local.journal = []
        self._local.depth = depth + 1
        try:
            yield self
        except BaseException:
            if depth == 0:
                self._rollback(self._local.journal)
            raise
        finally:
            self._local.depth = depth
            if depth == 0:
                self._local.journal = None

    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    def _journal(self) -> Optional[List[Tuple[str, Any, Any]]]:
        return getattr(self._local, "journal", None)

    def _record(self, table: str, key: Any, previous: Any) -> None:
        journal = self._journal()
        if journal is not None:
            journal.append((table, key, previous))

    def _rollback(self, journal: List[Tuple[str, Any, Any]]) -> None:
        with self._mutex:
            for table, key, previous in reversed(journal):
                if table == "credits":
                    self._credits.remove(previous)
                elif table == "references":
                    self._references.discard(key)
                else:
                    target = self._table(table)
                    if previous is _MISSING:
                        target.pop(key, None)
                    else:
                        target[key] = previous

    def _table(self, name: str) -> Dict[str, Any]:
        return {
            "wallets": self._wallets,
            "escrows": self._escrows,
            "sessions": self._sessions,
            "conduct": self._conduct,
        }[name]

    def _put(self, table: str, key: str, value: Any) -> None:
        with self._mutex:
            target = self._table(table)
            self._record(table, key, target.get(key, _MISSING))
            target[key] = value

    # ========================================================================
    # WALLETS
    # ========================================================================

    def get_wallet(self, owner_id: str) -> Optional[Wallet]:
        with self._mutex:
            return self._wallets.get(owner_id)

    def put_wallet(self, wallet: Wallet) -> None:
        self._put("wallets", wallet.owner_id, wallet)

    def list_wallets(self) -> List[Wallet]:
        with self._mutex:
            return [self._wallets[k] for k in sorted(self._wallets)]

    # ========================================================================
    # ESCROWS
    # ========================================================================

    def get_escrow(self, escrow_id: str) -> Optional[EscrowTransaction]:
        with self._mutex:
            return self._escrows.get(escrow_id)

    def put_escrow(self, escrow: EscrowTransaction) -> None:
        self._put("escrows", escrow.escrow_id, escrow)

    def list_escrows(self) -> List[EscrowTransaction]:
        with self._mutex:
            return [self._escrows[k] for k in sorted(self._escrows)]

    def escrow_for_session(self, session_id: str) -> Optional[EscrowTransaction]:
        with self._mutex:
            for escrow in self._escrows.values():
                if escrow.session_id == session_id:
                    return escrow
        return None

    # ========================================================================
    # AUDIT LOG
    # ========================================================================

    def append_credit(self, entry: CreditTransaction) -> None:
        with self._mutex:
            self._credits.append(entry)
            self._record("credits", entry.entry_id, entry)

    def credit_log(self) -> List[CreditTransaction]:
        with self._mutex:
            return sorted(self._credits, key=lambda e: e.sequence_number)

    def has_payment_reference(self, reference: str) -> bool:
        with self._mutex:
            return reference in self._references

    def add_payment_reference(self, reference: str) -> None:
        with self._mutex:
            if reference not in self._references:
                self._references.add(reference)
                self._record("references", reference, None)

    # ========================================================================
    # SESSIONS AND CONDUCT
    # ========================================================================

    def get_session(self, session_id: str) -> Optional[Any]:
        with self._mutex:
            return self._sessions.get(session_id)

    def put_session(self, session: Any) -> None:
        self._put("sessions", session.session_id, session)

    def list_sessions(self) -> List[Any]:
        with self._mutex:
            return [self._sessions[k] for k in sorted(self._sessions)]

    def get_conduct(self, teacher_id: str) -> Optional[Any]:
        with self._mutex:
            return self._conduct.get(teacher_id)

    def put_conduct(self, record: Any) -> None:
        self._put("conduct", record.teacher_id, record)

    # ========================================================================
    # SEQUENCES
    # ========================================================================

    def next_sequence(self, name: str) -> int:
        """Monotonic counter per name. Values consumed by a rolled-back unit are not reused."""
        with self._mutex:
            counter = self._counters.get(name)
            if counter is None:
                counter = itertools.count()
                self._counters[name] = counter
            return next(counter)

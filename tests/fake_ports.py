"""
fake_ports.py - Test doubles for collaborator ports and storage

Recording ports capture every call so tests can assert on side effects.
Failing ports raise on every call to prove that port failures never undo a
committed transition. FaultyStore injects storage failures into the
in-memory backend.
"""

from __future__ import annotations
from typing import List, Optional, Tuple

from session_escrow import InMemoryStore, TransientStorageError


class RecordingNotifier:
    """Notification port that remembers (user_id, message) pairs."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    def notify(self, user_id: str, message: str) -> None:
        self.sent.append((user_id, message))

    def messages_for(self, user_id: str) -> List[str]:
        return [m for u, m in self.sent if u == user_id]


class RecordingTicketing:
    """Ticketing port that hands out sequential ticket ids."""

    def __init__(self):
        self.tickets: List[Tuple[str, str, str]] = []

    def create_ticket(self, session_id: str, reason: str) -> Optional[str]:
        ticket_id = f"TICKET-{len(self.tickets) + 1}"
        self.tickets.append((ticket_id, session_id, reason))
        return ticket_id


class RecordingAccounts:
    def __init__(self):
        self.suspended: List[Tuple[str, str]] = []

    def suspend(self, user_id: str, reason: str) -> None:
        self.suspended.append((user_id, reason))


class FailingNotifier:
    def notify(self, user_id: str, message: str) -> None:
        raise ConnectionError("notification service unavailable")


class FailingTicketing:
    def create_ticket(self, session_id: str, reason: str) -> Optional[str]:
        raise ConnectionError("ticketing service unavailable")


class FailingAccounts:
    def suspend(self, user_id: str, reason: str) -> None:
        raise ConnectionError("account service unavailable")


class FaultyStore(InMemoryStore):
    """
    InMemoryStore that fails selected writes.

    Example:
        store = FaultyStore(fail_session_writes=1)   # next put_session raises
        store = FaultyStore(transient_session_writes=2)  # two transient failures
    """

    def __init__(self, fail_session_writes: int = 0, transient_session_writes: int = 0):
        super().__init__()
        self.fail_session_writes = fail_session_writes
        self.transient_session_writes = transient_session_writes
        self.session_write_attempts = 0

    def put_session(self, session) -> None:
        self.session_write_attempts += 1
        if self.transient_session_writes > 0:
            self.transient_session_writes -= 1
            raise TransientStorageError("session table briefly unavailable")
        if self.fail_session_writes > 0:
            self.fail_session_writes -= 1
            raise RuntimeError("session table write failed")
        super().put_session(session)

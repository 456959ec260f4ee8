"""
policy.py - Session policy and logging configuration

SessionPolicy is the single place holding every window and threshold the
state machine enforces. It is an immutable term sheet: set at construction,
never changed while sessions are running.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any, Mapping
import logging


DEFAULT_NEGOTIATION_WINDOW = timedelta(hours=48)
DEFAULT_DISPUTE_WINDOW = timedelta(days=3)
DEFAULT_NO_SHOW_GRACE = timedelta(minutes=30)
DEFAULT_CANCELLATION_WINDOW = timedelta(days=30)
DEFAULT_CANCELLATION_WARNING_THRESHOLD = 5
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.05


@dataclass(frozen=True, slots=True)
class SessionPolicy:
    """
    Time windows and thresholds for the session lifecycle.

    Attributes:
        negotiation_window: How long a request or counter-offer stays open
                            before the sweeper expires it.
        dispute_window: How long after completion a dispute may be raised.
        no_show_grace: Delay after the scheduled time before a no-show
                       can be reported.
        cancellation_window: Rolling window for counting teacher cancellations.
        cancellation_warning_threshold: Cancellations within the window that
                                        trigger a warning.
        retry_attempts: Attempts for operations failing with transient
                        storage errors.
        retry_base_delay: First backoff delay in seconds (doubles per attempt).
    """
    negotiation_window: timedelta = DEFAULT_NEGOTIATION_WINDOW
    dispute_window: timedelta = DEFAULT_DISPUTE_WINDOW
    no_show_grace: timedelta = DEFAULT_NO_SHOW_GRACE
    cancellation_window: timedelta = DEFAULT_CANCELLATION_WINDOW
    cancellation_warning_threshold: int = DEFAULT_CANCELLATION_WARNING_THRESHOLD
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY

    def __post_init__(self):
        for name in ("negotiation_window", "dispute_window", "cancellation_window"):
            value = getattr(self, name)
            if value <= timedelta(0):
                raise ValueError(f"{name} must be positive, got {value}")
        if self.no_show_grace < timedelta(0):
            raise ValueError(f"no_show_grace cannot be negative, got {self.no_show_grace}")
        if self.cancellation_warning_threshold < 1:
            raise ValueError("cancellation_warning_threshold must be at least 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay cannot be negative")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SessionPolicy":
        """
        Build a policy from plain configuration values.

        Window fields accept a timedelta or a number of seconds. Unknown keys
        are rejected so typos do not silently fall back to defaults.

        Example:
            SessionPolicy.from_mapping({"negotiation_window": 3600, "retry_attempts": 5})
        """
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"unknown policy keys: {sorted(unknown)}")

        kwargs = {}
        for name, value in values.items():
            if name in ("negotiation_window", "dispute_window", "no_show_grace", "cancellation_window"):
                if not isinstance(value, timedelta):
                    value = timedelta(seconds=float(value))
            elif name in ("cancellation_warning_threshold", "retry_attempts"):
                value = int(value)
            elif name == "retry_base_delay":
                value = float(value)
            kwargs[name] = value
        return cls(**kwargs)


def configure_logging(level: str = "INFO") -> None:
    """Attach a console handler to the package logger."""
    logger = logging.getLogger("session_escrow")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s - %(message)s",
        ))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

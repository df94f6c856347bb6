"""
Error taxonomy shared by the store, the scheduler and the delivery channels.

  SchedulerError
    ├── ValidationError          malformed schedule request (never scheduled)
    ├── MessageNotFoundError     unknown id, or owned by another user
    ├── InvalidTransitionError   status edge not allowed by the state machine
    ├── SessionTimeout           session linking did not finish in time
    └── WorkerError              automation surface failed unexpectedly

A handled delivery failure is not an exception: the worker returns
MessageStatus.FAILED.
"""
from __future__ import annotations

from typing import Any


class SchedulerError(Exception):
    """Base exception for the scheduled sender."""


class ValidationError(SchedulerError):
    def __init__(self, message: str, errors: list[dict[str, Any]] = None):
        self.errors = errors or []
        super().__init__(message)


class MessageNotFoundError(SchedulerError):
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


class InvalidTransitionError(SchedulerError):
    def __init__(self, message_id: str, from_status: Any, to_status: Any):
        self.message_id = message_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Message {message_id}: cannot move from "
            f"{getattr(from_status, 'value', from_status)} to "
            f"{getattr(to_status, 'value', to_status)}"
        )


class SessionTimeout(SchedulerError):
    def __init__(self, user_id: str, timeout_s: float):
        self.user_id = user_id
        self.timeout_s = timeout_s
        super().__init__(f"Session for user {user_id} not linked within {timeout_s}s")


class WorkerError(SchedulerError):
    """Delivery attempt could not complete cleanly."""

    def __init__(self, message: str, user_id: str = "", retryable: bool = False):
        self.user_id = user_id
        self.retryable = retryable
        super().__init__(message)
